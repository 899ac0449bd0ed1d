"""Configuration management for the EPCIS service."""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
import yaml


class RateLimitConfig(BaseSettings):
    """
    Fixed-window rate limits per namespace.

    Each namespace (capture, query, subscription) keeps its own counters.
    """

    enabled: bool = Field(default=True, description="Enable rate limiting on HTTP routes")
    capture_limit: int = Field(default=1000, ge=1, description="Capture requests per window")
    capture_period: int = Field(default=60, ge=1, description="Capture window in seconds")
    query_limit: int = Field(default=2000, ge=1, description="Query requests per window")
    query_period: int = Field(default=60, ge=1, description="Query window in seconds")
    subscription_limit: int = Field(
        default=500, ge=1, description="Subscription requests per window"
    )
    subscription_period: int = Field(
        default=60, ge=1, description="Subscription window in seconds"
    )

    model_config = SettingsConfigDict(
        env_prefix="EPCIS_RATE_LIMIT_",
        extra="ignore",
    )

    def namespaces(self) -> dict[str, tuple[int, int]]:
        """Return ``{namespace: (limit, period)}``."""
        return {
            "capture": (self.capture_limit, self.capture_period),
            "query": (self.query_limit, self.query_period),
            "subscription": (self.subscription_limit, self.subscription_period),
        }


class EPCISConfig(BaseSettings):
    """
    Configuration for the EPCIS service.

    Can be loaded from:
    - Environment variables (prefix: EPCIS_)
    - YAML file
    - Direct initialization

    Example:
        >>> config = EPCISConfig(store_backend="clickhouse", clickhouse_host="ch.local")
        >>> config = EPCISConfig.from_yaml("epcis.yaml")
        >>> config = EPCISConfig()
    """

    model_config = SettingsConfigDict(
        env_prefix="EPCIS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        validate_default=True,
    )

    store_backend: str = Field(
        default="memory",
        description="Event store backend (memory, clickhouse)",
    )
    clickhouse_host: str = Field(default="localhost", description="ClickHouse host address")
    clickhouse_port: int = Field(
        default=8123,
        ge=1,
        le=65535,
        description="ClickHouse HTTP interface port",
    )
    clickhouse_database: str = Field(default="default", description="ClickHouse database")
    clickhouse_user: str = Field(default="default", description="ClickHouse user")
    clickhouse_password: str | None = Field(default=None, description="ClickHouse password")
    clickhouse_secure: bool = Field(default=False, description="Use HTTPS for ClickHouse")
    store_timeout: int = Field(default=30, ge=1, description="Store request timeout in seconds")
    store_max_retries: int = Field(
        default=3,
        ge=1,
        description="Attempts for store requests failing at the transport level",
    )

    capture_limit: int = Field(
        default=1000,
        ge=1,
        description="Maximum number of events in one capture document",
    )
    job_registry_size: int = Field(
        default=10000,
        ge=1,
        description="Capture jobs kept in memory before the oldest finished ones are evicted",
    )

    default_page_size: int = Field(default=100, ge=1, description="Default query page size")
    max_page_size: int = Field(default=1000, ge=1, description="Server maximum page size")

    scheduler_enabled: bool = Field(
        default=True, description="Run the subscription scheduler inside the server"
    )
    scheduler_tick_seconds: float = Field(
        default=60.0, gt=0, description="Seconds between scheduler ticks"
    )
    subscription_interval_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Minimum seconds between two executions of one subscription",
    )
    webhook_timeout: float = Field(
        default=10.0, gt=0, description="Timeout for a single webhook delivery attempt"
    )

    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)

    server_host: str = Field(default="0.0.0.0", description="HTTP server bind address")
    server_port: int = Field(default=8080, ge=1, le=65535, description="HTTP server port")
    log_level: str = Field(default="INFO", description="Root logging level")
    vendor_version: str = Field(default="1.0.0", description="GS1-Vendor-Version header value")

    @field_validator("store_backend")
    @classmethod
    def validate_store_backend(cls, v: str) -> str:
        """Only the bundled backends are accepted."""
        v = v.lower()
        if v not in ("memory", "clickhouse"):
            raise ValueError(f"Unknown store backend: {v}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        return v.upper()

    @classmethod
    def find_config_yaml(cls) -> Path | None:
        """
        Search for epcis.yaml in standard locations.

        Search order:
        1. Current working directory
        2. Project root (parent of epcishub package)
        3. User home directory

        Returns:
            Path to epcis.yaml if found, None otherwise
        """
        search_paths = [
            Path.cwd() / "epcis.yaml",
            Path(__file__).parent.parent.parent / "epcis.yaml",
            Path.home() / ".epcis" / "epcis.yaml",
        ]

        for path in search_paths:
            if path.exists():
                return path

        return None

    @classmethod
    def from_yaml(cls, path: Path | str | None = None) -> EPCISConfig:
        """
        Load configuration from YAML file.

        Environment variables win over YAML values.

        Args:
            path: Path to YAML configuration file. If None, searches standard locations.

        Returns:
            EPCISConfig instance

        Raises:
            FileNotFoundError: If no configuration file can be found
        """
        if path is None:
            path = cls.find_config_yaml()
            if path is None:
                raise FileNotFoundError(
                    "Config file not found. Searched:\n"
                    "  1. ./epcis.yaml\n"
                    "  2. <project_root>/epcis.yaml\n"
                    "  3. ~/.epcis/epcis.yaml"
                )
        else:
            path = Path(path)
            if not path.exists():
                raise FileNotFoundError(f"Config file not found: {path}")

        with open(path, encoding="utf-8") as f:
            yaml_data = yaml.safe_load(f) or {}

        result_data = {}

        for key, value in yaml_data.items():
            env_key = f"EPCIS_{key.upper()}"
            if env_key in os.environ:
                continue
            result_data[key] = value

        return cls(**result_data)

    def to_yaml(self, path: Path | str) -> None:
        """
        Save configuration to YAML file.

        Args:
            path: Path to save YAML configuration
        """
        path = Path(path)
        with open(path, "w", encoding="utf-8") as f:
            yaml.dump(
                self.model_dump(mode="json"),
                f,
                default_flow_style=False,
                sort_keys=False,
            )

    @property
    def clickhouse_url(self) -> str:
        """Base URL of the ClickHouse HTTP interface."""
        scheme = "https" if self.clickhouse_secure else "http"
        return f"{scheme}://{self.clickhouse_host}:{self.clickhouse_port}"

    def __repr__(self) -> str:
        return (
            f"EPCISConfig(store_backend={self.store_backend!r}, "
            f"clickhouse={self.clickhouse_host}:{self.clickhouse_port})"
        )
