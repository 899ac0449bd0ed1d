"""
EPCIS Service - wires the capture, query and subscription engine together.

Architecture:
    HTTP / WebSocket layer
        ↓
    EPCISService (facade)
        ↓
    CapturePipeline · QueryExecutor · SubscriptionManager · SubscriptionScheduler
        ↓
    Event store (MemoryStore or ClickHouseClient)
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from epcishub.capture.jobs import CaptureJobRegistry
from epcishub.capture.pipeline import CapturePipeline
from epcishub.core.client import ClickHouseClient
from epcishub.core.clock import Clock, utc_now
from epcishub.core.config import EPCISConfig
from epcishub.core.events import EventBus, LifecycleLogHandler
from epcishub.core.store import MemoryStore
from epcishub.query.executor import QueryExecutor
from epcishub.ratelimit.limiter import RateLimiterRegistry
from epcishub.subscription.dispatcher import WebhookDispatcher
from epcishub.subscription.manager import SubscriptionManager
from epcishub.subscription.scheduler import SubscriptionScheduler

logger = logging.getLogger(__name__)


class EPCISService:
    """
    Main facade of the service.

    Builds every component from one EPCISConfig. The store backend is chosen
    by ``config.store_backend`` unless a store is passed in.

    Usage:
        >>> service = EPCISService(EPCISConfig(store_backend="memory"))
        >>> await service.start()
        >>> job = await service.pipeline.submit(document)
        >>> await service.close()
    """

    def __init__(
        self,
        config: EPCISConfig | None = None,
        store: Any | None = None,
        clock: Clock = utc_now,
        webhook_transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize the service.

        Args:
            config: Configuration object. If None, attempts to load epcis.yaml,
                    then falls back to environment variables and defaults
            store: Store implementing the event, query and subscription contracts
            clock: Time source shared by all components
            webhook_transport: Optional httpx transport for webhook delivery
        """
        if config is None:
            try:
                self.config = EPCISConfig.from_yaml()
                logger.info("Loaded configuration from epcis.yaml")
            except FileNotFoundError:
                self.config = EPCISConfig()
                logger.info("Using configuration from environment variables and defaults")
        else:
            self.config = config

        self.store = store if store is not None else self._init_store()
        self.bus = EventBus()
        self.bus.register(LifecycleLogHandler())

        self.registry = CaptureJobRegistry(maxsize=self.config.job_registry_size)
        self.pipeline = CapturePipeline(
            store=self.store,
            registry=self.registry,
            bus=self.bus,
            capture_limit=self.config.capture_limit,
            clock=clock,
        )
        self.executor = QueryExecutor(
            self.store,
            default_page_size=self.config.default_page_size,
            max_page_size=self.config.max_page_size,
        )
        self.manager = SubscriptionManager(queries=self.store, subscriptions=self.store)
        self.dispatcher = WebhookDispatcher(
            timeout=self.config.webhook_timeout, transport=webhook_transport
        )
        self.scheduler = SubscriptionScheduler(
            self.manager,
            self.executor,
            self.dispatcher,
            bus=self.bus,
            interval_seconds=self.config.subscription_interval_seconds,
            tick_seconds=self.config.scheduler_tick_seconds,
            clock=clock,
        )
        self.rate_limiters = (
            RateLimiterRegistry.from_config(self.config.rate_limit, clock=clock)
            if self.config.rate_limit.enabled
            else RateLimiterRegistry()
        )
        self._scheduler_task: asyncio.Task[None] | None = None

        logger.info(f"EPCISService initialized: store={self.config.store_backend}")

    def _init_store(self) -> MemoryStore | ClickHouseClient:
        if self.config.store_backend == "clickhouse":
            return ClickHouseClient(self.config)
        return MemoryStore()

    async def start(self) -> None:
        """Connect the store and start the scheduler when enabled."""
        if isinstance(self.store, ClickHouseClient):
            await self.store.connect()
        if self.config.scheduler_enabled and self._scheduler_task is None:
            self._scheduler_task = asyncio.create_task(self.scheduler.run(), name="epcis-scheduler")

    async def close(self) -> None:
        """Stop the scheduler, let in-flight capture jobs finish and release clients."""
        if self._scheduler_task is not None:
            self.scheduler.stop()
            await self._scheduler_task
            self._scheduler_task = None
        await self.pipeline.drain()
        await self.dispatcher.close()
        await self.store.close()
        logger.info("EPCISService closed")

    async def health_check(self) -> dict[str, Any]:
        store_health = (
            await self.store.health_check()
            if isinstance(self.store, ClickHouseClient)
            else {"status": "healthy", "backend": "memory"}
        )
        return {
            "store": store_health,
            "capture_jobs": self.registry.get_stats(),
            "scheduler_running": self._scheduler_task is not None,
        }

    async def __aenter__(self) -> EPCISService:
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    def __repr__(self) -> str:
        return f"EPCISService(store={self.config.store_backend}, config={self.config!r})"
