"""ClickHouse client implementing the event, query and subscription stores over HTTP."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any, Self

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from epcishub.core.clock import to_clickhouse, utc_now
from epcishub.core.exceptions import StoreError
from epcishub.query.columns import COLUMNS, to_row
from epcishub.query.models import QueryDefinition
from epcishub.query.sql import EVENTS_TABLE, quote_identifier, render_select
from epcishub.subscription.models import Subscription

if TYPE_CHECKING:
    from epcishub.core.config import EPCISConfig
    from epcishub.query.predicates import PredicateSpec

logger = logging.getLogger(__name__)

QUERIES_TABLE = "epcis_queries"
SUBSCRIPTIONS_TABLE = "epcis_subscriptions"


def schema_statements() -> list[str]:
    """DDL for every table the service uses; safe to run repeatedly."""
    event_columns = ",\n    ".join(
        f"{quote_identifier(column.name)} {column.clickhouse_type}" for column in COLUMNS.values()
    )
    return [
        f"CREATE TABLE IF NOT EXISTS {EVENTS_TABLE} (\n"
        f"    {event_columns},\n"
        "    `captureID` String,\n"
        "    `payload` String\n"
        ") ENGINE = MergeTree\n"
        "ORDER BY (`eventTime`, `eventID`)",
        f"CREATE TABLE IF NOT EXISTS {QUERIES_TABLE} (\n"
        "    `name` String,\n"
        "    `definition` String,\n"
        "    `updatedAt` DateTime64(3, 'UTC')\n"
        ") ENGINE = ReplacingMergeTree(`updatedAt`)\n"
        "ORDER BY `name`",
        f"CREATE TABLE IF NOT EXISTS {SUBSCRIPTIONS_TABLE} (\n"
        "    `id` String,\n"
        "    `queryName` String,\n"
        "    `status` LowCardinality(String),\n"
        "    `record` String,\n"
        "    `updatedAt` DateTime64(3, 'UTC')\n"
        ") ENGINE = ReplacingMergeTree(`updatedAt`)\n"
        "ORDER BY (`queryName`, `id`)",
    ]


class ClickHouseClient:
    """
    Client for the ClickHouse HTTP interface.

    Handles:
    - Connection management
    - Parameterised statements (values are never interpolated)
    - Retries on transport errors
    - Mapping failures to StoreError

    Example:
        >>> client = ClickHouseClient(config)
        >>> await client.insert_event(document)
        >>> rows = await client.query_events(spec, limit=101, offset=0)
        >>> await client.close()
    """

    def __init__(self, config: EPCISConfig, transport: httpx.AsyncBaseTransport | None = None):
        """
        Initialize ClickHouse client.

        Args:
            config: EPCISConfig instance
            transport: Optional httpx transport (tests inject a MockTransport)
        """
        self.config = config
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._is_connected = False

    @property
    def client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.config.clickhouse_url,
                timeout=self.config.store_timeout,
                headers=self._get_headers(),
                transport=self._transport,
            )
        return self._client

    def _get_headers(self) -> dict[str, str]:
        headers = {"X-ClickHouse-User": self.config.clickhouse_user}
        if self.config.clickhouse_password:
            headers["X-ClickHouse-Key"] = self.config.clickhouse_password
        return headers

    async def connect(self) -> None:
        """
        Check that ClickHouse answers.

        Raises:
            StoreError: If the server cannot be reached
        """
        try:
            response = await self.client.get("/ping")
            response.raise_for_status()
            self._is_connected = True
            logger.info(f"Connected to ClickHouse at {self.config.clickhouse_url}")
        except httpx.HTTPError as e:
            self._is_connected = False
            raise StoreError(
                f"Failed to connect to ClickHouse at {self.config.clickhouse_url}: {e}"
            ) from e

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None
            self._is_connected = False
            logger.info("Closed ClickHouse connection")

    async def execute(
        self,
        statement: str,
        params: dict[str, str] | None = None,
        data: str | None = None,
        settings: dict[str, str] | None = None,
    ) -> str:
        """
        Execute one statement and return the raw response body.

        With ``data`` the statement travels in the ``query`` URL parameter and
        ``data`` is the request body (INSERT ... FORMAT); otherwise the
        statement itself is the body.

        Raises:
            StoreError: On HTTP error status or after exhausting transport retries
        """
        query_params: dict[str, str] = {"database": self.config.clickhouse_database}
        query_params.update(settings or {})
        query_params.update({f"param_{k}": v for k, v in (params or {}).items()})
        if data is not None:
            query_params["query"] = statement
            body = data
        else:
            body = statement

        logger.debug(f"Executing statement: {statement[:120]}")

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.config.store_max_retries),
                wait=wait_exponential(multiplier=1, min=1, max=10),
                retry=retry_if_exception_type(httpx.TransportError),
                reraise=True,
            ):
                with attempt:
                    response = await self.client.post(
                        "/", params=query_params, content=body.encode("utf-8")
                    )
            response.raise_for_status()
            return response.text

        except httpx.HTTPStatusError as e:
            error_msg = f"Statement failed ({e.response.status_code}): {e.response.text.strip()}"
            logger.error(error_msg)
            raise StoreError(error_msg, statement=statement) from e

        except httpx.HTTPError as e:
            error_msg = f"HTTP error executing statement: {e}"
            logger.exception(error_msg)
            raise StoreError(error_msg, statement=statement) from e

    async def select_rows(
        self, statement: str, params: dict[str, str] | None = None
    ) -> list[dict[str, Any]]:
        """Run a SELECT and decode its JSONEachRow output."""
        text = await self.execute(f"{statement} FORMAT JSONEachRow", params)
        return [json.loads(line) for line in text.splitlines() if line.strip()]

    async def insert_rows(self, table: str, rows: list[dict[str, Any]]) -> None:
        data = "\n".join(json.dumps(row, separators=(",", ":")) for row in rows)
        await self.execute(f"INSERT INTO {table} FORMAT JSONEachRow", data=data)

    async def insert_event(self, event: dict[str, Any]) -> None:
        await self.insert_rows(EVENTS_TABLE, [to_row(event)])

    async def delete_by_capture_id(self, capture_id: str) -> None:
        """Delete a capture's events and wait for the mutation to finish."""
        await self.execute(
            f"ALTER TABLE {EVENTS_TABLE} DELETE WHERE captureID = {{capture_id:String}}",
            {"capture_id": capture_id},
            settings={"mutations_sync": "1"},
        )

    async def query_events(
        self, spec: PredicateSpec, limit: int, offset: int
    ) -> list[dict[str, Any]]:
        statement, params = render_select(spec, limit=limit, offset=offset)
        rows = await self.select_rows(statement, params)
        return [json.loads(row["payload"]) for row in rows]

    async def save_query(self, definition: QueryDefinition) -> None:
        await self.insert_rows(
            QUERIES_TABLE,
            [
                {
                    "name": definition.name,
                    "definition": definition.model_dump_json(by_alias=True),
                    "updatedAt": to_clickhouse(utc_now()),
                }
            ],
        )

    async def get_query(self, name: str) -> QueryDefinition | None:
        rows = await self.select_rows(
            f"SELECT definition FROM {QUERIES_TABLE} FINAL WHERE name = {{name:String}} LIMIT 1",
            {"name": name},
        )
        if not rows:
            return None
        return QueryDefinition.model_validate_json(rows[0]["definition"])

    async def list_queries(self) -> list[QueryDefinition]:
        rows = await self.select_rows(
            f"SELECT definition FROM {QUERIES_TABLE} FINAL ORDER BY name ASC"
        )
        return [QueryDefinition.model_validate_json(row["definition"]) for row in rows]

    async def delete_query(self, name: str) -> bool:
        if await self.get_query(name) is None:
            return False
        await self.execute(
            f"ALTER TABLE {QUERIES_TABLE} DELETE WHERE name = {{name:String}}",
            {"name": name},
            settings={"mutations_sync": "1"},
        )
        return True

    async def save_subscription(self, subscription: Subscription) -> None:
        """Write a new version of the subscription; ReplacingMergeTree keeps the latest."""
        await self.insert_rows(
            SUBSCRIPTIONS_TABLE,
            [
                {
                    "id": subscription.id,
                    "queryName": subscription.query_name,
                    "status": subscription.status.value,
                    "record": json.dumps(subscription.to_record(), separators=(",", ":")),
                    "updatedAt": to_clickhouse(utc_now()),
                }
            ],
        )

    async def get_subscription(self, query_name: str, subscription_id: str) -> Subscription | None:
        rows = await self.select_rows(
            f"SELECT record FROM {SUBSCRIPTIONS_TABLE} FINAL "
            "WHERE queryName = {query_name:String} AND id = {id:String} LIMIT 1",
            {"query_name": query_name, "id": subscription_id},
        )
        if not rows:
            return None
        return Subscription.model_validate_json(rows[0]["record"])

    async def list_subscriptions(self, query_name: str | None = None) -> list[Subscription]:
        if query_name is None:
            rows = await self.select_rows(
                f"SELECT record FROM {SUBSCRIPTIONS_TABLE} FINAL ORDER BY updatedAt ASC"
            )
        else:
            rows = await self.select_rows(
                f"SELECT record FROM {SUBSCRIPTIONS_TABLE} FINAL "
                "WHERE queryName = {query_name:String} ORDER BY updatedAt ASC",
                {"query_name": query_name},
            )
        return [Subscription.model_validate_json(row["record"]) for row in rows]

    async def delete_subscription(self, query_name: str, subscription_id: str) -> bool:
        if await self.get_subscription(query_name, subscription_id) is None:
            return False
        await self.execute(
            f"ALTER TABLE {SUBSCRIPTIONS_TABLE} DELETE "
            "WHERE queryName = {query_name:String} AND id = {id:String}",
            {"query_name": query_name, "id": subscription_id},
            settings={"mutations_sync": "1"},
        )
        return True

    async def ensure_schema(self) -> list[str]:
        """Create missing tables and return the names of the tables checked."""
        for statement in schema_statements():
            await self.execute(statement)
        tables = [EVENTS_TABLE, QUERIES_TABLE, SUBSCRIPTIONS_TABLE]
        logger.info(f"Schema ready in database {self.config.clickhouse_database}: {', '.join(tables)}")
        return tables

    async def health_check(self) -> dict[str, Any]:
        try:
            response = await self.client.get("/ping")
            response.raise_for_status()
            return {"status": "healthy", "url": self.config.clickhouse_url}
        except httpx.HTTPError as e:
            logger.warning(f"Health check failed: {e}")
            return {"status": "unhealthy", "error": str(e)}

    async def __aenter__(self) -> Self:
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    def __repr__(self) -> str:
        status = "connected" if self._is_connected else "disconnected"
        return f"ClickHouseClient({self.config.clickhouse_url}, {status})"
