import json

import httpx
import pytest

from conftest import make_event
from epcishub.core.client import ClickHouseClient, schema_statements
from epcishub.core.config import EPCISConfig
from epcishub.core.exceptions import StoreError
from epcishub.query.compiler import compile_query
from epcishub.subscription.models import Subscription


class FakeClickHouse:
    """MockTransport handler recording statements and replaying canned bodies."""

    def __init__(self, responses: list[httpx.Response] | None = None):
        self.responses = list(responses or [])
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/ping":
            return httpx.Response(200, text="Ok.\n")
        if self.responses:
            return self.responses.pop(0)
        return httpx.Response(200, text="")


@pytest.fixture
def ch_config() -> EPCISConfig:
    return EPCISConfig(
        store_backend="clickhouse",
        clickhouse_host="ch.test",
        clickhouse_database="epcis",
        clickhouse_password="secret",
        store_max_retries=2,
        _env_file=None,
    )


def _client(config, handler) -> ClickHouseClient:
    return ClickHouseClient(config, transport=httpx.MockTransport(handler))


class TestConnection:
    async def test_connect_and_headers(self, ch_config):
        fake = FakeClickHouse()
        async with _client(ch_config, fake) as client:
            assert repr(client).endswith(", connected)")
            assert (await client.health_check())["status"] == "healthy"

        request = fake.requests[0]
        assert str(request.url) == "http://ch.test:8123/ping"
        assert request.headers["X-ClickHouse-User"] == "default"
        assert request.headers["X-ClickHouse-Key"] == "secret"

    async def test_connect_failure(self, ch_config):
        def down(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(StoreError):
            await _client(ch_config, down).connect()


class TestExecute:
    """Statement transport, parameter binding and error mapping."""

    async def test_parameters_travel_separately(self, ch_config):
        fake = FakeClickHouse()
        client = _client(ch_config, fake)
        await client.execute("SELECT {x:String}", {"x": "O'Brien"})

        request = fake.requests[0]
        assert request.url.params["database"] == "epcis"
        assert request.url.params["param_x"] == "O'Brien"
        assert request.content == b"SELECT {x:String}"
        await client.close()

    async def test_http_error_maps_to_store_error(self, ch_config):
        fake = FakeClickHouse([httpx.Response(500, text="Code: 62. Syntax error")])
        client = _client(ch_config, fake)
        with pytest.raises(StoreError) as exc_info:
            await client.execute("SELEC 1")
        assert "Syntax error" in str(exc_info.value)
        assert exc_info.value.statement == "SELEC 1"

    async def test_transport_errors_are_retried(self, ch_config):
        calls = []

        def flaky(request):
            calls.append(request)
            if len(calls) == 1:
                raise httpx.ConnectError("reset", request=request)
            return httpx.Response(200, text="1\n")

        assert await _client(ch_config, flaky).execute("SELECT 1") == "1\n"
        assert len(calls) == 2


class TestEventStore:
    async def test_insert_event_row(self, ch_config):
        fake = FakeClickHouse()
        client = _client(ch_config, fake)
        await client.insert_event(
            make_event(eventID="e1", recordTime="2024-06-01T12:00:00.000Z", captureID="cap-1")
        )

        request = fake.requests[0]
        assert request.url.params["query"] == "INSERT INTO epcis_events FORMAT JSONEachRow"
        row = json.loads(request.content)
        assert row["eventID"] == "e1"
        assert row["captureID"] == "cap-1"
        assert json.loads(row["payload"])["eventID"] == "e1"

    async def test_query_events_decodes_payloads(self, ch_config):
        payload = json.dumps(make_event(eventID="e1"))
        fake = FakeClickHouse([httpx.Response(200, text=json.dumps({"payload": payload}) + "\n")])
        client = _client(ch_config, fake)

        rows = await client.query_events(compile_query({"EQ_bizStep": ["shipping"]}), limit=11, offset=0)

        assert [r["eventID"] for r in rows] == ["e1"]
        statement = fake.requests[0].content.decode()
        assert statement.endswith("FORMAT JSONEachRow")
        assert "shipping" not in statement

    async def test_delete_is_synchronous(self, ch_config):
        fake = FakeClickHouse()
        await _client(ch_config, fake).delete_by_capture_id("cap-1")
        request = fake.requests[0]
        assert request.url.params["mutations_sync"] == "1"
        assert request.url.params["param_capture_id"] == "cap-1"


class TestMetadataStores:
    async def test_subscription_round_trip_keeps_token(self, ch_config):
        sub = Subscription(query_name="q", destination="https://h.example.com", signature_token="k")
        fake = FakeClickHouse()
        client = _client(ch_config, fake)
        await client.save_subscription(sub)

        record = json.loads(fake.requests[0].content)["record"]
        fake.responses.append(httpx.Response(200, text=json.dumps({"record": record}) + "\n"))
        loaded = await client.get_subscription("q", sub.id)

        assert loaded.id == sub.id
        assert loaded.signature_token == "k"

    async def test_missing_query(self, ch_config):
        client = _client(ch_config, FakeClickHouse())
        assert await client.get_query("nope") is None
        assert await client.delete_query("nope") is False


class TestSchema:
    def test_statements_are_idempotent(self):
        statements = schema_statements()
        assert len(statements) == 3
        assert all(s.startswith("CREATE TABLE IF NOT EXISTS") for s in statements)
        assert "ORDER BY (`eventTime`, `eventID`)" in statements[0]

    async def test_ensure_schema(self, ch_config):
        fake = FakeClickHouse()
        tables = await _client(ch_config, fake).ensure_schema()
        assert tables == ["epcis_events", "epcis_queries", "epcis_subscriptions"]
        assert len(fake.requests) == 3
