import httpx
import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from conftest import make_document, make_event
from epcishub.api.server import create_app
from epcishub.core.config import EPCISConfig, RateLimitConfig
from epcishub.core.service import EPCISService

HOOK = "https://hooks.example.com/epcis"


@pytest.fixture
def service(config, clock) -> EPCISService:
    return EPCISService(config, clock=clock, webhook_transport=httpx.MockTransport(lambda r: httpx.Response(200)))


@pytest.fixture
def client(service):
    with TestClient(create_app(service=service)) as client:
        yield client


def _capture(client, service, events, behaviour=None) -> dict:
    headers = {"GS1-Capture-Error-Behaviour": behaviour} if behaviour else {}
    response = client.post("/capture", json=make_document(events), headers=headers)
    assert response.status_code == 202
    capture_id = response.json()["captureID"]
    client.portal.call(service.pipeline.wait, capture_id)
    return client.get(f"/capture/{capture_id}").json()


class TestDiscovery:
    def test_options_root(self, client):
        response = client.options("/")
        assert response.status_code == 204
        assert response.headers["GS1-EPCIS-Version"] == "2.0.0"
        assert response.headers["GS1-CBV-Version"] == "2.0.0"
        assert response.headers["GS1-Vendor-Version"] == "1.0.0"

    def test_capture_options(self, client):
        response = client.options("/capture")
        assert response.headers["GS1-EPCIS-Capture-Limit"] == "10"
        assert "proceed" in response.headers["GS1-Capture-Error-Behaviour"]

    def test_health(self, client):
        body = client.get("/health").json()
        assert body["store"]["backend"] == "memory"
        assert body["scheduler_running"] is False


class TestCapture:
    """Capture submission and job polling over HTTP."""

    def test_accepted_with_location(self, client, service):
        response = client.post("/capture", json=make_document([make_event()]))
        assert response.status_code == 202
        capture_id = response.json()["captureID"]
        assert response.headers["Location"] == f"/capture/{capture_id}"

    def test_job_resource(self, client, service):
        job = _capture(client, service, [make_event(eventID="e1")], "proceed")
        assert job["running"] is False
        assert job["success"] is True
        assert job["captureErrorBehaviour"] == "proceed"
        assert job["errors"] == []
        assert job["capturedCount"] == 1

    def test_rollback_job_reports_error(self, client, service):
        job = _capture(client, service, [make_event(), make_event(eventID="bad", eventTime=None)])
        assert job["success"] is False
        assert job["state"] == "aborted"
        assert job["errors"][0]["eventID"] == "bad"

    def test_job_listing(self, client, service):
        _capture(client, service, [make_event()])
        jobs = client.get("/capture").json()["captureJobs"]
        assert len(jobs) == 1

    def test_unknown_job_is_problem(self, client):
        response = client.get("/capture/does-not-exist")
        assert response.status_code == 404
        assert response.headers["content-type"] == "application/problem+json"
        assert response.json()["type"].endswith("#NoSuchResourceException")

    def test_invalid_behaviour_header(self, client):
        response = client.post(
            "/capture",
            json=make_document([make_event()]),
            headers={"GS1-Capture-Error-Behaviour": "ignore"},
        )
        assert response.status_code == 400

    def test_capture_limit(self, client):
        response = client.post("/capture", json=make_document([make_event() for _ in range(11)]))
        assert response.status_code == 413
        assert response.json()["type"].endswith("#CaptureLimitExceededException")

    def test_malformed_json(self, client):
        response = client.post(
            "/capture", content=b"{not json", headers={"Content-Type": "application/json"}
        )
        assert response.status_code == 400
        assert response.json()["title"] == "Invalid request body"


class TestQueries:
    """Named queries, ad-hoc queries and paging over HTTP."""

    def test_unknown_query_is_problem(self, client):
        response = client.get("/queries/missing/events")
        assert response.status_code == 404
        assert response.headers["content-type"] == "application/problem+json"
        problem = response.json()
        assert problem["type"].endswith("#NoSuchNameException")
        assert problem["instance"] == "/queries/missing/events"

    def test_register_and_run(self, client, service):
        _capture(client, service, [make_event(eventID="s", bizStep="shipping")])
        _capture(client, service, [make_event(eventID="r", bizStep="receiving")])

        created = client.post(
            "/queries", json={"name": "shipped", "query": {"EQ_bizStep": ["shipping"]}}
        )
        assert created.status_code == 201
        assert created.headers["Location"] == "/queries/shipped"

        body = client.get("/queries/shipped/events").json()
        assert body["type"] == "EPCISQueryDocument"
        events = body["epcisBody"]["queryResults"]["resultsBody"]["eventList"]
        assert [e["eventID"] for e in events] == ["s"]

    def test_duplicate_query_conflicts(self, client):
        client.post("/queries", json={"name": "q", "query": {}})
        assert client.post("/queries", json={"name": "q", "query": {}}).status_code == 409
        assert client.post("/queries?replace=true", json={"name": "q", "query": {}}).status_code == 201

    def test_named_query_rejects_filter_overrides(self, client):
        client.post("/queries", json={"name": "q", "query": {}})
        response = client.get("/queries/q/events", params={"EQ_bizStep": "x"})
        assert response.status_code == 400

    def test_paging_link_header(self, client, service):
        _capture(client, service, [make_event(eventID=f"e{i}") for i in range(3)])
        client.post("/queries", json={"name": "all", "query": {}})

        first = client.get("/queries/all/events", params={"perPage": 2})
        assert first.json()["nextPageToken"] == "2"
        assert first.headers["Link"] == '</queries/all/events?perPage=2&nextPageToken=2>; rel="next"'

        second = client.get("/queries/all/events", params={"perPage": 2, "nextPageToken": "2"})
        assert "nextPageToken" not in second.json()
        assert "Link" not in second.headers

    def test_ad_hoc_events(self, client, service):
        _capture(
            client,
            service,
            [
                make_event(eventID="a", bizStep="shipping"),
                make_event(eventID="b", bizStep="receiving"),
                make_event(eventID="c", bizStep="storing"),
            ],
        )
        body = client.get("/events", params={"EQ_bizStep": "shipping|receiving"}).json()
        events = body["epcisBody"]["queryResults"]["resultsBody"]["eventList"]
        assert sorted(e["eventID"] for e in events) == ["a", "b"]

    def test_ad_hoc_unknown_parameter(self, client):
        response = client.get("/events", params={"EQ_colour": "red"})
        assert response.status_code == 400
        assert "EQ_colour" in response.json()["detail"]

    @pytest.mark.parametrize("params", [{"EQ_action": ""}, {"MATCH_epc": "|"}])
    def test_ad_hoc_empty_value_set(self, client, service, params):
        _capture(client, service, [make_event(eventID="a"), make_event(eventID="b")])
        assert len(client.get("/events").json()["epcisBody"]["queryResults"]["resultsBody"]["eventList"]) == 2

        response = client.get("/events", params=params)
        assert response.status_code == 200
        body = response.json()
        assert body["epcisBody"]["queryResults"]["resultsBody"]["eventList"] == []
        assert "nextPageToken" not in body

    def test_delete_query(self, client):
        client.post("/queries", json={"name": "q", "query": {}})
        assert client.delete("/queries/q").status_code == 204
        assert client.get("/queries/q").status_code == 404


class TestSubscriptions:
    """Subscription resources under a named query."""

    @pytest.fixture(autouse=True)
    def query(self, client):
        client.post("/queries", json={"name": "q", "query": {}})

    def test_create_and_fetch(self, client):
        response = client.post(
            "/queries/q/subscriptions",
            json={"destination": HOOK, "schedule": "*/5 * * * *", "signatureToken": "s3cret"},
        )
        assert response.status_code == 201
        body = response.json()
        assert response.headers["Location"] == f"/queries/q/subscriptions/{body['id']}"
        assert body["signed"] is True
        assert "signatureToken" not in body

        fetched = client.get(f"/queries/q/subscriptions/{body['id']}").json()
        assert fetched["status"] == "active"
        assert len(client.get("/queries/q/subscriptions").json()["subscriptions"]) == 1

    def test_invalid_subscription(self, client):
        response = client.post("/queries/q/subscriptions", json={"destination": HOOK})
        assert response.status_code == 400

    def test_patch_status(self, client):
        sub_id = client.post("/queries/q/subscriptions", json={"stream": True}).json()["id"]
        response = client.patch(f"/queries/q/subscriptions/{sub_id}", json={"status": "paused"})
        assert response.json()["status"] == "paused"
        bad = client.patch(f"/queries/q/subscriptions/{sub_id}", json={"status": "paused", "x": 1})
        assert bad.status_code == 400

    def test_delete_subscription(self, client):
        sub_id = client.post("/queries/q/subscriptions", json={"stream": True}).json()["id"]
        assert client.delete("/queries/q/subscriptions").status_code == 405
        assert client.delete(f"/queries/q/subscriptions/{sub_id}").status_code == 204
        assert client.get(f"/queries/q/subscriptions/{sub_id}").status_code == 404

    def test_query_with_subscriptions_cannot_be_deleted(self, client):
        client.post("/queries/q/subscriptions", json={"stream": True})
        assert client.delete("/queries/q").status_code == 409


class TestStreaming:
    def test_ephemeral_stream(self, client, service):
        _capture(client, service, [make_event(eventID="e1")])
        with client.websocket_connect("/queries/q/events") as ws:
            message = ws.receive_json()
        assert message["type"] == "error"

        client.post("/queries", json={"name": "q", "query": {}})
        with client.websocket_connect("/queries/q/events") as ws:
            ws.send_json({"type": "getEvents", "params": {"perPage": 1}})
            message = ws.receive_json()
            ws.send_text("{broken")
            error = ws.receive_json()

        assert message["type"] == "events"
        results = message["data"]["epcisBody"]["queryResults"]
        assert [e["eventID"] for e in results["resultsBody"]["eventList"]] == ["e1"]
        assert error["type"] == "error"
        assert error["error"]["status"] == 400

    def test_subscription_stream(self, client):
        client.post("/queries", json={"name": "q", "query": {}})
        sub_id = client.post("/queries/q/subscriptions", json={"stream": True}).json()["id"]
        with client.websocket_connect(f"/queries/q/subscriptions/{sub_id}/stream") as ws:
            ws.send_json({"type": "getEvents"})
            message = ws.receive_json()
        assert message["data"]["epcisBody"]["queryResults"]["subscriptionID"] == sub_id

    def test_scheduled_subscription_cannot_stream(self, client):
        client.post("/queries", json={"name": "q", "query": {}})
        sub_id = client.post(
            "/queries/q/subscriptions", json={"destination": HOOK, "schedule": "* * * * *"}
        ).json()["id"]
        with client.websocket_connect(f"/queries/q/subscriptions/{sub_id}/stream") as ws:
            assert ws.receive_json()["type"] == "error"
            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_json()
        assert exc_info.value.code == 1008


class TestRateLimiting:
    @pytest.fixture
    def limited(self, clock):
        config = EPCISConfig(
            scheduler_enabled=False,
            rate_limit=RateLimitConfig(query_limit=2, query_period=60),
            _env_file=None,
        )
        service = EPCISService(config, clock=clock)
        with TestClient(create_app(service=service)) as client:
            yield client

    def test_headers_and_denial(self, limited, clock):
        first = limited.get("/queries")
        assert first.headers["RateLimit-Limit"] == "2"
        assert first.headers["RateLimit-Remaining"] == "1"
        assert first.headers["RateLimit-Reset"] == "60"

        limited.get("/queries")
        denied = limited.get("/queries")
        assert denied.status_code == 429
        assert denied.headers["content-type"] == "application/problem+json"
        assert denied.headers["Retry-After"] == "60"
        assert denied.json()["type"].endswith("#TooManyRequests")

        clock.advance(60)
        assert limited.get("/queries").status_code == 200

    def test_unlimited_paths_have_no_headers(self, limited):
        assert "RateLimit-Limit" not in limited.get("/health").headers

    def test_disabled(self, clock):
        config = EPCISConfig(
            scheduler_enabled=False, rate_limit=RateLimitConfig(enabled=False), _env_file=None
        )
        with TestClient(create_app(service=EPCISService(config, clock=clock))) as client:
            assert "RateLimit-Limit" not in client.get("/queries").headers
