from datetime import UTC, datetime, timedelta
import json

import httpx
import pytest

from conftest import make_event
from epcishub.core.events import event_listener
from epcishub.core.exceptions import DeliveryError
from epcishub.subscription.dispatcher import (
    SIGNATURE_HEADER,
    WebhookDispatcher,
    sign_body,
    verify_signature,
)
from epcishub.subscription.models import Subscription, SubscriptionStatus
from epcishub.subscription.scheduler import SubscriptionScheduler, is_due

HOOK = "https://hooks.example.com/epcis"
NOW = datetime(2024, 6, 1, 12, 0, tzinfo=UTC)


class Recorder:
    """MockTransport handler that records requests and answers with a fixed status."""

    def __init__(self, status_code: int = 200):
        self.status_code = status_code
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code)

    @property
    def bodies(self) -> list[dict]:
        return [json.loads(r.content) for r in self.requests]


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


@pytest.fixture
def scheduler(manager, executor, recorder, bus, clock):
    dispatcher = WebhookDispatcher(transport=httpx.MockTransport(recorder))
    return SubscriptionScheduler(manager, executor, dispatcher, bus=bus, clock=clock)


async def _subscribe(manager, **extra):
    await manager.register_query(
        {"name": "shipped", "query": {"EQ_bizStep": ["shipping"]}}, replace=True
    )
    request = {
        "destination": HOOK,
        "schedule": "*/5 * * * *",
        "initialRecordTime": "2024-06-01T00:00:00Z",
        **extra,
    }
    return await manager.subscribe("shipped", request)


async def _store(store, event_id: str, record_time: str, **overrides):
    await store.insert_event(
        make_event(eventID=event_id, recordTime=record_time, captureID="cap-1", **overrides)
    )


class TestIsDue:
    def test_never_executed(self):
        assert is_due(Subscription(query_name="q", schedule="*/5 * * * *"), NOW)

    def test_interval_not_elapsed(self):
        sub = Subscription(
            query_name="q", schedule="*/5 * * * *", last_executed_at=NOW - timedelta(seconds=30)
        )
        assert not is_due(sub, NOW, interval=60)
        assert is_due(sub, NOW + timedelta(seconds=30), interval=60)

    @pytest.mark.parametrize(
        "sub",
        [
            Subscription(query_name="q", schedule="* * * * *", status=SubscriptionStatus.PAUSED),
            Subscription(query_name="q", schedule="* * * * *", status=SubscriptionStatus.ERROR),
            Subscription(query_name="q", stream=True),
            Subscription(query_name="q", schedule="0 0 1 1 0"),
        ],
    )
    def test_not_due(self, sub):
        assert not is_due(sub, NOW)


class TestTick:
    """Scheduled execution windows and delivery outcomes."""

    async def test_empty_window_not_delivered(self, scheduler, manager, recorder, clock):
        sub = await _subscribe(manager)
        report = await scheduler.tick()

        assert report.skipped == [sub.id]
        assert recorder.requests == []
        stored = await manager.get_subscription("shipped", sub.id)
        assert stored.last_executed_at == clock.now
        assert stored.status is SubscriptionStatus.ACTIVE

    async def test_report_if_empty_delivers_empty_document(self, scheduler, manager, recorder):
        sub = await _subscribe(manager, reportIfEmpty=True)
        report = await scheduler.tick()

        assert report.delivered == [sub.id]
        body = recorder.bodies[0]
        assert body["type"] == "EPCISQueryDocument"
        assert body["epcisBody"]["queryResults"]["resultsBody"]["eventList"] == []

    async def test_delivers_matching_events_in_window(self, scheduler, manager, store, recorder):
        sub = await _subscribe(manager, signatureToken="s3cret")
        await _store(store, "in-window", "2024-06-01T11:00:00.000Z")
        await _store(store, "before-window", "2024-05-31T23:00:00.000Z")
        await _store(store, "wrong-step", "2024-06-01T11:00:00.000Z", bizStep="receiving")

        report = await scheduler.tick()

        assert report.delivered == [sub.id]
        request = recorder.requests[0]
        assert str(request.url) == HOOK
        assert verify_signature(request.content, "s3cret", request.headers[SIGNATURE_HEADER])
        results = recorder.bodies[0]["epcisBody"]["queryResults"]
        assert results["queryName"] == "shipped"
        assert results["subscriptionID"] == sub.id
        assert [e["eventID"] for e in results["resultsBody"]["eventList"]] == ["in-window"]

    async def test_event_count_limit_caps_delivery(self, scheduler, manager, store, recorder):
        await manager.register_query({"name": "capped", "query": {"eventCountLimit": 2}})
        await manager.subscribe(
            "capped",
            {"destination": HOOK, "schedule": "* * * * *", "initialRecordTime": "2024-06-01T00:00:00Z"},
        )
        for i in range(3):
            await _store(store, f"e{i}", "2024-06-01T11:00:00.000Z")

        await scheduler.tick()

        events = recorder.bodies[0]["epcisBody"]["queryResults"]["resultsBody"]["eventList"]
        assert len(events) == 2

    async def test_windows_do_not_overlap(self, scheduler, manager, store, recorder, clock):
        await _subscribe(manager)
        await _store(store, "first", "2024-06-01T11:00:00.000Z")
        await scheduler.tick()

        await _store(store, "second", "2024-06-01T12:00:30.000Z")
        clock.advance(61)
        await scheduler.tick()

        delivered = [
            [e["eventID"] for e in body["epcisBody"]["queryResults"]["resultsBody"]["eventList"]]
            for body in recorder.bodies
        ]
        assert delivered == [["first"], ["second"]]

    async def test_not_due_again_within_interval(self, scheduler, manager, store, recorder, clock):
        await _subscribe(manager, reportIfEmpty=True)
        await scheduler.tick()
        clock.advance(10)
        report = await scheduler.tick()

        assert report.executed == 0
        assert len(recorder.requests) == 1

    async def test_delivery_failure_moves_to_error(self, manager, executor, store, bus, clock):
        failed = []

        @event_listener("subscription.failed")
        async def on_failed(event):
            failed.append(event)

        bus.register(on_failed)
        dispatcher = WebhookDispatcher(transport=httpx.MockTransport(Recorder(status_code=503)))
        scheduler = SubscriptionScheduler(manager, executor, dispatcher, bus=bus, clock=clock)
        sub = await _subscribe(manager)
        await _store(store, "e1", "2024-06-01T11:00:00.000Z")

        report = await scheduler.tick()

        assert report.failed == [sub.id]
        stored = await manager.get_subscription("shipped", sub.id)
        assert stored.status is SubscriptionStatus.ERROR
        assert "503" in stored.error_message
        assert stored.last_executed_at is None
        assert failed[0].subscription_id == sub.id

        # errored subscriptions are not retried
        clock.advance(120)
        assert (await scheduler.tick()).failed == []

    async def test_missing_query_moves_to_error(self, scheduler, manager, store):
        sub = Subscription(
            query_name="gone",
            destination=HOOK,
            schedule="* * * * *",
        )
        await store.save_subscription(sub)

        report = await scheduler.tick()

        assert report.failed == [sub.id]
        stored = await store.get_subscription("gone", sub.id)
        assert stored.status is SubscriptionStatus.ERROR
        assert "gone" in stored.error_message

    async def test_paused_subscription_skipped(self, scheduler, manager, recorder):
        sub = await _subscribe(manager, reportIfEmpty=True)
        await manager.set_status("shipped", sub.id, "paused")
        report = await scheduler.tick()
        assert report.executed == 0
        assert recorder.requests == []


class TestChangesDuringDelivery:
    """Deletes and status changes made while a webhook is in flight stick."""

    def _scheduler(self, manager, executor, bus, clock, handler):
        dispatcher = WebhookDispatcher(transport=httpx.MockTransport(handler))
        return SubscriptionScheduler(manager, executor, dispatcher, bus=bus, clock=clock)

    async def test_delete_during_delivery(self, manager, executor, bus, clock):
        sub = await _subscribe(manager, reportIfEmpty=True)
        requests = []

        async def delete_then_accept(request):
            requests.append(request)
            await manager.unsubscribe("shipped", sub.id)
            return httpx.Response(200)

        scheduler = self._scheduler(manager, executor, bus, clock, delete_then_accept)
        await scheduler.tick()

        assert await manager.list_subscriptions("shipped") == []
        clock.advance(120)
        assert (await scheduler.tick()).executed == 0
        assert len(requests) == 1

    async def test_pause_during_delivery(self, manager, executor, bus, clock):
        sub = await _subscribe(manager, reportIfEmpty=True)

        async def pause_then_accept(request):
            await manager.set_status("shipped", sub.id, "paused")
            return httpx.Response(200)

        await self._scheduler(manager, executor, bus, clock, pause_then_accept).tick()

        stored = await manager.get_subscription("shipped", sub.id)
        assert stored.status is SubscriptionStatus.PAUSED
        assert stored.last_executed_at is None

    async def test_failure_after_delete_is_not_recorded(self, manager, executor, bus, clock):
        sub = await _subscribe(manager, reportIfEmpty=True)

        async def delete_then_fail(request):
            await manager.unsubscribe("shipped", sub.id)
            return httpx.Response(500)

        report = await self._scheduler(manager, executor, bus, clock, delete_then_fail).tick()

        assert report.failed == [sub.id]
        assert await manager.list_subscriptions("shipped") == []

    async def test_failure_after_pause_keeps_pause(self, manager, executor, bus, clock):
        sub = await _subscribe(manager, reportIfEmpty=True)

        async def pause_then_fail(request):
            await manager.set_status("shipped", sub.id, "paused")
            return httpx.Response(500)

        await self._scheduler(manager, executor, bus, clock, pause_then_fail).tick()

        stored = await manager.get_subscription("shipped", sub.id)
        assert stored.status is SubscriptionStatus.PAUSED
        assert stored.error_message is None


class TestDispatcher:
    async def test_unsigned_request(self, recorder):
        dispatcher = WebhookDispatcher(transport=httpx.MockTransport(recorder))
        sub = Subscription(query_name="q", destination=HOOK)
        await dispatcher.deliver(sub, [make_event(eventID="e1")])
        await dispatcher.close()

        request = recorder.requests[0]
        assert request.method == "POST"
        assert request.headers["content-type"] == "application/json"
        assert SIGNATURE_HEADER not in request.headers

    def test_signature_is_hmac_of_exact_body(self):
        sub = Subscription(query_name="q", destination=HOOK, signature_token="k")
        body, headers = WebhookDispatcher().build_request(sub, [])
        assert headers[SIGNATURE_HEADER] == sign_body(body, "k")
        assert headers[SIGNATURE_HEADER].startswith("sha256=")
        assert not verify_signature(body + b" ", "k", headers[SIGNATURE_HEADER])

    async def test_non_2xx_raises(self):
        dispatcher = WebhookDispatcher(transport=httpx.MockTransport(Recorder(status_code=404)))
        with pytest.raises(DeliveryError) as exc_info:
            await dispatcher.deliver(Subscription(query_name="q", destination=HOOK), [])
        assert exc_info.value.status_code == 404

    async def test_transport_error_raises(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with WebhookDispatcher(transport=httpx.MockTransport(refuse)) as dispatcher:
            with pytest.raises(DeliveryError):
                await dispatcher.deliver(Subscription(query_name="q", destination=HOOK), [])

    async def test_missing_destination(self):
        with pytest.raises(DeliveryError):
            await WebhookDispatcher().deliver(Subscription(query_name="q", stream=True), [])
