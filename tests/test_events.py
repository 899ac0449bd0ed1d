import logging

from epcishub.core.events import (
    CaptureJobFinishedEvent,
    EventBus,
    LifecycleLogHandler,
    SubscriptionFailedEvent,
    event_listener,
)


def _finished(**overrides) -> CaptureJobFinishedEvent:
    fields = {
        "capture_id": "cap-1",
        "state": "succeeded",
        "success": True,
        "event_count": 2,
        "captured_count": 2,
        "error_count": 0,
    }
    fields.update(overrides)
    return CaptureJobFinishedEvent(**fields)


class TestEventBus:
    async def test_dispatch_by_type(self, bus):
        captured, failed = [], []

        @event_listener("capture.job.finished")
        async def on_capture(event):
            captured.append(event)

        @event_listener("subscription.failed")
        async def on_failure(event):
            failed.append(event)

        bus.register(on_capture)
        bus.register(on_failure)
        await bus.emit(_finished())

        assert len(captured) == 1
        assert failed == []
        assert bus.get_handler_count("capture.job.finished") == 1

    async def test_failing_handler_does_not_block_others(self, bus):
        seen = []

        @event_listener("capture.job.finished")
        async def broken(event):
            raise RuntimeError("boom")

        @event_listener("capture.job.finished")
        async def healthy(event):
            seen.append(event.capture_id)

        bus.register(broken)
        bus.register(healthy)
        await bus.emit(_finished())

        assert seen == ["cap-1"]

    async def test_unregister(self, bus):
        seen = []

        @event_listener("capture.job.finished")
        async def handler(event):
            seen.append(event)

        bus.register(handler)
        bus.unregister(handler)
        await bus.emit(_finished())
        assert seen == []


class TestLifecycleLogging:
    async def test_log_lines(self, caplog):
        bus = EventBus()
        bus.register(LifecycleLogHandler())

        with caplog.at_level(logging.INFO, logger="epcishub.core.events.lifecycle"):
            await bus.emit(_finished(state="partially_failed", captured_count=1, error_count=1))
            await bus.emit(
                SubscriptionFailedEvent(subscription_id="s1", query_name="q", error="503")
            )

        assert "Capture job cap-1 finished: partially_failed" in caplog.text
        assert "Subscription s1 failed: 503" in caplog.text

    def test_event_metadata(self):
        event = _finished(correlation_id="cap-1")
        assert event.event_type == "capture.job.finished"
        assert event.correlation_id == "cap-1"
        assert event.event_id
