"""Lifecycle events for capture jobs and subscription deliveries."""

from dataclasses import dataclass
import logging

from epcishub.core.events.base import BaseEvent, EventHandler

logger = logging.getLogger(__name__)


@dataclass(frozen=True, kw_only=True)
class CaptureJobFinishedEvent(BaseEvent):
    """Emitted when a capture job reaches a terminal state."""

    capture_id: str
    state: str
    success: bool
    event_count: int
    captured_count: int
    error_count: int

    @property
    def event_type(self) -> str:
        return "capture.job.finished"


@dataclass(frozen=True, kw_only=True)
class SubscriptionDeliveredEvent(BaseEvent):
    """Emitted after a scheduled delivery was accepted by its destination."""

    subscription_id: str
    query_name: str
    event_count: int
    destination: str

    @property
    def event_type(self) -> str:
        return "subscription.delivered"


@dataclass(frozen=True, kw_only=True)
class SubscriptionFailedEvent(BaseEvent):
    """Emitted when a subscription moves to the error state."""

    subscription_id: str
    query_name: str
    error: str

    @property
    def event_type(self) -> str:
        return "subscription.failed"


class LifecycleLogHandler(EventHandler):
    """Writes one log line per lifecycle event."""

    @property
    def event_types(self) -> list[str]:
        return ["capture.job.finished", "subscription.delivered", "subscription.failed"]

    async def handle(self, event: BaseEvent) -> None:
        if isinstance(event, CaptureJobFinishedEvent):
            logger.info(
                f"Capture job {event.capture_id} finished: {event.state} "
                f"({event.captured_count}/{event.event_count} captured, {event.error_count} errors)"
            )
        elif isinstance(event, SubscriptionDeliveredEvent):
            logger.info(
                f"Delivered {event.event_count} events for subscription "
                f"{event.subscription_id} to {event.destination}"
            )
        elif isinstance(event, SubscriptionFailedEvent):
            logger.warning(f"Subscription {event.subscription_id} failed: {event.error}")


__all__ = [
    "CaptureJobFinishedEvent",
    "LifecycleLogHandler",
    "SubscriptionDeliveredEvent",
    "SubscriptionFailedEvent",
]
