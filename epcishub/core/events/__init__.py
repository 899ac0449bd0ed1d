"""
Event System - in-process domain events for epcishub.

Core Components:
- BaseEvent: Immutable event records
- EventBus: Dispatcher
- EventHandler / event_listener: Event processors

Quick Start:
    from epcishub.core.events import EventBus, event_listener

    @event_listener("capture.job.finished")
    async def on_finished(event):
        print(event.capture_id, event.state)

    bus = EventBus()
    bus.register(on_finished)
"""

from .base import BaseEvent, EventHandler, event_listener
from .bus import EventBus
from .lifecycle import (
    CaptureJobFinishedEvent,
    LifecycleLogHandler,
    SubscriptionDeliveredEvent,
    SubscriptionFailedEvent,
)

__all__ = [
    "BaseEvent",
    "CaptureJobFinishedEvent",
    "EventBus",
    "EventHandler",
    "LifecycleLogHandler",
    "SubscriptionDeliveredEvent",
    "SubscriptionFailedEvent",
    "event_listener",
]
