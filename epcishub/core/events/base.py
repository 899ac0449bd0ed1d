"""
Base Event System - foundation for in-process domain events.

Core Concepts:
- BaseEvent: Immutable event with timestamp and metadata
- EventHandler: Async callable that processes events
- event_listener: Decorator turning a coroutine function into a handler

Events are frozen dataclasses; handlers are async and isolated from each other.
"""

from abc import ABC, abstractmethod
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4


@dataclass(frozen=True, kw_only=True)
class BaseEvent(ABC):
    """
    Base class for all domain events.

    Attributes:
        event_id: Unique identifier for this event instance
        timestamp: When the event occurred
        correlation_id: Links related events (e.g. a capture job id)
        metadata: Additional context for handlers and logs
    """

    event_id: UUID = field(default_factory=uuid4)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    correlation_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    @abstractmethod
    def event_type(self) -> str:
        """
        Event type identifier (e.g., 'capture.job.finished').
        Used for handler registration and routing.
        """

    def to_log_data(self) -> dict[str, Any]:
        return {
            "event_id": str(self.event_id),
            "event_type": self.event_type,
            "timestamp": self.timestamp.isoformat(),
            "correlation_id": self.correlation_id,
            **self.metadata,
        }


class EventHandler(ABC):
    """
    Base class for event handlers.

    Handlers should be fast and must not assume they run before or after
    any other handler of the same event.
    """

    @abstractmethod
    async def handle(self, event: BaseEvent) -> None:
        """
        Process an event.

        Raises:
            Exception: Handler errors are caught and logged by EventBus
        """

    @property
    @abstractmethod
    def event_types(self) -> list[str]:
        """Event types this handler processes."""

    @property
    def handler_name(self) -> str:
        return self.__class__.__name__


def event_listener(*event_types: str):
    """
    Decorator for registering event handler functions.

    Usage:
        @event_listener("capture.job.finished")
        async def on_job_finished(event: CaptureJobFinishedEvent):
            ...

        bus.register(on_job_finished)
    """

    def decorator(func: Callable[[BaseEvent], Coroutine[Any, Any, None]]) -> EventHandler:
        class FunctionHandler(EventHandler):
            async def handle(self, event: BaseEvent) -> None:
                await func(event)

            @property
            def event_types(self) -> list[str]:
                return list(event_types)

            @property
            def handler_name(self) -> str:
                return func.__name__

        return FunctionHandler()

    return decorator


__all__ = [
    "BaseEvent",
    "EventHandler",
    "event_listener",
]
