"""
EventBus - in-process event dispatcher.

Responsibilities:
- Register/unregister event handlers
- Dispatch events to the handlers registered for their type
- Isolate handler failures from the emitter and from each other
"""

import asyncio
from collections import defaultdict
import logging
from typing import Any

from .base import BaseEvent, EventHandler

logger = logging.getLogger(__name__)


class EventBus:
    """
    Central event dispatcher.

    Handlers for one event run concurrently; a failing handler is logged and
    never reaches the emitter.

    Usage:
        bus = EventBus()
        bus.register(my_handler)
        await bus.emit(CaptureJobFinishedEvent(...))
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)

    def register(self, handler: EventHandler) -> None:
        for event_type in handler.event_types:
            self._handlers[event_type].append(handler)
            logger.debug(f"Registered handler {handler.handler_name} for event type '{event_type}'")

    def unregister(self, handler: EventHandler) -> None:
        for event_type in handler.event_types:
            if handler in self._handlers[event_type]:
                self._handlers[event_type].remove(handler)
                logger.debug(
                    f"Unregistered handler {handler.handler_name} from event type '{event_type}'"
                )

    async def emit(self, event: BaseEvent) -> None:
        """
        Emit an event to all registered handlers.

        Handler errors are logged but don't stop other handlers.
        """
        event_type = event.event_type
        handlers = list(self._handlers.get(event_type, []))

        if not handlers:
            logger.debug(f"No handlers registered for event type '{event_type}'")
            return

        results = await asyncio.gather(
            *(handler.handle(event) for handler in handlers), return_exceptions=True
        )

        errors = [r for r in results if isinstance(r, Exception)]
        if errors:
            logger.warning(
                f"Event {event_type} ({event.event_id}): "
                f"{len(errors)}/{len(handlers)} handlers failed"
            )
            for error in errors:
                logger.error(f"Handler error: {error}", exc_info=error)

    async def emit_many(self, events: list[BaseEvent]) -> None:
        await asyncio.gather(*(self.emit(event) for event in events))

    def get_handler_count(self, event_type: str) -> int:
        return len(self._handlers.get(event_type, []))

    def get_stats(self) -> dict[str, Any]:
        """Get EventBus statistics for monitoring."""
        return {
            "total_event_types": len(self._handlers),
            "total_handlers": sum(len(handlers) for handlers in self._handlers.values()),
            "handlers_by_type": {
                event_type: len(handlers) for event_type, handlers in self._handlers.items()
            },
        }


__all__ = ["EventBus"]
