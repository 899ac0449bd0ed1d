"""
Store contracts and the in-process store.

The event store is an external collaborator reachable only through insert,
query and delete-by-capture-id. Named queries and subscriptions live in the
same backend. ``MemoryStore`` implements every contract in process; the
ClickHouse client implements them over HTTP.
"""

from __future__ import annotations

import copy
import logging
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from epcishub.query.columns import evaluate, get_column
from epcishub.query.predicates import SortDirection

if TYPE_CHECKING:
    from epcishub.query.models import QueryDefinition
    from epcishub.query.predicates import PredicateSpec
    from epcishub.subscription.models import Subscription

logger = logging.getLogger(__name__)


@runtime_checkable
class EventStore(Protocol):
    async def insert_event(self, event: dict[str, Any]) -> None:
        """Persist one captured event document."""

    async def delete_by_capture_id(self, capture_id: str) -> None:
        """Remove every event stamped with ``capture_id``."""

    async def query_events(
        self, spec: PredicateSpec, limit: int, offset: int
    ) -> list[dict[str, Any]]:
        """Return up to ``limit`` matching documents after ``offset``, in spec order."""


@runtime_checkable
class QueryStore(Protocol):
    async def save_query(self, definition: QueryDefinition) -> None: ...

    async def get_query(self, name: str) -> QueryDefinition | None: ...

    async def list_queries(self) -> list[QueryDefinition]: ...

    async def delete_query(self, name: str) -> bool: ...


@runtime_checkable
class SubscriptionStore(Protocol):
    async def save_subscription(self, subscription: Subscription) -> None: ...

    async def get_subscription(self, query_name: str, subscription_id: str) -> Subscription | None: ...

    async def list_subscriptions(self, query_name: str | None = None) -> list[Subscription]: ...

    async def delete_subscription(self, query_name: str, subscription_id: str) -> bool: ...


class MemoryStore:
    """
    In-process implementation of the event, query and subscription stores.

    Used for development and tests. Documents are deep-copied on the way in
    and out so callers can never mutate stored events.

    Example:
        >>> store = MemoryStore()
        >>> await store.insert_event({"eventID": "e1", ...})
        >>> await store.query_events(compile_query({}), limit=10, offset=0)
    """

    def __init__(self) -> None:
        self._events: list[dict[str, Any]] = []
        self._queries: dict[str, QueryDefinition] = {}
        self._subscriptions: dict[tuple[str, str], Subscription] = {}

    async def insert_event(self, event: dict[str, Any]) -> None:
        self._events.append(copy.deepcopy(event))

    async def delete_by_capture_id(self, capture_id: str) -> None:
        before = len(self._events)
        self._events = [e for e in self._events if e.get("captureID") != capture_id]
        logger.debug(f"Deleted {before - len(self._events)} events for capture {capture_id}")

    async def query_events(
        self, spec: PredicateSpec, limit: int, offset: int
    ) -> list[dict[str, Any]]:
        matched = [e for e in self._events if all(evaluate(e, p) for p in spec.predicates)]

        order_column = get_column(spec.order.field)
        tie_column = get_column(spec.order.tie_breaker)
        matched.sort(key=lambda e: tie_column.extract(e) or "")
        # Stable second sort keeps the tie-breaker ascending within equal keys;
        # rows without a value sort last in both directions.
        descending = spec.order.direction is SortDirection.DESC
        present = [e for e in matched if order_column.extract(e) is not None]
        missing = [e for e in matched if order_column.extract(e) is None]
        present.sort(key=order_column.extract, reverse=descending)

        page = (present + missing)[offset : offset + limit]
        return [copy.deepcopy(e) for e in page]

    async def count_events(self) -> int:
        return len(self._events)

    async def save_query(self, definition: QueryDefinition) -> None:
        self._queries[definition.name] = definition

    async def get_query(self, name: str) -> QueryDefinition | None:
        return self._queries.get(name)

    async def list_queries(self) -> list[QueryDefinition]:
        return [self._queries[name] for name in sorted(self._queries)]

    async def delete_query(self, name: str) -> bool:
        return self._queries.pop(name, None) is not None

    async def save_subscription(self, subscription: Subscription) -> None:
        self._subscriptions[(subscription.query_name, subscription.id)] = subscription.model_copy(
            deep=True
        )

    async def get_subscription(self, query_name: str, subscription_id: str) -> Subscription | None:
        subscription = self._subscriptions.get((query_name, subscription_id))
        return subscription.model_copy(deep=True) if subscription else None

    async def list_subscriptions(self, query_name: str | None = None) -> list[Subscription]:
        return [
            s.model_copy(deep=True)
            for (name, _), s in sorted(self._subscriptions.items(), key=lambda i: i[1].created_at)
            if query_name is None or name == query_name
        ]

    async def delete_subscription(self, query_name: str, subscription_id: str) -> bool:
        return self._subscriptions.pop((query_name, subscription_id), None) is not None

    async def close(self) -> None:
        """Nothing to release; present for parity with the ClickHouse client."""
