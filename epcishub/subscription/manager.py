"""
Subscription Manager - CRUD for named queries and their subscriptions.

Named queries are immutable once registered except by explicit replacement.
A query cannot be deleted while subscriptions still reference it.
"""

from __future__ import annotations

from datetime import datetime
import logging
from typing import TYPE_CHECKING, Any

from epcishub.core.exceptions import (
    ConflictException,
    NoSuchNameException,
    NoSuchResourceException,
    ValidationException,
)
from epcishub.query.models import QueryDefinition
from epcishub.subscription.models import Subscription, SubscriptionRequest, SubscriptionStatus

if TYPE_CHECKING:
    from epcishub.core.store import QueryStore, SubscriptionStore

logger = logging.getLogger(__name__)


class SubscriptionManager:
    """
    Owns named query definitions and subscription records.

    Example:
        >>> manager = SubscriptionManager(queries=store, subscriptions=store)
        >>> await manager.register_query({"name": "Q1", "query": {"EQ_action": ["OBSERVE"]}})
        >>> sub = await manager.subscribe("Q1", {"destination": "https://example.com/hook",
        ...                                      "schedule": "*/5 * * * *"})
    """

    def __init__(self, queries: QueryStore, subscriptions: SubscriptionStore):
        self.queries = queries
        self.subscriptions = subscriptions

    async def register_query(
        self, definition: QueryDefinition | dict[str, Any], replace: bool = False
    ) -> QueryDefinition:
        """
        Register a named query.

        Raises:
            ValidationException: Malformed name or query parameters
            ConflictException: Name already registered and ``replace`` is False
        """
        if not isinstance(definition, QueryDefinition):
            definition = QueryDefinition.parse(definition)

        existing = await self.queries.get_query(definition.name)
        if existing is not None and not replace:
            raise ConflictException(f"Query '{definition.name}' already exists")

        await self.queries.save_query(definition)
        action = "Replaced" if existing is not None else "Registered"
        logger.info(f"{action} query '{definition.name}'")
        return definition

    async def list_queries(self) -> list[QueryDefinition]:
        return await self.queries.list_queries()

    async def get_query(self, name: str) -> QueryDefinition:
        definition = await self.queries.get_query(name)
        if definition is None:
            raise NoSuchNameException(f"No query named '{name}'")
        return definition

    async def delete_query(self, name: str) -> None:
        """
        Raises:
            NoSuchNameException: Unknown query
            ConflictException: Subscriptions still reference the query
        """
        await self.get_query(name)
        referencing = await self.subscriptions.list_subscriptions(name)
        if referencing:
            raise ConflictException(
                f"Query '{name}' has {len(referencing)} subscription(s); delete them first"
            )
        await self.queries.delete_query(name)
        logger.info(f"Deleted query '{name}'")

    async def subscribe(
        self, query_name: str, request: SubscriptionRequest | dict[str, Any]
    ) -> Subscription:
        """
        Create a subscription to a named query.

        Raises:
            NoSuchNameException: Unknown query
            ValidationException: Invalid destination, schedule or initialRecordTime
        """
        await self.get_query(query_name)
        if not isinstance(request, SubscriptionRequest):
            request = SubscriptionRequest.parse(request)

        subscription = Subscription.from_request(query_name, request)
        await self.subscriptions.save_subscription(subscription)
        mode = "stream" if subscription.stream else f"schedule '{subscription.schedule}'"
        logger.info(f"Created subscription {subscription.id} on '{query_name}' ({mode})")
        return subscription

    async def get_subscription(self, query_name: str, subscription_id: str) -> Subscription:
        await self.get_query(query_name)
        subscription = await self.subscriptions.get_subscription(query_name, subscription_id)
        if subscription is None:
            raise NoSuchResourceException(
                f"No subscription '{subscription_id}' on query '{query_name}'"
            )
        return subscription

    async def list_subscriptions(self, query_name: str | None = None) -> list[Subscription]:
        if query_name is not None:
            await self.get_query(query_name)
        return await self.subscriptions.list_subscriptions(query_name)

    async def unsubscribe(self, query_name: str, subscription_id: str) -> None:
        """
        Raises:
            NoSuchResourceException: The subscription does not exist
        """
        deleted = await self.subscriptions.delete_subscription(query_name, subscription_id)
        if not deleted:
            raise NoSuchResourceException(
                f"No subscription '{subscription_id}' on query '{query_name}'"
            )
        logger.info(f"Deleted subscription {subscription_id} on '{query_name}'")

    async def set_status(
        self, query_name: str, subscription_id: str, status: SubscriptionStatus | str
    ) -> Subscription:
        """
        Change a subscription's status explicitly.

        Reactivating clears the recorded error message.
        """
        try:
            status = SubscriptionStatus(status)
        except ValueError as e:
            allowed = ", ".join(s.value for s in SubscriptionStatus)
            raise ValidationException(f"status: must be one of {allowed}") from e

        subscription = await self.get_subscription(query_name, subscription_id)
        subscription.status = status
        if status is SubscriptionStatus.ACTIVE:
            subscription.error_message = None
        await self.subscriptions.save_subscription(subscription)
        logger.info(f"Subscription {subscription_id} set to {status.value}")
        return subscription

    async def mark_executed(self, subscription: Subscription, executed_at: datetime) -> bool:
        """
        Record a completed scheduled execution.

        Works on a fresh read: a subscription deleted or paused while its
        delivery was in flight is left as it is now. Returns whether the
        execution was recorded.
        """
        current = await self._still_active(subscription)
        if current is None:
            return False
        current.last_executed_at = executed_at
        await self.subscriptions.save_subscription(current)
        subscription.last_executed_at = executed_at
        return True

    async def mark_error(self, subscription: Subscription, message: str) -> bool:
        """Move a subscription to error, unless it was deleted or changed meanwhile."""
        current = await self._still_active(subscription)
        if current is None:
            return False
        current.status = SubscriptionStatus.ERROR
        current.error_message = message
        await self.subscriptions.save_subscription(current)
        subscription.status = current.status
        subscription.error_message = message
        return True

    async def _still_active(self, subscription: Subscription) -> Subscription | None:
        current = await self.subscriptions.get_subscription(
            subscription.query_name, subscription.id
        )
        if current is None:
            logger.info(f"Subscription {subscription.id} was deleted during execution")
            return None
        if current.status is not SubscriptionStatus.ACTIVE:
            logger.info(
                f"Subscription {subscription.id} is {current.status.value}, "
                "keeping its current state"
            )
            return None
        return current
