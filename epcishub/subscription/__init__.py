"""Subscriptions: management, scheduled webhook delivery and streaming."""

from epcishub.subscription.dispatcher import WebhookDispatcher
from epcishub.subscription.manager import SubscriptionManager
from epcishub.subscription.models import Subscription, SubscriptionRequest, SubscriptionStatus
from epcishub.subscription.scheduler import SubscriptionScheduler, is_due
from epcishub.subscription.stream import StreamSession

__all__ = [
    "StreamSession",
    "Subscription",
    "SubscriptionManager",
    "SubscriptionRequest",
    "SubscriptionScheduler",
    "SubscriptionStatus",
    "WebhookDispatcher",
    "is_due",
]
