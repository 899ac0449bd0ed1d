"""Core module: configuration, exceptions, stores and the service facade."""

from epcishub.core.client import ClickHouseClient
from epcishub.core.config import EPCISConfig, RateLimitConfig
from epcishub.core.service import EPCISService
from epcishub.core.store import EventStore, MemoryStore, QueryStore, SubscriptionStore

__all__ = [
    "ClickHouseClient",
    "EPCISConfig",
    "EPCISService",
    "EventStore",
    "MemoryStore",
    "QueryStore",
    "RateLimitConfig",
    "SubscriptionStore",
]
