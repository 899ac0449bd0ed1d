"""
epcishub - GS1 EPCIS 2.0 capture, query and subscription service.

Main Features:
- Capture jobs with rollback/proceed error behaviour
- Named and ad-hoc queries compiled to deterministic predicate specs
- Scheduled webhook subscriptions and WebSocket streams
- ClickHouse or in-memory event store

Quick Start:
    >>> from epcishub import EPCISConfig, EPCISService
    >>> service = EPCISService(EPCISConfig(store_backend="memory"))
    >>> job = await service.pipeline.submit(document, "proceed")

Architecture:
    HTTP → EPCISService → CapturePipeline / QueryExecutor / SubscriptionManager → event store
"""

__version__ = "0.1.0"

from epcishub.core.config import EPCISConfig, RateLimitConfig
from epcishub.core.exceptions import (
    CaptureLimitExceededException,
    ConflictException,
    DeliveryError,
    EPCISException,
    ImplementationException,
    NoSuchNameException,
    NoSuchResourceException,
    QueryTooComplexException,
    StoreError,
    TooManyRequests,
    ValidationException,
)
from epcishub.core.service import EPCISService

__all__ = [
    "CaptureLimitExceededException",
    "ConflictException",
    "DeliveryError",
    "EPCISConfig",
    "EPCISException",
    "EPCISService",
    "ImplementationException",
    "NoSuchNameException",
    "NoSuchResourceException",
    "QueryTooComplexException",
    "RateLimitConfig",
    "StoreError",
    "TooManyRequests",
    "ValidationException",
    "__version__",
]
