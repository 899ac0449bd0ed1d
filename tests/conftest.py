"""Shared fixtures for the epcishub test suite."""

from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import uuid4

import pytest

from epcishub.capture.jobs import CaptureJobRegistry
from epcishub.capture.models import EPCIS_CONTEXT
from epcishub.capture.pipeline import CapturePipeline
from epcishub.core.config import EPCISConfig
from epcishub.core.events import EventBus
from epcishub.core.store import MemoryStore
from epcishub.query.executor import QueryExecutor
from epcishub.subscription.manager import SubscriptionManager


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 6, 1, 12, 0, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


def make_event(**overrides: Any) -> dict[str, Any]:
    """A valid ObjectEvent; keyword overrides replace or (with None) remove fields."""
    event: dict[str, Any] = {
        "type": "ObjectEvent",
        "eventID": f"urn:uuid:{uuid4()}",
        "eventTime": "2024-06-01T10:00:00.000+02:00",
        "eventTimeZoneOffset": "+02:00",
        "action": "OBSERVE",
        "tenantId": "tenant-1",
        "epcList": ["urn:epc:id:sgtin:0614141.107346.2017"],
        "bizStep": "shipping",
        "readPoint": {"id": "urn:epc:id:sgln:0614141.07346.1234"},
    }
    for key, value in overrides.items():
        if value is None:
            event.pop(key, None)
        else:
            event[key] = value
    return event


def make_document(events: list[dict[str, Any]], context: Any = None) -> dict[str, Any]:
    return {
        "@context": context if context is not None else [EPCIS_CONTEXT],
        "type": "EPCISDocument",
        "schemaVersion": "2.0",
        "creationDate": "2024-06-01T10:00:00.000Z",
        "epcisBody": {"eventList": events},
    }


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def registry() -> CaptureJobRegistry:
    return CaptureJobRegistry(maxsize=100)


@pytest.fixture
def pipeline(store, registry, bus, clock) -> CapturePipeline:
    return CapturePipeline(store, registry, bus=bus, capture_limit=10, clock=clock)


@pytest.fixture
def executor(store) -> QueryExecutor:
    return QueryExecutor(store, default_page_size=100, max_page_size=1000)


@pytest.fixture
def manager(store) -> SubscriptionManager:
    return SubscriptionManager(queries=store, subscriptions=store)


@pytest.fixture
def config() -> EPCISConfig:
    return EPCISConfig(
        store_backend="memory",
        scheduler_enabled=False,
        capture_limit=10,
        _env_file=None,
    )
