"""EPCIS query document envelopes returned by queries, webhooks and streams."""

from datetime import datetime
from typing import Any

from epcishub.capture.models import EPCIS_CONTEXT
from epcishub.core.clock import to_iso, utc_now

SCHEMA_VERSION = "2.0"


def query_document(
    query_name: str | None,
    events: list[dict[str, Any]],
    *,
    subscription_id: str | None = None,
    created_at: datetime | None = None,
) -> dict[str, Any]:
    """
    Wrap events in an ``EPCISQueryDocument``.

    Example:
        >>> doc = query_document("Q1", [event])
        >>> doc["epcisBody"]["queryResults"]["resultsBody"]["eventList"]
        [{...}]
    """
    results: dict[str, Any] = {}
    if query_name is not None:
        results["queryName"] = query_name
    if subscription_id is not None:
        results["subscriptionID"] = subscription_id
    results["resultsBody"] = {"eventList": events}

    return {
        "@context": [EPCIS_CONTEXT],
        "type": "EPCISQueryDocument",
        "schemaVersion": SCHEMA_VERSION,
        "creationDate": to_iso(created_at or utc_now()),
        "epcisBody": {"queryResults": results},
    }
