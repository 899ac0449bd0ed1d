"""
Event Validator - structural and semantic checks for a single EPCIS event.

Dispatches on the ``type`` tag to the matching event model. Validation is pure:
it never touches storage and never mutates its input.

Example:
    >>> event = validate_event({"type": "ObjectEvent", "eventID": "e1", ...})
    >>> event.action
    <Action.OBSERVE: 'OBSERVE'>
"""

from typing import Any

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from epcishub.capture.models import EVENT_TYPES, EPCISEvent
from epcishub.core.exceptions import ValidationException

_EVENT_ADAPTER: TypeAdapter[EPCISEvent] = TypeAdapter(EPCISEvent)


def validate_event(raw: Any) -> EPCISEvent:
    """
    Validate one raw event against its declared sub-type.

    Args:
        raw: Decoded JSON object for the event

    Returns:
        The typed event model

    Raises:
        ValidationException: With a per-field reason string
    """
    if not isinstance(raw, dict):
        raise ValidationException(f"event must be a JSON object, got {type(raw).__name__}")

    event_type = raw.get("type")
    if event_type not in EVENT_TYPES:
        raise ValidationException(
            f"type: must be one of {', '.join(EVENT_TYPES)}, got {event_type!r}"
        )

    try:
        return _EVENT_ADAPTER.validate_python(raw)
    except PydanticValidationError as e:
        raise ValidationException.from_pydantic(
            e, title="Event validation failed", skip_locations=EVENT_TYPES
        ) from e


def event_reference(raw: Any, index: int) -> str:
    """Best-effort identifier for an event that may have failed validation."""
    if isinstance(raw, dict) and isinstance(raw.get("eventID"), str) and raw["eventID"]:
        return raw["eventID"]
    return f"#{index}"
