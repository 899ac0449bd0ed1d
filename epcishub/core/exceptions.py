"""Exception taxonomy for the EPCIS service.

HTTP-facing exceptions map onto the GS1 EPCIS exception names and render as
RFC 7807 problem objects. StoreError and DeliveryError never reach an HTTP
caller directly.
"""

from collections.abc import Iterable
from typing import Any

from pydantic import ValidationError as PydanticValidationError

EXCEPTION_NAMESPACE = "https://ref.gs1.org/standards/epcis/exceptions#"


class EPCISException(Exception):
    """Base exception for all EPCIS errors."""

    status: int = 500
    title: str = "EPCIS error"

    def __init__(self, detail: str | None = None, *, title: str | None = None) -> None:
        super().__init__(detail or title or self.title)
        self.detail = detail
        if title is not None:
            self.title = title

    @property
    def type_uri(self) -> str:
        return f"{EXCEPTION_NAMESPACE}{type(self).__name__}"

    def to_problem(self, instance: str | None = None) -> dict[str, Any]:
        """Render as a problem-details object."""
        return {
            "type": self.type_uri,
            "title": self.title,
            "status": self.status,
            "detail": self.detail,
            "instance": instance,
        }


class ValidationException(EPCISException):
    """Raised when a request, document or event is malformed."""

    status = 400
    title = "Validation failed"

    @classmethod
    def from_pydantic(
        cls,
        exc: PydanticValidationError,
        *,
        title: str | None = None,
        skip_locations: Iterable[str] = (),
    ) -> "ValidationException":
        """
        Build a structured reason string from a pydantic error.

        Each error renders as ``"<dotted path>: <message>"``; errors are joined
        with ``"; "``. Location parts listed in ``skip_locations`` (union tags)
        are dropped from the path.
        """
        skip = set(skip_locations)
        reasons = []
        for error in exc.errors():
            path = ".".join(str(part) for part in error["loc"] if part not in skip)
            reasons.append(f"{path}: {error['msg']}" if path else error["msg"])
        return cls("; ".join(reasons), title=title)


class NoSuchNameException(EPCISException):
    """Raised when a named query does not exist."""

    status = 404
    title = "Query not found"


class NoSuchResourceException(EPCISException):
    """Raised when a capture job or subscription does not exist."""

    status = 404
    title = "Resource not found"


class ConflictException(EPCISException):
    """Raised when a resource already exists or is still referenced."""

    status = 409
    title = "Conflict"


class CaptureLimitExceededException(EPCISException):
    """Raised when a capture document carries too many events."""

    status = 413
    title = "Capture limit exceeded"


class QueryTooComplexException(EPCISException):
    """Raised when the event store fails to execute a query."""

    status = 413
    title = "Query execution failed"


class TooManyRequests(EPCISException):
    """Raised when a rate limit namespace denies a request."""

    status = 429
    title = "Rate limit exceeded"

    def __init__(self, detail: str | None = None, *, limit: int = 0, reset: int = 0) -> None:
        super().__init__(detail)
        self.limit = limit
        self.reset = reset


class ImplementationException(EPCISException):
    """Raised for unexpected internal faults."""

    status = 500
    title = "Internal Server Error"


class StoreError(Exception):
    """Raised when the event store rejects or fails a request."""

    def __init__(self, message: str, statement: str | None = None) -> None:
        super().__init__(message)
        self.statement = statement


class DeliveryError(Exception):
    """Raised when a webhook destination does not accept a delivery."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
