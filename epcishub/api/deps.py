"""Request-scoped access to the running service."""

import json
from typing import Any

from fastapi import Request
from starlette.requests import HTTPConnection

from epcishub.core.exceptions import ValidationException
from epcishub.core.service import EPCISService


def get_service(connection: HTTPConnection) -> EPCISService:
    """Service created by the application lifespan."""
    service = getattr(connection.app.state, "service", None)
    if service is None:
        raise RuntimeError("EPCISService not initialized. Server startup failed.")
    return service


async def read_json(request: Request) -> Any:
    """
    Decode the request body as JSON.

    Raises:
        ValidationException: Empty or malformed body
    """
    body = await request.body()
    if not body:
        raise ValidationException("Request body is empty", title="Invalid request body")
    try:
        return json.loads(body)
    except ValueError as e:
        raise ValidationException(f"Request body is not valid JSON: {e}", title="Invalid request body") from e
