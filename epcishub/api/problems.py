"""RFC 7807 problem responses and the exception handlers that produce them."""

import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from epcishub.core.exceptions import (
    EPCISException,
    ImplementationException,
    NoSuchResourceException,
    TooManyRequests,
    ValidationException,
)

logger = logging.getLogger(__name__)

PROBLEM_MEDIA_TYPE = "application/problem+json"


def problem_response(
    exc: EPCISException, instance: str | None = None, headers: dict[str, str] | None = None
) -> JSONResponse:
    return JSONResponse(
        exc.to_problem(instance),
        status_code=exc.status,
        media_type=PROBLEM_MEDIA_TYPE,
        headers=headers,
    )


def _http_exception(exc: StarletteHTTPException) -> EPCISException:
    if exc.status_code == 404:
        return NoSuchResourceException(str(exc.detail))
    if 400 <= exc.status_code < 500:
        error = ValidationException(str(exc.detail))
        error.status = exc.status_code
        return error
    return ImplementationException(str(exc.detail))


def _request_validation_detail(exc: RequestValidationError) -> str:
    reasons: list[str] = []
    for error in exc.errors():
        path = ".".join(str(part) for part in error.get("loc", ()))
        reasons.append(f"{path}: {error.get('msg')}" if path else str(error.get("msg")))
    return "; ".join(reasons)


def install_exception_handlers(app: FastAPI) -> None:
    """Render every error path as a problem object."""

    @app.exception_handler(EPCISException)
    async def epcis_exception_handler(request: Request, exc: EPCISException) -> JSONResponse:
        headers: dict[str, Any] | None = None
        if isinstance(exc, TooManyRequests):
            headers = {"Retry-After": str(exc.reset)}
        if exc.status >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return problem_response(exc, request.url.path, headers)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        error = ValidationException(_request_validation_detail(exc))
        return problem_response(error, request.url.path)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(
        request: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        return problem_response(_http_exception(exc), request.url.path, exc.headers)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        return problem_response(ImplementationException(str(exc)), request.url.path)
