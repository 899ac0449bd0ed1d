"""
EPCIS HTTP Server - FastAPI binding of the capture, query and subscription interfaces.

Architecture:
    HTTP / WebSocket clients
        ↓
    FastAPI app (rate limiting, problem+json errors)
        ↓
    EPCISService
        ↓
    Event store

Usage:
    python -m epcishub.api.server

    EPCIS_STORE_BACKEND=clickhouse EPCIS_CLICKHOUSE_HOST=ch.local python -m epcishub.api.server
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
import logging
import sys
from typing import Any

from fastapi import FastAPI, Request, Response
import uvicorn

from epcishub import __version__
from epcishub.api import capture, queries
from epcishub.api.problems import install_exception_handlers, problem_response
from epcishub.core.config import EPCISConfig
from epcishub.core.exceptions import TooManyRequests
from epcishub.core.service import EPCISService

logger = logging.getLogger(__name__)

EPCIS_VERSION = "2.0.0"
CBV_VERSION = "2.0.0"


def discovery_headers(config: EPCISConfig) -> dict[str, str]:
    return {
        "GS1-EPCIS-Version": EPCIS_VERSION,
        "GS1-CBV-Version": CBV_VERSION,
        "GS1-EPCIS-Min": EPCIS_VERSION,
        "GS1-EPCIS-Max": EPCIS_VERSION,
        "GS1-Vendor-Version": config.vendor_version,
    }


def create_app(config: EPCISConfig | None = None, service: EPCISService | None = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        config: Configuration used to build a service when none is given
        service: Pre-built service (tests pass one wired to fakes)
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        active = service or EPCISService(config or EPCISConfig())
        app.state.service = active
        try:
            await active.start()
            logger.info(f"EPCIS server ready (store: {active.config.store_backend})")
            yield
        finally:
            logger.info("Shutting down EPCIS server...")
            try:
                await active.close()
            except Exception as e:
                logger.error(f"Error during shutdown: {e}", exc_info=True)
            app.state.service = None

    app = FastAPI(title="epcishub", version=__version__, lifespan=lifespan)
    install_exception_handlers(app)

    @app.middleware("http")
    async def rate_limit(
        request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        active: EPCISService | None = getattr(request.app.state, "service", None)
        if active is None:
            return await call_next(request)

        decision = await active.rate_limiters.check(request.method, request.url.path)
        if decision is None:
            return await call_next(request)

        if not decision.allowed:
            exc = TooManyRequests(
                f"Rate limit of {decision.limit} requests exceeded. "
                f"Reset in {decision.reset_seconds} seconds.",
                limit=decision.limit,
                reset=decision.reset_seconds,
            )
            headers = decision.headers()
            headers["Retry-After"] = str(decision.reset_seconds)
            return problem_response(exc, request.url.path, headers)

        response = await call_next(request)
        response.headers.update(decision.headers())
        return response

    @app.options("/")
    async def discovery(request: Request) -> Response:
        headers = discovery_headers(request.app.state.service.config)
        headers["Allow"] = "GET, OPTIONS"
        return Response(status_code=204, headers=headers)

    @app.get("/")
    async def resources(request: Request) -> dict[str, Any]:
        return {
            "resources": ["capture", "events", "queries"],
            "version": EPCIS_VERSION,
        }

    @app.get("/health")
    async def health(request: Request) -> dict[str, Any]:
        return await request.app.state.service.health_check()

    app.include_router(capture.router)
    app.include_router(queries.router)
    return app


def run_server(config: EPCISConfig | None = None) -> None:
    """Run the HTTP server with uvicorn."""
    config = config or EPCISConfig()
    try:
        uvicorn.run(
            create_app(config),
            host=config.server_host,
            port=config.server_port,
            log_level=config.log_level.lower(),
        )
    except KeyboardInterrupt:
        logger.info("Server interrupted by user")
    except Exception as e:
        logger.error(f"Server error: {e}", exc_info=True)
        raise


def main() -> None:
    config = EPCISConfig()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )
    run_server(config)


if __name__ == "__main__":
    main()
