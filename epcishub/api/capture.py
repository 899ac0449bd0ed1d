"""Capture interface: submit batches and poll capture jobs."""

import logging
from typing import Any

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse

from epcishub.api.deps import get_service, read_json
from epcishub.core.exceptions import NoSuchResourceException
from epcishub.core.service import EPCISService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/capture", tags=["capture"])


@router.options("")
async def capture_options(service: EPCISService = Depends(get_service)) -> Response:
    return Response(
        status_code=204,
        headers={
            "Allow": "GET, POST, OPTIONS",
            "GS1-EPCIS-Capture-Limit": str(service.config.capture_limit),
            "GS1-Capture-Error-Behaviour": "rollback, proceed",
        },
    )


@router.post("")
async def submit_capture(
    request: Request, service: EPCISService = Depends(get_service)
) -> JSONResponse:
    document = await read_json(request)
    behaviour = request.headers.get("GS1-Capture-Error-Behaviour")
    job = await service.pipeline.submit(document, behaviour)
    return JSONResponse(
        {"captureID": job.capture_id},
        status_code=202,
        headers={"Location": f"/capture/{job.capture_id}"},
    )


@router.get("")
async def list_capture_jobs(service: EPCISService = Depends(get_service)) -> dict[str, Any]:
    return {"captureJobs": [job.to_response() for job in service.registry.list_jobs()]}


@router.get("/{capture_id}")
async def get_capture_job(
    capture_id: str, service: EPCISService = Depends(get_service)
) -> dict[str, Any]:
    job = service.pipeline.get_job(capture_id)
    if job is None:
        raise NoSuchResourceException(f"No capture job found with ID: {capture_id}")
    return job.to_response()
