"""
Query interface: named queries, their events, subscriptions and streams.

Named query events accept only paging overrides (perPage, nextPageToken);
ad-hoc queries on /events take any EPCIS query parameter, with list values
separated by ``|``.
"""

import logging
from typing import Any
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Request, Response, WebSocket
from fastapi.responses import JSONResponse

from epcishub.api.channels import WebSocketChannel
from epcishub.api.deps import get_service, read_json
from epcishub.core.exceptions import EPCISException, ValidationException
from epcishub.core.service import EPCISService
from epcishub.query.documents import query_document
from epcishub.query.executor import QueryResult
from epcishub.subscription.stream import ErrorMessage, StreamSession

logger = logging.getLogger(__name__)

router = APIRouter(tags=["query"])

_PAGING_PARAMETERS = ("perPage", "nextPageToken")
_LIST_PREFIXES = ("EQ_", "MATCH_")


def _is_list_parameter(name: str) -> bool:
    return name == "eventTypes" or name.startswith(_LIST_PREFIXES)


def params_from_query_string(request: Request) -> dict[str, Any]:
    """Turn URL query parameters into an EPCIS parameter mapping."""
    params: dict[str, Any] = {}
    for name in request.query_params:
        values = request.query_params.getlist(name)
        if _is_list_parameter(name):
            params[name] = [item for value in values for item in value.split("|") if item]
        else:
            params[name] = values[-1]
    return params


def _events_response(path: str, query_name: str | None, result: QueryResult) -> JSONResponse:
    document = query_document(query_name, result.events)
    headers: dict[str, str] = {}
    if result.next_page_token is not None and result.spec is not None:
        document["nextPageToken"] = result.next_page_token
        link = urlencode({"perPage": result.spec.page.size, "nextPageToken": result.next_page_token})
        headers["Link"] = f'<{path}?{link}>; rel="next"'
    return JSONResponse(document, headers=headers)


@router.get("/events")
async def query_events(request: Request, service: EPCISService = Depends(get_service)) -> JSONResponse:
    params = params_from_query_string(request)
    result = await service.executor.execute(params)
    return _events_response(request.url.path, None, result)


@router.get("/queries")
async def list_queries(service: EPCISService = Depends(get_service)) -> dict[str, Any]:
    definitions = await service.manager.list_queries()
    return {"queries": [d.to_response() for d in definitions]}


@router.post("/queries")
async def register_query(
    request: Request, replace: bool = False, service: EPCISService = Depends(get_service)
) -> JSONResponse:
    definition = await service.manager.register_query(await read_json(request), replace=replace)
    return JSONResponse(
        definition.to_response(),
        status_code=201,
        headers={"Location": f"/queries/{definition.name}"},
    )


@router.get("/queries/{query_name}")
async def get_query(query_name: str, service: EPCISService = Depends(get_service)) -> dict[str, Any]:
    return (await service.manager.get_query(query_name)).to_response()


@router.delete("/queries/{query_name}", status_code=204)
async def delete_query(query_name: str, service: EPCISService = Depends(get_service)) -> Response:
    await service.manager.delete_query(query_name)
    return Response(status_code=204)


@router.get("/queries/{query_name}/events")
async def named_query_events(
    query_name: str, request: Request, service: EPCISService = Depends(get_service)
) -> JSONResponse:
    definition = await service.manager.get_query(query_name)
    overrides = dict(request.query_params)
    unknown = sorted(set(overrides) - set(_PAGING_PARAMETERS))
    if unknown:
        raise ValidationException(
            f"Unsupported parameters for a named query: {', '.join(unknown)}"
        )
    result = await service.executor.execute(
        definition.query.merged(overrides), query_name=query_name
    )
    return _events_response(request.url.path, query_name, result)


@router.websocket("/queries/{query_name}/events")
async def stream_query_events(websocket: WebSocket, query_name: str) -> None:
    """Ephemeral stream: nothing is persisted for this connection."""
    service = get_service(websocket)
    await websocket.accept()
    try:
        definition = await service.manager.get_query(query_name)
    except EPCISException as e:
        await _reject(websocket, e)
        return
    session = StreamSession(WebSocketChannel(websocket), service.executor, query_name, definition.query)
    await session.run()


@router.options("/queries/{query_name}/subscriptions")
async def subscription_options(
    query_name: str, service: EPCISService = Depends(get_service)
) -> Response:
    await service.manager.get_query(query_name)
    return Response(status_code=204, headers={"Allow": "GET, POST, OPTIONS"})


@router.get("/queries/{query_name}/subscriptions")
async def list_subscriptions(
    query_name: str, service: EPCISService = Depends(get_service)
) -> dict[str, Any]:
    subscriptions = await service.manager.list_subscriptions(query_name)
    return {"subscriptions": [s.to_response() for s in subscriptions]}


@router.post("/queries/{query_name}/subscriptions")
async def create_subscription(
    query_name: str, request: Request, service: EPCISService = Depends(get_service)
) -> JSONResponse:
    subscription = await service.manager.subscribe(query_name, await read_json(request))
    return JSONResponse(
        subscription.to_response(),
        status_code=201,
        headers={"Location": f"/queries/{query_name}/subscriptions/{subscription.id}"},
    )


@router.get("/queries/{query_name}/subscriptions/{subscription_id}")
async def get_subscription(
    query_name: str, subscription_id: str, service: EPCISService = Depends(get_service)
) -> dict[str, Any]:
    return (await service.manager.get_subscription(query_name, subscription_id)).to_response()


@router.patch("/queries/{query_name}/subscriptions/{subscription_id}")
async def update_subscription_status(
    query_name: str,
    subscription_id: str,
    request: Request,
    service: EPCISService = Depends(get_service),
) -> dict[str, Any]:
    body = await read_json(request)
    if not isinstance(body, dict) or set(body) != {"status"}:
        raise ValidationException('PATCH body must be {"status": "active|paused|error"}')
    subscription = await service.manager.set_status(query_name, subscription_id, body["status"])
    return subscription.to_response()


@router.delete("/queries/{query_name}/subscriptions/{subscription_id}", status_code=204)
async def delete_subscription(
    query_name: str, subscription_id: str, service: EPCISService = Depends(get_service)
) -> Response:
    await service.manager.unsubscribe(query_name, subscription_id)
    return Response(status_code=204)


@router.websocket("/queries/{query_name}/subscriptions/{subscription_id}/stream")
async def stream_subscription(websocket: WebSocket, query_name: str, subscription_id: str) -> None:
    service = get_service(websocket)
    await websocket.accept()
    try:
        subscription = await service.manager.get_subscription(query_name, subscription_id)
        if not subscription.stream:
            raise ValidationException(f"Subscription {subscription_id} is not a stream subscription")
        definition = await service.manager.get_query(query_name)
    except EPCISException as e:
        await _reject(websocket, e)
        return
    session = StreamSession(
        WebSocketChannel(websocket),
        service.executor,
        query_name,
        definition.query,
        subscription_id=subscription_id,
    )
    await session.run()


async def _reject(websocket: WebSocket, exc: EPCISException) -> None:
    await websocket.send_json(ErrorMessage(error=exc.to_problem(websocket.url.path)).model_dump())
    await websocket.close(code=1008)
