"""
Stream Session - serves one duplex streaming channel.

Protocol:
- client sends ``{"type": "getEvents", "params": {...}}``
- server answers ``{"type": "events", "data": <EPCISQueryDocument>}`` or
  ``{"type": "error", "error": <problem>}``

One session is one task; it owns its channel until the client disconnects.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Literal, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from epcishub.core.exceptions import EPCISException, ImplementationException, ValidationException
from epcishub.query.documents import query_document
from epcishub.query.models import QueryParams

if TYPE_CHECKING:
    from epcishub.query.executor import QueryExecutor

logger = logging.getLogger(__name__)


class ChannelClosed(Exception):
    """Raised by a channel when the peer has gone away."""


@runtime_checkable
class Channel(Protocol):
    async def receive(self) -> Any:
        """Next decoded inbound message; raises ChannelClosed on disconnect."""

    async def send(self, message: dict[str, Any]) -> None: ...


class GetEventsMessage(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["getEvents"]
    params: dict[str, Any] = Field(default_factory=dict)


class EventsMessage(BaseModel):
    type: Literal["events"] = "events"
    data: dict[str, Any]


class ErrorMessage(BaseModel):
    type: Literal["error"] = "error"
    error: dict[str, Any]


def parse_inbound(raw: Any) -> GetEventsMessage:
    """
    Raises:
        ValidationException: Unknown message type or malformed message
    """
    if not isinstance(raw, dict):
        raise ValidationException("stream message must be a JSON object")
    if raw.get("type") != "getEvents":
        raise ValidationException(f"Unknown message type: {raw.get('type')!r}")
    try:
        return GetEventsMessage.model_validate(raw)
    except PydanticValidationError as e:
        raise ValidationException.from_pydantic(e, title="Invalid stream message") from e


class StreamSession:
    """
    Message-passing actor bound to one channel and one named query.

    Client parameters override the named query's parameters for the request
    they arrive with; the stored query is never modified.

    Example:
        >>> session = StreamSession(channel, executor, "Q1", definition.query)
        >>> await session.run()
    """

    def __init__(
        self,
        channel: Channel,
        executor: QueryExecutor,
        query_name: str,
        query: QueryParams | None = None,
        subscription_id: str | None = None,
    ):
        self.channel = channel
        self.executor = executor
        self.query_name = query_name
        self.query = query or QueryParams()
        self.subscription_id = subscription_id
        self.instance = (
            f"/queries/{query_name}/subscriptions/{subscription_id}/stream"
            if subscription_id
            else f"/queries/{query_name}/events"
        )
        self.requests_served = 0

    async def run(self) -> None:
        """Serve requests until the channel closes."""
        logger.info(f"Stream session opened on {self.instance}")
        try:
            while True:
                try:
                    raw = await self.channel.receive()
                except ValidationException as e:
                    await self._send_error(e)
                    continue
                await self.channel.send(await self.handle(raw))
        except ChannelClosed:
            pass
        finally:
            logger.info(
                f"Stream session closed on {self.instance} after {self.requests_served} requests"
            )

    async def handle(self, raw: Any) -> dict[str, Any]:
        """Answer one inbound message with an events or error message."""
        try:
            message = parse_inbound(raw)
            params = self.query.merged(message.params)
            result = await self.executor.execute(params, query_name=self.query_name)
        except EPCISException as e:
            return ErrorMessage(error=e.to_problem(self.instance)).model_dump()
        except Exception as e:
            logger.exception(f"Stream request on {self.instance} failed")
            return ErrorMessage(error=ImplementationException(str(e)).to_problem(self.instance)).model_dump()

        self.requests_served += 1
        document = query_document(
            self.query_name, result.events, subscription_id=self.subscription_id
        )
        if result.next_page_token is not None:
            document["nextPageToken"] = result.next_page_token
        return EventsMessage(data=document).model_dump()

    async def _send_error(self, exc: EPCISException) -> None:
        await self.channel.send(ErrorMessage(error=exc.to_problem(self.instance)).model_dump())
