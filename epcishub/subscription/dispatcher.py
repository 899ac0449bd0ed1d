"""
Webhook Dispatcher - pushes subscription results to their destination.

Each delivery is one bounded POST. There is no retry: a failed delivery moves
the subscription to the error state and waits for explicit reactivation.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from typing import TYPE_CHECKING, Any, Self

import httpx

from epcishub.core.exceptions import DeliveryError
from epcishub.query.documents import query_document

if TYPE_CHECKING:
    from epcishub.subscription.models import Subscription

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "GS1-Signature"


def sign_body(body: bytes, token: str) -> str:
    """Signature header value: ``sha256=<hex HMAC of the body keyed by the token>``."""
    digest = hmac.new(token.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_signature(body: bytes, token: str, header_value: str) -> bool:
    return hmac.compare_digest(sign_body(body, token), header_value)


class WebhookDispatcher:
    """
    Delivers EPCIS query documents over HTTP.

    Example:
        >>> dispatcher = WebhookDispatcher(timeout=10.0)
        >>> await dispatcher.deliver(subscription, events)
        >>> await dispatcher.close()
    """

    def __init__(self, timeout: float = 10.0, transport: httpx.AsyncBaseTransport | None = None):
        """
        Args:
            timeout: Per-delivery timeout in seconds
            transport: Optional httpx transport (tests inject a MockTransport)
        """
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    def build_request(
        self, subscription: Subscription, events: list[dict[str, Any]]
    ) -> tuple[bytes, dict[str, str]]:
        """Serialize the delivery body and its headers."""
        document = query_document(
            subscription.query_name, events, subscription_id=subscription.id
        )
        body = json.dumps(document, separators=(",", ":")).encode("utf-8")
        headers = {"Content-Type": "application/json"}
        if subscription.signature_token:
            headers[SIGNATURE_HEADER] = sign_body(body, subscription.signature_token)
        return body, headers

    async def deliver(self, subscription: Subscription, events: list[dict[str, Any]]) -> None:
        """
        POST the results to the subscription destination.

        Raises:
            DeliveryError: Non-2xx response, timeout or transport failure
        """
        if not subscription.destination:
            raise DeliveryError(f"Subscription {subscription.id} has no destination")

        body, headers = self.build_request(subscription, events)
        try:
            response = await self.client.post(subscription.destination, content=body, headers=headers)
        except httpx.HTTPError as e:
            raise DeliveryError(f"Webhook delivery failed: {e}") from e

        if not response.is_success:
            raise DeliveryError(
                f"Webhook delivery failed: {response.status_code} {response.reason_phrase}",
                status_code=response.status_code,
            )

        logger.debug(
            f"Delivered {len(events)} events for subscription {subscription.id} "
            f"to {subscription.destination} ({response.status_code})"
        )

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()
