"""Adapts a FastAPI WebSocket to the stream session channel protocol."""

import json
from typing import Any

from fastapi import WebSocket, WebSocketDisconnect

from epcishub.core.exceptions import ValidationException
from epcishub.subscription.stream import ChannelClosed


class WebSocketChannel:
    def __init__(self, websocket: WebSocket):
        self.websocket = websocket

    async def receive(self) -> Any:
        try:
            text = await self.websocket.receive_text()
        except WebSocketDisconnect as e:
            raise ChannelClosed(f"client disconnected ({e.code})") from e
        try:
            return json.loads(text)
        except ValueError as e:
            raise ValidationException(f"stream message is not valid JSON: {e}") from e

    async def send(self, message: dict[str, Any]) -> None:
        try:
            await self.websocket.send_json(message)
        except WebSocketDisconnect as e:
            raise ChannelClosed(f"client disconnected ({e.code})") from e
