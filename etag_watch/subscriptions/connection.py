from __future__ import annotations

import structlog
from fastapi import WebSocket
from fastapi.websockets import WebSocketState

from .service import NORMAL_CLOSURE


logger = structlog.get_logger(__name__)


class WebSocketConnection:
    """Adapts an accepted FastAPI WebSocket to the subscriber connection interface."""

    def __init__(self, websocket: WebSocket):
        self._ws = websocket

    async def receive(self) -> str | bytes | None:
        message = await self._ws.receive()
        if message["type"] == "websocket.disconnect":
            return None
        if message.get("text") is not None:
            return message["text"]
        return message.get("bytes") or b""

    async def send_text(self, data: str) -> None:
        await self._ws.send_text(data)

    async def close(self, code: int = NORMAL_CLOSURE, reason: str = "") -> None:
        if self._ws.client_state == WebSocketState.DISCONNECTED:
            return
        if self._ws.application_state == WebSocketState.DISCONNECTED:
            return
        try:
            await self._ws.close(code=code, reason=reason or None)
        except RuntimeError as e:
            # Peer already gone or close already sent.
            logger.debug("WebSocket close ignored", error=str(e))
