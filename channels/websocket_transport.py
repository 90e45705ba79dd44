"""
WebSocket client transport over a FastAPI/Starlette WebSocket.

Text frames carry one JSON message each; server messages are serialized
with pydantic, audio payloads as base64.
"""
from __future__ import annotations

import asyncio

import structlog
from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError
from starlette.websockets import WebSocketState

from channels.base import ClientProtocolError, ClientTransport, TransportClosed
from models.schemas import ClientMessage, ServerMessage, parse_client_message

logger = structlog.get_logger()


class WebSocketClientTransport(ClientTransport):

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self._send_lock = asyncio.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def receive(self) -> ClientMessage:
        if self._closed:
            raise TransportClosed()
        try:
            raw = await self.websocket.receive_text()
        except WebSocketDisconnect as e:
            self._closed = True
            raise TransportClosed("client disconnected", code=e.code) from e
        except (RuntimeError, OSError) as e:
            self._closed = True
            raise TransportClosed(str(e)) from e
        try:
            return parse_client_message(raw)
        except ValidationError as e:
            logger.warning("client_message_invalid", errors=e.error_count())
            raise ClientProtocolError(f"invalid client message: {e.error_count()} error(s)") from e

    async def send(self, message: ServerMessage) -> None:
        if self._closed:
            raise TransportClosed()
        async with self._send_lock:
            try:
                await self.websocket.send_text(message.model_dump_json())
            except WebSocketDisconnect as e:
                self._closed = True
                raise TransportClosed("client disconnected", code=e.code) from e
            except (RuntimeError, OSError) as e:
                self._closed = True
                raise TransportClosed(str(e)) from e

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self.websocket.application_state == WebSocketState.DISCONNECTED:
            return
        try:
            await self.websocket.close()
        except (RuntimeError, OSError) as e:
            logger.debug("client_transport_close_ignored", error=str(e))
