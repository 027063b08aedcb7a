from __future__ import annotations

import logging
import sqlite3
from typing import Any, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from ....core.logging_utils import log_event
from ....core.protocol import CLOSE_TRY_AGAIN_LATER, encode_envelope
from ....core.sessions import SESSION_COOKIE_NAME, PublicIdentity
from ....relay.socket_session import SocketSession

logger = logging.getLogger(__name__)


class StarletteConnectionHandle:
    """Relay-facing view of one accepted Starlette websocket."""

    def __init__(self, websocket: WebSocket) -> None:
        self._websocket = websocket
        self._closed = False

    @property
    def is_open(self) -> bool:
        return (
            not self._closed
            and self._websocket.application_state == WebSocketState.CONNECTED
            and self._websocket.client_state == WebSocketState.CONNECTED
        )

    async def send_envelope(self, envelope: dict[str, Any]) -> None:
        await self._websocket.send_text(encode_envelope(envelope))

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self._closed:
            return
        self._closed = True
        await self._websocket.close(code=code, reason=reason)


async def _resolve_identity(
    websocket: WebSocket, services: Any
) -> Optional[PublicIdentity]:
    session_id = websocket.cookies.get(SESSION_COOKIE_NAME)
    if not session_id:
        return None
    try:
        record = await services.sessions.get_valid(session_id)
    except sqlite3.Error as exc:
        log_event(logger, logging.WARNING, "socket.session_lookup_failed", exc=exc)
        return None
    return PublicIdentity.from_session(record) if record is not None else None


def build_socket_routes() -> APIRouter:
    router = APIRouter(tags=["socket"])

    @router.websocket("/ws")
    async def support_socket(websocket: WebSocket) -> None:
        app_state = websocket.app.state
        services = app_state.services
        relay_config = app_state.config.relay
        active: set = app_state.active_websockets

        await websocket.accept()
        if len(active) >= relay_config.max_connections:
            log_event(
                logger, logging.WARNING, "socket.refused", connections=len(active)
            )
            await websocket.close(code=CLOSE_TRY_AGAIN_LATER)
            return

        identity = await _resolve_identity(websocket, services)
        handle = StarletteConnectionHandle(websocket)
        session = SocketSession(
            relay=services.relay,
            handle=handle,
            identity=identity,
            message_limiter=services.message_limiter,
            max_message_chars=relay_config.max_message_chars,
            blocked_close_delay_seconds=relay_config.blocked_close_delay_seconds,
        )
        active.add(websocket)
        log_event(
            logger,
            logging.INFO,
            "socket.opened",
            authenticated=identity is not None,
            connections=len(active),
        )
        try:
            if not await session.on_open():
                return
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                raw = message.get("text")
                if raw is None:
                    raw = message.get("bytes")
                if raw is None:
                    continue
                if not await session.handle_raw(raw):
                    break
        except WebSocketDisconnect:
            pass
        finally:
            active.discard(websocket)
            session.on_close()
            log_event(
                logger,
                logging.INFO,
                "socket.closed",
                client_id=session.client_id,
                connections=len(active),
            )

    return router
