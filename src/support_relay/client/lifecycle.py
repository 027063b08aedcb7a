from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Protocol

import websockets
from websockets.exceptions import ConnectionClosed

from ..core.logging_utils import log_event
from ..core.protocol import (
    CLOSE_BLOCKED,
    CLOSE_UNAUTHORIZED,
    ENVELOPE_ERROR,
    ENVELOPE_MESSAGE,
    ENVELOPE_MESSAGE_SENT,
    ENVELOPE_STATUS,
    FRAME_HEARTBEAT,
    FRAME_INIT,
    FRAME_MESSAGE,
    received_close_code,
)
from ..core.sessions import SESSION_COOKIE_NAME

logger = logging.getLogger(__name__)

ORIGIN_BOT = "bot"
ORIGIN_USER = "user"
ORIGIN_SYSTEM = "system"

CONNECTION_LOST_NOTICE = (
    "Connection to support was lost. Please reload the page to try again."
)
SERVER_CLOSED_NOTICE = "The chat connection was closed by the server."
NOT_READY_NOTICE = "Not connected to support yet. Please wait a moment."

TERMINAL_CLOSE_CODES = frozenset({CLOSE_UNAUTHORIZED, CLOSE_BLOCKED})


class LifecycleState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    READY = "ready"
    CLOSED = "closed"
    RECONNECTING = "reconnecting"


@dataclass(frozen=True)
class TranscriptEntry:
    origin: str
    text: str
    author: Optional[str] = None


class Transport(Protocol):
    async def send(self, message: str) -> None: ...

    async def recv(self) -> Any: ...

    async def close(self, code: int = 1000, reason: str = "") -> None: ...


Connector = Callable[[str, dict[str, str]], Awaitable[Transport]]


async def websocket_connector(url: str, headers: dict[str, str]) -> Transport:
    return await websockets.connect(url, additional_headers=headers)


class ConnectionLifecycle:
    """Client side of the support socket: init, heartbeat, dispatch, reconnect.

    Unexpected closures are retried after ``reconnect_delay_seconds``. The counter of
    consecutive failures only resets after a connection stayed ready for
    ``reconnect_reset_seconds``; once it reaches ``max_reconnect_attempts`` the engine
    stops and records a terminal notice. Close codes 4001/4002 never reconnect.
    """

    def __init__(
        self,
        *,
        url: str,
        client_id: str,
        session_id: Optional[str] = None,
        connect: Connector = websocket_connector,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        heartbeat_seconds: float = 30.0,
        reconnect_delay_seconds: float = 3.0,
        max_reconnect_attempts: int = 3,
        reconnect_reset_seconds: float = 30.0,
        on_entry: Optional[Callable[[TranscriptEntry], None]] = None,
    ) -> None:
        self._url = url
        self._client_id = client_id
        self._session_id = session_id
        self._connect = connect
        self._sleep = sleep
        self._clock = clock
        self._heartbeat_seconds = heartbeat_seconds
        self._reconnect_delay_seconds = reconnect_delay_seconds
        self._max_reconnect_attempts = max_reconnect_attempts
        self._reconnect_reset_seconds = reconnect_reset_seconds
        self._on_entry = on_entry
        self._state = LifecycleState.IDLE
        self._transport: Optional[Transport] = None
        self._connection_task: Optional[asyncio.Task[None]] = None
        self._heartbeat_task: Optional[asyncio.Task[None]] = None
        self._reconnect_attempts = 0
        self.connect_attempts = 0
        self.transcript: list[TranscriptEntry] = []

    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def client_id(self) -> str:
        return self._client_id

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    def open(self) -> None:
        """Start connecting unless a connection is already live or in flight."""
        if self._connection_task is not None and not self._connection_task.done():
            return
        self._connection_task = asyncio.get_running_loop().create_task(self._run())

    async def send_text(self, text: str) -> bool:
        text = text.strip()
        if not text:
            return False
        transport = self._transport
        if self._state is not LifecycleState.READY or transport is None:
            self._append(ORIGIN_SYSTEM, NOT_READY_NOTICE)
            return False
        try:
            await transport.send(json.dumps({"type": FRAME_MESSAGE, "message": text}))
        except ConnectionClosed:
            return False
        return True

    async def close(self) -> None:
        """Explicit teardown: cancels heartbeat, reconnect and connection timers."""
        task = self._connection_task
        transport = self._transport
        self._connection_task = None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await self._cancel_heartbeat()
        self._transport = transport
        await self._close_transport()
        self._reconnect_attempts = 0
        self._set_state(LifecycleState.CLOSED)

    async def on_auth_success(self, session_id: str) -> None:
        """Adopt a new session; a live connection is rebuilt to present it."""
        self._session_id = session_id
        if self._connection_task is None:
            return
        await self.close()
        self.open()

    async def wait_settled(self) -> None:
        """Wait until the engine stops on its own (terminal close or retry limit)."""
        task = self._connection_task
        if task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    def _headers(self) -> dict[str, str]:
        if not self._session_id:
            return {}
        return {"Cookie": f"{SESSION_COOKIE_NAME}={self._session_id}"}

    async def _run(self) -> None:
        while True:
            self._set_state(LifecycleState.CONNECTING)
            ready_at: Optional[float] = None
            close_code: Optional[int] = None
            self.connect_attempts += 1
            try:
                transport = await self._connect(self._url, self._headers())
                self._transport = transport
                self._set_state(LifecycleState.OPEN)
                await transport.send(
                    json.dumps({"type": FRAME_INIT, "clientId": self._client_id})
                )
                self._heartbeat_task = asyncio.get_running_loop().create_task(
                    self._heartbeat_loop(transport)
                )
                self._set_state(LifecycleState.READY)
                ready_at = self._clock()
                while True:
                    self._dispatch(await transport.recv())
            except asyncio.CancelledError:
                raise
            except ConnectionClosed as exc:
                close_code = received_close_code(exc)
                log_event(
                    logger, logging.INFO, "client.connection.closed", code=close_code
                )
            except Exception as exc:
                log_event(logger, logging.WARNING, "client.connection.error", exc=exc)
            finally:
                await self._cancel_heartbeat()
                self._transport = None

            self._set_state(LifecycleState.CLOSED)
            if close_code in TERMINAL_CLOSE_CODES:
                self._append(ORIGIN_SYSTEM, SERVER_CLOSED_NOTICE)
                return
            if (
                ready_at is not None
                and self._clock() - ready_at >= self._reconnect_reset_seconds
            ):
                self._reconnect_attempts = 0
            self._reconnect_attempts += 1
            if self._reconnect_attempts >= self._max_reconnect_attempts:
                log_event(
                    logger,
                    logging.WARNING,
                    "client.reconnect.exhausted",
                    attempts=self._reconnect_attempts,
                )
                self._append(ORIGIN_SYSTEM, CONNECTION_LOST_NOTICE)
                return
            self._set_state(LifecycleState.RECONNECTING)
            await self._sleep(self._reconnect_delay_seconds)

    def _dispatch(self, raw: Any) -> None:
        try:
            payload = json.loads(raw)
        except (TypeError, ValueError):
            log_event(logger, logging.DEBUG, "client.frame.invalid")
            return
        if not isinstance(payload, dict):
            return
        envelope_type = payload.get("type")
        message = payload.get("message")
        if not isinstance(message, str):
            return
        if envelope_type == ENVELOPE_MESSAGE:
            author = payload.get("author")
            self._append(
                ORIGIN_BOT, message, author=author if isinstance(author, str) else None
            )
        elif envelope_type == ENVELOPE_MESSAGE_SENT:
            self._append(ORIGIN_USER, message)
        elif envelope_type in (ENVELOPE_ERROR, ENVELOPE_STATUS):
            self._append(ORIGIN_SYSTEM, message)

    def _append(self, origin: str, text: str, *, author: Optional[str] = None) -> None:
        entry = TranscriptEntry(origin=origin, text=text, author=author)
        self.transcript.append(entry)
        if self._on_entry is not None:
            self._on_entry(entry)

    def _set_state(self, state: LifecycleState) -> None:
        if state is not self._state:
            log_event(
                logger,
                logging.DEBUG,
                "client.state",
                previous=self._state.value,
                state=state.value,
            )
        self._state = state

    async def _heartbeat_loop(self, transport: Transport) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_seconds)
            await transport.send(json.dumps({"type": FRAME_HEARTBEAT}))

    async def _cancel_heartbeat(self) -> None:
        task = self._heartbeat_task
        self._heartbeat_task = None
        if task is None:
            return
        if not task.done():
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as exc:
            logger.debug("Heartbeat task ended with error: %s", exc)

    async def _close_transport(self) -> None:
        transport = self._transport
        self._transport = None
        if transport is None:
            return
        try:
            await transport.close(1000, "client closed")
        except Exception as exc:
            logger.debug("Transport close failed: %s", exc)
