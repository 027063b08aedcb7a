from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from ..core.errors import (
    Blocked,
    ProtocolError,
    SupportRelayError,
    Unauthenticated,
)
from ..core.logging_utils import log_event
from ..core.protocol import (
    CLOSE_BLOCKED,
    CLOSE_UNAUTHORIZED,
    HeartbeatFrame,
    InitFrame,
    MessageFrame,
    error_envelope,
    parse_client_frame,
)
from ..core.rate_limit import MessageRateLimiter
from ..core.sessions import PublicIdentity
from .channel_relay import ChannelRelay, ConnectionHandle
from .notify import best_effort

logger = logging.getLogger(__name__)

RATE_LIMITED_NOTICE = "You are sending messages too quickly. Please slow down."
NOT_INITIALIZED_NOTICE = "Chat is still connecting. Please send your message again."


class SocketSession:
    """Frame handling for one accepted visitor socket.

    The identity is resolved once, from the session cookie presented on the
    handshake, and never re-checked for the lifetime of the socket.
    """

    def __init__(
        self,
        *,
        relay: ChannelRelay,
        handle: ConnectionHandle,
        identity: Optional[PublicIdentity],
        message_limiter: MessageRateLimiter,
        max_message_chars: int = 1000,
        blocked_close_delay_seconds: float = 3.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._relay = relay
        self._handle = handle
        self._identity = identity
        self._limiter = message_limiter
        self._max_message_chars = max_message_chars
        self._blocked_close_delay_seconds = blocked_close_delay_seconds
        self._sleep = sleep
        self.client_id: Optional[str] = None
        self.closed = False

    @property
    def identity(self) -> Optional[PublicIdentity]:
        return self._identity

    async def on_open(self) -> bool:
        """Refuse blocked subjects right away. Returns ``False`` once closing."""
        if self._identity is None:
            return True
        try:
            await self._relay.ensure_may_send(self._identity)
        except Blocked as exc:
            await self._close_blocked(exc)
            return False
        return True

    async def handle_raw(self, raw: str | bytes) -> bool:
        """Process one inbound frame. Returns ``False`` once the socket is closing."""
        try:
            frame = parse_client_frame(raw)
        except ProtocolError as exc:
            log_event(
                logger,
                logging.INFO,
                "socket.frame.invalid",
                client_id=self.client_id,
                error=str(exc),
            )
            await self._send_error(exc.user_message)
            return True

        if isinstance(frame, HeartbeatFrame):
            return True
        if isinstance(frame, InitFrame):
            self._bind(frame.client_id)
            return True
        if isinstance(frame, MessageFrame):
            return await self._handle_message(frame.message)
        return True

    def on_close(self) -> None:
        if self.client_id is not None:
            self._release(self.client_id)
        self.closed = True

    def _release(self, client_id: str) -> None:
        self._relay.on_connection_closed(client_id, self._handle)
        # Other tabs of the same client share the rate window.
        if self._relay.connection_for(client_id) is None:
            self._limiter.forget(client_id)

    def _bind(self, client_id: str) -> None:
        if self.client_id is not None and self.client_id != client_id:
            self._release(self.client_id)
        self.client_id = client_id
        self._relay.bind_client(client_id, self._handle, self._identity)

    async def _handle_message(self, message: str) -> bool:
        text = message.strip()
        if not text:
            return True
        if self._identity is None:
            await self._close_unauthorized(Unauthenticated())
            return False
        if self.client_id is None:
            log_event(logger, logging.INFO, "socket.message.before_init")
            await self._send_error(NOT_INITIALIZED_NOTICE)
            return True
        if len(text) > self._max_message_chars:
            await self._send_error(
                f"Message is too long (max {self._max_message_chars} characters)."
            )
            return True
        if not self._limiter.allow(self.client_id):
            await self._send_error(RATE_LIMITED_NOTICE)
            return True

        try:
            await self._relay.on_inbound_visitor_message(
                self.client_id, self._identity, text, handle=self._handle
            )
        except Unauthenticated as exc:
            await self._close_unauthorized(exc)
            return False
        except Blocked as exc:
            await self._close_blocked(exc)
            return False
        except SupportRelayError as exc:
            await self._send_error(exc.user_message)
        return True

    async def _send_error(self, message: str) -> None:
        await best_effort(
            self._handle.send_envelope(error_envelope(message)),
            logger=logger,
            event="socket.error_notice_failed",
            client_id=self.client_id,
        )

    async def _close_unauthorized(self, exc: Unauthenticated) -> None:
        log_event(
            logger, logging.INFO, "socket.closed.unauthorized", client_id=self.client_id
        )
        await self._send_error(exc.user_message)
        await best_effort(
            self._handle.close(CLOSE_UNAUTHORIZED, "unauthorized"),
            logger=logger,
            event="socket.close_failed",
            client_id=self.client_id,
        )

    async def _close_blocked(self, exc: Blocked) -> None:
        log_event(
            logger,
            logging.INFO,
            "socket.closed.blocked",
            client_id=self.client_id,
            subject_id=self._identity.id if self._identity else None,
            permanent=exc.status.permanent,
        )
        await self._send_error(exc.user_message)
        await self._sleep(self._blocked_close_delay_seconds)
        await best_effort(
            self._handle.close(CLOSE_BLOCKED, "blocked"),
            logger=logger,
            event="socket.close_failed",
            client_id=self.client_id,
        )
