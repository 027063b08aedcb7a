from __future__ import annotations

import asyncio
import logging
import sqlite3
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Protocol

from ..core.blocks import BlockRegistry, BlockStatus
from ..core.errors import (
    Blocked,
    ChannelCreateFailure,
    ProtocolError,
    RelayDeliveryFailure,
    RelayTargetOffline,
    Unauthenticated,
)
from ..core.history import DIRECTION_SUPPORT, DIRECTION_VISITOR, HistoryLog
from ..core.logging_utils import log_event
from ..core.protocol import (
    ENVELOPE_MESSAGE,
    ENVELOPE_MESSAGE_SENT,
    SENDER_SUPPORT,
    build_envelope,
    status_envelope,
)
from ..core.sessions import PublicIdentity
from ..core.time_utils import Clock, now_ms
from .notify import best_effort

logger = logging.getLogger(__name__)

TICKET_CREATED_NOTICE = (
    "Your message has been delivered. Please wait for a reply from support."
)
TICKET_CLOSED_NOTICE = (
    "This chat was closed by support. Open a new chat if you have other questions."
)
CHANNEL_DELETE_FAILED_NOTICE = (
    "Could not delete this channel. Check the bot's permissions."
)
CLOSE_REASON = "Ticket closed by command."


class ConnectionHandle(Protocol):
    @property
    def is_open(self) -> bool: ...

    async def send_envelope(self, envelope: dict[str, Any]) -> None: ...

    async def close(self, code: int = 1000, reason: str = "") -> None: ...


class SupportChannelPlatform(Protocol):
    async def create_channel(
        self, client_id: str, identity_label: Optional[str]
    ) -> str: ...

    async def send_message(self, channel_id: str, text: str) -> None: ...

    async def delete_channel(self, channel_id: str, reason: str) -> None: ...


@dataclass
class ConnectionEntry:
    client_id: str
    handle: ConnectionHandle
    identity: Optional[PublicIdentity]


class ChannelRelay:
    """Routes messages between live visitor connections and their support channels.

    Owns the connection table and the two mapping tables. ``client -> channel`` and
    ``channel -> client`` are only ever changed together, so they stay mutual
    inverses. A client id may hold several live connections (one per browser tab);
    staff replies reach every open one, and the mapping is dropped only when the
    last of them closes. All mutation happens on the event loop thread; no locking
    is used.
    """

    def __init__(
        self,
        *,
        platform: SupportChannelPlatform,
        blocks: BlockRegistry,
        history: HistoryLog,
        close_grace_seconds: float = 1.0,
        clock: Clock = now_ms,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._platform = platform
        self._blocks = blocks
        self._history = history
        self._close_grace_seconds = close_grace_seconds
        self._clock = clock
        self._sleep = sleep
        self._connections: dict[str, list[ConnectionEntry]] = {}
        self._client_to_channel: dict[str, str] = {}
        self._channel_to_client: dict[str, str] = {}
        self._pending_creations: dict[str, asyncio.Future[str]] = {}
        self._background: set[asyncio.Task[None]] = set()

    # lookups

    def channel_for_client(self, client_id: str) -> Optional[str]:
        return self._client_to_channel.get(client_id)

    def client_for_channel(self, channel_id: str) -> Optional[str]:
        return self._channel_to_client.get(channel_id)

    def connection_for(self, client_id: str) -> Optional[ConnectionEntry]:
        """Most recently bound connection for ``client_id``."""
        entries = self._connections.get(client_id)
        return entries[-1] if entries else None

    def connections_for(self, client_id: str) -> list[ConnectionEntry]:
        return list(self._connections.get(client_id, ()))

    def is_support_channel(self, channel_id: str) -> bool:
        return channel_id in self._channel_to_client

    def mappings(self) -> dict[str, str]:
        return dict(self._client_to_channel)

    def channel_mappings(self) -> dict[str, str]:
        return dict(self._channel_to_client)

    @property
    def connection_count(self) -> int:
        return sum(len(entries) for entries in self._connections.values())

    # connection table

    def bind_client(
        self,
        client_id: str,
        handle: ConnectionHandle,
        identity: Optional[PublicIdentity],
    ) -> ConnectionEntry:
        """Register ``handle`` as a live connection for ``client_id``.

        Binding the same handle again refreshes its identity without adding a tab.
        """
        entries = self._connections.setdefault(client_id, [])
        entries[:] = [existing for existing in entries if existing.handle is not handle]
        entry = ConnectionEntry(client_id=client_id, handle=handle, identity=identity)
        entries.append(entry)
        log_event(
            logger,
            logging.INFO,
            "relay.connection.bound",
            client_id=client_id,
            subject_id=identity.id if identity else None,
            open_tabs=len(entries),
        )
        return entry

    def on_connection_closed(
        self, client_id: str, handle: Optional[ConnectionHandle] = None
    ) -> None:
        """Drop one connection, or all of them when ``handle`` is ``None``.

        Live routing goes away with the last connection; the channel itself is kept.
        """
        entries = self._connections.get(client_id)
        if not entries:
            return
        remaining: list[ConnectionEntry] = []
        if handle is not None:
            remaining = [entry for entry in entries if entry.handle is not handle]
            if len(remaining) == len(entries):
                return
        if remaining:
            self._connections[client_id] = remaining
            log_event(
                logger,
                logging.INFO,
                "relay.connection.tab_closed",
                client_id=client_id,
                open_tabs=len(remaining),
            )
            return
        del self._connections[client_id]
        channel_id = self._remove_mapping_for_client(client_id)
        log_event(
            logger,
            logging.INFO,
            "relay.connection.closed",
            client_id=client_id,
            channel_id=channel_id,
        )

    # gating

    async def ensure_may_send(
        self, identity: Optional[PublicIdentity]
    ) -> PublicIdentity:
        if identity is None:
            raise Unauthenticated()
        status = await self._block_status(identity.id)
        if status.blocked:
            raise Blocked(
                status,
                user_message=f"You are {status.describe(self._clock())}",
            )
        return identity

    async def _block_status(self, subject_id: str) -> BlockStatus:
        try:
            return await self._blocks.is_blocked(subject_id)
        except sqlite3.Error as exc:
            log_event(
                logger,
                logging.WARNING,
                "relay.block_check_failed",
                subject_id=subject_id,
                exc=exc,
            )
            return BlockStatus(blocked=False)

    # visitor -> support

    async def on_inbound_visitor_message(
        self,
        client_id: str,
        identity: Optional[PublicIdentity],
        text: str,
        *,
        handle: Optional[ConnectionHandle] = None,
    ) -> str:
        """Forward visitor text to the client's channel, creating it on first use.

        The echo goes to ``handle`` (the sending tab), or to the most recently
        bound connection when it is not given.

        Raises :class:`Unauthenticated`, :class:`Blocked`, :class:`ChannelCreateFailure`
        or :class:`RelayDeliveryFailure`. Returns the channel id used.
        """
        identity = await self.ensure_may_send(identity)
        entry = self._entry_for(client_id, handle)
        if entry is None:
            raise ProtocolError(f"client {client_id} has not sent init")

        channel_id, created = await self._ensure_channel(client_id, identity)
        await best_effort(
            self._history.append(
                identity.id,
                author=identity.username,
                content=text,
                direction=DIRECTION_VISITOR,
            ),
            logger=logger,
            event="relay.history.append_failed",
            client_id=client_id,
        )
        try:
            await self._platform.send_message(channel_id, text)
        except RelayDeliveryFailure as exc:
            if exc.channel_gone:
                self._remove_mapping_for_client(client_id)
            log_event(
                logger,
                logging.WARNING,
                "relay.visitor.forward_failed",
                client_id=client_id,
                channel_id=channel_id,
                channel_gone=exc.channel_gone,
                exc=exc,
            )
            raise

        await best_effort(
            entry.handle.send_envelope(build_envelope(ENVELOPE_MESSAGE_SENT, text)),
            logger=logger,
            event="relay.visitor.echo_failed",
            client_id=client_id,
        )
        if created:
            await best_effort(
                entry.handle.send_envelope(
                    build_envelope(ENVELOPE_MESSAGE, TICKET_CREATED_NOTICE)
                ),
                logger=logger,
                event="relay.visitor.ticket_notice_failed",
                client_id=client_id,
            )
        log_event(
            logger,
            logging.INFO,
            "relay.visitor.forwarded",
            client_id=client_id,
            channel_id=channel_id,
            created=created,
        )
        return channel_id

    async def _ensure_channel(
        self, client_id: str, identity: PublicIdentity
    ) -> tuple[str, bool]:
        existing = self._client_to_channel.get(client_id)
        if existing is not None:
            return existing, False
        pending = self._pending_creations.get(client_id)
        if pending is not None:
            # Creation already in flight for this client: share its outcome.
            return await asyncio.shield(pending), False

        future: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        self._pending_creations[client_id] = future
        failure: Optional[ChannelCreateFailure] = None
        try:
            channel_id = await self._platform.create_channel(client_id, identity.label)
        except asyncio.CancelledError:
            failure = ChannelCreateFailure("channel creation cancelled")
            raise
        except ChannelCreateFailure as exc:
            failure = exc
            raise
        except Exception as exc:
            failure = ChannelCreateFailure(f"channel creation failed: {exc}")
            raise failure from exc
        finally:
            self._pending_creations.pop(client_id, None)
            if failure is not None:
                future.set_exception(failure)
                # Mark retrieved so an unawaited failure is not reported by asyncio.
                future.exception()
                log_event(
                    logger,
                    logging.WARNING,
                    "relay.channel.create_failed",
                    client_id=client_id,
                    exc=failure,
                )

        future.set_result(channel_id)
        if self._connections.get(client_id):
            self._set_mapping(client_id, channel_id)
        else:
            log_event(
                logger,
                logging.INFO,
                "relay.channel.orphaned",
                client_id=client_id,
                channel_id=channel_id,
            )
        log_event(
            logger,
            logging.INFO,
            "relay.channel.created",
            client_id=client_id,
            channel_id=channel_id,
        )
        return channel_id, True

    # support -> visitor

    async def on_inbound_support_message(
        self, channel_id: str, author: str, text: str
    ) -> bool:
        """Deliver a staff reply to the mapped live connection; returns delivered."""
        client_id = self._channel_to_client.get(channel_id)
        targets = self._open_entries(client_id) if client_id is not None else []
        if not targets:
            log_event(
                logger,
                logging.INFO,
                "relay.support.dropped",
                channel_id=channel_id,
                client_id=client_id,
                exc=RelayTargetOffline(f"no live connection for channel {channel_id}"),
            )
            return False

        latest = targets[-1]
        subject_id = latest.identity.id if latest.identity else latest.client_id
        await best_effort(
            self._history.append(
                subject_id, author=author, content=text, direction=DIRECTION_SUPPORT
            ),
            logger=logger,
            event="relay.history.append_failed",
            client_id=latest.client_id,
        )
        envelope = build_envelope(
            ENVELOPE_MESSAGE, text, sender=SENDER_SUPPORT, author=author
        )
        delivered = 0
        for entry in targets:
            if await best_effort(
                entry.handle.send_envelope(envelope),
                logger=logger,
                event="relay.support.deliver_failed",
                client_id=entry.client_id,
                channel_id=channel_id,
            ):
                delivered += 1
        if delivered:
            log_event(
                logger,
                logging.INFO,
                "relay.support.delivered",
                channel_id=channel_id,
                client_id=latest.client_id,
                tabs=delivered,
            )
        return delivered > 0

    # ticket close

    async def on_close_command(self, channel_id: str) -> bool:
        """Close the ticket mapped to ``channel_id``.

        Order: notify the visitor, schedule their socket close after the grace
        delay, drop both mapping directions, then delete the channel. Returns
        ``False`` when the channel is not a mapped support channel.
        """
        client_id = self._channel_to_client.get(channel_id)
        if client_id is None:
            return False
        for entry in self._open_entries(client_id):
            await best_effort(
                entry.handle.send_envelope(status_envelope(TICKET_CLOSED_NOTICE)),
                logger=logger,
                event="relay.close.notice_failed",
                client_id=client_id,
            )
            self._spawn(self._close_after_grace(entry.handle, client_id))
        self._remove_mapping_for_channel(channel_id)
        log_event(
            logger,
            logging.INFO,
            "relay.channel.closed",
            client_id=client_id,
            channel_id=channel_id,
        )
        try:
            await self._platform.delete_channel(channel_id, CLOSE_REASON)
        except Exception as exc:
            log_event(
                logger,
                logging.WARNING,
                "relay.channel.delete_failed",
                channel_id=channel_id,
                exc=exc,
            )
            await best_effort(
                self._platform.send_message(channel_id, CHANNEL_DELETE_FAILED_NOTICE),
                logger=logger,
                event="relay.channel.delete_notice_failed",
                channel_id=channel_id,
            )
        return True

    async def _close_after_grace(
        self, handle: ConnectionHandle, client_id: str
    ) -> None:
        await self._sleep(self._close_grace_seconds)
        await best_effort(
            handle.close(1000, "ticket closed"),
            logger=logger,
            event="relay.close.socket_close_failed",
            client_id=client_id,
        )

    def _spawn(self, coro: Awaitable[None]) -> None:
        task: asyncio.Task[None] = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def wait_background(self) -> None:
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def aclose(self) -> None:
        for task in list(self._background):
            task.cancel()
        await asyncio.gather(*list(self._background), return_exceptions=True)
        self._background.clear()

    # connection and mapping tables

    def _entry_for(
        self, client_id: str, handle: Optional[ConnectionHandle]
    ) -> Optional[ConnectionEntry]:
        if handle is None:
            return self.connection_for(client_id)
        for entry in self._connections.get(client_id, ()):
            if entry.handle is handle:
                return entry
        return None

    def _open_entries(self, client_id: str) -> list[ConnectionEntry]:
        return [
            entry
            for entry in self._connections.get(client_id, ())
            if entry.handle.is_open
        ]

    def _set_mapping(self, client_id: str, channel_id: str) -> None:
        self._remove_mapping_for_client(client_id)
        self._remove_mapping_for_channel(channel_id)
        self._client_to_channel[client_id] = channel_id
        self._channel_to_client[channel_id] = client_id

    def _remove_mapping_for_client(self, client_id: str) -> Optional[str]:
        channel_id = self._client_to_channel.pop(client_id, None)
        if channel_id is not None:
            self._channel_to_client.pop(channel_id, None)
        return channel_id

    def _remove_mapping_for_channel(self, channel_id: str) -> Optional[str]:
        client_id = self._channel_to_client.pop(channel_id, None)
        if client_id is not None:
            self._client_to_channel.pop(client_id, None)
        return client_id
