"""Gateway connection for the support bot.

Only ``READY`` and ``MESSAGE_CREATE`` reach the event handler; every other dispatch is
dropped here. Sessions are never resumed. A dropped connection identifies again after a
jittered delay, and close codes that mean bad credentials or intents stop the bot until
it is restarted.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import platform
import random
from typing import TYPE_CHECKING, Any, Awaitable, Callable, NamedTuple, Optional

import websockets
from websockets.exceptions import ConnectionClosed

from ... import __version__
from ...core.logging_utils import log_event
from ...core.protocol import received_close_code
from .constants import (
    DISCORD_GATEWAY_URL,
    DISCORD_INTENT_GUILD_MESSAGES,
    DISCORD_INTENT_GUILDS,
    DISCORD_INTENT_MESSAGE_CONTENT,
)
from .errors import DiscordAPIError, DiscordPermanentError
from .rest import DiscordRestClient

if TYPE_CHECKING:
    from ...core.config import DiscordConfig

OP_DISPATCH = 0
OP_HEARTBEAT = 1
OP_IDENTIFY = 2
OP_RECONNECT = 7
OP_INVALID_SESSION = 9
OP_HELLO = 10
OP_HEARTBEAT_ACK = 11

EVENT_READY = "READY"
EVENT_MESSAGE_CREATE = "MESSAGE_CREATE"
SUPPORT_EVENTS = frozenset({EVENT_READY, EVENT_MESSAGE_CREATE})

# Without these the bot cannot see support channels or read what staff type.
REQUIRED_INTENTS = (
    DISCORD_INTENT_GUILDS
    | DISCORD_INTENT_GUILD_MESSAGES
    | DISCORD_INTENT_MESSAGE_CONTENT
)

# Authentication failed, invalid shard, sharding required, invalid API version,
# invalid intents, disallowed intents.
HALTING_CLOSE_CODES = frozenset({4004, 4010, 4011, 4012, 4013, 4014})

UNACKED_HEARTBEAT_CLOSE_CODE = 4000

EventHandler = Callable[[str, dict[str, Any]], Awaitable[None]]


class GatewayMessage(NamedTuple):
    op: int
    data: Any
    sequence: Optional[int]
    event: Optional[str]


def identify_frame(*, bot_token: str, intents: int) -> dict[str, Any]:
    return {
        "op": OP_IDENTIFY,
        "d": {
            "token": bot_token,
            "intents": intents,
            "properties": {
                "os": platform.system().lower() or "unknown",
                "browser": "support-relay",
                "device": f"support-relay/{__version__}",
            },
            "presence": {
                "status": "online",
                "afk": False,
                "since": None,
                # type 3 renders as "Watching support tickets".
                "activities": [{"name": "support tickets", "type": 3}],
            },
        },
    }


def decode_message(raw: str | bytes) -> GatewayMessage:
    text = raw.decode("utf-8") if isinstance(raw, (bytes, bytearray)) else raw
    try:
        payload = json.loads(text)
    except ValueError as exc:
        raise DiscordAPIError("Discord gateway sent a frame that is not JSON") from exc
    if not isinstance(payload, dict) or not isinstance(payload.get("op"), int):
        raise DiscordAPIError(f"Discord gateway frame without an op code: {text[:200]!r}")
    sequence = payload.get("s")
    event = payload.get("t")
    return GatewayMessage(
        op=payload["op"],
        data=payload.get("d"),
        sequence=sequence if isinstance(sequence, int) else None,
        event=event if isinstance(event, str) else None,
    )


def reconnect_delay(
    failures: int,
    *,
    base_seconds: float = 1.0,
    cap_seconds: float = 60.0,
    rand: Callable[[], float] = random.random,
) -> float:
    """Seconds to wait before reconnecting: half the doubled ceiling plus jitter."""
    if base_seconds <= 0.0 or cap_seconds <= 0.0:
        return 0.0
    ceiling = min(cap_seconds, base_seconds * (2 ** min(max(failures, 0), 16)))
    jitter = min(max(rand(), 0.0), 1.0)
    return ceiling / 2 + jitter * ceiling / 2


class SupportGateway:
    def __init__(
        self,
        *,
        bot_token: str,
        intents: int,
        logger: logging.Logger,
        rest: Optional[DiscordRestClient] = None,
        gateway_url: Optional[str] = None,
        reconnect_base_seconds: float = 1.0,
        rand: Callable[[], float] = random.random,
    ) -> None:
        self._bot_token = bot_token
        self._intents = intents | REQUIRED_INTENTS
        self._logger = logger
        self._rest = rest
        self._gateway_url = gateway_url
        self._reconnect_base_seconds = reconnect_base_seconds
        self._rand = rand
        self._stopping = asyncio.Event()
        self._websocket: Any = None
        self._heartbeat_task: Optional[asyncio.Task[None]] = None
        self._sequence: Optional[int] = None
        self._awaiting_ack = False
        self._ready_seen = False

    @classmethod
    def from_config(
        cls,
        config: "DiscordConfig",
        *,
        logger: logging.Logger,
        rest: Optional[DiscordRestClient] = None,
    ) -> "SupportGateway":
        return cls(
            bot_token=config.bot_token or "",
            intents=config.intents,
            logger=logger,
            rest=rest,
        )

    @property
    def intents(self) -> int:
        return self._intents

    async def stop(self) -> None:
        self._stopping.set()
        await self._cancel_heartbeat()
        websocket = self._websocket
        if websocket is not None:
            with contextlib.suppress(Exception):
                await websocket.close()

    async def run(self, handler: EventHandler) -> None:
        failures = 0
        while not self._stopping.is_set():
            try:
                await self._connect_once(handler)
            except asyncio.CancelledError:
                raise
            except DiscordPermanentError as exc:
                self._halt(str(exc))
                return
            except ConnectionClosed as exc:
                code = received_close_code(exc)
                if code in HALTING_CLOSE_CODES:
                    self._halt(f"gateway close code {code}")
                    return
                log_event(
                    self._logger, logging.INFO, "discord.gateway.closed", close_code=code
                )
            except Exception as exc:
                log_event(
                    self._logger, logging.WARNING, "discord.gateway.error", exc=exc
                )

            if self._stopping.is_set():
                break
            failures = 0 if self._ready_seen else failures + 1
            delay = reconnect_delay(
                failures, base_seconds=self._reconnect_base_seconds, rand=self._rand
            )
            log_event(
                self._logger,
                logging.INFO,
                "discord.gateway.reconnecting",
                failures=failures,
                delay_seconds=round(delay, 2),
            )
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._stopping.wait(), timeout=delay)

    def _halt(self, reason: str) -> None:
        log_event(
            self._logger,
            logging.ERROR,
            "discord.gateway.halted",
            reason=reason,
            hint="Check the bot token and the privileged intents, then restart.",
        )

    async def _gateway_address(self) -> str:
        if self._gateway_url:
            return self._gateway_url
        if self._rest is None:
            return DISCORD_GATEWAY_URL
        payload = await self._rest.get_gateway_bot()
        url = payload.get("url")
        if not isinstance(url, str) or not url:
            return DISCORD_GATEWAY_URL
        return url if "?" in url else f"{url}/?v=10&encoding=json"

    async def _connect_once(self, handler: EventHandler) -> None:
        self._ready_seen = False
        self._sequence = None
        self._awaiting_ack = False
        address = await self._gateway_address()
        async with websockets.connect(address) as websocket:
            self._websocket = websocket
            try:
                hello = decode_message(await websocket.recv())
                interval = _heartbeat_interval(hello)
                self._heartbeat_task = asyncio.create_task(
                    self._heartbeat(websocket, interval)
                )
                await websocket.send(
                    json.dumps(
                        identify_frame(bot_token=self._bot_token, intents=self._intents)
                    )
                )
                async for raw in websocket:
                    if not await self._handle(websocket, decode_message(raw), handler):
                        break
            finally:
                self._websocket = None
                await self._cancel_heartbeat()

    async def _handle(
        self, websocket: Any, message: GatewayMessage, handler: EventHandler
    ) -> bool:
        """Apply one gateway frame; ``False`` ends the connection."""
        if message.sequence is not None:
            self._sequence = message.sequence
        if message.op == OP_DISPATCH:
            if message.event == EVENT_READY:
                self._ready_seen = True
            if message.event in SUPPORT_EVENTS and isinstance(message.data, dict):
                await handler(message.event, message.data)
        elif message.op == OP_HEARTBEAT:
            await self._beat(websocket)
        elif message.op == OP_HEARTBEAT_ACK:
            self._awaiting_ack = False
        elif message.op == OP_RECONNECT:
            log_event(self._logger, logging.INFO, "discord.gateway.reconnect_requested")
            return False
        elif message.op == OP_INVALID_SESSION:
            log_event(self._logger, logging.WARNING, "discord.gateway.invalid_session")
            return False
        return True

    async def _beat(self, websocket: Any) -> None:
        self._awaiting_ack = True
        await websocket.send(json.dumps({"op": OP_HEARTBEAT, "d": self._sequence}))

    async def _heartbeat(self, websocket: Any, interval: float) -> None:
        # First beat lands at a random point in the interval.
        await asyncio.sleep(interval * self._rand())
        while True:
            if self._awaiting_ack:
                log_event(self._logger, logging.WARNING, "discord.gateway.heartbeat_unacked")
                await websocket.close(
                    code=UNACKED_HEARTBEAT_CLOSE_CODE, reason="heartbeat not acknowledged"
                )
                return
            await self._beat(websocket)
            await asyncio.sleep(interval)

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
            self._logger.debug("Gateway heartbeat ended with error: %s", exc)


def _heartbeat_interval(hello: GatewayMessage) -> float:
    if hello.op != OP_HELLO:
        raise DiscordAPIError(f"Discord gateway opened with op {hello.op}, expected HELLO")
    data = hello.data if isinstance(hello.data, dict) else {}
    interval_ms = data.get("heartbeat_interval")
    if isinstance(interval_ms, bool) or not isinstance(interval_ms, (int, float)):
        raise DiscordAPIError("Discord gateway HELLO carried no heartbeat_interval")
    if interval_ms <= 0:
        raise DiscordAPIError("Discord gateway HELLO carried no heartbeat_interval")
    return float(interval_ms) / 1000.0
