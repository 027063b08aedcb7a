from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Optional, Union

import pytest
from websockets.exceptions import ConnectionClosed
from websockets.frames import Close

from support_relay.core.config import SupportRelayConfig
from support_relay.integrations.discord import gateway as gateway_module
from support_relay.integrations.discord.constants import DISCORD_GATEWAY_URL
from support_relay.integrations.discord.errors import DiscordAPIError
from support_relay.integrations.discord.gateway import (
    REQUIRED_INTENTS,
    SupportGateway,
    decode_message,
    identify_frame,
    reconnect_delay,
)

_logger = logging.getLogger("support_relay.tests.gateway")
_END = object()


def test_identify_frame_carries_relay_properties() -> None:
    frame = identify_frame(bot_token="token", intents=REQUIRED_INTENTS)

    assert frame["op"] == 2
    assert frame["d"]["token"] == "token"
    assert frame["d"]["intents"] == REQUIRED_INTENTS
    assert frame["d"]["properties"]["browser"] == "support-relay"
    assert frame["d"]["properties"]["device"].startswith("support-relay/")
    assert frame["d"]["presence"]["activities"] == [
        {"name": "support tickets", "type": 3}
    ]


def test_decode_message() -> None:
    message = decode_message('{"op": 0, "s": 5, "t": "READY", "d": {"v": 10}}')
    assert message.op == 0
    assert message.sequence == 5
    assert message.event == "READY"
    assert message.data == {"v": 10}

    ack = decode_message(b'{"op": 11}')
    assert (ack.op, ack.sequence, ack.event) == (11, None, None)

    for bad in ('{"t": "READY"}', "[]", "not json"):
        with pytest.raises(DiscordAPIError):
            decode_message(bad)


def test_reconnect_delay() -> None:
    assert reconnect_delay(0, rand=lambda: 0.0) == 0.5
    assert reconnect_delay(0, rand=lambda: 1.0) == 1.0
    assert reconnect_delay(3, rand=lambda: 0.0) == 4.0
    assert reconnect_delay(500, rand=lambda: 0.0) == 30.0
    assert reconnect_delay(500, rand=lambda: 1.0) == 60.0
    assert reconnect_delay(-2, rand=lambda: 0.0) == 0.5
    assert reconnect_delay(4, base_seconds=0.0) == 0.0


def test_required_intents_are_always_requested(tmp_path: Path) -> None:
    bare = SupportGateway(bot_token="t", intents=0, logger=_logger)
    assert bare.intents == REQUIRED_INTENTS

    config = SupportRelayConfig.from_raw(
        root=tmp_path, raw={"discord": {"intents": 1 << 12}}, env={}
    )
    from_config = SupportGateway.from_config(config.discord, logger=_logger)
    assert from_config.intents == REQUIRED_INTENTS | (1 << 12)


class _FakeWebSocket:
    def __init__(
        self,
        frames: list[dict[str, Any]],
        *,
        heartbeat_ms: float = 45000,
        end: Optional[BaseException] = None,
    ) -> None:
        self._hello = json.dumps({"op": 10, "d": {"heartbeat_interval": heartbeat_ms}})
        self._inbox: asyncio.Queue[Union[str, object, BaseException]] = asyncio.Queue()
        for frame in frames:
            self._inbox.put_nowait(json.dumps(frame))
        if end is not None:
            self._inbox.put_nowait(end)
        self.sent: list[dict[str, Any]] = []
        self.closed_with: Optional[int] = None

    async def recv(self) -> str:
        return self._hello

    async def send(self, message: str) -> None:
        self.sent.append(json.loads(message))

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self.closed_with is None:
            self.closed_with = code
            self._inbox.put_nowait(_END)

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        while True:
            item = await self._inbox.get()
            if item is _END:
                return
            if isinstance(item, BaseException):
                raise item
            yield item

    async def __aenter__(self) -> "_FakeWebSocket":
        return self

    async def __aexit__(self, *_exc_info: object) -> None:
        return None


class _RefusedConnection:
    def __init__(self, exc: BaseException) -> None:
        self._exc = exc

    async def __aenter__(self) -> None:
        raise self._exc

    async def __aexit__(self, *_exc_info: object) -> None:
        return None


class _FakeWebSocketsModule:
    def __init__(self, connections: list[Any]) -> None:
        self._connections = list(connections)
        self.urls: list[str] = []

    def connect(self, url: str) -> Any:
        self.urls.append(url)
        return self._connections.pop(0)


def _closed(code: int) -> ConnectionClosed:
    return ConnectionClosed(Close(code, "closed"), None)


def _gateway(**kwargs: Any) -> SupportGateway:
    return SupportGateway(
        bot_token="token",
        intents=0,
        logger=_logger,
        gateway_url="wss://gateway.test",
        reconnect_base_seconds=0.0,
        rand=lambda: 0.5,
        **kwargs,
    )


@pytest.mark.anyio
async def test_only_support_events_reach_the_handler(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    websocket = _FakeWebSocket(
        [
            {"op": 0, "s": 1, "t": "READY", "d": {"user": {"username": "bot"}}},
            {"op": 0, "s": 2, "t": "GUILD_CREATE", "d": {"id": "1"}},
            {"op": 1, "d": None},
            {"op": 11},
            {"op": 0, "s": 3, "t": "MESSAGE_CREATE", "d": {"content": "hi"}},
        ]
    )
    module = _FakeWebSocketsModule([websocket])
    monkeypatch.setattr(gateway_module, "websockets", module)
    gateway = _gateway()
    seen: list[str] = []

    async def handler(event: str, payload: dict[str, Any]) -> None:
        seen.append(event)
        if event == "MESSAGE_CREATE":
            await gateway.stop()

    await gateway.run(handler)

    assert module.urls == ["wss://gateway.test"]
    assert seen == ["READY", "MESSAGE_CREATE"]
    assert websocket.sent[0]["op"] == 2
    assert websocket.sent[0]["d"]["intents"] == REQUIRED_INTENTS
    # Server-requested heartbeat answered with the latest sequence.
    assert websocket.sent[1] == {"op": 1, "d": 2}


@pytest.mark.anyio
async def test_halting_close_code_stops_without_reconnecting(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    module = _FakeWebSocketsModule([_RefusedConnection(_closed(4014))])
    monkeypatch.setattr(gateway_module, "websockets", module)

    async def handler(event: str, payload: dict[str, Any]) -> None:
        raise AssertionError("no events expected")

    await _gateway().run(handler)

    assert len(module.urls) == 1


@pytest.mark.anyio
async def test_dropped_connection_identifies_again(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    first = _FakeWebSocket(
        [{"op": 0, "s": 1, "t": "READY", "d": {}}], end=_closed(1006)
    )
    second = _FakeWebSocket([{"op": 0, "s": 1, "t": "READY", "d": {}}])
    module = _FakeWebSocketsModule([first, second])
    monkeypatch.setattr(gateway_module, "websockets", module)
    gateway = _gateway()
    ready = 0

    async def handler(event: str, payload: dict[str, Any]) -> None:
        nonlocal ready
        ready += 1
        if ready == 2:
            await gateway.stop()

    await gateway.run(handler)

    assert len(module.urls) == 2
    assert second.sent[0]["op"] == 2


@pytest.mark.anyio
async def test_unacknowledged_heartbeat_closes_the_connection(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    websocket = _FakeWebSocket([], heartbeat_ms=1)
    module = _FakeWebSocketsModule([websocket, _RefusedConnection(_closed(4004))])
    monkeypatch.setattr(gateway_module, "websockets", module)

    async def handler(event: str, payload: dict[str, Any]) -> None:
        return None

    await _gateway().run(handler)

    assert websocket.closed_with == 4000
    assert websocket.sent[1] == {"op": 1, "d": None}
    assert len(module.urls) == 2


@pytest.mark.anyio
async def test_gateway_address_comes_from_rest() -> None:
    class _Rest:
        def __init__(self, url: Optional[str]) -> None:
            self._url = url

        async def get_gateway_bot(self) -> dict[str, Any]:
            return {"url": self._url} if self._url else {}

    with_url = SupportGateway(
        bot_token="t", intents=0, logger=_logger, rest=_Rest("wss://g.test")  # type: ignore[arg-type]
    )
    without_url = SupportGateway(
        bot_token="t", intents=0, logger=_logger, rest=_Rest(None)  # type: ignore[arg-type]
    )

    assert await with_url._gateway_address() == "wss://g.test/?v=10&encoding=json"
    assert await without_url._gateway_address() == DISCORD_GATEWAY_URL
