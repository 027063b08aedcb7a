from __future__ import annotations

import asyncio
import json
from typing import Any, Optional, Union

import pytest
from websockets.exceptions import ConnectionClosed
from websockets.frames import Close

from support_relay.client.lifecycle import (
    CONNECTION_LOST_NOTICE,
    NOT_READY_NOTICE,
    ORIGIN_BOT,
    ORIGIN_SYSTEM,
    ORIGIN_USER,
    SERVER_CLOSED_NOTICE,
    ConnectionLifecycle,
    LifecycleState,
    TranscriptEntry,
)


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _closed(code: int, reason: str = "") -> ConnectionClosed:
    return ConnectionClosed(Close(code, reason), None)


class _FakeTransport:
    def __init__(
        self,
        items: Optional[list[Union[str, BaseException]]] = None,
        *,
        clock: Optional[_Clock] = None,
        lived_seconds: float = 0.0,
    ) -> None:
        self.inbox: asyncio.Queue[Union[str, BaseException]] = asyncio.Queue()
        for item in items or []:
            self.inbox.put_nowait(item)
        self.sent: list[dict[str, Any]] = []
        self.closed: Optional[tuple[int, str]] = None
        self._clock = clock
        self._lived_seconds = lived_seconds

    async def send(self, message: str) -> None:
        self.sent.append(json.loads(message))

    async def recv(self) -> str:
        item = await self.inbox.get()
        if isinstance(item, BaseException):
            if self._clock is not None:
                self._clock.now += self._lived_seconds
            raise item
        return item

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed = (code, reason)


class _Connector:
    def __init__(self, plan: Optional[list[Union[_FakeTransport, Exception]]] = None):
        self.plan = list(plan or [])
        self.calls: list[tuple[str, dict[str, str]]] = []

    async def __call__(self, url: str, headers: dict[str, str]) -> _FakeTransport:
        self.calls.append((url, dict(headers)))
        item: Union[_FakeTransport, Exception] = (
            self.plan.pop(0) if self.plan else OSError("connection refused")
        )
        if isinstance(item, Exception):
            raise item
        return item


class _Sleeps:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def _lifecycle(
    connector: _Connector,
    sleeps: _Sleeps,
    *,
    clock: Optional[_Clock] = None,
    session_id: Optional[str] = None,
) -> ConnectionLifecycle:
    return ConnectionLifecycle(
        url="ws://relay.test/ws",
        client_id="user-abc",
        session_id=session_id,
        connect=connector,
        sleep=sleeps,
        clock=clock or _Clock(),
        heartbeat_seconds=3600.0,
        reconnect_delay_seconds=3.0,
        max_reconnect_attempts=3,
        reconnect_reset_seconds=30.0,
    )


async def _wait_for(predicate) -> None:
    for _ in range(500):
        if predicate():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition not reached")


@pytest.mark.anyio
async def test_reconnect_storm_stops_after_three_connects() -> None:
    connector = _Connector()
    sleeps = _Sleeps()
    lifecycle = _lifecycle(connector, sleeps)

    lifecycle.open()
    await lifecycle.wait_settled()

    assert lifecycle.connect_attempts == 3
    assert len(connector.calls) == 3
    assert sleeps.calls == [3.0, 3.0]
    assert lifecycle.state is LifecycleState.CLOSED
    assert lifecycle.transcript[-1] == TranscriptEntry(ORIGIN_SYSTEM, CONNECTION_LOST_NOTICE)


@pytest.mark.anyio
@pytest.mark.parametrize("code", [4001, 4002])
async def test_terminal_close_codes_never_reconnect(code: int) -> None:
    transport = _FakeTransport([_closed(code, "go away")])
    connector = _Connector([transport])
    sleeps = _Sleeps()
    lifecycle = _lifecycle(connector, sleeps)

    lifecycle.open()
    await lifecycle.wait_settled()

    assert len(connector.calls) == 1
    assert sleeps.calls == []
    assert lifecycle.transcript[-1] == TranscriptEntry(ORIGIN_SYSTEM, SERVER_CLOSED_NOTICE)


@pytest.mark.anyio
async def test_long_lived_connections_reset_the_counter() -> None:
    clock = _Clock()
    connector = _Connector(
        [
            _FakeTransport([_closed(1006)], clock=clock, lived_seconds=60.0),
            _FakeTransport([_closed(1006)], clock=clock, lived_seconds=60.0),
            _FakeTransport([_closed(1006)], clock=clock, lived_seconds=1.0),
        ]
    )
    sleeps = _Sleeps()
    lifecycle = _lifecycle(connector, sleeps, clock=clock)

    lifecycle.open()
    await lifecycle.wait_settled()

    # Two resets, then the short third transport and one refused connect use up the budget.
    assert len(connector.calls) == 4
    assert sleeps.calls == [3.0, 3.0, 3.0]
    assert lifecycle.transcript[-1].text == CONNECTION_LOST_NOTICE


@pytest.mark.anyio
async def test_init_frame_and_envelope_dispatch() -> None:
    transport = _FakeTransport(
        [
            json.dumps({"type": "message_sent", "message": "hello"}),
            json.dumps(
                {"type": "message", "message": "hi!", "sender": "support", "author": "Ann"}
            ),
            json.dumps({"type": "error", "message": "slow down"}),
            "not json",
            json.dumps({"type": "status", "message": "closed by support"}),
            _closed(4001),
        ]
    )
    connector = _Connector([transport])
    seen: list[TranscriptEntry] = []
    lifecycle = ConnectionLifecycle(
        url="ws://relay.test/ws",
        client_id="user-abc",
        session_id="sess-1",
        connect=connector,
        sleep=_Sleeps(),
        heartbeat_seconds=3600.0,
        on_entry=seen.append,
    )

    lifecycle.open()
    await lifecycle.wait_settled()

    assert connector.calls == [
        ("ws://relay.test/ws", {"Cookie": "sessionId=sess-1"})
    ]
    assert transport.sent[0] == {"type": "init", "clientId": "user-abc"}
    assert lifecycle.transcript == [
        TranscriptEntry(ORIGIN_USER, "hello"),
        TranscriptEntry(ORIGIN_BOT, "hi!", author="Ann"),
        TranscriptEntry(ORIGIN_SYSTEM, "slow down"),
        TranscriptEntry(ORIGIN_SYSTEM, "closed by support"),
        TranscriptEntry(ORIGIN_SYSTEM, SERVER_CLOSED_NOTICE),
    ]
    assert seen == lifecycle.transcript


@pytest.mark.anyio
async def test_send_requires_ready_connection() -> None:
    transport = _FakeTransport()
    connector = _Connector([transport])
    lifecycle = _lifecycle(connector, _Sleeps())

    assert await lifecycle.send_text("too early") is False
    assert lifecycle.transcript == [TranscriptEntry(ORIGIN_SYSTEM, NOT_READY_NOTICE)]

    lifecycle.open()
    await _wait_for(lambda: lifecycle.state is LifecycleState.READY)
    assert await lifecycle.send_text("  hello  ") is True
    assert await lifecycle.send_text("   ") is False
    assert transport.sent[-1] == {"type": "message", "message": "hello"}

    await lifecycle.close()


@pytest.mark.anyio
async def test_explicit_close_cancels_everything() -> None:
    transport = _FakeTransport()
    connector = _Connector([transport])
    sleeps = _Sleeps()
    lifecycle = _lifecycle(connector, sleeps)

    lifecycle.open()
    lifecycle.open()
    await _wait_for(lambda: lifecycle.state is LifecycleState.READY)
    await lifecycle.close()

    assert transport.closed == (1000, "client closed")
    assert lifecycle.state is LifecycleState.CLOSED
    assert lifecycle.reconnect_attempts == 0
    await asyncio.sleep(0.05)
    assert len(connector.calls) == 1
    assert sleeps.calls == []


@pytest.mark.anyio
async def test_auth_success_reconnects_with_session_cookie() -> None:
    first, second = _FakeTransport(), _FakeTransport()
    connector = _Connector([first, second])
    lifecycle = _lifecycle(connector, _Sleeps())

    lifecycle.open()
    await _wait_for(lambda: lifecycle.state is LifecycleState.READY)
    await lifecycle.on_auth_success("sess-9")
    await _wait_for(lambda: len(connector.calls) == 2)
    await _wait_for(lambda: lifecycle.state is LifecycleState.READY)

    assert connector.calls[0][1] == {}
    assert connector.calls[1][1] == {"Cookie": "sessionId=sess-9"}
    assert first.closed == (1000, "client closed")
    assert second.sent[0] == {"type": "init", "clientId": "user-abc"}

    await lifecycle.close()
