from __future__ import annotations

import logging
from typing import Any

import pytest

from support_relay.core.config import SupportRelayConfig
from support_relay.integrations.discord.errors import DiscordAPIError
from support_relay.integrations.discord.service import SupportBotService
from support_relay.moderation.processor import ModerationRequest


class _FakeRelay:
    def __init__(self, support_channels: set[str]) -> None:
        self._support_channels = support_channels
        self.closed: list[str] = []
        self.replies: list[tuple[str, str, str]] = []

    def is_support_channel(self, channel_id: str) -> bool:
        return channel_id in self._support_channels

    async def on_close_command(self, channel_id: str) -> bool:
        self.closed.append(channel_id)
        return True

    async def on_inbound_support_message(
        self, channel_id: str, author: str, text: str
    ) -> bool:
        self.replies.append((channel_id, author, text))
        return True


class _FakeModeration:
    def __init__(self) -> None:
        self.requests: list[ModerationRequest] = []

    async def handle(self, request: ModerationRequest) -> bool:
        self.requests.append(request)
        return True


class _FakeRest:
    def __init__(self) -> None:
        self.lookups: list[str] = []
        self.closed = False

    async def get_guild(self, guild_id: str) -> dict[str, Any]:
        self.lookups.append(f"guild:{guild_id}")
        return {"id": guild_id}

    async def get_channel(self, channel_id: str) -> dict[str, Any]:
        self.lookups.append(f"channel:{channel_id}")
        if channel_id == "mod-chan":
            raise DiscordAPIError("Unknown Channel", status_code=404)
        return {"id": channel_id}

    async def close(self) -> None:
        self.closed = True


class _FakeGateway:
    def __init__(self, events: list[tuple[str, dict[str, Any]]]) -> None:
        self._events = events
        self.stopped = False

    async def run(self, on_dispatch) -> None:
        for event_type, payload in self._events:
            await on_dispatch(event_type, payload)

    async def stop(self) -> None:
        self.stopped = True


def _config(tmp_path) -> SupportRelayConfig:
    return SupportRelayConfig.from_raw(
        root=tmp_path,
        raw={
            "discord": {
                "guild_id": "guild-1",
                "support_category_id": "cat-1",
                "moderation_channel_id": "mod-chan",
            }
        },
        env={},
    )


def _message(channel_id: str, content: str, **overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": "m1",
        "channel_id": channel_id,
        "guild_id": "guild-1",
        "content": content,
        "author": {"id": "staff-1", "username": "staff"},
        "member": {"roles": ["role-1"], "nick": "Agent"},
    }
    payload.update(overrides)
    return payload


@pytest.mark.anyio
async def test_routes_support_replies_close_commands_and_moderation(tmp_path) -> None:
    relay = _FakeRelay({"chan-1"})
    moderation = _FakeModeration()
    rest = _FakeRest()
    gateway = _FakeGateway(
        [
            ("READY", {"user": {"username": "bot"}, "guilds": [{"id": "guild-1"}]}),
            ("MESSAGE_CREATE", _message("chan-1", "hello from support")),
            ("MESSAGE_CREATE", _message("chan-1", "  /TicketClose ")),
            ("MESSAGE_CREATE", _message("chan-1", "   ")),
            ("MESSAGE_CREATE", _message("mod-chan", "/mute 30 123456789012345678")),
            (
                "MESSAGE_CREATE",
                _message(
                    "chan-1",
                    "from a bot",
                    author={"id": "bot-1", "username": "other", "bot": True},
                ),
            ),
            ("MESSAGE_CREATE", _message("chan-1", "other guild", guild_id="guild-2")),
            ("TYPING_START", {"channel_id": "chan-1"}),
        ]
    )
    service = SupportBotService(
        _config(tmp_path).discord,
        logger=logging.getLogger("test.discord"),
        relay=relay,  # type: ignore[arg-type]
        moderation=moderation,  # type: ignore[arg-type]
        rest_client=rest,  # type: ignore[arg-type]
        gateway_client=gateway,  # type: ignore[arg-type]
    )

    await service.run_forever()

    assert relay.replies == [("chan-1", "Agent", "hello from support")]
    assert relay.closed == ["chan-1"]
    assert moderation.requests == [
        ModerationRequest(
            channel_id="mod-chan",
            author_id="staff-1",
            content="/mute 30 123456789012345678",
            role_ids=frozenset({"role-1"}),
        )
    ]
    assert rest.lookups == [
        "guild:guild-1",
        "channel:cat-1",
        "channel:mod-chan",
    ]
    # Injected clients are owned by the caller.
    assert rest.closed is False
    assert gateway.stopped is False


@pytest.mark.anyio
async def test_dispatch_errors_do_not_stop_the_bot(tmp_path) -> None:
    class _ExplodingRelay(_FakeRelay):
        async def on_inbound_support_message(
            self, channel_id: str, author: str, text: str
        ) -> bool:
            raise RuntimeError("boom")

    relay = _ExplodingRelay({"chan-1"})
    gateway = _FakeGateway(
        [
            ("MESSAGE_CREATE", _message("chan-1", "first")),
            ("MESSAGE_CREATE", _message("chan-1", "/ticketclose")),
        ]
    )
    service = SupportBotService(
        _config(tmp_path).discord,
        logger=logging.getLogger("test.discord"),
        relay=relay,  # type: ignore[arg-type]
        moderation=_FakeModeration(),  # type: ignore[arg-type]
        rest_client=_FakeRest(),  # type: ignore[arg-type]
        gateway_client=gateway,  # type: ignore[arg-type]
    )
    await service.run_forever()
    assert relay.closed == ["chan-1"]
