from __future__ import annotations

import re
from typing import Optional

from ...core.errors import ChannelCreateFailure, RelayDeliveryFailure
from ...core.text_chunking import chunk_text
from .constants import (
    DISCORD_MAX_CHANNEL_NAME_LENGTH,
    DISCORD_MAX_MESSAGE_LENGTH,
    DISCORD_MAX_TOPIC_LENGTH,
)
from .errors import DiscordAPIError
from .rest import DiscordRestClient

_SLUG_INVALID = re.compile(r"[^a-z0-9-]+")

NO_MENTIONS = {"parse": []}


def support_channel_name(client_id: str) -> str:
    slug = _SLUG_INVALID.sub("-", client_id.lower()).strip("-") or "visitor"
    return f"support-{slug}"[:DISCORD_MAX_CHANNEL_NAME_LENGTH]


def support_channel_topic(client_id: str, identity_label: Optional[str]) -> str:
    who = identity_label or "anonymous visitor"
    return f"Support ticket for {who} (client {client_id})"[:DISCORD_MAX_TOPIC_LENGTH]


class DiscordSupportChannels:
    """Chat-platform adapter used by the relay: per-visitor channels in one category."""

    def __init__(
        self,
        rest: DiscordRestClient,
        *,
        guild_id: str,
        category_id: Optional[str],
    ) -> None:
        self._rest = rest
        self._guild_id = guild_id
        self._category_id = category_id

    async def create_channel(
        self, client_id: str, identity_label: Optional[str]
    ) -> str:
        try:
            payload = await self._rest.create_guild_channel(
                guild_id=self._guild_id,
                name=support_channel_name(client_id),
                parent_id=self._category_id,
                topic=support_channel_topic(client_id, identity_label),
                reason=f"Support ticket for client {client_id}",
            )
        except DiscordAPIError as exc:
            raise ChannelCreateFailure(f"channel creation failed: {exc}") from exc
        channel_id = payload.get("id")
        if not isinstance(channel_id, str) or not channel_id:
            raise ChannelCreateFailure("channel creation returned no channel id")
        return channel_id

    async def send_message(self, channel_id: str, text: str) -> None:
        for chunk in chunk_text(text, max_len=DISCORD_MAX_MESSAGE_LENGTH):
            try:
                await self._rest.create_channel_message(
                    channel_id=channel_id,
                    payload={"content": chunk, "allowed_mentions": NO_MENTIONS},
                )
            except DiscordAPIError as exc:
                raise RelayDeliveryFailure(
                    f"send to channel {channel_id} failed: {exc}",
                    channel_gone=exc.status_code == 404,
                ) from exc

    async def delete_channel(self, channel_id: str, reason: str) -> None:
        try:
            await self._rest.delete_channel(channel_id=channel_id, reason=reason)
        except DiscordAPIError as exc:
            if exc.status_code == 404:
                return
            raise RelayDeliveryFailure(
                f"delete of channel {channel_id} failed: {exc}"
            ) from exc
