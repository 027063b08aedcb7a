from __future__ import annotations

import contextlib
import logging
from typing import Any, Optional

from ...core.config import DiscordConfig
from ...core.logging_utils import log_event
from ...moderation.processor import ModerationCommandProcessor, ModerationRequest
from ...relay.channel_relay import ChannelRelay
from .errors import DiscordAPIError
from .events import SupportMessageEvent, parse_message_event
from .gateway import SupportGateway
from .rest import DiscordRestClient

TICKET_CLOSE_COMMAND = "/ticketclose"


class SupportBotService:
    """Gateway consumer routing Discord messages into the relay and moderation."""

    def __init__(
        self,
        config: DiscordConfig,
        *,
        logger: logging.Logger,
        relay: ChannelRelay,
        moderation: ModerationCommandProcessor,
        rest_client: Optional[DiscordRestClient] = None,
        gateway_client: Optional[SupportGateway] = None,
    ) -> None:
        self._config = config
        self._logger = logger
        self._relay = relay
        self._moderation = moderation

        self._rest = (
            rest_client
            if rest_client is not None
            else DiscordRestClient(bot_token=config.bot_token or "")
        )
        self._owns_rest = rest_client is None

        self._gateway = (
            gateway_client
            if gateway_client is not None
            else SupportGateway.from_config(config, logger=logger, rest=self._rest)
        )
        self._owns_gateway = gateway_client is None

    async def run_forever(self) -> None:
        try:
            log_event(
                self._logger,
                logging.INFO,
                "discord.bot.starting",
                guild_id=self._config.guild_id,
                support_category_id=self._config.support_category_id,
            )
            await self._gateway.run(self._on_dispatch)
        finally:
            await self._shutdown()

    async def stop(self) -> None:
        await self._gateway.stop()

    async def _shutdown(self) -> None:
        if self._owns_gateway:
            with contextlib.suppress(Exception):
                await self._gateway.stop()
        if self._owns_rest:
            with contextlib.suppress(Exception):
                await self._rest.close()

    async def _on_dispatch(self, event_type: str, payload: dict[str, Any]) -> None:
        try:
            if event_type == "READY":
                await self._verify_guild_resources(payload)
            elif event_type == "MESSAGE_CREATE":
                event = parse_message_event(payload)
                if event is not None:
                    await self._handle_message_event(event)
        except Exception as exc:
            log_event(
                self._logger,
                logging.ERROR,
                "discord.dispatch.failed",
                event_type=event_type,
                exc=exc,
            )

    async def _handle_message_event(self, event: SupportMessageEvent) -> None:
        if event.author_is_bot:
            return
        if self._config.guild_id and event.guild_id != self._config.guild_id:
            return

        if self._relay.is_support_channel(event.channel_id):
            if event.content.strip().lower() == TICKET_CLOSE_COMMAND:
                await self._relay.on_close_command(event.channel_id)
                return
            if event.content.strip():
                await self._relay.on_inbound_support_message(
                    event.channel_id, event.author_name, event.content
                )
            return

        await self._moderation.handle(
            ModerationRequest(
                channel_id=event.channel_id,
                author_id=event.author_id,
                content=event.content,
                role_ids=event.member_roles,
            )
        )

    async def _verify_guild_resources(self, payload: dict[str, Any]) -> None:
        user = payload.get("user")
        log_event(
            self._logger,
            logging.INFO,
            "discord.bot.ready",
            bot_user=user.get("username") if isinstance(user, dict) else None,
            guild_count=len(payload.get("guilds") or []),
        )
        checks: list[tuple[str, Optional[str]]] = [
            ("guild", self._config.guild_id),
            ("support_category", self._config.support_category_id),
            ("moderation_channel", self._config.moderation_channel_id),
        ]
        for name, resource_id in checks:
            if not resource_id:
                continue
            try:
                if name == "guild":
                    await self._rest.get_guild(resource_id)
                else:
                    await self._rest.get_channel(resource_id)
            except DiscordAPIError as exc:
                log_event(
                    self._logger,
                    logging.WARNING,
                    "discord.bot.resource_missing",
                    resource=name,
                    resource_id=resource_id,
                    exc=exc,
                )


def create_support_bot_service(
    config: DiscordConfig,
    *,
    logger: logging.Logger,
    relay: ChannelRelay,
    moderation: ModerationCommandProcessor,
    rest_client: Optional[DiscordRestClient] = None,
) -> SupportBotService:
    return SupportBotService(
        config,
        logger=logger,
        relay=relay,
        moderation=moderation,
        rest_client=rest_client,
    )
