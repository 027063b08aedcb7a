from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from ...core.blocks import BlockRegistry
from ...core.config import SupportRelayConfig
from ...core.errors import ChannelCreateFailure
from ...core.history import HistoryLog
from ...core.logging_utils import log_event, safe_log, setup_rotating_logger
from ...core.protocol import CLOSE_SERVICE_RESTART
from ...core.rate_limit import AuthRateLimiter, MessageRateLimiter
from ...core.sessions import SessionStore
from ...core.state import SupportStateStore
from ...identity.gateway import IdentityGateway
from ...integrations.discord.channels import DiscordSupportChannels
from ...integrations.discord.constants import DISCORD_MAX_MESSAGE_LENGTH
from ...integrations.discord.oauth import DiscordOAuthClient
from ...integrations.discord.permissions import AdminPolicy, has_admin_capability
from ...integrations.discord.rest import DiscordRestClient
from ...integrations.discord.service import (
    SupportBotService,
    create_support_bot_service,
)
from ...moderation.processor import ModerationCommandProcessor
from ...relay.channel_relay import ChannelRelay, SupportChannelPlatform
from .routes.auth import build_auth_routes
from .routes.socket import build_socket_routes
from .schemas import HealthResponse


@dataclass
class AppServices:
    config: SupportRelayConfig
    store: SupportStateStore
    sessions: SessionStore
    blocks: BlockRegistry
    history: HistoryLog
    relay: ChannelRelay
    message_limiter: MessageRateLimiter
    identity: Optional[IdentityGateway] = None
    moderation: Optional[ModerationCommandProcessor] = None
    bot: Optional[SupportBotService] = None
    closers: list[Callable[[], Awaitable[None]]] = field(default_factory=list)


class _UnconfiguredPlatform:
    """Support channel platform used when Discord is disabled."""

    async def create_channel(self, client_id: str, identity_label: Optional[str]) -> str:
        raise ChannelCreateFailure("Discord support channels are not configured")

    async def send_message(self, channel_id: str, text: str) -> None:
        return None

    async def delete_channel(self, channel_id: str, reason: str) -> None:
        return None


def build_app_services(
    config: SupportRelayConfig, *, logger: logging.Logger
) -> AppServices:
    store = SupportStateStore(config.state_file)
    sessions = SessionStore(store, duration_ms=config.auth.session_duration_ms)
    blocks = BlockRegistry(store)
    history = HistoryLog(store)
    limiter = MessageRateLimiter(max_messages=config.relay.message_rate_limit)
    discord = config.discord

    platform: SupportChannelPlatform = _UnconfiguredPlatform()
    rest: Optional[DiscordRestClient] = None
    oauth: Optional[DiscordOAuthClient] = None
    closers: list[Callable[[], Awaitable[None]]] = []
    if discord.enabled and discord.bot_token and discord.guild_id:
        rest = DiscordRestClient(bot_token=discord.bot_token)
        closers.append(rest.close)
        platform = DiscordSupportChannels(
            rest, guild_id=discord.guild_id, category_id=discord.support_category_id
        )
    if discord.enabled and discord.oauth_client_id and discord.oauth_client_secret:
        oauth = DiscordOAuthClient(
            client_id=discord.oauth_client_id,
            client_secret=discord.oauth_client_secret,
            redirect_uri=discord.redirect_uri,
            scopes=discord.scopes,
        )
        closers.append(oauth.close)

    relay = ChannelRelay(
        platform=platform,
        blocks=blocks,
        history=history,
        close_grace_seconds=config.relay.close_grace_seconds,
    )
    services = AppServices(
        config=config,
        store=store,
        sessions=sessions,
        blocks=blocks,
        history=history,
        relay=relay,
        message_limiter=limiter,
        closers=closers,
    )
    if oauth is not None:
        services.identity = IdentityGateway(
            provider=oauth,
            sessions=sessions,
            rate_limiter=AuthRateLimiter(
                store,
                max_attempts=config.auth.rate_limit_attempts,
                window_ms=config.auth.rate_limit_window_seconds * 1000,
            ),
            store=store,
            state_ttl_ms=config.auth.state_ttl_seconds * 1000,
        )
    if rest is not None:
        policy = AdminPolicy(
            guild_id=discord.guild_id,
            admin_user_ids=discord.admin_user_ids,
            admin_role_ids=discord.admin_role_ids,
        )
        discord_rest = rest

        async def is_admin(user_id: str, role_ids: frozenset[str]) -> bool:
            return await has_admin_capability(
                discord_rest, policy, user_id=user_id, role_ids=role_ids
            )

        services.moderation = ModerationCommandProcessor(
            blocks=blocks,
            history=history,
            is_admin=is_admin,
            reply=platform.send_message,
            moderation_channel_id=discord.moderation_channel_id,
            history_page_size=config.relay.history_page_size,
            max_reply_chars=DISCORD_MAX_MESSAGE_LENGTH,
        )
        services.bot = create_support_bot_service(
            discord,
            logger=logger,
            relay=relay,
            moderation=services.moderation,
            rest_client=rest,
        )
    return services


def _app_lifespan(services: AppServices):
    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI):
        await services.store.initialize()
        bot_task: Optional[asyncio.Task[None]] = None
        if services.bot is not None:
            bot_task = asyncio.create_task(services.bot.run_forever())
        log_event(
            app.state.logger,
            logging.INFO,
            "web.started",
            discord_enabled=services.bot is not None,
            identity_enabled=services.identity is not None,
        )
        try:
            yield
        finally:
            for ws in list(app.state.active_websockets):
                try:
                    await ws.close(code=CLOSE_SERVICE_RESTART)
                except Exception as exc:
                    safe_log(
                        app.state.logger,
                        logging.DEBUG,
                        "Failed to close websocket during shutdown",
                        exc=exc,
                    )
            app.state.active_websockets.clear()
            if bot_task is not None and services.bot is not None:
                with contextlib.suppress(Exception):
                    await services.bot.stop()
                bot_task.cancel()
                await asyncio.gather(bot_task, return_exceptions=True)
            await services.relay.aclose()
            for closer in services.closers:
                try:
                    await closer()
                except Exception as exc:
                    safe_log(
                        app.state.logger, logging.WARNING, "Client close failed", exc
                    )
            await services.store.close()

    return lifespan


def create_app(
    config: SupportRelayConfig,
    *,
    services: Optional[AppServices] = None,
    logger: Optional[logging.Logger] = None,
) -> FastAPI:
    logger = logger or setup_rotating_logger("support_relay", config.log)
    services = services or build_app_services(config, logger=logger)

    app = FastAPI(title="support-relay", lifespan=_app_lifespan(services))
    app.state.config = config
    app.state.services = services
    app.state.logger = logger
    app.state.active_websockets = set()

    if config.server.allowed_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=list(config.server.allowed_origins),
            allow_credentials=True,
            allow_methods=["GET", "POST"],
            allow_headers=["*"],
        )

    app.include_router(build_auth_routes())
    app.include_router(build_socket_routes())

    @app.get("/health", response_model=HealthResponse)
    async def health(request: Request) -> Any:
        current: AppServices = request.app.state.services
        return HealthResponse(
            connections=len(request.app.state.active_websockets),
            discord_enabled=current.bot is not None,
        )

    return app
