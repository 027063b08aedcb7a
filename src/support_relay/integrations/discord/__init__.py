"""Discord REST, gateway and OAuth clients for support channels."""

from .constants import (
    DISCORD_API_BASE_URL,
    DISCORD_GATEWAY_URL,
    DISCORD_INTENT_GUILD_MESSAGES,
    DISCORD_INTENT_GUILDS,
    DISCORD_INTENT_MESSAGE_CONTENT,
    DISCORD_MAX_MESSAGE_LENGTH,
)
from .errors import (
    DiscordAPIError,
    DiscordError,
    DiscordOAuthError,
    DiscordPermanentError,
    DiscordTokenRejected,
    DiscordTransientError,
)
from .events import SupportMessageEvent, parse_message_event
from .gateway import (
    REQUIRED_INTENTS,
    SUPPORT_EVENTS,
    GatewayMessage,
    SupportGateway,
    decode_message,
    identify_frame,
    reconnect_delay,
)
from .oauth import DiscordIdentity, DiscordOAuthClient, OAuthTokens
from .rest import DiscordRestClient

__all__ = [
    "DISCORD_API_BASE_URL",
    "DISCORD_GATEWAY_URL",
    "DISCORD_INTENT_GUILDS",
    "DISCORD_INTENT_GUILD_MESSAGES",
    "DISCORD_INTENT_MESSAGE_CONTENT",
    "DISCORD_MAX_MESSAGE_LENGTH",
    "DiscordError",
    "DiscordAPIError",
    "DiscordTransientError",
    "DiscordPermanentError",
    "DiscordOAuthError",
    "DiscordTokenRejected",
    "SupportMessageEvent",
    "parse_message_event",
    "REQUIRED_INTENTS",
    "SUPPORT_EVENTS",
    "GatewayMessage",
    "identify_frame",
    "decode_message",
    "reconnect_delay",
    "SupportGateway",
    "OAuthTokens",
    "DiscordIdentity",
    "DiscordOAuthClient",
    "DiscordRestClient",
]
