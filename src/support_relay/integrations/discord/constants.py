from __future__ import annotations

DISCORD_API_BASE_URL = "https://discord.com/api/v10"
DISCORD_GATEWAY_URL = "wss://gateway.discord.gg/?v=10&encoding=json"
DISCORD_OAUTH_AUTHORIZE_URL = "https://discord.com/oauth2/authorize"
DISCORD_CDN_BASE_URL = "https://cdn.discordapp.com"

# Discord hard limit for message content.
DISCORD_MAX_MESSAGE_LENGTH = 2000
DISCORD_MAX_CHANNEL_NAME_LENGTH = 100
DISCORD_MAX_TOPIC_LENGTH = 1024

# Gateway intents bitflags (https://discord.com/developers/docs/topics/gateway#gateway-intents).
DISCORD_INTENT_GUILDS = 1 << 0
DISCORD_INTENT_GUILD_MESSAGES = 1 << 9
DISCORD_INTENT_MESSAGE_CONTENT = 1 << 15

DISCORD_CHANNEL_TYPE_GUILD_TEXT = 0
DISCORD_CHANNEL_TYPE_GUILD_CATEGORY = 4

DISCORD_PERMISSION_ADMINISTRATOR = 1 << 3
