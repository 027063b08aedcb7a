from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv

from ..integrations.discord.constants import (
    DISCORD_INTENT_GUILD_MESSAGES,
    DISCORD_INTENT_GUILDS,
    DISCORD_INTENT_MESSAGE_CONTENT,
)

logger = logging.getLogger("support_relay.core.config")

CONFIG_FILENAME = "support-relay.yml"
DEFAULT_STATE_FILE = ".support-relay/state.sqlite3"
DEFAULT_LOG_FILE = ".support-relay/support-relay.log"
DEFAULT_BOT_TOKEN_ENV = "SUPPORT_RELAY_DISCORD_BOT_TOKEN"
DEFAULT_OAUTH_CLIENT_ID_ENV = "SUPPORT_RELAY_DISCORD_CLIENT_ID"
DEFAULT_OAUTH_CLIENT_SECRET_ENV = "SUPPORT_RELAY_DISCORD_CLIENT_SECRET"
DEFAULT_INTENTS = (
    DISCORD_INTENT_GUILDS
    | DISCORD_INTENT_GUILD_MESSAGES
    | DISCORD_INTENT_MESSAGE_CONTENT
)

DEFAULTS: Dict[str, Any] = {
    "state_file": DEFAULT_STATE_FILE,
    "server": {
        "host": "127.0.0.1",
        "port": 3000,
        "base_url": "http://localhost:3000",
        "cookie_secure": True,
        "allowed_origins": [],
    },
    "discord": {
        "enabled": False,
        "bot_token_env": DEFAULT_BOT_TOKEN_ENV,
        "client_id_env": DEFAULT_OAUTH_CLIENT_ID_ENV,
        "client_secret_env": DEFAULT_OAUTH_CLIENT_SECRET_ENV,
        "redirect_uri": None,
        "scopes": ["identify"],
        "guild_id": None,
        "support_category_id": None,
        "moderation_channel_id": None,
        "admin_user_ids": [],
        "admin_role_ids": [],
        "intents": DEFAULT_INTENTS,
    },
    "auth": {
        "session_hours": 24,
        "rate_limit_attempts": 5,
        "rate_limit_window_seconds": 300,
        "state_ttl_seconds": 600,
    },
    "relay": {
        "max_connections": 100,
        "message_rate_limit": 5,
        "max_message_chars": 1000,
        "close_grace_seconds": 1.0,
        "blocked_close_delay_seconds": 3.0,
        "history_page_size": 10,
    },
    "client": {
        "heartbeat_seconds": 30.0,
        "reconnect_delay_seconds": 3.0,
        "max_reconnect_attempts": 3,
        "reconnect_reset_seconds": 30.0,
    },
    "log": {
        "path": DEFAULT_LOG_FILE,
        "level": "INFO",
        "max_bytes": 5_000_000,
        "backup_count": 3,
    },
}


class ConfigError(Exception):
    """Raised when support relay configuration is invalid."""


@dataclass(frozen=True)
class ServerConfig:
    host: str
    port: int
    base_url: str
    cookie_secure: bool
    allowed_origins: tuple[str, ...]


@dataclass(frozen=True)
class DiscordConfig:
    enabled: bool
    bot_token_env: str
    client_id_env: str
    client_secret_env: str
    bot_token: Optional[str]
    oauth_client_id: Optional[str]
    oauth_client_secret: Optional[str]
    redirect_uri: str
    scopes: tuple[str, ...]
    guild_id: Optional[str]
    support_category_id: Optional[str]
    moderation_channel_id: Optional[str]
    admin_user_ids: frozenset[str]
    admin_role_ids: frozenset[str]
    intents: int


@dataclass(frozen=True)
class AuthConfig:
    session_hours: int
    rate_limit_attempts: int
    rate_limit_window_seconds: int
    state_ttl_seconds: int

    @property
    def session_duration_ms(self) -> int:
        return self.session_hours * 60 * 60 * 1000


@dataclass(frozen=True)
class RelayConfig:
    max_connections: int
    message_rate_limit: int
    max_message_chars: int
    close_grace_seconds: float
    blocked_close_delay_seconds: float
    history_page_size: int


@dataclass(frozen=True)
class ClientConfig:
    heartbeat_seconds: float
    reconnect_delay_seconds: float
    max_reconnect_attempts: int
    reconnect_reset_seconds: float


@dataclass(frozen=True)
class LogConfig:
    path: Optional[Path]
    level: int
    max_bytes: int
    backup_count: int


@dataclass(frozen=True)
class SupportRelayConfig:
    root: Path
    state_file: Path
    server: ServerConfig
    discord: DiscordConfig
    auth: AuthConfig
    relay: RelayConfig
    client: ClientConfig
    log: LogConfig

    @classmethod
    def from_raw(
        cls,
        *,
        root: Path,
        raw: Dict[str, Any],
        env: Optional[Dict[str, str]] = None,
    ) -> "SupportRelayConfig":
        cfg = _merge_defaults(DEFAULTS, raw if isinstance(raw, dict) else {})
        source = env if env is not None else os.environ

        state_file = cfg.get("state_file")
        if not isinstance(state_file, str) or not state_file.strip():
            raise ConfigError("state_file must be a string path")

        server = _parse_server(_section(cfg, "server"))
        return cls(
            root=root,
            state_file=(root / state_file).resolve(),
            server=server,
            discord=_parse_discord(_section(cfg, "discord"), server, source),
            auth=AuthConfig(
                session_hours=_positive_int(cfg, "auth", "session_hours"),
                rate_limit_attempts=_positive_int(cfg, "auth", "rate_limit_attempts"),
                rate_limit_window_seconds=_positive_int(
                    cfg, "auth", "rate_limit_window_seconds"
                ),
                state_ttl_seconds=_positive_int(cfg, "auth", "state_ttl_seconds"),
            ),
            relay=RelayConfig(
                max_connections=_positive_int(cfg, "relay", "max_connections"),
                message_rate_limit=_positive_int(cfg, "relay", "message_rate_limit"),
                max_message_chars=_positive_int(cfg, "relay", "max_message_chars"),
                close_grace_seconds=_non_negative_float(
                    cfg, "relay", "close_grace_seconds"
                ),
                blocked_close_delay_seconds=_non_negative_float(
                    cfg, "relay", "blocked_close_delay_seconds"
                ),
                history_page_size=_positive_int(cfg, "relay", "history_page_size"),
            ),
            client=ClientConfig(
                heartbeat_seconds=_non_negative_float(
                    cfg, "client", "heartbeat_seconds"
                ),
                reconnect_delay_seconds=_non_negative_float(
                    cfg, "client", "reconnect_delay_seconds"
                ),
                max_reconnect_attempts=_positive_int(
                    cfg, "client", "max_reconnect_attempts"
                ),
                reconnect_reset_seconds=_non_negative_float(
                    cfg, "client", "reconnect_reset_seconds"
                ),
            ),
            log=_parse_log(_section(cfg, "log"), root),
        )


def _merge_defaults(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge_defaults(merged[key], value)
        else:
            merged[key] = value
    return merged


def _section(cfg: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = cfg.get(name)
    if not isinstance(value, dict):
        raise ConfigError(f"{name} must be a mapping")
    return value


def _positive_int(cfg: Dict[str, Any], section: str, key: str) -> int:
    value = _section(cfg, section).get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{section}.{key} must be an integer")
    if value <= 0:
        raise ConfigError(f"{section}.{key} must be > 0")
    return value


def _non_negative_float(cfg: Dict[str, Any], section: str, key: str) -> float:
    value = _section(cfg, section).get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"{section}.{key} must be a number")
    if value < 0:
        raise ConfigError(f"{section}.{key} must be >= 0")
    return float(value)


def _parse_string_ids(value: Any) -> list[str]:
    if value is None:
        return []
    items = value if isinstance(value, (list, tuple, set, frozenset)) else [value]
    parsed: list[str] = []
    for item in items:
        token = str(item).strip()
        if token:
            parsed.append(token)
    return parsed


def _optional_id(value: Any) -> Optional[str]:
    if value is None:
        return None
    token = str(value).strip()
    return token or None


def _parse_server(cfg: Dict[str, Any]) -> ServerConfig:
    host = str(cfg.get("host") or "").strip()
    if not host:
        raise ConfigError("server.host must be non-empty")
    port = cfg.get("port")
    if isinstance(port, bool) or not isinstance(port, int) or not 0 < port < 65536:
        raise ConfigError("server.port must be an integer between 1 and 65535")
    base_url = str(cfg.get("base_url") or "").strip().rstrip("/")
    if not base_url.startswith(("http://", "https://")):
        raise ConfigError("server.base_url must be an http(s) URL")
    cookie_secure = cfg.get("cookie_secure")
    if not isinstance(cookie_secure, bool):
        raise ConfigError("server.cookie_secure must be a boolean")
    return ServerConfig(
        host=host,
        port=port,
        base_url=base_url,
        cookie_secure=cookie_secure,
        allowed_origins=tuple(_parse_string_ids(cfg.get("allowed_origins"))),
    )


def _parse_discord(
    cfg: Dict[str, Any], server: ServerConfig, env: Any
) -> DiscordConfig:
    enabled = bool(cfg.get("enabled", False))
    env_names: dict[str, str] = {}
    for key in ("bot_token_env", "client_id_env", "client_secret_env"):
        name = str(cfg.get(key) or "").strip()
        if not name:
            raise ConfigError(f"discord.{key} must be non-empty")
        env_names[key] = name

    intents = cfg.get("intents")
    if isinstance(intents, bool) or not isinstance(intents, int) or intents < 0:
        raise ConfigError("discord.intents must be a non-negative integer")

    scopes = tuple(_parse_string_ids(cfg.get("scopes"))) or ("identify",)
    redirect_uri = _optional_id(cfg.get("redirect_uri")) or (
        f"{server.base_url}/auth/discord/callback"
    )

    bot_token = env.get(env_names["bot_token_env"])
    client_id = env.get(env_names["client_id_env"])
    client_secret = env.get(env_names["client_secret_env"])
    guild_id = _optional_id(cfg.get("guild_id"))
    support_category_id = _optional_id(cfg.get("support_category_id"))

    if enabled:
        for env_key, value in (
            ("bot_token_env", bot_token),
            ("client_id_env", client_id),
            ("client_secret_env", client_secret),
        ):
            if not value:
                raise ConfigError(
                    f"Discord is enabled but env var {env_names[env_key]} is unset"
                )
        if not guild_id:
            raise ConfigError("discord.guild_id is required when Discord is enabled")
        if not support_category_id:
            raise ConfigError(
                "discord.support_category_id is required when Discord is enabled"
            )

    return DiscordConfig(
        enabled=enabled,
        bot_token_env=env_names["bot_token_env"],
        client_id_env=env_names["client_id_env"],
        client_secret_env=env_names["client_secret_env"],
        bot_token=bot_token or None,
        oauth_client_id=client_id or None,
        oauth_client_secret=client_secret or None,
        redirect_uri=redirect_uri,
        scopes=scopes,
        guild_id=guild_id,
        support_category_id=support_category_id,
        moderation_channel_id=_optional_id(cfg.get("moderation_channel_id")),
        admin_user_ids=frozenset(_parse_string_ids(cfg.get("admin_user_ids"))),
        admin_role_ids=frozenset(_parse_string_ids(cfg.get("admin_role_ids"))),
        intents=intents,
    )


def _parse_log(cfg: Dict[str, Any], root: Path) -> LogConfig:
    raw_path = cfg.get("path")
    path = (root / raw_path).resolve() if isinstance(raw_path, str) and raw_path else None
    level_name = str(cfg.get("level") or "INFO").strip().upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        raise ConfigError(f"log.level has unknown level name {level_name!r}")
    max_bytes = cfg.get("max_bytes")
    backup_count = cfg.get("backup_count")
    if not isinstance(max_bytes, int) or max_bytes <= 0:
        raise ConfigError("log.max_bytes must be a positive integer")
    if not isinstance(backup_count, int) or backup_count < 0:
        raise ConfigError("log.backup_count must be a non-negative integer")
    return LogConfig(
        path=path, level=level, max_bytes=max_bytes, backup_count=backup_count
    )


def _load_yaml_dict(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigError(f"Failed to read config file {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Config file must be a mapping: {path}")
    return data


def load_dotenv_for_root(root: Path) -> None:
    try:
        candidate = root.resolve() / ".env"
        if candidate.exists():
            load_dotenv(dotenv_path=candidate, override=True)
    except OSError as exc:
        logger.debug("Failed to load .env file: %s", exc)


def load_config(path: Optional[Path] = None) -> SupportRelayConfig:
    """Load ``support-relay.yml`` (or ``path``) merged over built-in defaults."""
    config_path = path if path is not None else Path.cwd() / CONFIG_FILENAME
    if config_path.is_dir():
        config_path = config_path / CONFIG_FILENAME
    root = config_path.parent.resolve()
    load_dotenv_for_root(root)
    return SupportRelayConfig.from_raw(root=root, raw=_load_yaml_dict(config_path))
