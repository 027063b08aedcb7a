from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional


@dataclass(frozen=True)
class SupportMessageEvent:
    channel_id: str
    guild_id: Optional[str]
    message_id: Optional[str]
    author_id: str
    author_name: str
    author_is_bot: bool
    content: str
    member_roles: frozenset[str] = frozenset()


def _as_id(value: object) -> Optional[str]:
    if value is None:
        return None
    token = str(value).strip()
    return token or None


def parse_message_event(payload: dict[str, Any]) -> Optional[SupportMessageEvent]:
    """Normalize a gateway ``MESSAGE_CREATE`` payload; ``None`` when it is unusable."""
    channel_id = _as_id(payload.get("channel_id"))
    author = payload.get("author")
    if channel_id is None or not isinstance(author, dict):
        return None
    author_id = _as_id(author.get("id"))
    if author_id is None:
        return None
    member = payload.get("member")
    roles: frozenset[str] = frozenset()
    nick: Optional[str] = None
    if isinstance(member, dict):
        raw_roles = member.get("roles")
        if isinstance(raw_roles, list):
            roles = frozenset(
                role for role in (_as_id(item) for item in raw_roles) if role
            )
        if isinstance(member.get("nick"), str):
            nick = member["nick"]
    global_name = author.get("global_name")
    username = author.get("username")
    author_name = (
        nick
        or (global_name if isinstance(global_name, str) and global_name else None)
        or (username if isinstance(username, str) and username else author_id)
    )
    content = payload.get("content")
    return SupportMessageEvent(
        channel_id=channel_id,
        guild_id=_as_id(payload.get("guild_id")),
        message_id=_as_id(payload.get("id")),
        author_id=author_id,
        author_name=author_name,
        author_is_bot=bool(author.get("bot")),
        content=content if isinstance(content, str) else "",
        member_roles=roles,
    )
