from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from ...core.logging_utils import log_event
from .constants import DISCORD_PERMISSION_ADMINISTRATOR
from .errors import DiscordAPIError
from .rest import DiscordRestClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AdminPolicy:
    guild_id: Optional[str]
    admin_user_ids: frozenset[str]
    admin_role_ids: frozenset[str]


def allowlist_grants_admin(
    policy: AdminPolicy, *, user_id: str, role_ids: Iterable[str]
) -> bool:
    if user_id in policy.admin_user_ids:
        return True
    return any(role_id in policy.admin_role_ids for role_id in role_ids)


def compute_base_permissions(
    *,
    guild_id: str,
    member_role_ids: Iterable[str],
    roles: list[dict[str, Any]],
) -> int:
    """OR together @everyone (whose id equals the guild id) and the member's roles."""
    wanted = set(member_role_ids)
    wanted.add(guild_id)
    permissions = 0
    for role in roles:
        role_id = str(role.get("id") or "")
        if role_id not in wanted:
            continue
        try:
            permissions |= int(role.get("permissions") or 0)
        except (TypeError, ValueError):
            continue
    return permissions


async def has_admin_capability(
    rest: DiscordRestClient,
    policy: AdminPolicy,
    *,
    user_id: str,
    role_ids: Iterable[str],
) -> bool:
    role_ids = frozenset(role_ids)
    if allowlist_grants_admin(policy, user_id=user_id, role_ids=role_ids):
        return True
    if not policy.guild_id:
        return False
    try:
        guild = await rest.get_guild(policy.guild_id)
        if str(guild.get("owner_id") or "") == user_id:
            return True
        roles = await rest.list_guild_roles(policy.guild_id)
    except DiscordAPIError as exc:
        log_event(
            logger,
            logging.WARNING,
            "discord.permissions.lookup_failed",
            user_id=user_id,
            exc=exc,
        )
        return False
    permissions = compute_base_permissions(
        guild_id=policy.guild_id, member_role_ids=role_ids, roles=roles
    )
    return bool(permissions & DISCORD_PERMISSION_ADMINISTRATOR)
