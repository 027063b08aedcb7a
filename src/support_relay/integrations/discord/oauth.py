from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional, Sequence
from urllib.parse import urlencode

import httpx

from ...core.logging_utils import log_event
from ...core.retry import retry_transient
from .constants import (
    DISCORD_API_BASE_URL,
    DISCORD_CDN_BASE_URL,
    DISCORD_OAUTH_AUTHORIZE_URL,
)
from .errors import DiscordOAuthError, DiscordTokenRejected, DiscordTransientError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OAuthTokens:
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None


@dataclass(frozen=True)
class DiscordIdentity:
    id: str
    username: str
    avatar: Optional[str] = None
    global_name: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.global_name or self.username

    def avatar_url(self) -> Optional[str]:
        if not self.avatar:
            return None
        return f"{DISCORD_CDN_BASE_URL}/avatars/{self.id}/{self.avatar}.png"


class DiscordOAuthClient:
    """Authorization-code flow against Discord: authorize URL, code exchange, identity."""

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        scopes: Sequence[str] = ("identify",),
        base_url: str = DISCORD_API_BASE_URL,
        authorize_url: str = DISCORD_OAUTH_AUTHORIZE_URL,
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._redirect_uri = redirect_uri
        self._scopes = tuple(scopes)
        self._authorize_url = authorize_url
        self._client = httpx.AsyncClient(
            base_url=base_url, timeout=timeout_seconds, transport=transport
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "DiscordOAuthClient":
        return self

    async def __aexit__(self, *_exc_info: object) -> None:
        await self.close()

    def authorize_url(self, state: str) -> str:
        query = urlencode(
            {
                "client_id": self._client_id,
                "redirect_uri": self._redirect_uri,
                "response_type": "code",
                "scope": " ".join(self._scopes),
                "state": state,
            }
        )
        return f"{self._authorize_url}?{query}"

    async def exchange_code(self, code: str) -> OAuthTokens:
        # Authorization codes are single use; a retry after a lost response would fail.
        try:
            response = await self._client.post(
                "/oauth2/token",
                data={
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "grant_type": "authorization_code",
                    "code": code,
                    "redirect_uri": self._redirect_uri,
                },
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.HTTPError as exc:
            raise DiscordOAuthError("auth_failed", f"token exchange failed: {exc}") from exc
        if response.status_code >= 400:
            log_event(
                logger,
                logging.WARNING,
                "discord.oauth.exchange_rejected",
                status=response.status_code,
                body=(response.text or "")[:200],
            )
            raise DiscordOAuthError(
                "auth_failed", f"token exchange returned {response.status_code}"
            )
        payload = _json_object(response)
        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            raise DiscordOAuthError("no_access_token", "no access token in response")
        refresh_token = payload.get("refresh_token")
        expires_in = payload.get("expires_in")
        return OAuthTokens(
            access_token=access_token,
            refresh_token=refresh_token if isinstance(refresh_token, str) else None,
            expires_in=expires_in if isinstance(expires_in, int) else None,
        )

    @retry_transient(max_attempts=3, base_wait=0.5, max_wait=4.0)
    async def fetch_identity(self, access_token: str) -> DiscordIdentity:
        try:
            response = await self._client.get(
                "/users/@me", headers={"Authorization": f"Bearer {access_token}"}
            )
        except httpx.HTTPError as exc:
            raise DiscordTransientError(f"identity fetch failed: {exc}") from exc
        if response.status_code in {401, 403}:
            raise DiscordTokenRejected(
                f"identity provider rejected token: status={response.status_code}"
            )
        if response.status_code == 429 or response.status_code >= 500:
            raise DiscordTransientError(
                f"identity fetch returned {response.status_code}",
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            raise DiscordOAuthError(
                "auth_failed", f"identity fetch returned {response.status_code}"
            )
        payload = _json_object(response)
        user_id = payload.get("id")
        if not isinstance(user_id, str) or not user_id:
            raise DiscordOAuthError("no_user_data", "identity response has no id")
        username = payload.get("username")
        avatar = payload.get("avatar")
        global_name = payload.get("global_name")
        return DiscordIdentity(
            id=user_id,
            username=username if isinstance(username, str) and username else user_id,
            avatar=avatar if isinstance(avatar, str) else None,
            global_name=global_name if isinstance(global_name, str) else None,
        )


def _json_object(response: httpx.Response) -> dict[str, Any]:
    try:
        payload = response.json()
    except ValueError as exc:
        raise DiscordOAuthError("auth_failed", "provider returned non-JSON body") from exc
    return payload if isinstance(payload, dict) else {}
