from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Optional
from urllib.parse import quote

import httpx

from ...core.logging_utils import log_event
from .constants import DISCORD_API_BASE_URL, DISCORD_CHANNEL_TYPE_GUILD_TEXT
from .errors import DiscordAPIError, DiscordPermanentError, DiscordTransientError

logger = logging.getLogger(__name__)

_RETRYABLE_NETWORK_ERRORS = (
    httpx.ConnectError,
    httpx.ReadError,
    httpx.WriteError,
    httpx.ConnectTimeout,
    httpx.ReadTimeout,
    httpx.WriteTimeout,
    httpx.RemoteProtocolError,
)


class DiscordRestClient:
    """Bot-token authenticated client for the handful of Discord REST calls we use.

    429 responses are retried after ``Retry-After``; 5xx and network failures are
    retried with exponential backoff plus jitter. 401/403 raise
    :class:`DiscordPermanentError` and never retry.
    """

    def __init__(
        self,
        *,
        bot_token: str,
        timeout_seconds: float = 10.0,
        base_url: str = DISCORD_API_BASE_URL,
        max_retries: int = 3,
        retry_base_delay: float = 1.0,
        retry_max_delay: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url, timeout=timeout_seconds, transport=transport
        )
        self._authorization_header = f"Bot {bot_token}"
        self._max_retries = max_retries
        self._retry_base_delay = retry_base_delay
        self._retry_max_delay = retry_max_delay

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "DiscordRestClient":
        return self

    async def __aexit__(self, *_exc_info: object) -> None:
        await self.close()

    def _calculate_retry_delay(self, attempt: int) -> float:
        delay = self._retry_base_delay * (2**attempt) + random.uniform(0, 1)
        return float(min(delay, self._retry_max_delay))

    async def _request(
        self,
        method: str,
        path: str,
        *,
        payload: Optional[dict[str, Any]] = None,
        reason: Optional[str] = None,
        expect_json: bool = True,
    ) -> Any:
        rate_limit_retries = 0
        retry_attempt = 0
        headers = {"Authorization": self._authorization_header}
        if reason:
            headers["X-Audit-Log-Reason"] = quote(reason[:512], safe=" ")

        while True:
            try:
                response = await self._client.request(
                    method, path, json=payload, headers=headers
                )
            except httpx.HTTPError as exc:
                if (
                    isinstance(exc, _RETRYABLE_NETWORK_ERRORS)
                    and retry_attempt < self._max_retries
                ):
                    retry_attempt += 1
                    delay = self._calculate_retry_delay(retry_attempt)
                    log_event(
                        logger,
                        logging.WARNING,
                        "discord.rest.network_retry",
                        method=method,
                        path=path,
                        error=type(exc).__name__,
                        delay=round(delay, 2),
                        attempt=retry_attempt,
                    )
                    await asyncio.sleep(delay)
                    continue
                raise DiscordTransientError(
                    f"Discord API network error for {method} {path}: {exc}"
                ) from exc

            status_code = response.status_code
            if 200 <= status_code < 300:
                if not expect_json or not response.content:
                    return {} if expect_json else None
                try:
                    return response.json()
                except ValueError as exc:
                    raise DiscordAPIError(
                        f"Discord API returned non-JSON success response for {method} {path}",
                        status_code=status_code,
                    ) from exc

            body_preview = (response.text or "").strip().replace("\n", " ")[:200]
            if status_code == 429:
                retry_after = _parse_retry_after(response)
                if retry_after is not None and rate_limit_retries < self._max_retries:
                    rate_limit_retries += 1
                    log_event(
                        logger,
                        logging.INFO,
                        "discord.rest.rate_limited",
                        method=method,
                        path=path,
                        retry_after=retry_after,
                        attempt=rate_limit_retries,
                    )
                    await asyncio.sleep(retry_after)
                    continue
                raise DiscordTransientError(
                    f"Discord API rate limit exceeded for {method} {path}",
                    status_code=status_code,
                    retry_after=retry_after,
                )
            if 500 <= status_code < 600:
                if retry_attempt < self._max_retries:
                    retry_attempt += 1
                    delay = self._calculate_retry_delay(retry_attempt)
                    log_event(
                        logger,
                        logging.WARNING,
                        "discord.rest.server_retry",
                        method=method,
                        path=path,
                        status=status_code,
                        delay=round(delay, 2),
                        attempt=retry_attempt,
                    )
                    await asyncio.sleep(delay)
                    continue
                raise DiscordTransientError(
                    f"Discord API server error for {method} {path}: "
                    f"status={status_code} body={body_preview!r}",
                    status_code=status_code,
                )
            if status_code in {401, 403}:
                raise DiscordPermanentError(
                    f"Discord API authentication failure for {method} {path}: "
                    f"status={status_code} body={body_preview!r}",
                    status_code=status_code,
                )
            raise DiscordAPIError(
                f"Discord API request failed for {method} {path}: "
                f"status={status_code} body={body_preview!r}",
                status_code=status_code,
            )

    async def get_gateway_bot(self) -> dict[str, Any]:
        payload = await self._request("GET", "/gateway/bot")
        return payload if isinstance(payload, dict) else {}

    async def get_guild(self, guild_id: str) -> dict[str, Any]:
        payload = await self._request("GET", f"/guilds/{guild_id}")
        return payload if isinstance(payload, dict) else {}

    async def list_guild_roles(self, guild_id: str) -> list[dict[str, Any]]:
        payload = await self._request("GET", f"/guilds/{guild_id}/roles")
        if not isinstance(payload, list):
            return []
        return [item for item in payload if isinstance(item, dict)]

    async def get_channel(self, channel_id: str) -> dict[str, Any]:
        payload = await self._request("GET", f"/channels/{channel_id}")
        return payload if isinstance(payload, dict) else {}

    async def create_guild_channel(
        self,
        *,
        guild_id: str,
        name: str,
        parent_id: Optional[str] = None,
        topic: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"name": name, "type": DISCORD_CHANNEL_TYPE_GUILD_TEXT}
        if parent_id:
            body["parent_id"] = parent_id
        if topic:
            body["topic"] = topic
        response = await self._request(
            "POST", f"/guilds/{guild_id}/channels", payload=body, reason=reason
        )
        return response if isinstance(response, dict) else {}

    async def delete_channel(
        self, *, channel_id: str, reason: Optional[str] = None
    ) -> None:
        await self._request(
            "DELETE", f"/channels/{channel_id}", reason=reason, expect_json=False
        )

    async def create_channel_message(
        self,
        *,
        channel_id: str,
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        response = await self._request(
            "POST",
            f"/channels/{channel_id}/messages",
            payload=payload,
        )
        return response if isinstance(response, dict) else {}


def _parse_retry_after(response: httpx.Response) -> Optional[float]:
    raw = response.headers.get("Retry-After")
    if raw is None:
        try:
            body = response.json()
        except ValueError:
            return None
        raw = body.get("retry_after") if isinstance(body, dict) else None
        if raw is None:
            return None
    try:
        return max(float(raw), 0.0)
    except (TypeError, ValueError):
        return 0.0
