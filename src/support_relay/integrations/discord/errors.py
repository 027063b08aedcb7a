from __future__ import annotations

from typing import Optional

from ...core.errors import TransientError


class DiscordError(Exception):
    """Base Discord integration error."""

    def __init__(self, message: str, *, user_message: Optional[str] = None) -> None:
        super().__init__(message)
        self.user_message = user_message


class DiscordAPIError(DiscordError):
    """Discord API request error."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
        user_message: Optional[str] = None,
    ) -> None:
        if user_message is None:
            user_message = "Discord API error."
        super().__init__(message, user_message=user_message)
        self.status_code = status_code
        self.retry_after = retry_after


class DiscordTransientError(DiscordAPIError, TransientError):
    """Retryable Discord failure (rate limits, 5xx, network issues)."""


class DiscordPermanentError(DiscordAPIError):
    """Non-retryable Discord API error (bad credentials, missing permissions)."""


class DiscordOAuthError(DiscordError):
    """OAuth code exchange or identity lookup failed."""

    def __init__(self, reason: str, message: Optional[str] = None) -> None:
        super().__init__(message or reason, user_message="Authentication failed.")
        self.reason = reason


class DiscordTokenRejected(DiscordOAuthError):
    """The identity provider refused the stored access token."""

    def __init__(self, message: str = "access token rejected") -> None:
        super().__init__("token_rejected", message)
