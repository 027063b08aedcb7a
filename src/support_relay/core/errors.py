from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .blocks import BlockStatus


class SupportRelayError(Exception):
    """Base error for relay, identity and moderation failures."""

    kind = "error"

    def __init__(self, message: str, *, user_message: Optional[str] = None) -> None:
        super().__init__(message)
        self.user_message = user_message or message


class TransientError(SupportRelayError):
    """Retryable failure of an external collaborator."""


class Unauthenticated(SupportRelayError):
    kind = "unauthenticated"

    def __init__(self, message: str = "not authenticated") -> None:
        super().__init__(
            message, user_message="Please sign in with Discord to send messages."
        )


class Blocked(SupportRelayError):
    kind = "blocked"

    def __init__(self, status: "BlockStatus", *, user_message: str) -> None:
        super().__init__(
            f"subject is blocked (permanent={status.permanent})",
            user_message=user_message,
        )
        self.status = status


class RateLimited(SupportRelayError):
    kind = "rate_limited"


class UpstreamFailure(SupportRelayError):
    kind = "upstream_failure"

    def __init__(self, reason: str, message: Optional[str] = None) -> None:
        super().__init__(message or reason, user_message="Authentication failed.")
        self.reason = reason


class AuthStateMismatch(SupportRelayError):
    kind = "invalid_state"

    def __init__(self) -> None:
        super().__init__(
            "OAuth state parameter does not match an issued state",
            user_message="Invalid state parameter.",
        )


class ChannelCreateFailure(SupportRelayError):
    kind = "channel_create_failure"

    def __init__(self, message: str) -> None:
        super().__init__(
            message, user_message="Could not open a support channel. Please try again."
        )


class RelayTargetOffline(SupportRelayError):
    kind = "relay_target_offline"


class ProtocolError(SupportRelayError):
    kind = "protocol_error"

    def __init__(self, message: str) -> None:
        super().__init__(message, user_message="Could not process the message.")


class RelayDeliveryFailure(SupportRelayError):
    kind = "relay_delivery_failure"

    def __init__(self, message: str, *, channel_gone: bool = False) -> None:
        super().__init__(
            message, user_message="Could not deliver your message. Please try again."
        )
        self.channel_gone = channel_gone
