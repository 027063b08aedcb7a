from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from typing import Any, Optional, Protocol

from ..core.errors import AuthStateMismatch, RateLimited, UpstreamFailure
from ..core.logging_utils import log_event
from ..core.rate_limit import AuthRateLimiter
from ..core.sessions import PublicIdentity, SessionStore
from ..core.state import SupportStateStore
from ..core.time_utils import Clock, now_ms
from ..integrations.discord.errors import (
    DiscordError,
    DiscordOAuthError,
    DiscordTokenRejected,
    DiscordTransientError,
)
from ..integrations.discord.oauth import DiscordIdentity, OAuthTokens

logger = logging.getLogger(__name__)


class IdentityProvider(Protocol):
    def authorize_url(self, state: str) -> str: ...

    async def exchange_code(self, code: str) -> OAuthTokens: ...

    async def fetch_identity(self, access_token: str) -> DiscordIdentity: ...


@dataclass(frozen=True)
class AuthRedirect:
    url: str
    state: Optional[str] = None
    already_authenticated: bool = False


@dataclass(frozen=True)
class AuthResult:
    session_id: str
    identity: PublicIdentity
    max_age_seconds: int


@dataclass(frozen=True)
class SessionCheck:
    authenticated: bool
    identity: Optional[PublicIdentity] = None
    # Revalidation could not reach Discord; the stored session is still intact.
    unavailable: bool = False

    def to_dict(self) -> dict[str, Any]:
        if not self.authenticated or self.identity is None:
            return {"authenticated": False}
        return {"authenticated": True, "user": self.identity.to_dict()}


UNAUTHENTICATED = SessionCheck(authenticated=False)


class IdentityGateway:
    """OAuth orchestration: rate-limited start, state-checked callback, sessions."""

    def __init__(
        self,
        *,
        provider: IdentityProvider,
        sessions: SessionStore,
        rate_limiter: AuthRateLimiter,
        store: SupportStateStore,
        state_ttl_ms: int = 600_000,
        clock: Clock = now_ms,
    ) -> None:
        self._provider = provider
        self._sessions = sessions
        self._rate_limiter = rate_limiter
        self._store = store
        self._state_ttl_ms = state_ttl_ms
        self._clock = clock

    async def begin_auth(
        self, source_address: str, *, existing_session_id: Optional[str] = None
    ) -> AuthRedirect:
        if not await self._rate_limiter.hit(source_address):
            log_event(
                logger,
                logging.WARNING,
                "auth.rate_limited",
                address=source_address,
            )
            raise RateLimited(
                f"too many authorization attempts from {source_address}",
                user_message="Too many sign-in attempts. Please try again later.",
            )
        if await self._sessions.get_valid(existing_session_id) is not None:
            return AuthRedirect(url="/", already_authenticated=True)

        state = secrets.token_urlsafe(24)
        await self._store.put_auth_state(state, self._clock() + self._state_ttl_ms)
        return AuthRedirect(url=self._provider.authorize_url(state), state=state)

    async def complete_auth(
        self, code: Optional[str], state: Optional[str]
    ) -> AuthResult:
        if not code:
            raise UpstreamFailure("no_code", "callback carried no authorization code")
        if not state or not await self._store.consume_auth_state(state, self._clock()):
            log_event(logger, logging.WARNING, "auth.state_mismatch")
            raise AuthStateMismatch()

        try:
            tokens = await self._provider.exchange_code(code)
            identity = await self._provider.fetch_identity(tokens.access_token)
        except DiscordOAuthError as exc:
            log_event(
                logger, logging.WARNING, "auth.upstream_failed", reason=exc.reason, exc=exc
            )
            raise UpstreamFailure(exc.reason, str(exc)) from exc
        except DiscordError as exc:
            log_event(
                logger, logging.WARNING, "auth.upstream_failed", reason="auth_failed", exc=exc
            )
            raise UpstreamFailure("auth_failed", str(exc)) from exc

        public = PublicIdentity(
            id=identity.id,
            username=identity.display_name,
            avatar=identity.avatar,
        )
        record = await self._sessions.create(
            public,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
        )
        log_event(logger, logging.INFO, "auth.completed", subject_id=public.id)
        return AuthResult(
            session_id=record.session_id,
            identity=public,
            max_age_seconds=self._sessions.duration_ms // 1000,
        )

    async def check_session(self, session_id: Optional[str]) -> SessionCheck:
        """Local expiry check, then a provider round trip to catch revoked tokens."""
        record = await self._sessions.get_valid(session_id)
        if record is None:
            return UNAUTHENTICATED
        identity = PublicIdentity.from_session(record)
        if not record.access_token:
            return SessionCheck(authenticated=True, identity=identity)
        try:
            await self._provider.fetch_identity(record.access_token)
        except DiscordTransientError as exc:
            log_event(
                logger,
                logging.WARNING,
                "auth.session.revalidate_unavailable",
                subject_id=record.subject_id,
                exc=exc,
            )
            return SessionCheck(authenticated=False, unavailable=True)
        except (DiscordTokenRejected, DiscordOAuthError) as exc:
            await self._sessions.delete(record.session_id)
            log_event(
                logger,
                logging.INFO,
                "auth.session.revoked",
                subject_id=record.subject_id,
                exc=exc,
            )
            return UNAUTHENTICATED
        return SessionCheck(authenticated=True, identity=identity)

    async def logout(self, session_id: Optional[str]) -> None:
        await self._sessions.delete(session_id)
        log_event(logger, logging.INFO, "auth.logout", had_session=bool(session_id))
