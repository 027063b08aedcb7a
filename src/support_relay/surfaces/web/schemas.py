from __future__ import annotations

from typing import Optional

from pydantic import BaseModel

from ...core.blocks import BlockStatus
from ...core.sessions import PublicIdentity
from ...identity.gateway import SessionCheck


class UserModel(BaseModel):
    id: str
    username: str
    avatar: Optional[str] = None

    @classmethod
    def from_identity(cls, identity: PublicIdentity) -> "UserModel":
        return cls(id=identity.id, username=identity.username, avatar=identity.avatar)


class SessionResponse(BaseModel):
    authenticated: bool
    user: Optional[UserModel] = None

    @classmethod
    def from_check(cls, check: SessionCheck) -> "SessionResponse":
        if not check.authenticated or check.identity is None:
            return cls(authenticated=False)
        return cls(authenticated=True, user=UserModel.from_identity(check.identity))


class LogoutResponse(BaseModel):
    success: bool = True


class BlockStatusResponse(BaseModel):
    blocked: bool
    until: Optional[int] = None
    reason: Optional[str] = None
    permanent: bool = False

    @classmethod
    def from_status(cls, status: BlockStatus) -> "BlockStatusResponse":
        if not status.blocked:
            return cls(blocked=False)
        return cls(
            blocked=True,
            until=status.until,
            reason=status.reason,
            permanent=status.permanent,
        )


class HealthResponse(BaseModel):
    status: str = "ok"
    connections: int = 0
    discord_enabled: bool = False


class ErrorResponse(BaseModel):
    error: str
