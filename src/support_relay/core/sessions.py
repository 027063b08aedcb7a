from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from typing import Any, Optional

from .logging_utils import log_event
from .state import SessionRecord, SupportStateStore
from .time_utils import Clock, now_ms

logger = logging.getLogger(__name__)

SESSION_COOKIE_NAME = "sessionId"


@dataclass(frozen=True)
class PublicIdentity:
    id: str
    username: str
    avatar: Optional[str] = None

    @property
    def label(self) -> str:
        return f"{self.username} ({self.id})"

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "username": self.username, "avatar": self.avatar}

    @classmethod
    def from_session(cls, record: SessionRecord) -> "PublicIdentity":
        return cls(id=record.subject_id, username=record.username, avatar=record.avatar)


class SessionStore:
    def __init__(
        self,
        store: SupportStateStore,
        *,
        duration_ms: int,
        clock: Clock = now_ms,
    ) -> None:
        self._store = store
        self._duration_ms = duration_ms
        self._clock = clock

    @property
    def duration_ms(self) -> int:
        return self._duration_ms

    async def create(
        self,
        identity: PublicIdentity,
        *,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
    ) -> SessionRecord:
        now = self._clock()
        record = SessionRecord(
            session_id=secrets.token_hex(32),
            subject_id=identity.id,
            username=identity.username,
            avatar=identity.avatar,
            expires_at=now + self._duration_ms,
            created_at=now,
            access_token=access_token,
            refresh_token=refresh_token,
        )
        await self._store.put_session(record)
        log_event(
            logger, logging.INFO, "sessions.created", subject_id=identity.id
        )
        return record

    async def get_valid(self, session_id: Optional[str]) -> Optional[SessionRecord]:
        """Return the session if present and unexpired; expired ones are deleted."""
        if not session_id:
            return None
        record = await self._store.get_session(session_id)
        if record is None:
            return None
        if record.expires_at <= self._clock():
            await self._store.delete_session(session_id)
            log_event(
                logger,
                logging.INFO,
                "sessions.expired",
                subject_id=record.subject_id,
            )
            return None
        return record

    async def delete(self, session_id: Optional[str]) -> None:
        if not session_id:
            return
        await self._store.delete_session(session_id)
