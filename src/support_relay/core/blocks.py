from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Optional

from .logging_utils import log_event
from .state import BlockRecord, SupportStateStore
from .time_utils import Clock, format_remaining, ms_to_iso, now_ms

logger = logging.getLogger(__name__)

SUBJECT_ID_PATTERN = re.compile(r"^\d{17,19}$")
DEFAULT_BLOCK_REASON = "No reason given"


def is_valid_subject_id(value: object) -> bool:
    return isinstance(value, str) and SUBJECT_ID_PATTERN.fullmatch(value) is not None


@dataclass(frozen=True)
class BlockStatus:
    blocked: bool
    until: Optional[int] = None
    reason: Optional[str] = None
    permanent: bool = False
    moderator_id: Optional[str] = None
    issued_at: Optional[int] = None

    def describe(self, now: int) -> str:
        if not self.blocked:
            return "not blocked"
        reason = self.reason or DEFAULT_BLOCK_REASON
        if self.permanent or self.until is None:
            return f"blocked permanently. Reason: {reason}"
        return (
            f"blocked for another {format_remaining(self.until, now)} "
            f"(until {ms_to_iso(self.until)}). Reason: {reason}"
        )

    def to_dict(self) -> dict[str, Any]:
        if not self.blocked:
            return {"blocked": False}
        return {
            "blocked": True,
            "until": self.until,
            "reason": self.reason,
            "permanent": self.permanent,
        }


NOT_BLOCKED = BlockStatus(blocked=False)


def _record_is_active(record: BlockRecord, now: int) -> bool:
    if record.permanent or record.until is None:
        return True
    return record.until > now


class BlockRegistry:
    """Block records keyed by subject id, with lazy expiry.

    Expired records are only removed when :meth:`is_blocked` reads them; there is no
    background sweep. A record whose ``until`` equals the current time is expired.
    """

    def __init__(self, store: SupportStateStore, *, clock: Clock = now_ms) -> None:
        self._store = store
        self._clock = clock

    async def is_blocked(self, subject_id: str) -> BlockStatus:
        record = await self._store.get_block(subject_id)
        if record is None:
            return NOT_BLOCKED
        now = self._clock()
        if not _record_is_active(record, now):
            await self._store.delete_block(subject_id)
            log_event(
                logger,
                logging.INFO,
                "blocks.expired",
                subject_id=subject_id,
                until=record.until,
            )
            return NOT_BLOCKED
        return BlockStatus(
            blocked=True,
            until=record.until,
            reason=record.reason,
            permanent=record.permanent or record.until is None,
            moderator_id=record.moderator_id,
            issued_at=record.issued_at,
        )

    async def set_block(
        self,
        subject_id: str,
        duration_minutes: Optional[int],
        reason: Optional[str],
        moderator_id: str,
    ) -> BlockRecord:
        """Store a block, replacing any existing one. ``None`` duration is permanent."""
        if duration_minutes is not None and duration_minutes <= 0:
            raise ValueError("duration_minutes must be positive")
        now = self._clock()
        permanent = duration_minutes is None
        record = BlockRecord(
            subject_id=subject_id,
            until=None if permanent else now + duration_minutes * 60 * 1000,
            reason=(reason or "").strip() or DEFAULT_BLOCK_REASON,
            moderator_id=moderator_id,
            issued_at=now,
            permanent=permanent,
        )
        await self._store.put_block(record)
        log_event(
            logger,
            logging.INFO,
            "blocks.set",
            subject_id=subject_id,
            until=record.until,
            permanent=permanent,
            moderator_id=moderator_id,
        )
        return record

    async def clear_block(self, subject_id: str) -> bool:
        """Delete any block for ``subject_id``; returns whether a record existed."""
        existing = await self._store.get_block(subject_id)
        await self._store.delete_block(subject_id)
        log_event(
            logger,
            logging.INFO,
            "blocks.cleared",
            subject_id=subject_id,
            existed=existing is not None,
        )
        return existing is not None
