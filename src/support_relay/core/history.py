from __future__ import annotations

from typing import Optional

from .state import HistoryEntry, SupportStateStore
from .time_utils import Clock, ms_to_iso, now_ms

DIRECTION_VISITOR = "visitor"
DIRECTION_SUPPORT = "support"


class HistoryLog:
    """Append-only per-subject record of relayed messages."""

    def __init__(self, store: SupportStateStore, *, clock: Clock = now_ms) -> None:
        self._store = store
        self._clock = clock

    async def append(
        self, subject_id: str, *, author: str, content: str, direction: str
    ) -> HistoryEntry:
        if direction not in (DIRECTION_VISITOR, DIRECTION_SUPPORT):
            raise ValueError(f"unknown history direction: {direction!r}")
        entry = HistoryEntry(
            subject_id=subject_id,
            author=author,
            content=content,
            direction=direction,
            created_at=self._clock(),
        )
        await self._store.append_history(entry)
        return entry

    async def entries(
        self, subject_id: str, *, limit: Optional[int] = None
    ) -> list[HistoryEntry]:
        return await self._store.list_history(subject_id, limit=limit)


def format_history_entry(entry: HistoryEntry) -> str:
    arrow = "->" if entry.direction == DIRECTION_VISITOR else "<-"
    return f"[{ms_to_iso(entry.created_at)}] {arrow} {entry.author}: {entry.content}"
