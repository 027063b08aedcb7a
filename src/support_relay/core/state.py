from __future__ import annotations

import asyncio
import sqlite3
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional

from .sqlite_utils import connect_sqlite

SUPPORT_STATE_SCHEMA_VERSION = 1


@dataclass(frozen=True)
class SessionRecord:
    session_id: str
    subject_id: str
    username: str
    avatar: Optional[str]
    expires_at: int
    created_at: int
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None


@dataclass(frozen=True)
class BlockRecord:
    subject_id: str
    until: Optional[int]
    reason: str
    moderator_id: str
    issued_at: int
    permanent: bool


@dataclass(frozen=True)
class AuthAttempt:
    address: str
    count: int
    last_attempt: int


@dataclass(frozen=True)
class HistoryEntry:
    subject_id: str
    author: str
    content: str
    direction: str
    created_at: int


class SupportStateStore:
    """SQLite-backed store for sessions, blocks, auth attempts and history.

    All statements run on one dedicated worker thread so the event loop never blocks
    on disk and the connection is never shared across threads.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._executor = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="support-state"
        )
        self._connection: Optional[sqlite3.Connection] = None

    @property
    def path(self) -> Path:
        return self._db_path

    async def initialize(self) -> None:
        await self._run(self._connection_sync)

    async def close(self) -> None:
        await self._run(self._close_sync)
        self._executor.shutdown(wait=True)

    # sessions

    async def put_session(self, record: SessionRecord) -> None:
        await self._run(self._put_session_sync, record)

    async def get_session(self, session_id: str) -> Optional[SessionRecord]:
        return await self._run(self._get_session_sync, session_id)

    async def delete_session(self, session_id: str) -> None:
        await self._run(
            self._execute_sync, "DELETE FROM sessions WHERE session_id = ?", (session_id,)
        )

    # blocks

    async def put_block(self, record: BlockRecord) -> None:
        await self._run(self._put_block_sync, record)

    async def get_block(self, subject_id: str) -> Optional[BlockRecord]:
        return await self._run(self._get_block_sync, subject_id)

    async def delete_block(self, subject_id: str) -> None:
        await self._run(
            self._execute_sync, "DELETE FROM blocks WHERE subject_id = ?", (subject_id,)
        )

    # auth rate limiting and anti-forgery states

    async def get_auth_attempt(self, address: str) -> Optional[AuthAttempt]:
        return await self._run(self._get_auth_attempt_sync, address)

    async def put_auth_attempt(self, attempt: AuthAttempt) -> None:
        await self._run(
            self._execute_sync,
            """
            INSERT INTO auth_attempts (address, count, last_attempt)
            VALUES (?, ?, ?)
            ON CONFLICT(address) DO UPDATE SET
                count=excluded.count,
                last_attempt=excluded.last_attempt
            """,
            (attempt.address, attempt.count, attempt.last_attempt),
        )

    async def put_auth_state(self, state: str, expires_at: int) -> None:
        await self._run(
            self._execute_sync,
            "INSERT OR REPLACE INTO auth_states (state, expires_at) VALUES (?, ?)",
            (state, expires_at),
        )

    async def consume_auth_state(self, state: str, now: int) -> bool:
        return await self._run(self._consume_auth_state_sync, state, now)

    # history

    async def append_history(self, entry: HistoryEntry) -> None:
        await self._run(
            self._execute_sync,
            """
            INSERT INTO history (subject_id, author, content, direction, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                entry.subject_id,
                entry.author,
                entry.content,
                entry.direction,
                entry.created_at,
            ),
        )

    async def list_history(
        self, subject_id: str, *, limit: Optional[int] = None
    ) -> list[HistoryEntry]:
        return await self._run(self._list_history_sync, subject_id, limit)

    async def _run(self, func: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, func, *args)

    def _connection_sync(self) -> sqlite3.Connection:
        if self._connection is None:
            self._connection = connect_sqlite(self._db_path)
            self._ensure_schema(self._connection)
        return self._connection

    def _close_sync(self) -> None:
        if self._connection is not None:
            self._connection.close()
            self._connection = None

    def _ensure_schema(self, conn: sqlite3.Connection) -> None:
        with conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_info (
                    version INTEGER NOT NULL
                )
                """
            )
            row = conn.execute(
                "SELECT version FROM schema_info ORDER BY version DESC LIMIT 1"
            ).fetchone()
            if row is None:
                conn.execute(
                    "INSERT INTO schema_info(version) VALUES (?)",
                    (SUPPORT_STATE_SCHEMA_VERSION,),
                )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS sessions (
                    session_id TEXT PRIMARY KEY,
                    subject_id TEXT NOT NULL,
                    username TEXT NOT NULL,
                    avatar TEXT,
                    access_token TEXT,
                    refresh_token TEXT,
                    expires_at INTEGER NOT NULL,
                    created_at INTEGER NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS blocks (
                    subject_id TEXT PRIMARY KEY,
                    until INTEGER,
                    reason TEXT NOT NULL,
                    moderator_id TEXT NOT NULL,
                    issued_at INTEGER NOT NULL,
                    permanent INTEGER NOT NULL DEFAULT 0
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS auth_attempts (
                    address TEXT PRIMARY KEY,
                    count INTEGER NOT NULL,
                    last_attempt INTEGER NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS auth_states (
                    state TEXT PRIMARY KEY,
                    expires_at INTEGER NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    subject_id TEXT NOT NULL,
                    author TEXT NOT NULL,
                    content TEXT NOT NULL,
                    direction TEXT NOT NULL,
                    created_at INTEGER NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_history_subject
                    ON history(subject_id, id)
                """
            )

    def _execute_sync(self, sql: str, params: tuple[Any, ...]) -> None:
        conn = self._connection_sync()
        with conn:
            conn.execute(sql, params)

    def _put_session_sync(self, record: SessionRecord) -> None:
        self._execute_sync(
            """
            INSERT OR REPLACE INTO sessions (
                session_id,
                subject_id,
                username,
                avatar,
                access_token,
                refresh_token,
                expires_at,
                created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.session_id,
                record.subject_id,
                record.username,
                record.avatar,
                record.access_token,
                record.refresh_token,
                int(record.expires_at),
                int(record.created_at),
            ),
        )

    def _get_session_sync(self, session_id: str) -> Optional[SessionRecord]:
        row = (
            self._connection_sync()
            .execute("SELECT * FROM sessions WHERE session_id = ?", (session_id,))
            .fetchone()
        )
        if row is None:
            return None
        return SessionRecord(
            session_id=str(row["session_id"]),
            subject_id=str(row["subject_id"]),
            username=str(row["username"]),
            avatar=row["avatar"] if isinstance(row["avatar"], str) else None,
            expires_at=int(row["expires_at"]),
            created_at=int(row["created_at"]),
            access_token=(
                row["access_token"] if isinstance(row["access_token"], str) else None
            ),
            refresh_token=(
                row["refresh_token"] if isinstance(row["refresh_token"], str) else None
            ),
        )

    def _put_block_sync(self, record: BlockRecord) -> None:
        self._execute_sync(
            """
            INSERT INTO blocks (
                subject_id, until, reason, moderator_id, issued_at, permanent
            )
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(subject_id) DO UPDATE SET
                until=excluded.until,
                reason=excluded.reason,
                moderator_id=excluded.moderator_id,
                issued_at=excluded.issued_at,
                permanent=excluded.permanent
            """,
            (
                record.subject_id,
                record.until,
                record.reason,
                record.moderator_id,
                int(record.issued_at),
                1 if record.permanent else 0,
            ),
        )

    def _get_block_sync(self, subject_id: str) -> Optional[BlockRecord]:
        row = (
            self._connection_sync()
            .execute("SELECT * FROM blocks WHERE subject_id = ?", (subject_id,))
            .fetchone()
        )
        if row is None:
            return None
        return BlockRecord(
            subject_id=str(row["subject_id"]),
            until=int(row["until"]) if row["until"] is not None else None,
            reason=str(row["reason"]),
            moderator_id=str(row["moderator_id"]),
            issued_at=int(row["issued_at"]),
            permanent=bool(row["permanent"]),
        )

    def _get_auth_attempt_sync(self, address: str) -> Optional[AuthAttempt]:
        row = (
            self._connection_sync()
            .execute("SELECT * FROM auth_attempts WHERE address = ?", (address,))
            .fetchone()
        )
        if row is None:
            return None
        return AuthAttempt(
            address=str(row["address"]),
            count=int(row["count"]),
            last_attempt=int(row["last_attempt"]),
        )

    def _consume_auth_state_sync(self, state: str, now: int) -> bool:
        conn = self._connection_sync()
        with conn:
            row = conn.execute(
                "SELECT expires_at FROM auth_states WHERE state = ?", (state,)
            ).fetchone()
            conn.execute("DELETE FROM auth_states WHERE state = ?", (state,))
            conn.execute("DELETE FROM auth_states WHERE expires_at <= ?", (now,))
        if row is None:
            return False
        return int(row["expires_at"]) > now

    def _list_history_sync(
        self, subject_id: str, limit: Optional[int]
    ) -> list[HistoryEntry]:
        conn = self._connection_sync()
        if limit is None:
            rows = conn.execute(
                "SELECT * FROM history WHERE subject_id = ? ORDER BY id ASC",
                (subject_id,),
            ).fetchall()
        else:
            rows = conn.execute(
                """
                SELECT * FROM (
                    SELECT * FROM history WHERE subject_id = ? ORDER BY id DESC LIMIT ?
                ) ORDER BY id ASC
                """,
                (subject_id, int(limit)),
            ).fetchall()
        return [
            HistoryEntry(
                subject_id=str(row["subject_id"]),
                author=str(row["author"]),
                content=str(row["content"]),
                direction=str(row["direction"]),
                created_at=int(row["created_at"]),
            )
            for row in rows
        ]
