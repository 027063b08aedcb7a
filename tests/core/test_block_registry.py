from __future__ import annotations

from pathlib import Path

import pytest

from support_relay.core.blocks import (
    DEFAULT_BLOCK_REASON,
    BlockRegistry,
    BlockStatus,
    is_valid_subject_id,
)
from support_relay.core.state import BlockRecord, SupportStateStore

SUBJECT = "123456789012345678"


@pytest.mark.parametrize(
    "value, expected",
    [
        ("12345678901234567", True),
        ("123456789012345678", True),
        ("1234567890123456789", True),
        ("1234567890123456", False),
        ("12345678901234567890", False),
        ("abc", False),
        ("12345678901234567a", False),
        (12345678901234567, False),
    ],
)
def test_subject_id_validation(value: object, expected: bool) -> None:
    assert is_valid_subject_id(value) is expected


@pytest.mark.anyio
async def test_timed_block_expires_at_until(tmp_path: Path, clock) -> None:
    store = SupportStateStore(tmp_path / "state.sqlite3")
    try:
        await store.initialize()
        registry = BlockRegistry(store, clock=clock)
        record = await registry.set_block(SUBJECT, 30, "spam", "mod-1")
        assert record.until == clock.now + 30 * 60 * 1000
        assert record.permanent is False

        clock.now = record.until - 1
        status = await registry.is_blocked(SUBJECT)
        assert status.blocked is True
        assert status.until == record.until
        assert status.reason == "spam"
        assert status.moderator_id == "mod-1"

        clock.now = record.until
        assert (await registry.is_blocked(SUBJECT)).blocked is False
        # The expired record was removed on read.
        assert await store.get_block(SUBJECT) is None
    finally:
        await store.close()


@pytest.mark.anyio
async def test_permanent_block_never_expires(tmp_path: Path, clock) -> None:
    store = SupportStateStore(tmp_path / "state.sqlite3")
    try:
        await store.initialize()
        registry = BlockRegistry(store, clock=clock)
        record = await registry.set_block(SUBJECT, None, None, "mod-1")
        assert record.permanent is True
        assert record.until is None
        assert record.reason == DEFAULT_BLOCK_REASON

        clock.advance(10 * 365 * 24 * 60 * 60 * 1000)
        status = await registry.is_blocked(SUBJECT)
        assert status.blocked is True
        assert status.permanent is True
    finally:
        await store.close()


@pytest.mark.anyio
async def test_record_without_until_counts_as_permanent(tmp_path: Path, clock) -> None:
    store = SupportStateStore(tmp_path / "state.sqlite3")
    try:
        await store.initialize()
        await store.put_block(
            BlockRecord(
                subject_id=SUBJECT,
                until=None,
                reason="legacy",
                moderator_id="mod-1",
                issued_at=clock.now,
                permanent=False,
            )
        )
        status = await BlockRegistry(store, clock=clock).is_blocked(SUBJECT)
        assert status.blocked is True
        assert status.permanent is True
    finally:
        await store.close()


@pytest.mark.anyio
async def test_set_block_replaces_existing(tmp_path: Path, clock) -> None:
    store = SupportStateStore(tmp_path / "state.sqlite3")
    try:
        await store.initialize()
        registry = BlockRegistry(store, clock=clock)
        await registry.set_block(SUBJECT, None, "ban", "mod-1")
        await registry.set_block(SUBJECT, 5, "cooldown", "mod-2")
        status = await registry.is_blocked(SUBJECT)
        assert status.permanent is False
        assert status.reason == "cooldown"
        assert status.moderator_id == "mod-2"
    finally:
        await store.close()


@pytest.mark.anyio
async def test_clear_block_is_idempotent(tmp_path: Path, clock) -> None:
    store = SupportStateStore(tmp_path / "state.sqlite3")
    try:
        await store.initialize()
        registry = BlockRegistry(store, clock=clock)
        await registry.set_block(SUBJECT, 10, None, "mod-1")
        assert await registry.clear_block(SUBJECT) is True
        assert await registry.clear_block(SUBJECT) is False
        assert (await registry.is_blocked(SUBJECT)).blocked is False
    finally:
        await store.close()


@pytest.mark.anyio
async def test_set_block_rejects_non_positive_duration(tmp_path: Path, clock) -> None:
    store = SupportStateStore(tmp_path / "state.sqlite3")
    try:
        await store.initialize()
        registry = BlockRegistry(store, clock=clock)
        with pytest.raises(ValueError):
            await registry.set_block(SUBJECT, 0, None, "mod-1")
        assert await store.get_block(SUBJECT) is None
    finally:
        await store.close()


def test_block_status_describe() -> None:
    now = 1_000_000
    assert BlockStatus(blocked=False).describe(now) == "not blocked"
    permanent = BlockStatus(blocked=True, permanent=True, reason="abuse")
    assert permanent.describe(now) == "blocked permanently. Reason: abuse"
    timed = BlockStatus(blocked=True, until=now + 90_000, reason="spam")
    assert timed.describe(now).startswith("blocked for another 1m 30s (until ")
    assert timed.describe(now).endswith("Reason: spam")
    assert timed.to_dict() == {
        "blocked": True,
        "until": now + 90_000,
        "reason": "spam",
        "permanent": False,
    }
