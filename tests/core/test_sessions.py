from __future__ import annotations

from pathlib import Path

import pytest

from support_relay.core.sessions import PublicIdentity, SessionStore
from support_relay.core.state import SupportStateStore

IDENTITY = PublicIdentity(id="123456789012345678", username="visitor", avatar="abc")


@pytest.mark.anyio
async def test_create_and_lookup_session(tmp_path: Path, clock) -> None:
    store = SupportStateStore(tmp_path / "state.sqlite3")
    try:
        await store.initialize()
        sessions = SessionStore(store, duration_ms=60_000, clock=clock)
        record = await sessions.create(IDENTITY, access_token="tok", refresh_token="r")
        assert len(record.session_id) == 64
        assert record.expires_at == clock.now + 60_000

        loaded = await sessions.get_valid(record.session_id)
        assert loaded == record
        assert PublicIdentity.from_session(loaded) == IDENTITY
    finally:
        await store.close()


@pytest.mark.anyio
async def test_session_expires_at_boundary(tmp_path: Path, clock) -> None:
    store = SupportStateStore(tmp_path / "state.sqlite3")
    try:
        await store.initialize()
        sessions = SessionStore(store, duration_ms=60_000, clock=clock)
        record = await sessions.create(IDENTITY)

        clock.now = record.expires_at - 1
        assert await sessions.get_valid(record.session_id) is not None

        clock.now = record.expires_at
        assert await sessions.get_valid(record.session_id) is None
        assert await store.get_session(record.session_id) is None
    finally:
        await store.close()


@pytest.mark.anyio
async def test_delete_and_unknown_sessions(tmp_path: Path, clock) -> None:
    store = SupportStateStore(tmp_path / "state.sqlite3")
    try:
        await store.initialize()
        sessions = SessionStore(store, duration_ms=60_000, clock=clock)
        record = await sessions.create(IDENTITY)
        await sessions.delete(record.session_id)
        await sessions.delete(None)
        assert await sessions.get_valid(record.session_id) is None
        assert await sessions.get_valid(None) is None
        assert await sessions.get_valid("missing") is None
    finally:
        await store.close()


def test_public_identity_label() -> None:
    assert IDENTITY.label == "visitor (123456789012345678)"
    assert IDENTITY.to_dict() == {
        "id": "123456789012345678",
        "username": "visitor",
        "avatar": "abc",
    }
