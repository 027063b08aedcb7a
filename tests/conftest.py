"""Test harness configuration.

This repo uses a `src/` layout. Ensure tests always import the in-repo code even
when an older `support_relay` is installed in the environment.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Optional

import pytest

DEFAULT_NON_INTEGRATION_TIMEOUT_SECONDS = 60


def pytest_configure() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    src_path = str(repo_root / "src")
    if sys.path[:1] != [src_path] and src_path not in sys.path:
        sys.path.insert(0, src_path)


def pytest_collection_modifyitems(
    session: pytest.Session, config: pytest.Config, items: list[pytest.Item]
) -> None:
    """Apply a default per-test timeout to non-integration tests."""
    _ = session, config
    for item in items:
        if item.get_closest_marker("integration") is not None:
            continue
        item.add_marker(pytest.mark.timeout(DEFAULT_NON_INTEGRATION_TIMEOUT_SECONDS))


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class ManualClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: int = 1_700_000_000_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


class RecordingHandle:
    """Connection handle double that records envelopes and close calls."""

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.closed: Optional[tuple[int, str]] = None
        self.fail_sends = False

    @property
    def is_open(self) -> bool:
        return self.closed is None

    async def send_envelope(self, envelope: dict[str, Any]) -> None:
        if self.fail_sends:
            raise ConnectionError("socket gone")
        self.sent.append(envelope)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self.closed is None:
            self.closed = (code, reason)

    def messages(self, envelope_type: Optional[str] = None) -> list[str]:
        return [
            item["message"]
            for item in self.sent
            if envelope_type is None or item["type"] == envelope_type
        ]


@pytest.fixture
def write_config(tmp_path: Path):
    """Write `support-relay.yml` under tmp_path and return its path."""
    import yaml

    def _write(data: dict[str, Any]) -> Path:
        path = tmp_path / "support-relay.yml"
        path.write_text(yaml.safe_dump(data), encoding="utf-8")
        return path

    return _write


@pytest.fixture
def make_handle():
    return RecordingHandle
