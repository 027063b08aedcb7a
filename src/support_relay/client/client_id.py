from __future__ import annotations

import logging
import secrets
from pathlib import Path

logger = logging.getLogger(__name__)

CLIENT_ID_PREFIX = "user-"


def generate_client_id() -> str:
    return f"{CLIENT_ID_PREFIX}{secrets.token_hex(5)}"


class ClientIdStore:
    """Persists the browser-style client id so it survives restarts and reconnects."""

    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def load_or_create(self) -> str:
        try:
            existing = self._path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            existing = ""
        if existing:
            return existing
        client_id = generate_client_id()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp_path.write_text(client_id + "\n", encoding="utf-8")
        tmp_path.replace(self._path)
        logger.info("Generated new support client id at %s", self._path)
        return client_id
