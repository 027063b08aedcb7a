from __future__ import annotations

import re
from pathlib import Path

from support_relay.client.client_id import ClientIdStore, generate_client_id

CLIENT_ID_RE = re.compile(r"^user-[0-9a-f]{10}$")


def test_generated_ids_are_prefixed_hex() -> None:
    first = generate_client_id()
    second = generate_client_id()
    assert CLIENT_ID_RE.match(first)
    assert CLIENT_ID_RE.match(second)
    assert first != second


def test_client_id_is_persisted_across_loads(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "client-id"
    store = ClientIdStore(path)

    created = store.load_or_create()

    assert CLIENT_ID_RE.match(created)
    assert path.read_text(encoding="utf-8").strip() == created
    assert ClientIdStore(path).load_or_create() == created


def test_blank_file_gets_a_fresh_id(tmp_path: Path) -> None:
    path = tmp_path / "client-id"
    path.write_text("\n", encoding="utf-8")

    created = ClientIdStore(path).load_or_create()

    assert CLIENT_ID_RE.match(created)
    assert not (tmp_path / "client-id.tmp").exists()
