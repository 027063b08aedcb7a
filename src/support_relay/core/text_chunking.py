from __future__ import annotations

from typing import Sequence


def chunk_text(
    text: str,
    *,
    max_len: int,
    with_numbering: bool = True,
) -> list[str]:
    """Split ``text`` into pieces no longer than ``max_len``.

    Cuts prefer newlines, then spaces. Multi-part output gets a ``(i/n)`` header
    that is counted against ``max_len``.
    """
    if not isinstance(text, str) or not text.strip():
        return []
    if max_len <= 0:
        raise ValueError("max_len must be positive")
    if len(text) <= max_len:
        return [text]

    parts = _split_text(text, max_len)
    if not with_numbering or len(parts) == 1:
        return parts
    total = len(parts)
    while True:
        allowed = max_len - len(_part_prefix(total, total))
        if allowed <= 0:
            raise ValueError("max_len too small for numbering")
        parts = _split_text(text, allowed)
        if len(parts) == total:
            break
        total = len(parts)
    return [f"{_part_prefix(idx, total)}{chunk}" for idx, chunk in enumerate(parts, 1)]


def paginate_lines(
    lines: Sequence[str], *, page_size: int, max_len: int
) -> list[str]:
    """Group ``lines`` into pages of ``page_size`` entries, each within ``max_len``."""
    if page_size <= 0:
        raise ValueError("page_size must be positive")
    pages: list[str] = []
    for start in range(0, len(lines), page_size):
        block = "\n".join(lines[start : start + page_size])
        pages.extend(chunk_text(block, max_len=max_len, with_numbering=False))
    return pages


def _part_prefix(index: int, total: int) -> str:
    return f"({index}/{total})\n"


def _split_text(text: str, limit: int) -> list[str]:
    parts: list[str] = []
    remaining = text
    while remaining:
        if len(remaining) <= limit:
            parts.append(remaining)
            break
        cut = remaining.rfind("\n", 0, limit + 1)
        if cut == -1:
            cut = remaining.rfind(" ", 0, limit + 1)
        if cut <= 0:
            cut = limit
        parts.append(remaining[:cut])
        remaining = remaining[cut:].lstrip("\n")
    return parts
