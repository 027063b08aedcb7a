from __future__ import annotations

import re
from dataclasses import dataclass
from typing import (
    TYPE_CHECKING,
    Awaitable,
    Callable,
    Generic,
    Optional,
    Sequence,
    TypeVar,
)

from ..core.blocks import is_valid_subject_id

if TYPE_CHECKING:
    from .processor import ModerationCommandProcessor, ModerationRequest

MAX_MUTE_MINUTES = 60 * 24 * 365

_MENTION = re.compile(r"^<@!?(\d+)>$")


class CommandUsageError(ValueError):
    """Arguments did not match the command's grammar."""


@dataclass(frozen=True)
class MuteArgs:
    minutes: int
    subject_id: str
    reason: Optional[str] = None


@dataclass(frozen=True)
class SubjectArgs:
    subject_id: str
    reason: Optional[str] = None


ArgsT = TypeVar("ArgsT", MuteArgs, SubjectArgs)


@dataclass(frozen=True)
class CommandSpec(Generic[ArgsT]):
    """One moderation command: its grammar and the processor step that runs it.

    ``parse`` and ``run`` share the argument type, so a handler only ever sees
    the arguments its own parser produced.
    """

    name: str
    usage: str
    parse: Callable[[Sequence[str]], ArgsT]
    run: Callable[
        ["ModerationCommandProcessor", "ModerationRequest", ArgsT], Awaitable[None]
    ]


def normalize_subject_token(token: str) -> str:
    match = _MENTION.match(token)
    return match.group(1) if match else token


def _subject(token: str) -> str:
    subject_id = normalize_subject_token(token)
    if not is_valid_subject_id(subject_id):
        raise CommandUsageError(f"invalid subject id: {token!r}")
    return subject_id


def _reason(args: Sequence[str]) -> Optional[str]:
    text = " ".join(args).strip()
    return text or None


def parse_mute(args: Sequence[str]) -> MuteArgs:
    if len(args) < 2:
        raise CommandUsageError("mute needs minutes and a subject id")
    if not args[0].isdigit():
        raise CommandUsageError(f"invalid minutes: {args[0]!r}")
    minutes = int(args[0])
    if not 0 < minutes <= MAX_MUTE_MINUTES:
        raise CommandUsageError(f"minutes out of range: {minutes}")
    return MuteArgs(
        minutes=minutes, subject_id=_subject(args[1]), reason=_reason(args[2:])
    )


def parse_subject_with_reason(args: Sequence[str]) -> SubjectArgs:
    if not args:
        raise CommandUsageError("a subject id is required")
    return SubjectArgs(subject_id=_subject(args[0]), reason=_reason(args[1:]))


def parse_subject_only(args: Sequence[str]) -> SubjectArgs:
    if len(args) != 1:
        raise CommandUsageError("exactly one subject id is required")
    return SubjectArgs(subject_id=_subject(args[0]))


def split_command(content: str) -> Optional[tuple[str, list[str]]]:
    """``"/Mute 30 123"`` -> ``("mute", ["30", "123"])``; ``None`` if not a command."""
    text = content.strip()
    if not text.startswith("/"):
        return None
    parts = text[1:].split()
    if not parts:
        return None
    return parts[0].lower(), parts[1:]
