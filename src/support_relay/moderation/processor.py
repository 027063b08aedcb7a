from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from ..core.blocks import BlockRegistry
from ..core.history import HistoryLog, format_history_entry
from ..core.logging_utils import log_event
from ..core.text_chunking import paginate_lines
from ..core.time_utils import Clock, ms_to_iso, now_ms
from ..relay.notify import best_effort
from .commands import (
    CommandSpec,
    CommandUsageError,
    MuteArgs,
    SubjectArgs,
    parse_mute,
    parse_subject_only,
    parse_subject_with_reason,
    split_command,
)

logger = logging.getLogger(__name__)

NOT_ALLOWED_REPLY = "You do not have permission to use this command."

AdminCheck = Callable[[str, frozenset[str]], Awaitable[bool]]
Reply = Callable[[str, str], Awaitable[None]]


@dataclass(frozen=True)
class ModerationRequest:
    channel_id: str
    author_id: str
    content: str
    role_ids: frozenset[str] = frozenset()


class ModerationCommandProcessor:
    """Dispatches fixed-prefix moderation commands from the moderation channel.

    The admin check runs before any argument parsing; malformed arguments get the
    command's usage line and leave the block registry untouched.
    """

    def __init__(
        self,
        *,
        blocks: BlockRegistry,
        history: HistoryLog,
        is_admin: AdminCheck,
        reply: Reply,
        moderation_channel_id: Optional[str],
        history_page_size: int = 10,
        max_reply_chars: int = 2000,
        clock: Clock = now_ms,
    ) -> None:
        self._blocks = blocks
        self._history = history
        self._is_admin = is_admin
        self._reply = reply
        self._moderation_channel_id = moderation_channel_id
        self._history_page_size = history_page_size
        self._max_reply_chars = max_reply_chars
        self._clock = clock

    async def handle(self, request: ModerationRequest) -> bool:
        """Returns ``True`` when the message was a moderation command (handled)."""
        if (
            self._moderation_channel_id is None
            or request.channel_id != self._moderation_channel_id
        ):
            return False
        parsed = split_command(request.content)
        if parsed is None or parsed[0] not in COMMANDS:
            return False
        name, args = parsed
        command = COMMANDS[name]

        if not await self._is_admin(request.author_id, request.role_ids):
            log_event(
                logger,
                logging.WARNING,
                "moderation.denied",
                command=name,
                author_id=request.author_id,
            )
            await self._send(request, NOT_ALLOWED_REPLY)
            return True
        try:
            command_args = command.parse(args)
        except CommandUsageError as exc:
            log_event(
                logger,
                logging.INFO,
                "moderation.usage",
                command=name,
                error=str(exc),
            )
            await self._send(request, f"Usage: {command.usage}")
            return True

        await command.run(self, request, command_args)
        log_event(
            logger,
            logging.INFO,
            "moderation.executed",
            command=name,
            author_id=request.author_id,
        )
        return True

    async def _send(self, request: ModerationRequest, text: str) -> None:
        await best_effort(
            self._reply(request.channel_id, text),
            logger=logger,
            event="moderation.reply_failed",
            channel_id=request.channel_id,
        )

    async def _mute(self, request: ModerationRequest, args: MuteArgs) -> None:
        record = await self._blocks.set_block(
            args.subject_id, args.minutes, args.reason, request.author_id
        )
        until = ms_to_iso(record.until) if record.until is not None else "-"
        await self._send(
            request,
            f"Subject {args.subject_id} muted for {args.minutes} minutes "
            f"(until {until}). Reason: {record.reason}",
        )

    async def _ban(self, request: ModerationRequest, args: SubjectArgs) -> None:
        record = await self._blocks.set_block(
            args.subject_id, None, args.reason, request.author_id
        )
        await self._send(
            request,
            f"Subject {args.subject_id} banned permanently. Reason: {record.reason}",
        )

    async def _unblock(self, request: ModerationRequest, args: SubjectArgs) -> None:
        existed = await self._blocks.clear_block(args.subject_id)
        if existed:
            await self._send(request, f"Subject {args.subject_id} unblocked.")
        else:
            await self._send(request, f"Subject {args.subject_id} was not blocked.")

    async def _blockstatus(self, request: ModerationRequest, args: SubjectArgs) -> None:
        status = await self._blocks.is_blocked(args.subject_id)
        await self._send(
            request, f"Subject {args.subject_id} is {status.describe(self._clock())}."
        )

    async def _showhistory(self, request: ModerationRequest, args: SubjectArgs) -> None:
        entries = await self._history.entries(args.subject_id)
        if not entries:
            await self._send(request, f"No history for subject {args.subject_id}.")
            return
        pages = paginate_lines(
            [format_history_entry(entry) for entry in entries],
            page_size=self._history_page_size,
            max_len=self._max_reply_chars,
        )
        for index, page in enumerate(pages, 1):
            header = f"History for {args.subject_id} (page {index}/{len(pages)})\n"
            if len(header) + len(page) > self._max_reply_chars:
                await self._send(request, header.rstrip("\n"))
                await self._send(request, page)
            else:
                await self._send(request, header + page)


COMMANDS: dict[str, CommandSpec[Any]] = {
    command.name: command
    for command in (
        CommandSpec(
            "mute",
            "/mute <minutes> <subjectId> [reason]",
            parse_mute,
            ModerationCommandProcessor._mute,
        ),
        CommandSpec(
            "unmute",
            "/unmute <subjectId>",
            parse_subject_only,
            ModerationCommandProcessor._unblock,
        ),
        CommandSpec(
            "ban",
            "/ban <subjectId> [reason]",
            parse_subject_with_reason,
            ModerationCommandProcessor._ban,
        ),
        CommandSpec(
            "unban",
            "/unban <subjectId>",
            parse_subject_only,
            ModerationCommandProcessor._unblock,
        ),
        CommandSpec(
            "blockstatus",
            "/blockstatus <subjectId>",
            parse_subject_only,
            ModerationCommandProcessor._blockstatus,
        ),
        CommandSpec(
            "showhistory",
            "/showhistory <subjectId>",
            parse_subject_only,
            ModerationCommandProcessor._showhistory,
        ),
    )
}
