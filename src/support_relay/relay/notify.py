from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable

from ..core.logging_utils import log_event


async def best_effort(
    awaitable: Awaitable[Any],
    *,
    logger: logging.Logger,
    event: str,
    **fields: Any,
) -> bool:
    """Await a notification whose failure must not abort the caller.

    Failures are logged as ``event`` at WARNING and reported as ``False``.
    Cancellation still propagates.
    """
    try:
        await awaitable
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        log_event(logger, logging.WARNING, event, exc=exc, **fields)
        return False
    return True
