from __future__ import annotations

import logging
import sqlite3
from collections import deque

from .logging_utils import log_event
from .state import AuthAttempt, SupportStateStore
from .time_utils import Clock, now_ms

logger = logging.getLogger(__name__)


class AuthRateLimiter:
    """Per-address attempt counter for the authorization-initiation endpoint.

    The count resets once ``window_ms`` has elapsed since the last attempt. Store
    failures allow the request.
    """

    def __init__(
        self,
        store: SupportStateStore,
        *,
        max_attempts: int = 5,
        window_ms: int = 300_000,
        clock: Clock = now_ms,
    ) -> None:
        self._store = store
        self._max_attempts = max_attempts
        self._window_ms = window_ms
        self._clock = clock

    async def hit(self, address: str) -> bool:
        now = self._clock()
        try:
            attempt = await self._store.get_auth_attempt(address)
            count = 0
            if attempt is not None and now - attempt.last_attempt <= self._window_ms:
                count = attempt.count
            count += 1
            await self._store.put_auth_attempt(
                AuthAttempt(address=address, count=count, last_attempt=now)
            )
        except sqlite3.Error as exc:
            log_event(
                logger,
                logging.WARNING,
                "auth.rate_limit.store_failed",
                address=address,
                exc=exc,
            )
            return True
        return count <= self._max_attempts


class MessageRateLimiter:
    """In-memory rolling window of visitor message timestamps per client id."""

    def __init__(
        self,
        *,
        max_messages: int = 5,
        window_ms: int = 1000,
        clock: Clock = now_ms,
    ) -> None:
        self._max_messages = max_messages
        self._window_ms = window_ms
        self._clock = clock
        self._events: dict[str, deque[int]] = {}

    def allow(self, client_id: str) -> bool:
        now = self._clock()
        events = self._events.setdefault(client_id, deque())
        while events and now - events[0] >= self._window_ms:
            events.popleft()
        if len(events) >= self._max_messages:
            return False
        events.append(now)
        return True

    def forget(self, client_id: str) -> None:
        self._events.pop(client_id, None)
