"""Session pool — exclusive, reusable backend sessions.

Each session is held by at most one invocation at a time.  Released
sessions go back to the pool and are reused until they grow stale.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable

from contracts.errors import SessionBusyError
from contracts.execution import Session
from contracts.source import SessionProvider

logger = logging.getLogger(__name__)

# BigQuery ends a session after 24h without activity and 7 days after creation.
_IDLE_LIMIT_SECONDS = 23 * 60 * 60
_AGE_LIMIT_SECONDS = 6 * 24 * 60 * 60


class SessionPool(SessionProvider):
    """Bounded pool of lazily created sessions."""

    def __init__(
        self,
        create: Callable[[], Session],
        *,
        size: int = 1,
        acquire_timeout: float = 5.0,
        idle_limit: float = _IDLE_LIMIT_SECONDS,
        age_limit: float = _AGE_LIMIT_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if size < 1:
            raise ValueError(f"session pool size must be at least 1, got {size}")
        self._create = create
        self._size = size
        self._acquire_timeout = acquire_timeout
        self._idle_limit = idle_limit
        self._age_limit = age_limit
        self._clock = clock
        self._slots = asyncio.Semaphore(size)
        self._idle: list[Session] = []

    @property
    def size(self) -> int:
        return self._size

    @property
    def idle_count(self) -> int:
        return len(self._idle)

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[Session]:
        try:
            await asyncio.wait_for(self._slots.acquire(), timeout=self._acquire_timeout)
        except asyncio.TimeoutError:
            raise SessionBusyError(
                f"No session became free within {self._acquire_timeout:g}s; retry later"
            ) from None

        session: Session | None = None
        try:
            session = await self._checkout()
            yield session
        finally:
            if session is not None:
                session.last_used = self._clock()
                self._idle.append(session)
            self._slots.release()

    async def _checkout(self) -> Session:
        now = self._clock()
        while self._idle:
            session = self._idle.pop()
            if self._is_fresh(session, now):
                return session
            logger.info("Dropping stale session %s", session.session_id)
        session = await asyncio.to_thread(self._create)
        logger.info("Created session %s", session.session_id)
        return session

    def _is_fresh(self, session: Session, now: float) -> bool:
        return (
            now - session.last_used < self._idle_limit
            and now - session.created_at < self._age_limit
        )
