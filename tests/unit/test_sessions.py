"""Unit tests for the session pool."""

from __future__ import annotations

import asyncio
import itertools

import pytest

from contracts.errors import SessionBusyError
from contracts.execution import Session
from runtime.sources.sessions import SessionPool


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _factory(clock: _Clock):
    counter = itertools.count(1)
    created: list[Session] = []

    def create() -> Session:
        n = next(counter)
        s = Session(session_id=f"s{n}", dataset_id=f"_script_{n}", created_at=clock(), last_used=clock())
        created.append(s)
        return s

    return create, created


class TestSessionPool:
    @pytest.mark.asyncio
    async def test_creates_lazily_and_reuses(self) -> None:
        clock = _Clock()
        create, created = _factory(clock)
        pool = SessionPool(create, size=1, clock=clock)
        assert created == []

        async with pool.acquire() as first:
            pass
        async with pool.acquire() as second:
            pass

        assert first is second
        assert len(created) == 1
        assert pool.idle_count == 1

    @pytest.mark.asyncio
    async def test_exclusive_while_held(self) -> None:
        clock = _Clock()
        create, _ = _factory(clock)
        pool = SessionPool(create, size=2, clock=clock)

        async with pool.acquire() as a:
            async with pool.acquire() as b:
                assert a.session_id != b.session_id

    @pytest.mark.asyncio
    async def test_busy_after_timeout(self) -> None:
        clock = _Clock()
        create, _ = _factory(clock)
        pool = SessionPool(create, size=1, acquire_timeout=0.05, clock=clock)

        async with pool.acquire():
            with pytest.raises(SessionBusyError) as info:
                async with pool.acquire():
                    pass
        assert info.value.retryable is True

    @pytest.mark.asyncio
    async def test_waiter_gets_released_session(self) -> None:
        clock = _Clock()
        create, created = _factory(clock)
        pool = SessionPool(create, size=1, acquire_timeout=1.0, clock=clock)
        release = asyncio.Event()

        async def holder() -> str:
            async with pool.acquire() as s:
                await release.wait()
                return s.session_id

        async def waiter() -> str:
            async with pool.acquire() as s:
                return s.session_id

        held = asyncio.create_task(holder())
        await asyncio.sleep(0)
        waiting = asyncio.create_task(waiter())
        await asyncio.sleep(0.01)
        release.set()

        assert await held == await waiting
        assert len(created) == 1

    @pytest.mark.asyncio
    async def test_released_on_error(self) -> None:
        clock = _Clock()
        create, _ = _factory(clock)
        pool = SessionPool(create, size=1, acquire_timeout=0.05, clock=clock)

        with pytest.raises(RuntimeError):
            async with pool.acquire():
                raise RuntimeError("query failed")

        async with pool.acquire() as s:
            assert s.session_id == "s1"

    @pytest.mark.asyncio
    async def test_idle_session_replaced(self) -> None:
        clock = _Clock()
        create, created = _factory(clock)
        pool = SessionPool(create, size=1, idle_limit=60, clock=clock)

        async with pool.acquire():
            pass
        clock.now += 61
        async with pool.acquire() as s:
            assert s.session_id == "s2"
        assert len(created) == 2

    @pytest.mark.asyncio
    async def test_old_session_replaced(self) -> None:
        clock = _Clock()
        create, _ = _factory(clock)
        pool = SessionPool(create, size=1, idle_limit=1000, age_limit=100, clock=clock)

        for _ in range(4):
            clock.now += 40
            async with pool.acquire() as s:
                pass
        assert s.session_id == "s2"

    def test_size_must_be_positive(self) -> None:
        with pytest.raises(ValueError):
            SessionPool(lambda: None, size=0)  # type: ignore[arg-type, return-value]
