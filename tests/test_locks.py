"""Tests for the keyed async lock."""

import asyncio

import pytest

from commintel.core.locks import KeyedLock


class TestKeyedLock:
    """Tests for KeyedLock.acquire()."""

    @pytest.mark.asyncio
    async def test_same_key_is_serialized(self) -> None:
        locks = KeyedLock("thread")
        order: list[str] = []

        async def worker(name: str) -> None:
            async with locks.acquire("T1"):
                order.append(f"{name}-start")
                await asyncio.sleep(0.01)
                order.append(f"{name}-end")

        await asyncio.gather(worker("a"), worker("b"))
        assert order == ["a-start", "a-end", "b-start", "b-end"]

    @pytest.mark.asyncio
    async def test_different_keys_run_concurrently(self) -> None:
        locks = KeyedLock("thread")
        held = asyncio.Event()

        async def holder() -> None:
            async with locks.acquire("T1"):
                held.set()
                await asyncio.sleep(0.05)

        task = asyncio.create_task(holder())
        await held.wait()
        async with locks.acquire("T2", timeout=0.01):
            assert locks.locked("T1")
        await task

    @pytest.mark.asyncio
    async def test_timeout_raises_and_cleans_up(self) -> None:
        locks = KeyedLock("item")
        async with locks.acquire("I1"):
            with pytest.raises(TimeoutError):
                async with locks.acquire("I1", timeout=0.01):
                    pass
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_entries_removed_when_released(self) -> None:
        locks = KeyedLock()
        async with locks.acquire("a"):
            assert len(locks) == 1
        assert len(locks) == 0
        assert not locks.locked("a")

    @pytest.mark.asyncio
    async def test_released_on_error(self) -> None:
        locks = KeyedLock()
        with pytest.raises(RuntimeError):
            async with locks.acquire("a"):
                raise RuntimeError("boom")
        async with locks.acquire("a", timeout=0.01):
            pass
