"""Tests for the per-resource queues."""

from __future__ import annotations

import asyncio

import pytest

from taskforge.ai.orchestration.resource_queue import ResourceQueueArena, normalize_resource_key


class TestNormalizeResourceKey:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("/a.txt", "/a.txt"),
            ("a.txt", "a.txt"),
            ("./src//main.py", "src/main.py"),
            ("/src/../a.txt", "/a.txt"),
            ("src\\win\\file.py", "src/win/file.py"),
            ("  /padded.txt ", "/padded.txt"),
        ],
    )
    def test_equivalent_spellings(self, raw: str, expected: str) -> None:
        assert normalize_resource_key(raw) == expected


class TestResourceQueueArena:
    @pytest.mark.asyncio
    async def test_same_key_runs_in_reservation_order(self) -> None:
        arena = ResourceQueueArena()
        order: list[str] = []
        first = arena.reserve("/a")
        second = arena.reserve("/a")

        async def run(ticket, label: str, delay: float) -> None:
            await asyncio.sleep(delay)
            async with ticket:
                order.append(label)

        await asyncio.gather(run(second, "second", 0.0), run(first, "first", 0.02))

        assert order == ["first", "second"]

    @pytest.mark.asyncio
    async def test_different_keys_do_not_wait(self) -> None:
        arena = ResourceQueueArena()
        slow = arena.reserve("/a")
        other = arena.reserve("/b")
        entered = asyncio.Event()

        async def hold() -> None:
            async with slow:
                await asyncio.wait_for(entered.wait(), timeout=1)

        async def enter_other() -> None:
            async with other:
                entered.set()

        await asyncio.gather(hold(), enter_other())

        assert other.released
        assert slow.released

    @pytest.mark.asyncio
    async def test_error_inside_turn_releases_the_queue(self) -> None:
        arena = ResourceQueueArena()
        first = arena.reserve("/a")
        second = arena.reserve("/a")

        with pytest.raises(RuntimeError):
            async with first:
                raise RuntimeError("boom")
        async with second:
            pass

        assert arena.depth("/a") == 0

    @pytest.mark.asyncio
    async def test_depth_and_issued(self) -> None:
        arena = ResourceQueueArena()
        first = arena.reserve("/a")
        arena.reserve("./a")
        arena.reserve("/a")

        assert arena.issued("/a") == 2
        assert arena.issued("a") == 1
        assert arena.depth("/a") == 2
        first.release()
        first.release()
        assert arena.depth("/a") == 1
        assert "/a" in arena
        assert len(arena) == 2

    @pytest.mark.asyncio
    async def test_drain_waits_for_every_ticket(self) -> None:
        arena = ResourceQueueArena()
        ticket = arena.reserve("/a")
        loop = asyncio.get_running_loop()
        loop.call_later(0.01, ticket.release)

        await asyncio.wait_for(arena.drain(), timeout=1)

        assert ticket.released
