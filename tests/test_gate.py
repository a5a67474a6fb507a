"""Tests for chainwatch/gate.py — rate-limited FIFO RPC gate."""

from __future__ import annotations

import asyncio
import time

import pytest

from chainwatch.exceptions import APIError, GateClosedError
from chainwatch.gate import RpcGate

INTERVAL = 0.05


@pytest.mark.asyncio
async def test_call_returns_result() -> None:
    gate = RpcGate(interval=0)

    async def op() -> int:
        return 42

    assert await gate.call(op) == 42
    await gate.close()


@pytest.mark.asyncio
async def test_operations_run_one_at_a_time_in_fifo_order() -> None:
    """Concurrent callers are served strictly in enqueue order, never overlapping."""
    gate = RpcGate(interval=0)
    running = 0
    max_running = 0
    order: list[int] = []

    def make_op(i: int):
        async def op() -> int:
            nonlocal running, max_running
            running += 1
            max_running = max(max_running, running)
            order.append(i)
            await asyncio.sleep(0.005)
            running -= 1
            return i

        return op

    futures = [gate.enqueue(make_op(i)) for i in range(5)]
    results = await asyncio.gather(*futures)

    assert results == [0, 1, 2, 3, 4]
    assert order == [0, 1, 2, 3, 4]
    assert max_running == 1
    await gate.close()


@pytest.mark.asyncio
async def test_fixed_delay_between_operations() -> None:
    """Consecutive operations start at least `interval` apart."""
    gate = RpcGate(interval=INTERVAL)
    starts: list[float] = []

    async def op() -> None:
        starts.append(time.monotonic())

    await asyncio.gather(*(gate.call(op) for _ in range(3)))

    gaps = [b - a for a, b in zip(starts, starts[1:])]
    assert len(gaps) == 2
    assert all(gap >= INTERVAL * 0.9 for gap in gaps)
    await gate.close()


@pytest.mark.asyncio
async def test_failure_goes_to_caller_and_queue_continues() -> None:
    """A failing operation rejects only its own future."""
    gate = RpcGate(interval=0)

    async def bad() -> None:
        raise APIError("node said no")

    async def good() -> str:
        return "ok"

    f_bad = gate.enqueue(bad)
    f_good = gate.enqueue(good)

    with pytest.raises(APIError):
        await f_bad
    assert await f_good == "ok"
    await gate.close()


@pytest.mark.asyncio
async def test_single_drain_loop() -> None:
    """Enqueue while draining does not start a second loop."""
    gate = RpcGate(interval=0)
    release = asyncio.Event()

    async def slow() -> None:
        await release.wait()

    async def fast() -> str:
        return "fast"

    first = gate.enqueue(slow)
    await asyncio.sleep(0)
    assert gate.draining
    task = gate._drain_task

    second = gate.enqueue(fast)
    assert gate._drain_task is task
    assert gate.pending == 1

    release.set()
    await first
    assert await second == "fast"
    await gate.close()


@pytest.mark.asyncio
async def test_draining_flag_resets_when_idle() -> None:
    gate = RpcGate(interval=0)

    async def op() -> None:
        return None

    await gate.call(op)
    await asyncio.sleep(0.01)
    assert not gate.draining

    # A later enqueue starts a new drain
    await gate.call(op)
    await gate.close()


@pytest.mark.asyncio
async def test_cancelled_caller_is_skipped() -> None:
    gate = RpcGate(interval=0)
    ran: list[str] = []
    release = asyncio.Event()

    async def blocker() -> None:
        await release.wait()

    async def op() -> None:
        ran.append("cancelled-op")

    async def after() -> None:
        ran.append("after")

    f1 = gate.enqueue(blocker)
    f2 = gate.enqueue(op)
    f3 = gate.enqueue(after)
    f2.cancel()
    release.set()
    await f1
    await f3

    assert ran == ["after"]
    await gate.close()


@pytest.mark.asyncio
async def test_close_fails_queued_and_rejects_new() -> None:
    gate = RpcGate(interval=0)
    release = asyncio.Event()

    async def blocker() -> None:
        await release.wait()

    async def op() -> None:
        return None

    gate.enqueue(blocker)
    queued = gate.enqueue(op)
    await asyncio.sleep(0)

    await gate.close()
    with pytest.raises(GateClosedError):
        await queued
    with pytest.raises(GateClosedError):
        gate.enqueue(op)
    assert not gate.draining
