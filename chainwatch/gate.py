"""Rate-limited RPC gate.

Every call to a chain node goes through one RpcGate per chain. Calls run
strictly one at a time in FIFO order, with a fixed pause after each one, no
matter how many pollers and withdrawals are asking concurrently.

Usage:
    gate = RpcGate(interval=1.0)
    txns = await gate.call(lambda: client.get_recent_transactions(addr, 10))
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from loguru import logger

from chainwatch.exceptions import GateClosedError

T = TypeVar("T")

Operation = Callable[[], Awaitable[Any]]


class RpcGate:
    """
    Single-slot FIFO queue in front of a chain node.

    enqueue() appends and returns a future; the first enqueue while idle
    starts the drain loop. Only one drain loop exists at a time: the
    _draining flag is flipped with no await in between the check and the
    set, so two coroutines can never both start one.
    """

    def __init__(self, interval: float = 1.0, name: str = "rpc") -> None:
        self.interval = interval
        self.name = name
        self._queue: deque[tuple[Operation, asyncio.Future]] = deque()
        self._draining = False
        self._drain_task: asyncio.Task | None = None
        self._closed = False

    @property
    def pending(self) -> int:
        """Number of operations waiting (not counting the one running)."""
        return len(self._queue)

    @property
    def draining(self) -> bool:
        return self._draining

    def enqueue(self, operation: Operation) -> asyncio.Future:
        """Queue operation; the returned future resolves with its result or error."""
        if self._closed:
            raise GateClosedError(f"RPC gate {self.name!r} is closed")

        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        self._queue.append((operation, future))

        if not self._draining:
            self._draining = True
            self._drain_task = loop.create_task(self._drain())
        return future

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Enqueue and wait for the result."""
        return await self.enqueue(operation)

    async def close(self) -> None:
        """Stop draining and fail everything still queued."""
        self._closed = True
        while self._queue:
            _, future = self._queue.popleft()
            if not future.done():
                future.set_exception(GateClosedError(f"RPC gate {self.name!r} closed"))
        if self._drain_task and not self._drain_task.done():
            self._drain_task.cancel()
            try:
                await self._drain_task
            except asyncio.CancelledError:
                pass
        self._draining = False

    async def _drain(self) -> None:
        try:
            while self._queue:
                operation, future = self._queue.popleft()
                if future.cancelled():
                    continue
                try:
                    result = await operation()
                except asyncio.CancelledError:
                    if not future.done():
                        future.cancel()
                    raise
                except Exception as e:
                    logger.error(f"[{self.name}] RPC operation failed: {e}")
                    if not future.done():
                        future.set_exception(e)
                else:
                    if not future.done():
                        future.set_result(result)

                await asyncio.sleep(self.interval)
        finally:
            self._draining = False
