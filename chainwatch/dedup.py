"""In-memory dedup ledger for deposit hashes.

First-pass filter only. The authoritative check is the persisted
transaction lookup by hash, which the poller does before crediting.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable

from loguru import logger

from chainwatch.ttlmap import TTLMap

# Processed hashes expire after 30 minutes
DEFAULT_EXPIRY_SECONDS = 30 * 60

# Sweep expired entries every minute
DEFAULT_SWEEP_INTERVAL_SECONDS = 60


class DedupLedger:
    """Tracks hashes credited recently; entries expire and are swept."""

    def __init__(
        self,
        expiry: float = DEFAULT_EXPIRY_SECONDS,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        name: str = "dedup",
    ) -> None:
        self.expiry = expiry
        self.sweep_interval = sweep_interval
        self.name = name
        self._entries = TTLMap(ttl=expiry, clock=clock)
        self._sweep_task: asyncio.Task | None = None

    def is_processed(self, tx_hash: str) -> bool:
        """True only if the hash was marked and is still inside the expiry window."""
        return self._entries.is_fresh(tx_hash)

    def mark_processed(self, tx_hash: str) -> None:
        self._entries.set(tx_hash)

    def sweep(self) -> int:
        """Delete expired entries. Returns number deleted."""
        removed = self._entries.sweep()
        if removed:
            logger.debug(f"[{self.name}] swept {removed} expired hashes, {len(self)} left")
        return removed

    def __len__(self) -> int:
        return len(self._entries)

    # ── Periodic sweep ─────────────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()

    def start(self) -> None:
        """Start the periodic sweep task (idempotent)."""
        if self.running:
            return
        self._sweep_task = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def stop(self) -> None:
        if self._sweep_task is None:
            return
        self._sweep_task.cancel()
        try:
            await self._sweep_task
        except asyncio.CancelledError:
            pass
        self._sweep_task = None

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            self.sweep()
