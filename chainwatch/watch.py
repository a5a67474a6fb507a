"""Long-running watcher for `chainwatch watch`.

Starts every enabled chain service, resumes the stored watches and emits
one JSON object per line to stdout until SIGINT / SIGTERM.

Event types emitted:
  watch_start   — services started
  deposit       — a deposit was credited (from the pollers)
  withdrawal    — a withdrawal reached CONFIRMED or FAILED
  heartbeat     — periodic proof-of-life; also re-syncs watched addresses
  watch_end     — clean shutdown

stdout is flushed after each write (critical for pipe consumers).
"""

from __future__ import annotations

import asyncio
import signal
from contextlib import suppress

from loguru import logger

from chainwatch.chains.base import ChainClient
from chainwatch.config import ChainwatchConfig
from chainwatch.db import Database
from chainwatch.notify import Notifier, emit_event, now_iso
from chainwatch.registry import ServiceRegistry

DEFAULT_HEARTBEAT_SECONDS = 60.0


async def run_watch(
    config: ChainwatchConfig,
    db: Database,
    heartbeat_seconds: float = DEFAULT_HEARTBEAT_SECONDS,
    stop_event: asyncio.Event | None = None,
    clients: dict[str, ChainClient] | None = None,
) -> int:
    """
    Main watch loop. Returns the number of heartbeat cycles completed.

    Args:
        config: Loaded ChainwatchConfig
        db: Open Database connection
        heartbeat_seconds: Heartbeat / address re-sync period
        stop_event: Set to stop. When omitted, SIGINT / SIGTERM stop the loop
        clients: Pre-built chain clients (tests)
    """
    if stop_event is None:
        stop_event = asyncio.Event()
        _install_signal_handlers(stop_event)

    notifier = Notifier(config.notify, sink=emit_event)
    registry = ServiceRegistry.from_config(config, db, notifier=notifier, clients=clients)
    started = await registry.start()

    emit_event({
        "type": "watch_start",
        "timestamp": now_iso(),
        "chains": registry.chains,
        "watches": started,
        "poll_interval_secs": config.deposits.poll_interval_seconds,
    })

    cycle = 0
    try:
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=heartbeat_seconds)
            except asyncio.TimeoutError:
                pass
            if stop_event.is_set():
                break

            cycle += 1
            try:
                added, removed = await registry.sync_watches()
            except Exception as e:
                logger.error(f"Failed to re-sync watched addresses: {e}")
                added = removed = 0

            emit_event({
                "type": "heartbeat",
                "timestamp": now_iso(),
                "cycle": cycle,
                "watches": registry.active_watches(),
                "watches_added": added,
                "watches_removed": removed,
            })
    except asyncio.CancelledError:
        logger.info("Watch cancelled")
    finally:
        await registry.shutdown()
        emit_event({
            "type": "watch_end",
            "timestamp": now_iso(),
            "cycles_completed": cycle,
        })
    return cycle


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # Not available on Windows or outside the main thread
        with suppress(NotImplementedError, RuntimeError, ValueError):
            loop.add_signal_handler(sig, stop_event.set)
