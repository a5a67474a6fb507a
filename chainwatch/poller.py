"""Deposit poller: one loop per watched address.

Each cycle fetches the newest transactions through the chain's RpcGate,
drops anything already persisted or recently credited, checks that the
transfer really landed on the watched address and hands it to the store.

A failed cycle is logged and the next one runs on schedule; there is no
retry logic beyond "try again next cycle".
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Protocol

from loguru import logger

from chainwatch.chains.base import ChainClient
from chainwatch.dedup import DedupLedger
from chainwatch.exceptions import (
    ChainwatchError,
    DuplicateTransactionError,
    InvalidAddressError,
)
from chainwatch.gate import RpcGate
from chainwatch.models import DepositRecord, ObservedTransaction, WatchedAddress
from chainwatch.notify import Notifier

DEFAULT_POLL_INTERVAL_SECONDS = 60.0
DEFAULT_PAGE_SIZE = 10


class DepositStore(Protocol):
    async def find_transaction_by_hash(
        self, tx_hash: str, chain: str | None = None
    ) -> dict[str, Any] | None: ...

    async def record_deposit(self, record: DepositRecord) -> Any: ...


@dataclass
class _Watch:
    watched: WatchedAddress
    stop_event: asyncio.Event
    task: asyncio.Task | None = None


class DepositPoller:
    """
    Polls watched addresses of one chain and credits new deposits.

    A guard map keyed by (wallet, address) keeps a second loop from
    starting for a pair that is already being watched.
    """

    def __init__(
        self,
        chain: str,
        client: ChainClient,
        gate: RpcGate,
        ledger: DedupLedger,
        store: DepositStore,
        notifier: Notifier | None = None,
        interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> None:
        self.chain = chain.upper()
        self.client = client
        self.gate = gate
        self.ledger = ledger
        self.store = store
        self.notifier = notifier
        self.interval = interval
        self.page_size = page_size
        self._watches: dict[str, _Watch] = {}

    @property
    def active(self) -> list[str]:
        """Guard keys of running watches."""
        return list(self._watches)

    def is_watching(self, watched: WatchedAddress) -> bool:
        return watched.key in self._watches

    def watched_addresses(self) -> list[WatchedAddress]:
        return [entry.watched for entry in self._watches.values()]

    def watch(self, watched: WatchedAddress) -> bool:
        """
        Start polling watched. Returns False if a loop already runs for the
        same (wallet, address).
        """
        if watched.key in self._watches:
            logger.info(
                f"[{self.chain}] Monitoring already in progress for wallet "
                f"{watched.wallet_id} on address {watched.address}"
            )
            return False

        entry = _Watch(watched=watched, stop_event=asyncio.Event())
        self._watches[watched.key] = entry
        entry.task = asyncio.get_running_loop().create_task(self._run(entry))
        logger.info(
            f"[{self.chain}] Starting deposit monitoring for wallet "
            f"{watched.wallet_id} on address {watched.address}"
        )
        return True

    async def stop(self, watched: WatchedAddress) -> bool:
        """Stop one watch. Returns False if it was not running."""
        entry = self._watches.pop(watched.key, None)
        if entry is None:
            return False
        entry.stop_event.set()
        if entry.task is not None and not entry.task.done():
            entry.task.cancel()
            try:
                await entry.task
            except asyncio.CancelledError:
                pass
        logger.info(f"[{self.chain}] Stopped deposit monitoring for {watched.address}")
        return True

    async def stop_all(self) -> None:
        for entry in list(self._watches.values()):
            await self.stop(entry.watched)

    async def poll_once(self, watched: WatchedAddress) -> int:
        """
        Run one poll cycle for watched. Returns the number of deposits credited.

        Fetch errors propagate; the loop in _run() catches and logs them.
        """
        address = watched.address
        txns: list[ObservedTransaction] = await self.gate.call(
            lambda: self.client.get_recent_transactions(address, self.page_size)
        )
        expected_to = self.client.normalize_address(address)

        credited = 0
        for tx in txns:
            try:
                if await self._process(watched, expected_to, tx):
                    credited += 1
            except ChainwatchError as e:
                logger.error(
                    f"[{self.chain}] Error processing transaction {tx.tx_hash} "
                    f"for {address}: {e}"
                )
        return credited

    # ──────────────────────────────────────────────────────────────
    # Private helpers
    # ──────────────────────────────────────────────────────────────

    async def _run(self, entry: _Watch) -> None:
        watched = entry.watched
        try:
            while not entry.stop_event.is_set():
                try:
                    await self.poll_once(watched)
                except Exception as e:
                    logger.error(
                        f"[{self.chain}] Error checking deposits for {watched.address}: {e}"
                    )
                try:
                    await asyncio.wait_for(entry.stop_event.wait(), timeout=self.interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            if self._watches.get(watched.key) is entry:
                del self._watches[watched.key]

    async def _process(
        self, watched: WatchedAddress, expected_to: str, tx: ObservedTransaction
    ) -> bool:
        existing = await self.store.find_transaction_by_hash(tx.tx_hash, self.chain)
        if existing or self.ledger.is_processed(tx.tx_hash):
            return False
        if not tx.success:
            return False

        try:
            actual_to = self.client.normalize_address(tx.to_addr)
        except InvalidAddressError:
            actual_to = None
        if actual_to != expected_to:
            logger.warning(
                f"[{self.chain}] Transaction {tx.tx_hash} is not for the expected "
                f"address {watched.address} (to={tx.to_addr})"
            )
            return False

        record = DepositRecord(
            wallet_id=watched.wallet_id,
            chain=self.chain,
            tx_hash=tx.tx_hash,
            from_addr=tx.from_addr,
            to_addr=watched.address,
            amount=tx.amount,
        )
        try:
            await self.store.record_deposit(record)
        except DuplicateTransactionError:
            # Lost a race with another writer; the stored row wins
            logger.debug(f"[{self.chain}] Transaction {tx.tx_hash} already recorded")
            self.ledger.mark_processed(tx.tx_hash)
            return False

        self.ledger.mark_processed(tx.tx_hash)
        logger.success(
            f"[{self.chain}] Credited deposit {tx.tx_hash}: {tx.amount} "
            f"to wallet {watched.wallet_id}"
        )

        if self.notifier is not None:
            await self.notifier.publish("deposit", record.to_dict())
        return True
