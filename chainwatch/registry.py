"""Per-chain service wiring.

Built once at startup from config. Each enabled chain gets exactly one
client, one RpcGate, one DedupLedger, one DepositPoller and one
WithdrawalExecutor; every caller reaches them through the registry, keyed
by chain.
"""

from __future__ import annotations

from dataclasses import dataclass

from loguru import logger

from chainwatch.chains import get_chain_client
from chainwatch.chains.base import ChainClient
from chainwatch.config import ChainwatchConfig
from chainwatch.db import Database
from chainwatch.dedup import DedupLedger
from chainwatch.exceptions import ChainNotActiveError, SecurityError
from chainwatch.gate import RpcGate
from chainwatch.models import WithdrawalRequest
from chainwatch.notify import Notifier
from chainwatch.poller import DepositPoller
from chainwatch.vault import KeyVault
from chainwatch.withdrawals import WithdrawalExecutor


@dataclass
class ChainService:
    """Everything that talks to one chain."""

    chain: str
    client: ChainClient
    gate: RpcGate
    ledger: DedupLedger
    poller: DepositPoller
    executor: WithdrawalExecutor | None = None      # None without an encryption key


class ServiceRegistry:
    """Chain -> ChainService lookup with start/shutdown for the whole set."""

    def __init__(self, db: Database, services: dict[str, ChainService] | None = None) -> None:
        self.db = db
        self._services: dict[str, ChainService] = dict(services or {})

    @classmethod
    def from_config(
        cls,
        config: ChainwatchConfig,
        db: Database,
        notifier: Notifier | None = None,
        clients: dict[str, ChainClient] | None = None,
    ) -> "ServiceRegistry":
        """
        Build services for every enabled chain.

        Args:
            clients: Pre-built clients by chain (tests); others come from
                     get_chain_client().
        """
        clients = clients or {}
        vault = KeyVault(config.security.encryption_key) if config.security.encryption_key else None
        if vault is None:
            logger.warning("No encryption key configured; withdrawals are disabled")

        services: dict[str, ChainService] = {}
        for chain in config.enabled_chains():
            client = clients.get(chain) or get_chain_client(chain, config)
            gate = RpcGate(interval=config.gate.interval_seconds, name=f"{chain}-rpc")
            ledger = DedupLedger(
                expiry=config.deposits.dedup_expiry_seconds,
                sweep_interval=config.deposits.sweep_interval_seconds,
                name=f"{chain}-dedup",
            )
            poller = DepositPoller(
                chain,
                client,
                gate,
                ledger,
                db,
                notifier=notifier,
                interval=config.deposits.poll_interval_seconds,
                page_size=config.deposits.page_size,
            )
            executor = None
            if vault is not None:
                executor = WithdrawalExecutor(
                    chain,
                    client,
                    gate,
                    db,
                    vault,
                    notifier=notifier,
                    max_retries=config.withdrawals.max_retries,
                    retry_delay=config.withdrawals.retry_delay_seconds,
                    scan_limit=config.withdrawals.scan_limit,
                    examined_cap=config.withdrawals.examined_cap,
                )
            services[chain] = ChainService(chain, client, gate, ledger, poller, executor)
        return cls(db, services)

    @property
    def chains(self) -> list[str]:
        return list(self._services)

    def get(self, chain: str) -> ChainService:
        """Raises ChainNotActiveError if chain is unknown or disabled."""
        service = self._services.get(chain.upper())
        if service is None:
            raise ChainNotActiveError(
                f"Chain {chain.upper()} is not active",
                details={"chain": chain.upper(), "active": self.chains},
            )
        return service

    async def start(self) -> int:
        """Start dedup sweeps and resume watches for stored addresses. Returns watches started."""
        for service in self._services.values():
            service.ledger.start()
        started, _ = await self.sync_watches()
        logger.info(f"Chain services started: {self.chains} ({started} watches)")
        return started

    async def sync_watches(self) -> tuple[int, int]:
        """
        Match running pollers to the active watched addresses in storage.

        Returns (started, stopped).
        """
        started = stopped = 0
        for chain, service in self._services.items():
            stored = await self.db.list_watched_addresses(chain=chain)
            wanted = {w.key for w in stored}
            for watched in service.poller.watched_addresses():
                if watched.key not in wanted and await service.poller.stop(watched):
                    stopped += 1
            for watched in stored:
                if service.poller.watch(watched):
                    started += 1
        return started, stopped

    def active_watches(self) -> dict[str, int]:
        return {chain: len(s.poller.active) for chain, s in self._services.items()}

    async def execute_withdrawal(self, request: WithdrawalRequest) -> WithdrawalRequest:
        service = self.get(request.chain)
        if service.executor is None:
            raise SecurityError(
                "Withdrawals need security.encryption_key (or CHAINWATCH_ENCRYPTION_KEY)"
            )
        return await service.executor.execute(request)

    async def shutdown(self) -> None:
        """Stop pollers and sweeps, close gates and clients."""
        for service in self._services.values():
            await service.poller.stop_all()
            await service.ledger.stop()
            await service.gate.close()
            await service.client.close()
        logger.info("Chain services stopped")
