"""Pytest fixtures shared across all chainwatch tests."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

import pytest
import pytest_asyncio

from chainwatch.chains.base import CreatedWallet, ExaminedSet
from chainwatch.config import (
    ChainwatchConfig,
    DatabaseConfig,
    DepositConfig,
    GateConfig,
    SecurityConfig,
    WithdrawalConfig,
)
from chainwatch.db import Database
from chainwatch.exceptions import (
    DatabaseError,
    DuplicateTransactionError,
    NetworkTimeoutError,
    WalletNotFoundError,
)
from chainwatch.models import DepositRecord, ObservedTransaction, SigningMaterial
from chainwatch.vault import KeyVault

WALLET_ID = "W1"
ADDR_1 = "A1"
ADDR_2 = "A2"
SOURCE_ADDR = "SRC"
DEST_ADDR = "DST"

TEST_FERNET_KEY = KeyVault.generate_key()


# ── Config fixtures ───────────────────────────────────────────────────────────


@pytest.fixture
def sample_config() -> ChainwatchConfig:
    """Minimal valid ChainwatchConfig for tests (no pacing, no waits)."""
    return ChainwatchConfig(
        gate=GateConfig(interval_seconds=0.0),
        deposits=DepositConfig(
            poll_interval_seconds=3600.0,
            page_size=10,
            dedup_expiry_seconds=1800.0,
            sweep_interval_seconds=60.0,
        ),
        withdrawals=WithdrawalConfig(max_retries=10, retry_delay_seconds=0.0),
        database=DatabaseConfig(path=":memory:"),
        security=SecurityConfig(encryption_key=TEST_FERNET_KEY),
    )


@pytest.fixture
def vault() -> KeyVault:
    return KeyVault(TEST_FERNET_KEY)


@pytest.fixture
def signing_material() -> SigningMaterial:
    return SigningMaterial(private_key="ab" * 64, public_key="cd" * 32, mnemonic="word " * 23 + "word")


# ── DB fixtures ───────────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def db() -> Database:
    """Fresh in-memory database for each test."""
    database = Database(":memory:")
    await database.connect()
    yield database
    await database.close()


# ── Fake chain client ─────────────────────────────────────────────────────────


def make_tx(
    tx_hash: str = "tx1",
    to_addr: str = ADDR_1,
    amount: str = "5",
    from_addr: str = "SENDER",
    success: bool = True,
    memo: str | None = None,
) -> ObservedTransaction:
    return ObservedTransaction(
        tx_hash=tx_hash,
        from_addr=from_addr,
        to_addr=to_addr,
        amount=Decimal(amount),
        timestamp="2026-01-01T00:00:00+00:00",
        success=success,
        memo=memo,
    )


class FakeChainClient:
    """
    In-memory chain. Addresses normalize by stripping whitespace only.

    Withdrawal confirmation: once `land_on_call` find_by_correlation_tag
    calls have happened after a broadcast, the transfer becomes visible.
    """

    chain = "TON"

    def __init__(self) -> None:
        self.transactions: dict[str, list[ObservedTransaction]] = {}
        self.balance = Decimal("100")
        self.seqno: Any = 3
        self.land_on_call: int | None = 1
        self.find_failures: set[int] = set()
        self.fetch_error: Exception | None = None
        self.broadcast_error: Exception | None = None

        self.fetch_calls = 0
        self.find_calls = 0
        self.examined_seen: list[ExaminedSet | None] = []
        self.built: list[dict[str, Any]] = []
        self.broadcasts: list[str] = []
        self.outgoing: list[ObservedTransaction] = []
        self.closed = False

    async def get_recent_transactions(self, address: str, limit: int) -> list[ObservedTransaction]:
        self.fetch_calls += 1
        if self.fetch_error is not None:
            err, self.fetch_error = self.fetch_error, None
            raise err
        return list(self.transactions.get(address, []))[:limit]

    async def get_balance(self, address: str) -> Decimal:
        return self.balance

    async def get_sequence_number(self, address: str) -> Any:
        return self.seqno

    def build_transfer(
        self,
        material: SigningMaterial,
        source: str,
        destination: str,
        amount: Decimal,
        sequence_number: int,
        memo: str,
    ) -> str:
        self.built.append(
            {
                "material": material,
                "source": source,
                "destination": destination,
                "amount": amount,
                "sequence_number": sequence_number,
                "memo": memo,
            }
        )
        return f"signed:{memo}"

    async def broadcast_transfer(self, signed_payload: str) -> None:
        if self.broadcast_error is not None:
            raise self.broadcast_error
        self.broadcasts.append(signed_payload)

    async def find_by_correlation_tag(
        self,
        address: str,
        tag: str,
        limit: int,
        examined: ExaminedSet | None = None,
    ) -> str | None:
        self.find_calls += 1
        self.examined_seen.append(examined)
        if self.find_calls in self.find_failures:
            raise NetworkTimeoutError("node timed out")

        if self.land_on_call is not None and self.find_calls >= self.land_on_call and not self.outgoing:
            self.outgoing.insert(0, make_tx(tx_hash=f"out-{tag}", to_addr=DEST_ADDR, memo=tag))

        for tx in self.outgoing[:limit]:
            if examined is not None:
                if tx.tx_hash in examined:
                    continue
                examined.add(tx.tx_hash)
            if tx.memo == tag:
                return tx.tx_hash
        return None

    def normalize_address(self, address: str) -> str:
        return address.strip()

    def validate_address(self, address: str) -> bool:
        return bool(address.strip())

    def create_wallet(self) -> CreatedWallet:
        return CreatedWallet(
            address="NEW", material=SigningMaterial(private_key="11" * 64, public_key="22" * 32)
        )

    def import_wallet(self, mnemonic: str) -> CreatedWallet:
        return CreatedWallet(
            address="IMPORTED",
            material=SigningMaterial(private_key="33" * 64, public_key="44" * 32, mnemonic=mnemonic),
        )

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_client() -> FakeChainClient:
    return FakeChainClient()


# ── Fake persistence collaborator ─────────────────────────────────────────────


@dataclass
class FakeStore:
    """Records everything the poller and executor hand to persistence."""

    deposits: list[DepositRecord] = field(default_factory=list)
    persisted_hashes: set[str] = field(default_factory=set)
    duplicate_on_insert: set[str] = field(default_factory=set)
    keys: dict[tuple[str, str], dict[str, str]] = field(default_factory=dict)
    updates: list[dict[str, Any]] = field(default_factory=list)
    lookup_errors: set[str] = field(default_factory=set)
    failing_statuses: set[str] = field(default_factory=set)

    async def find_transaction_by_hash(self, tx_hash: str, chain: str | None = None) -> dict | None:
        if tx_hash in self.lookup_errors:
            raise DatabaseError(f"Failed to look up transaction {tx_hash}: disk I/O error")
        if tx_hash in self.persisted_hashes:
            return {"tx_hash": tx_hash, "chain": chain}
        return None

    async def record_deposit(self, record: DepositRecord) -> dict:
        if record.tx_hash in self.duplicate_on_insert or record.tx_hash in self.persisted_hashes:
            raise DuplicateTransactionError(f"Transaction {record.tx_hash} already recorded")
        self.deposits.append(record)
        self.persisted_hashes.add(record.tx_hash)
        return record.to_dict()

    async def get_wallet_signing_material(self, wallet_id: str, chain: str) -> dict[str, str]:
        try:
            return self.keys[(wallet_id, chain)]
        except KeyError:
            raise WalletNotFoundError(f"Private key not found for wallet {wallet_id}") from None

    async def update_withdrawal_status(
        self, request_id: str, status: Any, tx_hash: str | None = None, **fields: Any
    ) -> None:
        if getattr(status, "value", status) in self.failing_statuses:
            raise DatabaseError("database is locked")
        self.updates.append({"request_id": request_id, "status": status, "tx_hash": tx_hash, **fields})


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
