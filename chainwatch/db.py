"""SQLite state management for chainwatch.

Implements the persistence collaborator used by the deposit poller and the
withdrawal executor. All database operations are async (aiosqlite).

Schema:
  - wallets: custodial wallets
  - wallet_keys: per-chain custodial address + encrypted signing material
  - watched_addresses: deposit addresses polled by the watcher
  - transactions: credited deposits (UNIQUE(chain, tx_hash) is the final
    double-credit backstop)
  - withdrawals: withdrawal requests and their state
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any

import aiosqlite

from chainwatch.exceptions import (
    DatabaseError,
    DuplicateTransactionError,
    WalletExistsError,
    WalletNotFoundError,
    WithdrawalNotFoundError,
)
from chainwatch.models import (
    DepositRecord,
    WatchedAddress,
    WithdrawalRequest,
    WithdrawalStatus,
)

DEFAULT_DB_PATH = Path.home() / ".chainwatch" / "chainwatch.db"

# SQL schema, applied on connect if tables don't exist
_SCHEMA = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS wallets (
    id           TEXT PRIMARY KEY,
    label        TEXT NOT NULL DEFAULT '',
    created_at   TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS wallet_keys (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    wallet_id    TEXT NOT NULL REFERENCES wallets(id),
    chain        TEXT NOT NULL,
    address      TEXT NOT NULL,
    data         TEXT NOT NULL,
    created_at   TEXT NOT NULL,
    UNIQUE(wallet_id, chain)
);

CREATE TABLE IF NOT EXISTS watched_addresses (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    wallet_id    TEXT NOT NULL REFERENCES wallets(id),
    chain        TEXT NOT NULL,
    address      TEXT NOT NULL,
    created_at   TEXT NOT NULL,
    active       INTEGER NOT NULL DEFAULT 1,
    UNIQUE(wallet_id, chain, address)
);

CREATE TABLE IF NOT EXISTS transactions (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    wallet_id    TEXT NOT NULL,
    chain        TEXT NOT NULL,
    tx_hash      TEXT NOT NULL,
    type         TEXT NOT NULL DEFAULT 'DEPOSIT',
    from_addr    TEXT NOT NULL,
    to_addr      TEXT NOT NULL,
    amount       TEXT NOT NULL,
    status       TEXT NOT NULL,
    created_at   TEXT NOT NULL,
    UNIQUE(chain, tx_hash)
);

CREATE TABLE IF NOT EXISTS withdrawals (
    request_id          TEXT PRIMARY KEY,
    wallet_id           TEXT NOT NULL,
    chain               TEXT NOT NULL,
    destination_address TEXT NOT NULL,
    amount              TEXT NOT NULL,
    sequence_number     INTEGER,
    status              TEXT NOT NULL CHECK (status IN ('PENDING', 'BROADCAST', 'CONFIRMED', 'FAILED')),
    correlation_payload TEXT,
    tx_hash             TEXT,
    failure_reason      TEXT,
    needs_review        INTEGER NOT NULL DEFAULT 0,
    created_at          TEXT NOT NULL,
    updated_at          TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_watched_chain ON watched_addresses(chain);
CREATE INDEX IF NOT EXISTS idx_transactions_wallet ON transactions(wallet_id);
CREATE INDEX IF NOT EXISTS idx_withdrawals_status ON withdrawals(status);
"""

SCHEMA_VERSION = 1


def _now_iso() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


class Database:
    """
    Async SQLite database manager for chainwatch.

    Usage:
        db = Database(":memory:")
        await db.connect()
        watched = await db.list_watched_addresses()
        await db.close()

    Or as async context manager:
        async with Database(path) as db:
            ...
    """

    def __init__(self, db_path: str = str(DEFAULT_DB_PATH)) -> None:
        self.db_path = db_path
        self._conn: aiosqlite.Connection | None = None

    async def connect(self) -> None:
        """Open DB connection and run schema migrations."""
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        try:
            self._conn = await aiosqlite.connect(self.db_path)
            self._conn.row_factory = aiosqlite.Row
            await self._conn.execute("PRAGMA journal_mode=WAL")
            await self._conn.execute("PRAGMA foreign_keys=ON")
            await self._apply_schema()
        except Exception as e:
            raise DatabaseError(f"Failed to connect to database: {e}") from e

    async def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None

    async def __aenter__(self) -> "Database":
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    # ──────────────────────────────────────────────────────────
    # Wallets and signing material
    # ──────────────────────────────────────────────────────────

    async def add_wallet(self, label: str = "", wallet_id: str | None = None) -> dict[str, Any]:
        """Create a custodial wallet. Returns the created wallet dict."""
        assert self._conn is not None
        wallet_id = wallet_id or uuid.uuid4().hex
        created_at = _now_iso()
        try:
            await self._conn.execute(
                "INSERT INTO wallets (id, label, created_at) VALUES (?, ?, ?)",
                (wallet_id, label, created_at),
            )
            await self._conn.commit()
        except aiosqlite.IntegrityError as e:
            raise WalletExistsError(
                f"Wallet {wallet_id} already exists", details={"wallet_id": wallet_id}
            ) from e
        return {"id": wallet_id, "label": label, "created_at": created_at}

    async def get_wallet(self, wallet_id: str) -> dict[str, Any]:
        """
        Get a wallet and its per-chain addresses.

        Raises WalletNotFoundError if not found.
        """
        assert self._conn is not None
        async with self._conn.execute("SELECT * FROM wallets WHERE id = ?", (wallet_id,)) as cursor:
            row = await cursor.fetchone()
        if not row:
            raise WalletNotFoundError(
                f"Wallet {wallet_id} not found", details={"wallet_id": wallet_id}
            )

        wallet = dict(row)
        addresses: dict[str, str] = {}
        async with self._conn.execute(
            "SELECT chain, address FROM wallet_keys WHERE wallet_id = ?", (wallet_id,)
        ) as cursor:
            async for key_row in cursor:
                addresses[key_row["chain"]] = key_row["address"]
        wallet["addresses"] = addresses
        return wallet

    async def store_signing_material(
        self, wallet_id: str, chain: str, address: str, encrypted_data: str
    ) -> None:
        """Store (or replace) the encrypted key blob for a wallet on one chain."""
        assert self._conn is not None
        await self.get_wallet(wallet_id)
        await self._conn.execute(
            """
            INSERT INTO wallet_keys (wallet_id, chain, address, data, created_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(wallet_id, chain) DO UPDATE SET
                address = excluded.address,
                data = excluded.data
            """,
            (wallet_id, chain.upper(), address, encrypted_data, _now_iso()),
        )
        await self._conn.commit()

    async def get_wallet_signing_material(self, wallet_id: str, chain: str) -> dict[str, str]:
        """
        Return {"address", "data"} where data is still encrypted.

        Raises WalletNotFoundError if the wallet has no key for this chain.
        """
        assert self._conn is not None
        async with self._conn.execute(
            "SELECT address, data FROM wallet_keys WHERE wallet_id = ? AND chain = ?",
            (wallet_id, chain.upper()),
        ) as cursor:
            row = await cursor.fetchone()
        if not row or not row["data"]:
            raise WalletNotFoundError(
                f"Private key not found for wallet {wallet_id} on {chain.upper()}",
                details={"wallet_id": wallet_id, "chain": chain.upper()},
            )
        return {"address": row["address"], "data": row["data"]}

    # ──────────────────────────────────────────────────────────
    # Watched addresses
    # ──────────────────────────────────────────────────────────

    async def add_watched_address(self, wallet_id: str, chain: str, address: str) -> WatchedAddress:
        """Register a deposit address. Raises WalletExistsError on duplicates."""
        assert self._conn is not None
        await self.get_wallet(wallet_id)
        chain = chain.upper()

        async with self._conn.execute(
            "SELECT active FROM watched_addresses WHERE wallet_id = ? AND chain = ? AND address = ?",
            (wallet_id, chain, address),
        ) as cursor:
            row = await cursor.fetchone()

        if row and row["active"]:
            raise WalletExistsError(
                f"Address {address} on {chain} is already watched for wallet {wallet_id}",
                details={"wallet_id": wallet_id, "chain": chain, "address": address},
            )

        try:
            if row:
                # Re-activate a previously removed watch
                await self._conn.execute(
                    """
                    UPDATE watched_addresses SET active = 1
                    WHERE wallet_id = ? AND chain = ? AND address = ?
                    """,
                    (wallet_id, chain, address),
                )
            else:
                await self._conn.execute(
                    """
                    INSERT INTO watched_addresses (wallet_id, chain, address, created_at, active)
                    VALUES (?, ?, ?, ?, 1)
                    """,
                    (wallet_id, chain, address, _now_iso()),
                )
            await self._conn.commit()
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to add watched address: {e}") from e

        return WatchedAddress(wallet_id=wallet_id, chain=chain, address=address)

    async def list_watched_addresses(
        self, chain: str | None = None, active_only: bool = True
    ) -> list[WatchedAddress]:
        assert self._conn is not None
        query = "SELECT wallet_id, chain, address FROM watched_addresses"
        params: list[Any] = []
        conditions: list[str] = []
        if active_only:
            conditions.append("active = 1")
        if chain:
            conditions.append("chain = ?")
            params.append(chain.upper())
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY created_at ASC"

        watched = []
        async with self._conn.execute(query, params) as cursor:
            async for row in cursor:
                watched.append(
                    WatchedAddress(
                        wallet_id=row["wallet_id"], chain=row["chain"], address=row["address"]
                    )
                )
        return watched

    async def remove_watched_address(self, wallet_id: str, chain: str, address: str) -> bool:
        """Deactivate a watched address. Returns False if it was not active."""
        assert self._conn is not None
        async with self._conn.execute(
            """
            UPDATE watched_addresses SET active = 0
            WHERE wallet_id = ? AND chain = ? AND address = ? AND active = 1
            """,
            (wallet_id, chain.upper(), address),
        ) as cursor:
            changed = cursor.rowcount
        await self._conn.commit()
        return changed > 0

    # ──────────────────────────────────────────────────────────
    # Transactions
    # ──────────────────────────────────────────────────────────

    async def find_transaction_by_hash(
        self, tx_hash: str, chain: str | None = None
    ) -> dict[str, Any] | None:
        assert self._conn is not None
        query = "SELECT * FROM transactions WHERE tx_hash = ?"
        params: list[Any] = [tx_hash]
        if chain:
            query += " AND chain = ?"
            params.append(chain.upper())
        try:
            async with self._conn.execute(query, params) as cursor:
                row = await cursor.fetchone()
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to look up transaction {tx_hash}: {e}") from e
        return dict(row) if row else None

    async def record_deposit(self, record: DepositRecord) -> dict[str, Any]:
        """
        Persist a credited deposit.

        Raises DuplicateTransactionError if the hash is already recorded on
        this chain (the UNIQUE constraint is the last line against a double
        credit).
        """
        assert self._conn is not None
        created_at = _now_iso()
        try:
            async with self._conn.execute(
                """
                INSERT INTO transactions
                (wallet_id, chain, tx_hash, type, from_addr, to_addr, amount, status, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.wallet_id,
                    record.chain.upper(),
                    record.tx_hash,
                    record.type,
                    record.from_addr,
                    record.to_addr,
                    str(record.amount),
                    record.status,
                    created_at,
                ),
            ) as cursor:
                row_id = cursor.lastrowid
            await self._conn.commit()
        except aiosqlite.IntegrityError as e:
            if "UNIQUE constraint failed" in str(e):
                raise DuplicateTransactionError(
                    f"Transaction {record.tx_hash} already recorded on {record.chain}",
                    details={"hash": record.tx_hash, "chain": record.chain},
                ) from e
            raise DatabaseError(f"Failed to record deposit: {e}") from e

        result = record.to_dict()
        result["id"] = row_id
        result["created_at"] = created_at
        return result

    async def list_transactions(
        self, wallet_id: str | None = None, chain: str | None = None, limit: int = 50
    ) -> list[dict[str, Any]]:
        assert self._conn is not None
        query = "SELECT * FROM transactions"
        params: list[Any] = []
        conditions: list[str] = []
        if wallet_id:
            conditions.append("wallet_id = ?")
            params.append(wallet_id)
        if chain:
            conditions.append("chain = ?")
            params.append(chain.upper())
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)

        rows = []
        async with self._conn.execute(query, params) as cursor:
            async for row in cursor:
                d = dict(row)
                d["amount"] = Decimal(d["amount"])
                rows.append(d)
        return rows

    # ──────────────────────────────────────────────────────────
    # Withdrawals
    # ──────────────────────────────────────────────────────────

    async def create_withdrawal(
        self,
        wallet_id: str,
        chain: str,
        destination_address: str,
        amount: Decimal,
        request_id: str | None = None,
    ) -> WithdrawalRequest:
        """Persist a new PENDING withdrawal request."""
        assert self._conn is not None
        await self.get_wallet(wallet_id)
        request = WithdrawalRequest(
            request_id=request_id or uuid.uuid4().hex,
            wallet_id=wallet_id,
            chain=chain.upper(),
            destination_address=destination_address,
            amount=Decimal(amount),
        )
        now = _now_iso()
        try:
            await self._conn.execute(
                """
                INSERT INTO withdrawals
                (request_id, wallet_id, chain, destination_address, amount, status,
                 created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    request.request_id,
                    request.wallet_id,
                    request.chain,
                    request.destination_address,
                    str(request.amount),
                    request.status.value,
                    now,
                    now,
                ),
            )
            await self._conn.commit()
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to create withdrawal: {e}") from e
        return request

    async def get_withdrawal(self, request_id: str) -> WithdrawalRequest:
        assert self._conn is not None
        async with self._conn.execute(
            "SELECT * FROM withdrawals WHERE request_id = ?", (request_id,)
        ) as cursor:
            row = await cursor.fetchone()
        if not row:
            raise WithdrawalNotFoundError(
                f"Withdrawal {request_id} not found", details={"request_id": request_id}
            )
        return _row_to_withdrawal(row)

    async def list_withdrawals(
        self,
        status: str | None = None,
        needs_review: bool | None = None,
        limit: int = 50,
    ) -> list[WithdrawalRequest]:
        assert self._conn is not None
        query = "SELECT * FROM withdrawals"
        params: list[Any] = []
        conditions: list[str] = []
        if status:
            conditions.append("status = ?")
            params.append(status.upper())
        if needs_review is not None:
            conditions.append("needs_review = ?")
            params.append(1 if needs_review else 0)
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)

        rows = []
        async with self._conn.execute(query, params) as cursor:
            async for row in cursor:
                rows.append(_row_to_withdrawal(row))
        return rows

    async def update_withdrawal_status(
        self,
        request_id: str,
        status: WithdrawalStatus | str,
        tx_hash: str | None = None,
        *,
        reason: str | None = None,
        sequence_number: int | None = None,
        correlation_payload: str | None = None,
        needs_review: bool = False,
    ) -> None:
        """Write a status change. Unset optional fields keep their stored value."""
        assert self._conn is not None
        status = WithdrawalStatus(status)
        try:
            async with self._conn.execute(
                """
                UPDATE withdrawals SET
                    status = ?,
                    tx_hash = COALESCE(?, tx_hash),
                    failure_reason = COALESCE(?, failure_reason),
                    sequence_number = COALESCE(?, sequence_number),
                    correlation_payload = COALESCE(?, correlation_payload),
                    needs_review = ?,
                    updated_at = ?
                WHERE request_id = ?
                """,
                (
                    status.value,
                    tx_hash,
                    reason,
                    sequence_number,
                    correlation_payload,
                    1 if needs_review else 0,
                    _now_iso(),
                    request_id,
                ),
            ) as cursor:
                changed = cursor.rowcount
            await self._conn.commit()
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to update withdrawal {request_id}: {e}") from e
        if changed == 0:
            raise WithdrawalNotFoundError(
                f"Withdrawal {request_id} not found", details={"request_id": request_id}
            )

    # ──────────────────────────────────────────────────────────
    # Private helpers
    # ──────────────────────────────────────────────────────────

    async def _apply_schema(self) -> None:
        """Apply schema migrations idempotently."""
        assert self._conn is not None
        await self._conn.executescript(_SCHEMA)
        await self._conn.execute(
            "INSERT OR IGNORE INTO schema_version (version) VALUES (?)",
            (SCHEMA_VERSION,),
        )
        await self._conn.commit()


def _row_to_withdrawal(row: aiosqlite.Row) -> WithdrawalRequest:
    return WithdrawalRequest(
        request_id=row["request_id"],
        wallet_id=row["wallet_id"],
        chain=row["chain"],
        destination_address=row["destination_address"],
        amount=Decimal(row["amount"]),
        sequence_number=row["sequence_number"],
        status=WithdrawalStatus(row["status"]),
        correlation_payload=row["correlation_payload"],
        tx_hash=row["tx_hash"],
        failure_reason=row["failure_reason"],
        needs_review=bool(row["needs_review"]),
    )
