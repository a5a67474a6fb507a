"""
Shared data models for chainwatch.

These dataclasses are the canonical data shapes used across all modules:
chain clients produce ObservedTransaction, the poller turns them into
DepositRecord, the executor drives WithdrawalRequest through its states.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum

from chainwatch.exceptions import InvalidTransitionError


@dataclass(frozen=True)
class WatchedAddress:
    """A wallet's deposit address on one chain."""

    wallet_id: str
    chain: str          # "TON"
    address: str

    @property
    def key(self) -> str:
        """Guard key: one poller per (wallet, address) pair."""
        return f"{self.wallet_id}_{self.address}"

    def short_address(self) -> str:
        """Return truncated address for display: EQBv...x3Fk"""
        if len(self.address) > 12:
            return f"{self.address[:6]}...{self.address[-4:]}"
        return self.address


@dataclass
class ObservedTransaction:
    """A chain transaction seen during polling, normalised across chains."""

    tx_hash: str
    from_addr: str
    to_addr: str
    amount: Decimal             # In chain's native unit: TON, etc.
    timestamp: str              # ISO8601 UTC
    success: bool = True
    memo: str | None = None     # Comment / payload text, if any
    fee: Decimal | None = None


@dataclass
class DepositRecord:
    """A credited deposit, as handed to the persistence collaborator."""

    wallet_id: str
    chain: str
    tx_hash: str
    from_addr: str
    to_addr: str
    amount: Decimal
    status: str = "COMPLETED"
    type: str = "DEPOSIT"

    def to_dict(self) -> dict:
        return {
            "wallet_id": self.wallet_id,
            "chain": self.chain,
            "hash": self.tx_hash,
            "from": self.from_addr,
            "to": self.to_addr,
            "amount": self.amount,
            "status": self.status,
            "type": self.type,
        }


@dataclass
class SigningMaterial:
    """Decrypted key pair. Lives in memory only, never persisted in this form."""

    private_key: str    # hex
    public_key: str     # hex
    mnemonic: str = ""

    def __repr__(self) -> str:
        return f"SigningMaterial(public_key={self.public_key[:8]}..., private_key=***)"


class WithdrawalStatus(str, Enum):
    PENDING = "PENDING"
    BROADCAST = "BROADCAST"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (WithdrawalStatus.CONFIRMED, WithdrawalStatus.FAILED)


_ALLOWED_TRANSITIONS: dict[WithdrawalStatus, set[WithdrawalStatus]] = {
    WithdrawalStatus.PENDING: {WithdrawalStatus.BROADCAST, WithdrawalStatus.FAILED},
    WithdrawalStatus.BROADCAST: {WithdrawalStatus.CONFIRMED, WithdrawalStatus.FAILED},
    WithdrawalStatus.CONFIRMED: set(),
    WithdrawalStatus.FAILED: set(),
}


@dataclass
class WithdrawalRequest:
    """
    An outgoing transfer in progress.

    Status only ever moves forward:
    PENDING -> BROADCAST -> CONFIRMED | FAILED, or PENDING -> FAILED
    when the request is rejected before anything is broadcast.
    """

    request_id: str
    wallet_id: str
    chain: str
    destination_address: str
    amount: Decimal
    sequence_number: int | None = None
    status: WithdrawalStatus = WithdrawalStatus.PENDING
    correlation_payload: str | None = None
    tx_hash: str | None = None
    failure_reason: str | None = None
    needs_review: bool = False      # True when funds may have left custody
    history: list[WithdrawalStatus] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.status = WithdrawalStatus(self.status)
        if not self.history:
            self.history.append(self.status)

    def transition(self, new_status: WithdrawalStatus) -> None:
        """Move to new_status; raises InvalidTransitionError on regression."""
        new_status = WithdrawalStatus(new_status)
        if new_status not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Withdrawal {self.request_id}: {self.status.value} -> {new_status.value} "
                "is not allowed",
                details={"request_id": self.request_id, "from": self.status.value,
                         "to": new_status.value},
            )
        self.status = new_status
        self.history.append(new_status)

    def to_dict(self) -> dict:
        """Serialize for JSON output."""
        return {
            "request_id": self.request_id,
            "wallet_id": self.wallet_id,
            "chain": self.chain,
            "destination_address": self.destination_address,
            "amount": self.amount,
            "sequence_number": self.sequence_number,
            "status": self.status.value,
            "correlation_payload": self.correlation_payload,
            "tx_hash": self.tx_hash,
            "failure_reason": self.failure_reason,
            "needs_review": self.needs_review,
        }
