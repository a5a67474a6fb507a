"""Chain client protocol.

The poller and the executor only talk to a chain through this interface,
always wrapped in the chain's RpcGate.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Protocol, runtime_checkable

from chainwatch.models import ObservedTransaction, SigningMaterial


class ExaminedSet(Protocol):
    """Set of transaction hashes already looked at (set, TTLMap, ...)."""

    def __contains__(self, item: object) -> bool: ...

    def add(self, item: str) -> None: ...


@dataclass
class CreatedWallet:
    """Fresh key pair and address from ChainClient.create_wallet()."""

    address: str
    material: SigningMaterial


@runtime_checkable
class ChainClient(Protocol):
    """
    Protocol that all chain clients must implement.

    Clients are responsible for:
    - Making RPC calls to the chain node
    - Normalizing transactions into ObservedTransaction
    - Signing transfers with decrypted signing material
    - Locating a broadcast transfer again (find_by_correlation_tag)

    Clients are NOT responsible for:
    - Rate limiting (that's gate.py)
    - Dedup or crediting (that's poller.py)
    - Withdrawal state (that's withdrawals.py)
    """

    chain: str

    async def get_recent_transactions(
        self, address: str, limit: int
    ) -> list[ObservedTransaction]:
        """
        Most recent `limit` transactions touching address, newest first.

        Raises:
            RateLimitError: Node rate limit hit
            NetworkError: Connection or timeout issue
            APIError: Node returned an error
        """
        ...

    async def get_balance(self, address: str) -> Decimal:
        """Balance in native units."""
        ...

    async def get_sequence_number(self, address: str) -> int | None:
        """Current nonce/seqno for address; None if the node has none."""
        ...

    def build_transfer(
        self,
        material: SigningMaterial,
        source: str,
        destination: str,
        amount: Decimal,
        sequence_number: int,
        memo: str,
    ) -> Any:
        """Sign a transfer carrying memo as its payload. No network I/O."""
        ...

    async def broadcast_transfer(self, signed_payload: Any) -> None:
        """Submit a signed transfer. Does not wait for inclusion."""
        ...

    async def find_by_correlation_tag(
        self,
        address: str,
        tag: str,
        limit: int,
        examined: ExaminedSet | None = None,
    ) -> str | None:
        """
        Hash of the newest outgoing transaction from address whose memo is
        exactly tag, or None.

        Hashes in `examined` are skipped; every hash looked at is added to it.
        Chains that echo a client-supplied id can ignore the memo entirely.
        """
        ...

    def normalize_address(self, address: str) -> str:
        """Canonical form used to compare addresses."""
        ...

    def validate_address(self, address: str) -> bool:
        """Local format check. No network call."""
        ...

    def create_wallet(self) -> CreatedWallet:
        """Generate a new key pair and its deposit address. No network call."""
        ...

    def import_wallet(self, mnemonic: str) -> CreatedWallet:
        """Derive key pair and address from an existing mnemonic. No network call."""
        ...

    async def close(self) -> None:
        ...
