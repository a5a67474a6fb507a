"""Withdrawal executor.

Drives one WithdrawalRequest from PENDING to CONFIRMED or FAILED:

1. decrypt the source wallet's signing material (memory only)
2. read seqno (missing / invalid -> 0) and balance through the RpcGate
3. refuse when amount >= balance (FAILED, nothing broadcast)
4. sign a transfer whose memo is a unique correlation tag, broadcast it
   (BROADCAST)
5. poll the wallet's recent transactions for the tag, a bounded number of
   times with a fixed delay (CONFIRMED, or FAILED + needs_review)

Any error before the broadcast lands fails the request immediately with the
error text as reason. Once the transfer has been sent, every failure (a
BROADCAST that cannot be recorded, a confirmation timeout) may hide funds
that already left custody, so the request is flagged for manual review.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from decimal import Decimal
from typing import Any, Protocol

from loguru import logger

from chainwatch.chains.base import ChainClient
from chainwatch.exceptions import ChainwatchError, WithdrawalError
from chainwatch.gate import RpcGate
from chainwatch.models import SigningMaterial, WithdrawalRequest, WithdrawalStatus
from chainwatch.notify import Notifier
from chainwatch.ttlmap import TTLMap
from chainwatch.vault import KeyVault

DEFAULT_MAX_RETRIES = 10
DEFAULT_RETRY_DELAY_SECONDS = 10.0
DEFAULT_SCAN_LIMIT = 5
DEFAULT_EXAMINED_CAP = 1000

INSUFFICIENT_BALANCE = "insufficient balance"
CONFIRMATION_TIMEOUT = "confirmation timeout"


class WithdrawalStore(Protocol):
    async def get_wallet_signing_material(self, wallet_id: str, chain: str) -> dict[str, str]: ...

    async def update_withdrawal_status(
        self,
        request_id: str,
        status: WithdrawalStatus | str,
        tx_hash: str | None = None,
        **fields: Any,
    ) -> None: ...


class WithdrawalExecutor:
    """Signs, broadcasts and confirms withdrawals for one chain."""

    def __init__(
        self,
        chain: str,
        client: ChainClient,
        gate: RpcGate,
        store: WithdrawalStore,
        vault: KeyVault,
        notifier: Notifier | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY_SECONDS,
        scan_limit: int = DEFAULT_SCAN_LIMIT,
        examined_cap: int = DEFAULT_EXAMINED_CAP,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.chain = chain.upper()
        self.client = client
        self.gate = gate
        self.store = store
        self.vault = vault
        self.notifier = notifier
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.scan_limit = scan_limit
        self.examined_cap = examined_cap
        self._clock = clock

    def correlation_tag(self, request: WithdrawalRequest) -> str:
        """Unique memo: chain, request id and a millisecond timestamp."""
        return f"{self.chain}_WITHDRAWAL_{request.request_id}_{int(self._clock() * 1000)}"

    async def execute(self, request: WithdrawalRequest) -> WithdrawalRequest:
        """
        Run the withdrawal to a terminal state and return the request.

        Raises:
            WithdrawalError: request is not PENDING.
        """
        if request.status is not WithdrawalStatus.PENDING:
            raise WithdrawalError(
                f"Withdrawal {request.request_id} is {request.status.value}, expected PENDING",
                details={"request_id": request.request_id, "status": request.status.value},
            )

        logger.info(f"[{self.chain}] Starting withdrawal {request.request_id}")

        try:
            prepared = await self._prepare(request)
            if prepared is None:
                # Rejected before broadcast (insufficient balance)
                return request
            source, tag, signed = prepared
            await self.gate.call(lambda: self.client.broadcast_transfer(signed))
        except Exception as e:
            logger.error(f"[{self.chain}] Failed to send transfer for {request.request_id}: {e}")
            await self._fail(request, f"Failed to send transfer: {e}")
            return request

        logger.info(f"[{self.chain}] Transfer initiated with payload: {tag}")
        try:
            await self._transition(
                request,
                WithdrawalStatus.BROADCAST,
                sequence_number=request.sequence_number,
                correlation_payload=tag,
            )
        except Exception as e:
            logger.critical(
                f"[{self.chain}] Transfer for {request.request_id} was sent (tag={tag}) "
                f"but BROADCAST could not be recorded: {e}"
            )
            await self._fail(
                request, f"Transfer sent but not recorded as broadcast: {e}", needs_review=True
            )
            return request

        try:
            tx_hash = await self._await_confirmation(request, source, tag)
        except Exception as e:
            logger.error(
                f"[{self.chain}] Confirmation polling aborted for {request.request_id}: {e}"
            )
            await self._fail(request, f"Confirmation polling failed: {e}", needs_review=True)
            return request

        if tx_hash is None:
            logger.error(
                f"[{self.chain}] Withdrawal {request.request_id} not found on chain after "
                f"{self.max_retries} retries (tag={request.correlation_payload}); "
                "funds may have left the wallet, manual reconciliation required"
            )
            await self._fail(
                request,
                f"{CONFIRMATION_TIMEOUT}: transfer not found after {self.max_retries} retries",
                needs_review=True,
            )
            return request

        request.tx_hash = tx_hash
        try:
            await self._transition(request, WithdrawalStatus.CONFIRMED, tx_hash=tx_hash)
        except ChainwatchError as e:
            logger.critical(
                f"[{self.chain}] Withdrawal {request.request_id} confirmed with hash "
                f"{tx_hash} but CONFIRMED could not be recorded: {e}"
            )
        logger.success(
            f"[{self.chain}] Completed withdrawal {request.request_id} with hash {tx_hash}"
        )
        await self._publish(request)
        return request

    # ──────────────────────────────────────────────────────────────
    # Steps
    # ──────────────────────────────────────────────────────────────

    async def _prepare(self, request: WithdrawalRequest) -> tuple[str, str, Any] | None:
        """
        Steps 1-4: decrypt, seqno, balance check, sign.

        Returns (source, tag, signed transfer), or None if rejected.
        """
        key_row = await self.store.get_wallet_signing_material(request.wallet_id, self.chain)
        source = key_row["address"]
        material: SigningMaterial | None = self.vault.decrypt_material(key_row["data"])

        seqno = await self._sequence_number(source)
        request.sequence_number = seqno

        balance: Decimal = await self.gate.call(lambda: self.client.get_balance(source))
        if request.amount >= balance:
            logger.warning(
                f"[{self.chain}] Not enough balance for withdrawal {request.request_id}: "
                f"requested {request.amount}, available {balance}"
            )
            await self._fail(
                request,
                f"{INSUFFICIENT_BALANCE}: requested {request.amount}, available {balance}",
            )
            return None

        tag = self.correlation_tag(request)
        request.correlation_payload = tag
        signed = self.client.build_transfer(
            material,
            source,
            request.destination_address,
            request.amount,
            seqno,
            tag,
        )
        material = None
        return source, tag, signed

    async def _sequence_number(self, source: str) -> int:
        seqno = await self.gate.call(lambda: self.client.get_sequence_number(source))
        if isinstance(seqno, bool) or not isinstance(seqno, int) or seqno < 0:
            return 0
        return seqno

    async def _await_confirmation(
        self, request: WithdrawalRequest, source: str, tag: str
    ) -> str | None:
        """Step 6. Exactly max_retries scans unless the tag turns up earlier."""
        examined = TTLMap(max_size=self.examined_cap)

        for attempt in range(1, self.max_retries + 1):
            await asyncio.sleep(self.retry_delay)
            try:
                tx_hash = await self.gate.call(
                    lambda: self.client.find_by_correlation_tag(
                        source, tag, self.scan_limit, examined
                    )
                )
            except ChainwatchError as e:
                logger.warning(
                    f"[{self.chain}] Retry {attempt}/{self.max_retries} for "
                    f"{request.request_id} failed: {e}"
                )
                continue

            if tx_hash:
                logger.info(f"[{self.chain}] Transaction confirmed with hash: {tx_hash}")
                return tx_hash
            logger.info(
                f"[{self.chain}] Retry {attempt}/{self.max_retries}: "
                f"transaction not yet confirmed"
            )
        return None

    # ──────────────────────────────────────────────────────────────
    # State changes
    # ──────────────────────────────────────────────────────────────

    async def _transition(
        self, request: WithdrawalRequest, status: WithdrawalStatus, **fields: Any
    ) -> None:
        request.transition(status)
        await self.store.update_withdrawal_status(
            request.request_id, status, fields.pop("tx_hash", None), **fields
        )

    async def _fail(
        self, request: WithdrawalRequest, reason: str, needs_review: bool = False
    ) -> None:
        if request.status.is_terminal:
            return
        request.failure_reason = reason
        request.needs_review = needs_review
        try:
            await self._transition(
                request,
                WithdrawalStatus.FAILED,
                reason=reason,
                needs_review=needs_review,
            )
        except ChainwatchError as e:
            logger.critical(
                f"[{self.chain}] Could not persist FAILED for {request.request_id} "
                f"({reason}): {e}"
            )
        await self._publish(request)

    async def _publish(self, request: WithdrawalRequest) -> None:
        if self.notifier is not None:
            await self.notifier.publish("withdrawal", request.to_dict())
