"""
TON chain client — Toncenter HTTP API v2.

API docs: https://toncenter.com/api/v2/
Rate limit: 1 req/sec without an API key, higher with one. Pacing is the
RpcGate's job; this client makes exactly one HTTP call per method.

Design decisions:
- Uses async httpx for all HTTP calls (GET for reads, POST /sendBoc).
- Amounts come back in nanotons; converted to Decimal TON (10^9).
- Transfers are signed locally with tonsdk wallet contracts and broadcast
  as a base64 BOC. Toncenter does not echo any client-side id on sendBoc,
  so the memo (text comment) carries a correlation tag that
  find_by_correlation_tag() later looks for in the wallet's out messages.
- Addresses are compared in raw "wc:hex" form; the same account has several
  user-friendly spellings (bounceable / non-bounceable / url-safe).
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

import httpx
from loguru import logger
from tonsdk.contract.wallet import Wallets, WalletVersionEnum
from tonsdk.crypto import mnemonic_is_valid, mnemonic_new, mnemonic_to_wallet_key
from tonsdk.utils import Address, bytes_to_b64str

from chainwatch.chains.base import CreatedWallet, ExaminedSet
from chainwatch.exceptions import (
    APIError,
    ConnectionFailedError,
    InvalidAddressError,
    InvalidAPIKeyError,
    NetworkTimeoutError,
    RateLimitError,
)
from chainwatch.models import ObservedTransaction, SigningMaterial

TONCENTER_MAINNET = "https://toncenter.com/api/v2"
TONCENTER_TESTNET = "https://testnet.toncenter.com/api/v2"

NANOTON = Decimal(10**9)

# Wallet send mode: pay fees separately + ignore action-phase errors
SEND_MODE = 3


class ToncenterClient:
    """
    Async Toncenter v2 client.

    Reads transactions, balances and seqno; signs and broadcasts transfers.
    """

    chain = "TON"

    def __init__(
        self,
        endpoint: str = TONCENTER_MAINNET,
        api_key: str = "",
        network: str = "mainnet",
        wallet_version: str = "v3r2",
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        if not api_key:
            logger.warning("No TON API key provided. Toncenter will apply its keyless rate limit.")
        self.endpoint = endpoint.rstrip("/")
        self.network = network
        self.wallet_version = WalletVersionEnum(wallet_version)
        headers = {"X-API-Key": api_key} if api_key else {}
        self._client = http_client or httpx.AsyncClient(timeout=30.0, headers=headers)

    # ──────────────────────────────────────────────────────────────
    # Reads
    # ──────────────────────────────────────────────────────────────

    async def get_recent_transactions(
        self, address: str, limit: int = 10
    ) -> list[ObservedTransaction]:
        """Most recent `limit` transactions for address, newest first."""
        raw = await self._get_raw_transactions(address, limit)
        txns = []
        for item in raw:
            t = self._parse_transaction(item)
            if t:
                txns.append(t)
        return txns

    async def get_balance(self, address: str) -> Decimal:
        result = await self._request("GET", "getAddressBalance", params={"address": address})
        try:
            return Decimal(str(result)) / NANOTON
        except (InvalidOperation, TypeError) as e:
            raise APIError(f"Unexpected TON balance value: {result!r}") from e

    async def get_sequence_number(self, address: str) -> int | None:
        """Wallet seqno, or None for an uninitialized wallet."""
        result = await self._request(
            "GET", "getWalletInformation", params={"address": address}
        )
        seqno = result.get("seqno") if isinstance(result, dict) else None
        try:
            return int(seqno) if seqno is not None else None
        except (TypeError, ValueError):
            return None

    # ──────────────────────────────────────────────────────────────
    # Transfers
    # ──────────────────────────────────────────────────────────────

    def build_transfer(
        self,
        material: SigningMaterial,
        source: str,
        destination: str,
        amount: Decimal,
        sequence_number: int,
        memo: str,
    ) -> str:
        """Sign a transfer with memo as text payload. Returns base64 BOC."""
        if not self.validate_address(destination):
            raise InvalidAddressError(
                f"Invalid TON address: {destination!r}",
                details={"address": destination, "chain": self.chain},
            )

        wallet = self._wallet_contract(material)
        wallet_addr = self.normalize_address(wallet.address.to_string(True, True, True))
        if wallet_addr != self.normalize_address(source):
            raise InvalidAddressError(
                f"Signing key does not control {source!r}",
                details={"address": source, "chain": self.chain},
            )

        query = wallet.create_transfer_message(
            to_addr=self.format_address(destination),
            amount=int(amount * NANOTON),
            seqno=sequence_number,
            payload=memo,
            send_mode=SEND_MODE,
        )
        return bytes_to_b64str(query["message"].to_boc(False))

    async def broadcast_transfer(self, signed_payload: str) -> None:
        await self._request("POST", "sendBoc", json={"boc": signed_payload})

    async def find_by_correlation_tag(
        self,
        address: str,
        tag: str,
        limit: int = 5,
        examined: ExaminedSet | None = None,
    ) -> str | None:
        """Hash of the newest outgoing transaction whose comment equals tag."""
        raw = await self._get_raw_transactions(address, limit)
        for item in raw:
            tx_hash = (item.get("transaction_id") or {}).get("hash")
            if not tx_hash:
                continue
            if examined is not None:
                if tx_hash in examined:
                    continue
                examined.add(tx_hash)

            out_msgs = item.get("out_msgs") or []
            if out_msgs and out_msgs[0].get("message") == tag:
                return tx_hash
        return None

    # ──────────────────────────────────────────────────────────────
    # Addresses and wallets
    # ──────────────────────────────────────────────────────────────

    def normalize_address(self, address: str) -> str:
        """Raw "wc:hex" form."""
        try:
            return Address(address).to_string(False)
        except Exception as e:
            raise InvalidAddressError(
                f"Invalid TON address: {address!r}",
                details={"address": address, "chain": self.chain},
            ) from e

    def format_address(self, address: str) -> str:
        """User-friendly, url-safe, non-bounceable form for the configured network."""
        try:
            return Address(address).to_string(True, True, False, self.network == "testnet")
        except Exception as e:
            raise InvalidAddressError(
                f"Invalid TON address: {address!r}",
                details={"address": address, "chain": self.chain},
            ) from e

    def validate_address(self, address: str) -> bool:
        """Validate TON address format. No API call required."""
        if not address:
            return False
        try:
            Address(address)
        except Exception:
            return False
        return True

    def create_wallet(self) -> CreatedWallet:
        """New 24-word mnemonic, key pair and wallet address."""
        return self._wallet_from_words(mnemonic_new())

    def import_wallet(self, mnemonic: str) -> CreatedWallet:
        """Wallet for an existing mnemonic (space separated words)."""
        words = mnemonic.split()
        if not mnemonic_is_valid(words):
            raise InvalidAddressError(
                "Invalid TON mnemonic", details={"chain": self.chain, "words": len(words)}
            )
        return self._wallet_from_words(words)

    async def close(self) -> None:
        await self._client.aclose()

    # ──────────────────────────────────────────────────────────────
    # Private helpers
    # ──────────────────────────────────────────────────────────────

    def _wallet_from_words(self, words: list[str]) -> CreatedWallet:
        public_key, private_key = mnemonic_to_wallet_key(words)
        material = SigningMaterial(
            private_key=private_key.hex(),
            public_key=public_key.hex(),
            mnemonic=" ".join(words),
        )
        wallet = self._wallet_contract(material)
        address = wallet.address.to_string(True, True, False, self.network == "testnet")
        return CreatedWallet(address=address, material=material)

    def _wallet_contract(self, material: SigningMaterial) -> Any:
        try:
            public_key = bytes.fromhex(material.public_key)
            private_key = bytes.fromhex(material.private_key)
        except ValueError as e:
            raise InvalidAddressError(f"Signing material is not valid hex: {e}") from e
        return Wallets.ALL[self.wallet_version](
            public_key=public_key, private_key=private_key, wc=0
        )

    async def _get_raw_transactions(self, address: str, limit: int) -> list[dict[str, Any]]:
        result = await self._request(
            "GET",
            "getTransactions",
            params={"address": address, "limit": limit, "archival": "true"},
        )
        return result if isinstance(result, list) else []

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> Any:
        url = f"{self.endpoint}/{path}"
        try:
            resp = await self._client.request(method, url, params=params, json=json)
        except httpx.TimeoutException as e:
            raise NetworkTimeoutError(f"Toncenter timeout on {path}: {e}") from e
        except httpx.ConnectError as e:
            raise ConnectionFailedError(f"Cannot connect to Toncenter: {e}") from e

        if resp.status_code == 429:
            raise RateLimitError("Toncenter rate limit exceeded", retry_after=1)
        if resp.status_code in (401, 403):
            raise InvalidAPIKeyError("Toncenter API key is invalid")

        try:
            data = resp.json()
        except ValueError as e:
            raise APIError(
                f"Toncenter returned non-JSON response ({resp.status_code}) on {path}"
            ) from e

        if not data.get("ok", False):
            raise APIError(
                f"Toncenter error on {path}: {data.get('error', 'unknown error')}",
                details={"code": data.get("code", resp.status_code), "path": path},
            )
        return data.get("result")

    def _parse_transaction(self, raw: dict[str, Any]) -> ObservedTransaction | None:
        """Parse one raw.transaction into ObservedTransaction."""
        try:
            in_msg = raw.get("in_msg") or {}
            out_msgs = raw.get("out_msgs") or []
            tx_hash = raw["transaction_id"]["hash"]

            from_addr = in_msg.get("source") or "Unknown"
            if out_msgs:
                to_addr = out_msgs[0].get("destination") or "Unknown"
                memo = out_msgs[0].get("message") or None
            else:
                to_addr = in_msg.get("destination") or "Unknown"
                memo = in_msg.get("message") or None

            amount = Decimal(str(in_msg.get("value") or 0)) / NANOTON
            fee = raw.get("fee")
            ts = datetime.fromtimestamp(int(raw.get("utime", 0)), tz=timezone.utc)

            return ObservedTransaction(
                tx_hash=tx_hash,
                from_addr=from_addr,
                to_addr=to_addr,
                amount=amount,
                timestamp=ts.isoformat(),
                success=bool(in_msg),
                memo=memo,
                fee=Decimal(str(fee)) / NANOTON if fee is not None else None,
            )
        except (KeyError, ValueError, TypeError, InvalidOperation):
            return None
