"""Tests for chainwatch/chains/ton.py — Toncenter client.

Uses respx to mock httpx calls (no real network I/O).
"""

from __future__ import annotations

import json
from decimal import Decimal

import httpx
import pytest
import respx

from chainwatch.chains import get_chain_client
from chainwatch.chains.base import ChainClient
from chainwatch.config import ChainwatchConfig
from chainwatch.exceptions import (
    APIError,
    ChainNotActiveError,
    ConnectionFailedError,
    InvalidAddressError,
    InvalidAPIKeyError,
    NetworkTimeoutError,
    RateLimitError,
)
from chainwatch.chains.ton import ToncenterClient
from chainwatch.ttlmap import TTLMap

ENDPOINT = "https://toncenter.test/api/v2"
API_KEY = "test_ton_key_12345"

WATCHED_RAW = "0:" + "a" * 64
SENDER_RAW = "0:" + "b" * 64
OTHER_RAW = "0:" + "c" * 64


def ok(result: object) -> dict:
    return {"ok": True, "result": result}


def make_raw_tx(
    tx_hash: str = "hash1",
    value: str = "5000000000",
    source: str = SENDER_RAW,
    destination: str = WATCHED_RAW,
    out_msgs: list | None = None,
    message: str = "",
    utime: int = 1_706_906_640,
) -> dict:
    return {
        "utime": utime,
        "transaction_id": {"lt": "1", "hash": tx_hash},
        "fee": "1000000",
        "in_msg": {
            "source": source,
            "destination": destination,
            "value": value,
            "message": message,
        },
        "out_msgs": out_msgs or [],
    }


@pytest.fixture
def client() -> ToncenterClient:
    return ToncenterClient(endpoint=ENDPOINT, api_key=API_KEY)


# ── Reads ─────────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
@respx.mock
async def test_get_recent_transactions_parses_incoming(client: ToncenterClient) -> None:
    """Incoming transfer: from in_msg.source, to in_msg.destination, nanotons -> TON."""
    route = respx.get(f"{ENDPOINT}/getTransactions").mock(
        return_value=httpx.Response(200, json=ok([make_raw_tx(message="hello")]))
    )

    txns = await client.get_recent_transactions(WATCHED_RAW, 10)
    await client.close()

    assert len(txns) == 1
    tx = txns[0]
    assert tx.tx_hash == "hash1"
    assert tx.from_addr == SENDER_RAW
    assert tx.to_addr == WATCHED_RAW
    assert tx.amount == Decimal("5")
    assert tx.memo == "hello"
    assert tx.success is True
    assert tx.fee == Decimal("0.001")
    assert tx.timestamp.startswith("2024-02-02")

    params = route.calls.last.request.url.params
    assert params["address"] == WATCHED_RAW
    assert params["limit"] == "10"
    assert params["archival"] == "true"
    assert route.calls.last.request.headers["X-API-Key"] == API_KEY


@pytest.mark.asyncio
@respx.mock
async def test_outgoing_transfer_uses_first_out_message(client: ToncenterClient) -> None:
    raw = make_raw_tx(
        source="",
        destination=WATCHED_RAW,
        value="0",
        out_msgs=[{"destination": OTHER_RAW, "value": "100", "message": "memo-out"}],
    )
    respx.get(f"{ENDPOINT}/getTransactions").mock(return_value=httpx.Response(200, json=ok([raw])))

    txns = await client.get_recent_transactions(WATCHED_RAW, 5)
    await client.close()

    assert txns[0].to_addr == OTHER_RAW
    assert txns[0].memo == "memo-out"


@pytest.mark.asyncio
@respx.mock
async def test_malformed_transactions_are_skipped(client: ToncenterClient) -> None:
    respx.get(f"{ENDPOINT}/getTransactions").mock(
        return_value=httpx.Response(200, json=ok([{"utime": 1}, make_raw_tx("good")]))
    )
    txns = await client.get_recent_transactions(WATCHED_RAW, 5)
    await client.close()
    assert [t.tx_hash for t in txns] == ["good"]


@pytest.mark.asyncio
@respx.mock
async def test_get_balance(client: ToncenterClient) -> None:
    respx.get(f"{ENDPOINT}/getAddressBalance").mock(
        return_value=httpx.Response(200, json=ok("2500000000"))
    )
    assert await client.get_balance(WATCHED_RAW) == Decimal("2.5")
    await client.close()


@pytest.mark.asyncio
@respx.mock
async def test_get_sequence_number(client: ToncenterClient) -> None:
    respx.get(f"{ENDPOINT}/getWalletInformation").mock(
        return_value=httpx.Response(200, json=ok({"wallet": True, "seqno": 7}))
    )
    assert await client.get_sequence_number(WATCHED_RAW) == 7
    await client.close()


@pytest.mark.asyncio
@respx.mock
async def test_get_sequence_number_uninitialized(client: ToncenterClient) -> None:
    respx.get(f"{ENDPOINT}/getWalletInformation").mock(
        return_value=httpx.Response(200, json=ok({"wallet": False, "account_state": "uninit"}))
    )
    assert await client.get_sequence_number(WATCHED_RAW) is None
    await client.close()


# ── Error mapping ─────────────────────────────────────────────────────────────


@pytest.mark.asyncio
@respx.mock
async def test_rate_limit_raises(client: ToncenterClient) -> None:
    respx.get(f"{ENDPOINT}/getAddressBalance").mock(return_value=httpx.Response(429))
    with pytest.raises(RateLimitError):
        await client.get_balance(WATCHED_RAW)
    await client.close()


@pytest.mark.asyncio
@respx.mock
async def test_invalid_key_raises(client: ToncenterClient) -> None:
    respx.get(f"{ENDPOINT}/getAddressBalance").mock(return_value=httpx.Response(401))
    with pytest.raises(InvalidAPIKeyError):
        await client.get_balance(WATCHED_RAW)
    await client.close()


@pytest.mark.asyncio
@respx.mock
async def test_ok_false_raises_api_error(client: ToncenterClient) -> None:
    respx.get(f"{ENDPOINT}/getTransactions").mock(
        return_value=httpx.Response(500, json={"ok": False, "error": "LITE_SERVER_UNKNOWN", "code": 500})
    )
    with pytest.raises(APIError, match="LITE_SERVER_UNKNOWN"):
        await client.get_recent_transactions(WATCHED_RAW, 5)
    await client.close()


@pytest.mark.asyncio
@respx.mock
async def test_non_json_raises_api_error(client: ToncenterClient) -> None:
    respx.get(f"{ENDPOINT}/getAddressBalance").mock(
        return_value=httpx.Response(502, text="<html>bad gateway</html>")
    )
    with pytest.raises(APIError):
        await client.get_balance(WATCHED_RAW)
    await client.close()


@pytest.mark.asyncio
@respx.mock
async def test_timeout_raises(client: ToncenterClient) -> None:
    respx.get(f"{ENDPOINT}/getAddressBalance").mock(side_effect=httpx.ReadTimeout("slow"))
    with pytest.raises(NetworkTimeoutError):
        await client.get_balance(WATCHED_RAW)
    await client.close()


@pytest.mark.asyncio
@respx.mock
async def test_connect_error_raises(client: ToncenterClient) -> None:
    respx.get(f"{ENDPOINT}/getAddressBalance").mock(side_effect=httpx.ConnectError("refused"))
    with pytest.raises(ConnectionFailedError):
        await client.get_balance(WATCHED_RAW)
    await client.close()


# ── Broadcast and correlation ─────────────────────────────────────────────────


@pytest.mark.asyncio
@respx.mock
async def test_broadcast_posts_boc(client: ToncenterClient) -> None:
    route = respx.post(f"{ENDPOINT}/sendBoc").mock(
        return_value=httpx.Response(200, json=ok({"@type": "ok"}))
    )
    await client.broadcast_transfer("te6cckEBAQEAAgAAAEysuc0=")
    await client.close()

    body = json.loads(route.calls.last.request.content)
    assert body == {"boc": "te6cckEBAQEAAgAAAEysuc0="}


@pytest.mark.asyncio
@respx.mock
async def test_find_by_correlation_tag(client: ToncenterClient) -> None:
    """Newest outgoing transaction whose first out message carries the tag wins."""
    tag = "TON_WITHDRAWAL_r1_1700000000000"
    raws = [
        make_raw_tx("newest", out_msgs=[{"destination": OTHER_RAW, "message": tag}]),
        make_raw_tx("older", out_msgs=[{"destination": OTHER_RAW, "message": tag}]),
    ]
    respx.get(f"{ENDPOINT}/getTransactions").mock(return_value=httpx.Response(200, json=ok(raws)))

    assert await client.find_by_correlation_tag(WATCHED_RAW, tag, 5) == "newest"
    await client.close()


@pytest.mark.asyncio
@respx.mock
async def test_find_by_correlation_tag_requires_exact_match(client: ToncenterClient) -> None:
    tag = "TON_WITHDRAWAL_r1_1700000000000"
    raws = [make_raw_tx("h1", out_msgs=[{"destination": OTHER_RAW, "message": tag + "0"}])]
    respx.get(f"{ENDPOINT}/getTransactions").mock(return_value=httpx.Response(200, json=ok(raws)))

    assert await client.find_by_correlation_tag(WATCHED_RAW, tag, 5) is None
    await client.close()


@pytest.mark.asyncio
@respx.mock
async def test_find_by_correlation_tag_skips_examined(client: ToncenterClient) -> None:
    tag = "TON_WITHDRAWAL_r1_1700000000000"
    raws = [
        make_raw_tx("seen", out_msgs=[{"destination": OTHER_RAW, "message": "other"}]),
        make_raw_tx("match", out_msgs=[{"destination": OTHER_RAW, "message": tag}]),
    ]
    respx.get(f"{ENDPOINT}/getTransactions").mock(return_value=httpx.Response(200, json=ok(raws)))

    examined = TTLMap(max_size=1000)
    examined.add("match")
    assert await client.find_by_correlation_tag(WATCHED_RAW, tag, 5, examined) is None
    assert "seen" in examined
    await client.close()


# ── Addresses and wallets ─────────────────────────────────────────────────────


def test_normalize_address_roundtrips_friendly_form(client: ToncenterClient) -> None:
    """All spellings of an account normalize to the same raw form."""
    friendly = client.format_address(WATCHED_RAW)
    assert friendly != WATCHED_RAW
    assert client.normalize_address(friendly) == WATCHED_RAW
    assert client.normalize_address(WATCHED_RAW) == WATCHED_RAW


def test_validate_address(client: ToncenterClient) -> None:
    assert client.validate_address(WATCHED_RAW)
    assert not client.validate_address("")
    assert not client.validate_address("not-an-address")


def test_normalize_invalid_address_raises(client: ToncenterClient) -> None:
    with pytest.raises(InvalidAddressError):
        client.normalize_address("not-an-address")


def test_create_wallet_and_sign(client: ToncenterClient) -> None:
    """A created wallet can be re-imported and signs transfers from its own address."""
    created = client.create_wallet()
    assert client.validate_address(created.address)
    assert len(created.material.mnemonic.split()) == 24

    imported = client.import_wallet(created.material.mnemonic)
    assert client.normalize_address(imported.address) == client.normalize_address(created.address)

    boc = client.build_transfer(
        created.material, created.address, OTHER_RAW, Decimal("0.1"), 0, "memo"
    )
    assert isinstance(boc, str) and boc

    with pytest.raises(InvalidAddressError):
        client.build_transfer(created.material, OTHER_RAW, SENDER_RAW, Decimal("0.1"), 0, "memo")
    with pytest.raises(InvalidAddressError):
        client.build_transfer(created.material, created.address, "nope", Decimal("0.1"), 0, "memo")


def test_import_invalid_mnemonic_raises(client: ToncenterClient) -> None:
    with pytest.raises(InvalidAddressError):
        client.import_wallet("not a real mnemonic")


# ── Factory ───────────────────────────────────────────────────────────────────


def test_get_chain_client_ton() -> None:
    config = ChainwatchConfig()
    config.ton.network = "testnet"
    config.ton.testnet_api_key = "tk"
    client = get_chain_client("ton", config)
    assert isinstance(client, ToncenterClient)
    assert isinstance(client, ChainClient)
    assert client.endpoint == config.ton.testnet_rpc


def test_get_chain_client_disabled() -> None:
    config = ChainwatchConfig()
    config.ton.enabled = False
    with pytest.raises(ChainNotActiveError):
        get_chain_client("TON", config)


def test_get_chain_client_unknown() -> None:
    with pytest.raises(ChainNotActiveError):
        get_chain_client("DOGE", ChainwatchConfig())
