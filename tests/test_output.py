"""Tests for chainwatch/output.py — format routing."""

from __future__ import annotations

import json
from decimal import Decimal

import pytest

from chainwatch.output import format_output, mask_secret

WITHDRAWALS = {
    "withdrawals": [
        {
            "request_id": "r1",
            "chain": "TON",
            "destination_address": "0:" + "c" * 64,
            "amount": Decimal("1.5"),
            "status": "FAILED",
            "needs_review": True,
            "failure_reason": "confirmation timeout",
        }
    ],
    "count": 1,
}


def test_json_keeps_decimal_exact() -> None:
    out = format_output({"amount": Decimal("0.000000001")}, "json")
    assert json.loads(out) == {"amount": "0.000000001"}


def test_table_withdrawals() -> None:
    out = format_output(WITHDRAWALS, "table")
    assert "Withdrawals" in out
    assert "r1" in out
    assert "FAILED" in out


def test_table_addresses() -> None:
    out = format_output(
        {"addresses": [{"wallet_id": "W1", "chain": "TON", "address": "A1"}], "count": 1},
        "TABLE",
    )
    assert "Watched Addresses" in out
    assert "W1" in out


def test_table_generic_falls_back_to_json() -> None:
    out = format_output({"chain": "TON", "balance": Decimal("2.5")}, "table")
    assert "2.5" in out


def test_csv_has_header() -> None:
    out = format_output(WITHDRAWALS, "csv")
    lines = out.strip().splitlines()
    assert lines[0].startswith("request_id,chain,destination_address,amount")
    assert "1.5" in lines[1]


def test_csv_empty_list() -> None:
    out = format_output({"transactions": []}, "csv")
    assert out.splitlines()[0] == "value"


def test_unknown_format_raises() -> None:
    with pytest.raises(ValueError):
        format_output({}, "yaml")


@pytest.mark.parametrize(
    "value,expected",
    [("", "****"), ("abc", "****"), ("abcdefg123", "abcd****")],
)
def test_mask_secret(value: str, expected: str) -> None:
    assert mask_secret(value) == expected
