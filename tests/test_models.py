"""Tests for chainwatch/models.py."""

from __future__ import annotations

from decimal import Decimal

import pytest

from chainwatch.exceptions import InvalidTransitionError
from chainwatch.models import (
    DepositRecord,
    WatchedAddress,
    WithdrawalRequest,
    WithdrawalStatus,
)


def make_request() -> WithdrawalRequest:
    return WithdrawalRequest(
        request_id="r1",
        wallet_id="W1",
        chain="TON",
        destination_address="DST",
        amount=Decimal("1"),
    )


def test_watched_address_key() -> None:
    watched = WatchedAddress("W1", "TON", "EQBvW8Z5huBkMJYdnfAEM5JqTNkuWX3diqYENkWsIL0XggGG")
    assert watched.key == "W1_EQBvW8Z5huBkMJYdnfAEM5JqTNkuWX3diqYENkWsIL0XggGG"
    assert watched.short_address() == "EQBvW8...ggGG"


def test_deposit_record_payload() -> None:
    record = DepositRecord("W1", "TON", "tx1", "SENDER", "A1", Decimal("5"))
    assert record.to_dict() == {
        "wallet_id": "W1",
        "chain": "TON",
        "hash": "tx1",
        "from": "SENDER",
        "to": "A1",
        "amount": Decimal("5"),
        "status": "COMPLETED",
        "type": "DEPOSIT",
    }


def test_new_request_is_pending() -> None:
    request = make_request()
    assert request.status is WithdrawalStatus.PENDING
    assert request.history == [WithdrawalStatus.PENDING]


@pytest.mark.parametrize(
    "path",
    [
        ["BROADCAST", "CONFIRMED"],
        ["BROADCAST", "FAILED"],
        ["FAILED"],
    ],
)
def test_allowed_paths(path: list[str]) -> None:
    request = make_request()
    for status in path:
        request.transition(WithdrawalStatus(status))
    assert request.status.is_terminal
    assert [s.value for s in request.history] == ["PENDING", *path]


@pytest.mark.parametrize(
    "path",
    [
        ["CONFIRMED"],
        ["PENDING"],
        ["BROADCAST", "PENDING"],
        ["BROADCAST", "BROADCAST"],
        ["FAILED", "BROADCAST"],
        ["BROADCAST", "CONFIRMED", "FAILED"],
    ],
)
def test_regressions_rejected(path: list[str]) -> None:
    request = make_request()
    with pytest.raises(InvalidTransitionError):
        for status in path:
            request.transition(WithdrawalStatus(status))


def test_request_to_dict() -> None:
    request = make_request()
    data = request.to_dict()
    assert data["status"] == "PENDING"
    assert data["needs_review"] is False
    assert "history" not in data
