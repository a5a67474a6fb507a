"""Output format routing for chainwatch.

Converts result dicts to the requested format: json, table, csv.

Design rules:
- JSON: 2-space indent, amounts as exact decimal strings, utf-8
- Table: Rich-formatted, green=confirmed/credited, red=failed
- CSV: RFC 4180, header row always present

All functions return strings. The caller writes to stdout.
"""

from __future__ import annotations

import csv
import io
import json
from decimal import Decimal
from typing import Any

from rich.console import Console
from rich.table import Table
from rich.text import Text

from chainwatch.notify import DecimalEncoder

VALID_FORMATS = {"json", "table", "csv"}


def format_output(data: Any, fmt: str) -> str:
    """
    Format data for stdout output.

    Args:
        data: Result dict, list, or any JSON-serialisable value.
        fmt: "json" | "table" | "csv"

    Raises:
        ValueError: If fmt is not a recognised format.
    """
    fmt = fmt.lower()
    if fmt not in VALID_FORMATS:
        raise ValueError(f"Unknown format {fmt!r}. Valid: {sorted(VALID_FORMATS)}")

    if fmt == "table":
        return format_table(data)
    if fmt == "csv":
        return format_csv(data)
    return format_json(data)


# ── JSON ─────────────────────────────────────────────────────────────────────


def format_json(data: Any) -> str:
    """Pretty-print data as JSON (2-space indent)."""
    return json.dumps(data, indent=2, cls=DecimalEncoder, ensure_ascii=False)


# ── Table ────────────────────────────────────────────────────────────────────


def format_table(data: Any) -> str:
    """
    Format as a Rich terminal table.

    Handles:
    - Watched address list (dict with 'addresses')
    - Transaction list (dict with 'transactions')
    - Withdrawal list (dict with 'withdrawals')
    - Generic dict fallback
    """
    buf = io.StringIO()
    console = Console(file=buf, highlight=False, markup=True, width=120)

    if isinstance(data, dict) and "addresses" in data:
        _render_addresses_table(console, data)
    elif isinstance(data, dict) and "transactions" in data:
        _render_transactions_table(console, data)
    elif isinstance(data, dict) and "withdrawals" in data:
        _render_withdrawals_table(console, data)
    else:
        console.print_json(json.dumps(data, cls=DecimalEncoder))

    return buf.getvalue()


def _status_color(status: str) -> str:
    if status in ("CONFIRMED", "COMPLETED"):
        return "green"
    elif status == "FAILED":
        return "red"
    elif status == "BROADCAST":
        return "yellow"
    return "dim"


def _short(address: str, head: int = 8, tail: int = 6) -> str:
    if len(address) > head + tail + 2:
        return f"{address[:head]}…{address[-tail:]}"
    return address


def _render_addresses_table(console: Console, data: dict[str, Any]) -> None:
    table = Table(title="Watched Addresses", show_header=True, header_style="bold blue")
    table.add_column("Wallet", style="cyan", no_wrap=True)
    table.add_column("Chain", justify="center")
    table.add_column("Address")
    table.add_column("Polling", justify="center")

    for a in data.get("addresses", []):
        table.add_row(
            a.get("wallet_id", ""),
            a.get("chain", ""),
            a.get("address", ""),
            "✅" if a.get("polling") else "—",
        )

    console.print(table)
    console.print(f"Total: [bold]{len(data.get('addresses', []))}[/bold] addresses")


def _render_transactions_table(console: Console, data: dict[str, Any]) -> None:
    table = Table(title="Credited Deposits", show_header=True, header_style="bold blue")
    table.add_column("Hash", style="cyan", no_wrap=True)
    table.add_column("Chain", justify="center")
    table.add_column("Wallet")
    table.add_column("From")
    table.add_column("Amount", justify="right")
    table.add_column("Status", justify="center")
    table.add_column("Created At")

    for t in data.get("transactions", []):
        status = t.get("status", "")
        table.add_row(
            _short(t.get("tx_hash", "")),
            t.get("chain", ""),
            t.get("wallet_id", ""),
            _short(t.get("from_addr", "")),
            str(t.get("amount", "")),
            Text(status, style=_status_color(status)),
            str(t.get("created_at", ""))[:19],
        )

    console.print(table)


def _render_withdrawals_table(console: Console, data: dict[str, Any]) -> None:
    table = Table(title="Withdrawals", show_header=True, header_style="bold blue")
    table.add_column("Request", style="cyan", no_wrap=True)
    table.add_column("Chain", justify="center")
    table.add_column("Destination")
    table.add_column("Amount", justify="right")
    table.add_column("Status", justify="center")
    table.add_column("Review", justify="center")
    table.add_column("Reason")

    for w in data.get("withdrawals", []):
        status = w.get("status", "")
        table.add_row(
            w.get("request_id", ""),
            w.get("chain", ""),
            _short(w.get("destination_address", "")),
            str(w.get("amount", "")),
            Text(status, style=_status_color(status)),
            "⚠️" if w.get("needs_review") else "—",
            w.get("failure_reason") or "",
        )

    console.print(table)


# ── CSV ──────────────────────────────────────────────────────────────────────


def format_csv(data: Any) -> str:
    """Format as CSV with a header row."""
    buf = io.StringIO()
    writer = csv.writer(buf)

    rows: list[dict[str, Any]] = []
    if isinstance(data, dict):
        for key in ("addresses", "transactions", "withdrawals"):
            if key in data and isinstance(data[key], list):
                rows = data[key]
                break
    elif isinstance(data, list):
        rows = data

    if not rows:
        writer.writerow(["value"])
        writer.writerow([json.dumps(data, cls=DecimalEncoder)])
        return buf.getvalue()

    headers = list(rows[0].keys())
    writer.writerow(headers)
    for row in rows:
        writer.writerow(
            [str(v) if isinstance(v, Decimal) else v for v in (row.get(h, "") for h in headers)]
        )
    return buf.getvalue()


# ── Utility ──────────────────────────────────────────────────────────────────


def mask_secret(value: str) -> str:
    """
    Mask an API key or encryption key for safe display.

    'abcdefg123' → 'abcd****'
    '' → '****'
    """
    if not value or len(value) <= 4:
        return "****"
    return value[:4] + "****"
