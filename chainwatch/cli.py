"""Click CLI entry point for chainwatch.

All commands are thin orchestration wrappers; business logic lives in
config, db, chains, poller, withdrawals, registry and watch modules.

Exit codes:
  0 — success
  1 — generic error
  2 — API error, rate limit, invalid key
  3 — network error
  4 — data error (invalid address, wallet not found, insufficient balance)
  5 — config error
  6 — database error
  7 — security error (encryption key missing / invalid)
  8 — withdrawal error (confirmation timeout)
  130 — watch stopped by SIGINT / SIGTERM
"""

from __future__ import annotations

import asyncio
import json
import shutil
import sys
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import click

from chainwatch import __version__
from chainwatch.chains import SUPPORTED_CHAINS, get_chain_client
from chainwatch.config import (
    ChainwatchConfig,
    get_default_config_path,
    load_config,
    save_config,
)
from chainwatch.db import Database
from chainwatch.exceptions import (
    ChainwatchError,
    ConfirmationTimeoutError,
    InsufficientBalanceError,
    InvalidAddressError,
    WithdrawalError,
)
from chainwatch.log import setup_logging
from chainwatch.models import WithdrawalStatus
from chainwatch.notify import Notifier
from chainwatch.output import format_output, mask_secret
from chainwatch.registry import ServiceRegistry
from chainwatch.vault import KeyVault
from chainwatch.withdrawals import INSUFFICIENT_BALANCE

CHAIN_CHOICES = sorted(SUPPORTED_CHAINS)
FORMAT_CHOICES = ["json", "table", "csv"]


# ── Error handler ─────────────────────────────────────────────────────────────


def _output_error(err: ChainwatchError | Exception) -> None:
    """Write error JSON to stderr."""
    if isinstance(err, ChainwatchError):
        payload = err.to_dict()
        exit_code = err.exit_code
    else:
        payload = {"error": "unknown_error", "message": str(err), "details": {}}
        exit_code = 1
    sys.stderr.write(json.dumps(payload) + "\n")
    sys.stderr.flush()
    sys.exit(exit_code)


def _db_from_config(config: ChainwatchConfig) -> Database:
    """Create a Database instance from config."""
    db_path = config.database.path
    if db_path and db_path != ":memory:":
        db_path = str(Path(db_path).expanduser())
    return Database(db_path)


def _parse_amount(value: str) -> Decimal:
    try:
        amount = Decimal(value)
    except InvalidOperation as e:
        raise click.BadParameter(f"{value!r} is not a number", param_hint="AMOUNT") from e
    if not amount.is_finite() or amount <= 0:
        raise click.BadParameter("amount must be positive", param_hint="AMOUNT")
    return amount


# ── Root group ────────────────────────────────────────────────────────────────


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    "config_path",
    envvar="CHAINWATCH_CONFIG_PATH",
    default=None,
    help="Config file path (default: ~/.chainwatch/config.toml)",
)
@click.option(
    "--format",
    "output_format",
    type=click.Choice(FORMAT_CHOICES),
    default="json",
    show_default=True,
    help="Output format",
)
@click.pass_context
def cli(ctx: click.Context, config_path: str | None, output_format: str) -> None:
    """chainwatch — custodial deposit watcher and withdrawal executor."""
    ctx.ensure_object(dict)
    config_error: ChainwatchError | None = None
    try:
        config = load_config(config_path)
    except ChainwatchError as e:
        # On config errors, use defaults (so config init still works)
        config = ChainwatchConfig()
        config_error = e

    setup_logging(config)
    ctx.obj["config"] = config
    ctx.obj["config_error"] = config_error
    ctx.obj["format"] = output_format
    ctx.obj["config_path"] = config_path


def _require_config(ctx: click.Context) -> ChainwatchConfig:
    """Config for commands that must not silently run on defaults."""
    if ctx.obj.get("config_error") is not None:
        _output_error(ctx.obj["config_error"])
    return ctx.obj["config"]


# ── Config commands ───────────────────────────────────────────────────────────


@cli.group("config")
def config_group() -> None:
    """Manage chainwatch configuration."""


@config_group.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing config")
@click.option("--testnet", is_flag=True, help="Start on the TON testnet")
@click.pass_context
def config_init(ctx: click.Context, force: bool, testnet: bool) -> None:
    """Initialize default config (with a fresh encryption key)."""
    provided = ctx.obj.get("config_path")
    config_path = Path(provided).expanduser() if provided else get_default_config_path()

    if config_path.exists() and not force:
        click.echo(
            json.dumps(
                {
                    "status": "already_exists",
                    "config_path": str(config_path),
                    "hint": "Use --force to reinitialize",
                }
            )
        )
        return

    status = "initialized"
    backup = None
    if config_path.exists() and force:
        backup = str(config_path) + ".bak"
        shutil.copy2(config_path, backup)
        status = "reinitialized"

    config = ChainwatchConfig()
    config.security.encryption_key = KeyVault.generate_key()
    if testnet:
        config.ton.network = "testnet"
    save_config(config, str(config_path))

    result: dict[str, Any] = {"status": status, "config_path": str(config_path)}
    if backup:
        result["backup"] = backup
    click.echo(json.dumps(result))


@config_group.command("show")
@click.pass_context
def config_show(ctx: click.Context) -> None:
    """Show current configuration (keys masked)."""
    config = _require_config(ctx)
    provided = ctx.obj.get("config_path")

    result = {
        "config_path": provided or str(get_default_config_path()),
        "ton": {
            "enabled": config.ton.enabled,
            "network": config.ton.network,
            "endpoint": config.ton.endpoint,
            "api_key": mask_secret(config.ton.api_key),
            "wallet_version": config.ton.wallet_version,
        },
        "gate": {"interval_seconds": config.gate.interval_seconds},
        "deposits": {
            "poll_interval_seconds": config.deposits.poll_interval_seconds,
            "page_size": config.deposits.page_size,
            "dedup_expiry_seconds": config.deposits.dedup_expiry_seconds,
        },
        "withdrawals": {
            "max_retries": config.withdrawals.max_retries,
            "retry_delay_seconds": config.withdrawals.retry_delay_seconds,
            "scan_limit": config.withdrawals.scan_limit,
        },
        "database": {"path": config.database.path},
        "security": {"encryption_key": mask_secret(config.security.encryption_key)},
        "notify": {
            "webhook_url": config.notify.webhook_url,
            "webhook_secret": mask_secret(config.notify.webhook_secret),
        },
        "logging": {"level": config.logging.level, "file": config.logging.file},
    }
    click.echo(format_output(result, "json"))


# ── Key command ───────────────────────────────────────────────────────────────


@cli.group("key")
def key_group() -> None:
    """Encryption key helpers."""


@key_group.command("generate")
def key_generate() -> None:
    """Print a new Fernet key for security.encryption_key."""
    click.echo(
        json.dumps(
            {
                "encryption_key": KeyVault.generate_key(),
                "hint": "Store as security.encryption_key or CHAINWATCH_ENCRYPTION_KEY",
            }
        )
    )


# ── Wallet commands ───────────────────────────────────────────────────────────


@cli.group()
def wallet() -> None:
    """Manage custodial wallets."""


async def _save_wallet(
    config: ChainwatchConfig, chain: str, label: str, watch: bool, mnemonic: str | None
) -> dict[str, Any]:
    vault = KeyVault(config.security.encryption_key)
    client = get_chain_client(chain, config)
    try:
        created = client.import_wallet(mnemonic) if mnemonic else client.create_wallet()
    finally:
        await client.close()

    async with _db_from_config(config) as db:
        record = await db.add_wallet(label=label)
        await db.store_signing_material(
            record["id"], chain, created.address, vault.encrypt_material(created.material)
        )
        if watch:
            await db.add_watched_address(record["id"], chain, created.address)

    return {
        "wallet_id": record["id"],
        "label": label,
        "chain": chain,
        "address": created.address,
        "watched": watch,
    }


@wallet.command("create")
@click.option("--chain", type=click.Choice(CHAIN_CHOICES), default="TON", show_default=True)
@click.option("--label", default="", help="Human-readable label")
@click.option("--watch/--no-watch", default=True, help="Watch the new address for deposits")
@click.pass_context
def wallet_create(ctx: click.Context, chain: str, label: str, watch: bool) -> None:
    """Create a wallet with a fresh key pair (stored encrypted)."""
    config = _require_config(ctx)
    try:
        result = asyncio.run(_save_wallet(config, chain, label, watch, None))
    except ChainwatchError as e:
        _output_error(e)
        return
    click.echo(format_output(result, ctx.obj["format"]))


@wallet.command("import")
@click.option("--chain", type=click.Choice(CHAIN_CHOICES), default="TON", show_default=True)
@click.option("--label", default="", help="Human-readable label")
@click.option("--watch/--no-watch", default=True, help="Watch the address for deposits")
@click.option(
    "--mnemonic",
    prompt=True,
    hide_input=True,
    envvar="CHAINWATCH_IMPORT_MNEMONIC",
    help="Space-separated mnemonic words",
)
@click.pass_context
def wallet_import(
    ctx: click.Context, chain: str, label: str, watch: bool, mnemonic: str
) -> None:
    """Import an existing wallet from its mnemonic."""
    config = _require_config(ctx)
    try:
        result = asyncio.run(_save_wallet(config, chain, label, watch, mnemonic))
    except ChainwatchError as e:
        _output_error(e)
        return
    click.echo(format_output(result, ctx.obj["format"]))


@wallet.command("show")
@click.argument("wallet_id")
@click.pass_context
def wallet_show(ctx: click.Context, wallet_id: str) -> None:
    """Show a wallet, its addresses and what is being watched."""
    config = _require_config(ctx)

    async def _run() -> dict[str, Any]:
        async with _db_from_config(config) as db:
            result = await db.get_wallet(wallet_id)
            watched = await db.list_watched_addresses()
            result["watched"] = [
                {"chain": w.chain, "address": w.address}
                for w in watched
                if w.wallet_id == wallet_id
            ]
            return result

    try:
        result = asyncio.run(_run())
    except ChainwatchError as e:
        _output_error(e)
        return
    click.echo(format_output(result, ctx.obj["format"]))


# ── Watched address commands ──────────────────────────────────────────────────


@cli.group()
def address() -> None:
    """Manage watched deposit addresses."""


@address.command("add")
@click.argument("wallet_id")
@click.argument("addr", metavar="ADDRESS")
@click.option("--chain", type=click.Choice(CHAIN_CHOICES), default="TON", show_default=True)
@click.pass_context
def address_add(ctx: click.Context, wallet_id: str, addr: str, chain: str) -> None:
    """Watch ADDRESS for deposits credited to WALLET_ID."""
    config = _require_config(ctx)

    async def _run() -> dict[str, Any]:
        client = get_chain_client(chain, config)
        try:
            if not client.validate_address(addr):
                raise InvalidAddressError(
                    f"Invalid {chain} address: {addr!r}",
                    details={"address": addr, "chain": chain},
                )
        finally:
            await client.close()

        async with _db_from_config(config) as db:
            watched = await db.add_watched_address(wallet_id, chain, addr)
        return {
            "status": "watching",
            "wallet_id": watched.wallet_id,
            "chain": watched.chain,
            "address": watched.address,
        }

    try:
        result = asyncio.run(_run())
    except ChainwatchError as e:
        _output_error(e)
        return
    click.echo(format_output(result, ctx.obj["format"]))


@address.command("list")
@click.option("--chain", type=click.Choice(CHAIN_CHOICES), default=None)
@click.option("--all", "include_inactive", is_flag=True, help="Include removed addresses")
@click.pass_context
def address_list(ctx: click.Context, chain: str | None, include_inactive: bool) -> None:
    """List watched deposit addresses."""
    config = _require_config(ctx)

    async def _run() -> dict[str, Any]:
        async with _db_from_config(config) as db:
            watched = await db.list_watched_addresses(
                chain=chain, active_only=not include_inactive
            )
        return {
            "addresses": [
                {"wallet_id": w.wallet_id, "chain": w.chain, "address": w.address}
                for w in watched
            ],
            "count": len(watched),
        }

    try:
        result = asyncio.run(_run())
    except ChainwatchError as e:
        _output_error(e)
        return
    click.echo(format_output(result, ctx.obj["format"]))


@address.command("remove")
@click.argument("wallet_id")
@click.argument("addr", metavar="ADDRESS")
@click.option("--chain", type=click.Choice(CHAIN_CHOICES), default="TON", show_default=True)
@click.pass_context
def address_remove(ctx: click.Context, wallet_id: str, addr: str, chain: str) -> None:
    """Stop watching ADDRESS (a running watcher picks this up on its next heartbeat)."""
    config = _require_config(ctx)

    async def _run() -> bool:
        async with _db_from_config(config) as db:
            return await db.remove_watched_address(wallet_id, chain, addr)

    try:
        removed = asyncio.run(_run())
    except ChainwatchError as e:
        _output_error(e)
        return
    click.echo(
        json.dumps(
            {
                "status": "removed" if removed else "not_watched",
                "wallet_id": wallet_id,
                "chain": chain,
                "address": addr,
            }
        )
    )


# ── Balance ───────────────────────────────────────────────────────────────────


@cli.command("balance")
@click.argument("addr", metavar="ADDRESS")
@click.option("--chain", type=click.Choice(CHAIN_CHOICES), default="TON", show_default=True)
@click.pass_context
def balance_command(ctx: click.Context, addr: str, chain: str) -> None:
    """Show the on-chain balance of ADDRESS."""
    config = _require_config(ctx)

    async def _run() -> Decimal:
        client = get_chain_client(chain, config)
        try:
            return await client.get_balance(addr)
        finally:
            await client.close()

    try:
        balance = asyncio.run(_run())
    except ChainwatchError as e:
        _output_error(e)
        return
    click.echo(
        format_output({"chain": chain, "address": addr, "balance": balance}, ctx.obj["format"])
    )


# ── Withdrawals ───────────────────────────────────────────────────────────────


@cli.command("withdraw")
@click.argument("wallet_id")
@click.argument("destination")
@click.argument("amount")
@click.option("--chain", type=click.Choice(CHAIN_CHOICES), default="TON", show_default=True)
@click.pass_context
def withdraw_command(
    ctx: click.Context, wallet_id: str, destination: str, amount: str, chain: str
) -> None:
    """
    Send AMOUNT from WALLET_ID to DESTINATION and wait for confirmation.

    Prints the final withdrawal record; exits non-zero unless CONFIRMED.
    """
    config = _require_config(ctx)
    value = _parse_amount(amount)

    async def _run() -> dict[str, Any]:
        async with _db_from_config(config) as db:
            registry = ServiceRegistry.from_config(config, db, notifier=Notifier(config.notify))
            try:
                service = registry.get(chain)
                if not service.client.validate_address(destination):
                    raise InvalidAddressError(
                        f"Invalid {chain} address: {destination!r}",
                        details={"address": destination, "chain": chain},
                    )
                request = await db.create_withdrawal(wallet_id, chain, destination, value)
                request = await registry.execute_withdrawal(request)
            finally:
                await registry.shutdown()
        return request.to_dict()

    try:
        result = asyncio.run(_run())
    except ChainwatchError as e:
        _output_error(e)
        return

    click.echo(format_output(result, ctx.obj["format"]))
    if result["status"] != WithdrawalStatus.CONFIRMED.value:
        _output_error(_withdrawal_failure(result))


def _withdrawal_failure(result: dict[str, Any]) -> ChainwatchError:
    reason = result.get("failure_reason") or "withdrawal failed"
    details = {"request_id": result["request_id"], "status": result["status"]}
    if reason.startswith(INSUFFICIENT_BALANCE):
        return InsufficientBalanceError(reason, details=details)
    if result.get("needs_review"):
        return ConfirmationTimeoutError(reason, details=details)
    return WithdrawalError(reason, details=details)


@cli.group("withdrawal")
def withdrawal_group() -> None:
    """Inspect withdrawal requests."""


@withdrawal_group.command("list")
@click.option(
    "--status",
    type=click.Choice([s.value for s in WithdrawalStatus], case_sensitive=False),
    default=None,
)
@click.option("--needs-review", is_flag=True, help="Only withdrawals flagged for reconciliation")
@click.option("--limit", default=50, type=click.IntRange(1, 1000), show_default=True)
@click.pass_context
def withdrawal_list(
    ctx: click.Context, status: str | None, needs_review: bool, limit: int
) -> None:
    """List withdrawal requests, newest first."""
    config = _require_config(ctx)

    async def _run() -> dict[str, Any]:
        async with _db_from_config(config) as db:
            rows = await db.list_withdrawals(
                status=status, needs_review=True if needs_review else None, limit=limit
            )
        return {"withdrawals": [r.to_dict() for r in rows], "count": len(rows)}

    try:
        result = asyncio.run(_run())
    except ChainwatchError as e:
        _output_error(e)
        return
    click.echo(format_output(result, ctx.obj["format"]))


@withdrawal_group.command("show")
@click.argument("request_id")
@click.pass_context
def withdrawal_show(ctx: click.Context, request_id: str) -> None:
    """Show one withdrawal request."""
    config = _require_config(ctx)

    async def _run() -> dict[str, Any]:
        async with _db_from_config(config) as db:
            return (await db.get_withdrawal(request_id)).to_dict()

    try:
        result = asyncio.run(_run())
    except ChainwatchError as e:
        _output_error(e)
        return
    click.echo(format_output(result, ctx.obj["format"]))


# ── Transactions ──────────────────────────────────────────────────────────────


@cli.command("transactions")
@click.option("--wallet", "wallet_id", default=None, help="Filter by wallet id")
@click.option("--chain", type=click.Choice(CHAIN_CHOICES), default=None)
@click.option("--limit", default=50, type=click.IntRange(1, 1000), show_default=True)
@click.pass_context
def transactions_command(
    ctx: click.Context, wallet_id: str | None, chain: str | None, limit: int
) -> None:
    """List credited deposits, newest first."""
    config = _require_config(ctx)

    async def _run() -> dict[str, Any]:
        async with _db_from_config(config) as db:
            rows = await db.list_transactions(wallet_id=wallet_id, chain=chain, limit=limit)
        return {"transactions": rows, "count": len(rows)}

    try:
        result = asyncio.run(_run())
    except ChainwatchError as e:
        _output_error(e)
        return
    click.echo(format_output(result, ctx.obj["format"]))


# ── Watch ─────────────────────────────────────────────────────────────────────


@cli.command("watch")
@click.option(
    "--heartbeat",
    default=60.0,
    type=click.FloatRange(min=0.1),
    show_default=True,
    help="Seconds between heartbeat events (and address re-syncs)",
)
@click.pass_context
def watch_command(ctx: click.Context, heartbeat: float) -> None:
    """Run deposit watchers for all stored addresses, emitting JSONL events."""
    from chainwatch.watch import run_watch

    config = _require_config(ctx)

    async def _run() -> None:
        async with _db_from_config(config) as db:
            await run_watch(config, db, heartbeat_seconds=heartbeat)

    try:
        asyncio.run(_run())
        sys.exit(130)  # watch ended (normal exit via SIGINT/SIGTERM)
    except KeyboardInterrupt:
        sys.exit(130)
    except ChainwatchError as e:
        _output_error(e)


if __name__ == "__main__":
    cli()
