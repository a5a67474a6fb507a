"""
Config loading for chainwatch.

Sources (in precedence order, highest first):
  1. Environment variables (CHAINWATCH_*)
  2. ~/.chainwatch/config.toml
  3. Built-in defaults

Usage:
    from chainwatch.config import load_config
    config = load_config()
    print(config.ton.network)
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

import httpx
import toml

from chainwatch.exceptions import ConfigInvalidError

# Default config directory and file
DEFAULT_CONFIG_DIR = Path.home() / ".chainwatch"
DEFAULT_CONFIG_PATH = DEFAULT_CONFIG_DIR / "config.toml"

# Environment variable → config key mapping
# Format: (env_var_name, dotted_config_path, type_converter)
_ENV_OVERRIDES: list[tuple[str, str, type]] = [
    ("CHAINWATCH_TON_NETWORK", "ton.network", str),
    ("CHAINWATCH_TON_MAINNET_RPC", "ton.mainnet_rpc", str),
    ("CHAINWATCH_TON_TESTNET_RPC", "ton.testnet_rpc", str),
    ("CHAINWATCH_TON_MAINNET_API_KEY", "ton.mainnet_api_key", str),
    ("CHAINWATCH_TON_TESTNET_API_KEY", "ton.testnet_api_key", str),
    ("CHAINWATCH_GATE_INTERVAL", "gate.interval_seconds", float),
    ("CHAINWATCH_POLL_INTERVAL", "deposits.poll_interval_seconds", float),
    ("CHAINWATCH_PAGE_SIZE", "deposits.page_size", int),
    ("CHAINWATCH_MAX_RETRIES", "withdrawals.max_retries", int),
    ("CHAINWATCH_RETRY_DELAY", "withdrawals.retry_delay_seconds", float),
    ("CHAINWATCH_DB_PATH", "database.path", str),
    ("CHAINWATCH_ENCRYPTION_KEY", "security.encryption_key", str),
    ("CHAINWATCH_WEBHOOK_URL", "notify.webhook_url", str),
    ("CHAINWATCH_WEBHOOK_SECRET", "notify.webhook_secret", str),
    ("CHAINWATCH_LOG_LEVEL", "logging.level", str),
    ("CHAINWATCH_LOG_FILE", "logging.file", str),
]

VALID_NETWORKS = {"mainnet", "testnet"}
VALID_WALLET_VERSIONS = {"v2r1", "v2r2", "v3r1", "v3r2", "v4r2"}
VALID_LOG_LEVELS = {"TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"}


@dataclass
class TonConfig:
    """TON chain node configuration."""

    enabled: bool = True
    network: str = "mainnet"            # mainnet | testnet
    mainnet_rpc: str = "https://toncenter.com/api/v2"
    testnet_rpc: str = "https://testnet.toncenter.com/api/v2"
    mainnet_api_key: str = ""
    testnet_api_key: str = ""
    wallet_version: str = "v3r2"

    @property
    def endpoint(self) -> str:
        return self.testnet_rpc if self.network == "testnet" else self.mainnet_rpc

    @property
    def api_key(self) -> str:
        return self.testnet_api_key if self.network == "testnet" else self.mainnet_api_key


@dataclass
class GateConfig:
    """RPC gate pacing."""

    interval_seconds: float = 1.0       # one chain call per interval


@dataclass
class DepositConfig:
    """Deposit poller and dedup ledger settings."""

    poll_interval_seconds: float = 60.0
    page_size: int = 10
    dedup_expiry_seconds: float = 30 * 60
    sweep_interval_seconds: float = 60.0


@dataclass
class WithdrawalConfig:
    """Withdrawal confirmation polling."""

    max_retries: int = 10
    retry_delay_seconds: float = 10.0
    scan_limit: int = 5
    examined_cap: int = 1000


@dataclass
class DatabaseConfig:
    """SQLite persistence."""

    path: str = str(DEFAULT_CONFIG_DIR / "chainwatch.db")


@dataclass
class SecurityConfig:
    """Fernet key used to encrypt signing material at rest."""

    encryption_key: str = ""


@dataclass
class NotifyConfig:
    """Deposit / withdrawal webhook delivery."""

    webhook_url: str = ""
    webhook_secret: str = ""


@dataclass
class LoggingConfig:
    """loguru sinks."""

    level: str = "INFO"
    file: str = ""                      # empty = stderr only
    rotation: str = "1 day"
    retention: str = "7 days"


@dataclass
class ChainwatchConfig:
    """Full configuration object. Passed via Click context to all commands."""

    ton: TonConfig = field(default_factory=TonConfig)
    gate: GateConfig = field(default_factory=GateConfig)
    deposits: DepositConfig = field(default_factory=DepositConfig)
    withdrawals: WithdrawalConfig = field(default_factory=WithdrawalConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    security: SecurityConfig = field(default_factory=SecurityConfig)
    notify: NotifyConfig = field(default_factory=NotifyConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def enabled_chains(self) -> list[str]:
        return ["TON"] if self.ton.enabled else []


def load_config(path: str | None = None) -> ChainwatchConfig:
    """
    Load configuration from TOML file + environment variable overrides.

    Args:
        path: Override config file path. If None, uses CHAINWATCH_CONFIG_PATH
              env var or default (~/.chainwatch/config.toml).

    Returns:
        ChainwatchConfig with all values resolved.

    Raises:
        ConfigInvalidError: Config file exists but is invalid TOML or values.
    """
    config_path = _resolve_config_path(path)

    raw: dict = {}
    if config_path.exists():
        try:
            raw = toml.load(str(config_path))
        except toml.TomlDecodeError as e:
            raise ConfigInvalidError(f"Invalid TOML in {config_path}: {e}") from e

    try:
        config = _dict_to_config(raw)
    except (ValueError, TypeError) as e:
        raise ConfigInvalidError(f"Invalid value in {config_path}: {e}") from e
    _apply_env_overrides(config)
    _validate_config(config)

    return config


def save_config(config: ChainwatchConfig, path: str | None = None) -> Path:
    """
    Serialize ChainwatchConfig to TOML and write to disk.

    Returns the path where config was written.
    """
    config_path = _resolve_config_path(path)
    config_path.parent.mkdir(parents=True, exist_ok=True)

    data = {
        "ton": {
            "enabled": config.ton.enabled,
            "network": config.ton.network,
            "mainnet_rpc": config.ton.mainnet_rpc,
            "testnet_rpc": config.ton.testnet_rpc,
            "mainnet_api_key": config.ton.mainnet_api_key,
            "testnet_api_key": config.ton.testnet_api_key,
            "wallet_version": config.ton.wallet_version,
        },
        "gate": {
            "interval_seconds": config.gate.interval_seconds,
        },
        "deposits": {
            "poll_interval_seconds": config.deposits.poll_interval_seconds,
            "page_size": config.deposits.page_size,
            "dedup_expiry_seconds": config.deposits.dedup_expiry_seconds,
            "sweep_interval_seconds": config.deposits.sweep_interval_seconds,
        },
        "withdrawals": {
            "max_retries": config.withdrawals.max_retries,
            "retry_delay_seconds": config.withdrawals.retry_delay_seconds,
            "scan_limit": config.withdrawals.scan_limit,
            "examined_cap": config.withdrawals.examined_cap,
        },
        "database": {
            "path": config.database.path,
        },
        "security": {
            "encryption_key": config.security.encryption_key,
        },
        "notify": {
            "webhook_url": config.notify.webhook_url,
            "webhook_secret": config.notify.webhook_secret,
        },
        "logging": {
            "level": config.logging.level,
            "file": config.logging.file,
            "rotation": config.logging.rotation,
            "retention": config.logging.retention,
        },
    }

    with open(config_path, "w") as f:
        toml.dump(data, f)

    return config_path


def get_default_config_path() -> Path:
    """Return the default config file path."""
    return DEFAULT_CONFIG_PATH


# ──────────────────────────────────────────────────────────────
# Private helpers
# ──────────────────────────────────────────────────────────────


def _resolve_config_path(path: str | None) -> Path:
    if path:
        return Path(path).expanduser()
    env_path = os.environ.get("CHAINWATCH_CONFIG_PATH")
    if env_path:
        return Path(env_path).expanduser()
    return DEFAULT_CONFIG_PATH


def _dict_to_config(raw: dict) -> ChainwatchConfig:
    """Build ChainwatchConfig from raw TOML dict, applying defaults for missing keys."""
    config = ChainwatchConfig()

    ton = raw.get("ton", {})
    config.ton.enabled = bool(ton.get("enabled", True))
    config.ton.network = ton.get("network", "mainnet")
    config.ton.mainnet_rpc = ton.get("mainnet_rpc", config.ton.mainnet_rpc)
    config.ton.testnet_rpc = ton.get("testnet_rpc", config.ton.testnet_rpc)
    config.ton.mainnet_api_key = ton.get("mainnet_api_key", "")
    config.ton.testnet_api_key = ton.get("testnet_api_key", "")
    config.ton.wallet_version = ton.get("wallet_version", "v3r2")

    gate = raw.get("gate", {})
    config.gate.interval_seconds = float(gate.get("interval_seconds", 1.0))

    deposits = raw.get("deposits", {})
    config.deposits.poll_interval_seconds = float(deposits.get("poll_interval_seconds", 60.0))
    config.deposits.page_size = int(deposits.get("page_size", 10))
    config.deposits.dedup_expiry_seconds = float(deposits.get("dedup_expiry_seconds", 1800))
    config.deposits.sweep_interval_seconds = float(deposits.get("sweep_interval_seconds", 60.0))

    withdrawals = raw.get("withdrawals", {})
    config.withdrawals.max_retries = int(withdrawals.get("max_retries", 10))
    config.withdrawals.retry_delay_seconds = float(withdrawals.get("retry_delay_seconds", 10.0))
    config.withdrawals.scan_limit = int(withdrawals.get("scan_limit", 5))
    config.withdrawals.examined_cap = int(withdrawals.get("examined_cap", 1000))

    db = raw.get("database", {})
    config.database.path = db.get("path", str(DEFAULT_CONFIG_DIR / "chainwatch.db"))

    security = raw.get("security", {})
    config.security.encryption_key = security.get("encryption_key", "")

    notify = raw.get("notify", {})
    config.notify.webhook_url = notify.get("webhook_url", "")
    config.notify.webhook_secret = notify.get("webhook_secret", "")

    logging = raw.get("logging", {})
    config.logging.level = str(logging.get("level", "INFO")).upper()
    config.logging.file = logging.get("file", "")
    config.logging.rotation = logging.get("rotation", "1 day")
    config.logging.retention = logging.get("retention", "7 days")

    return config


def _apply_env_overrides(config: ChainwatchConfig) -> None:
    """Apply environment variable overrides to a loaded config."""
    # CHAINWATCH_TON_ENABLED is a bool from string
    ton_enabled = os.environ.get("CHAINWATCH_TON_ENABLED")
    if ton_enabled is not None:
        config.ton.enabled = ton_enabled.lower() in ("1", "true", "yes")

    for env_var, dotted_key, converter in _ENV_OVERRIDES:
        val = os.environ.get(env_var)
        if val is None:
            continue
        section, key = dotted_key.split(".", 1)
        section_obj = getattr(config, section)
        try:
            setattr(section_obj, key, converter(val))
        except (ValueError, TypeError) as e:
            raise ConfigInvalidError(
                f"Invalid value for {env_var}={val!r}: {e}"
            ) from e

    config.logging.level = config.logging.level.upper()


def _validate_config(config: ChainwatchConfig) -> None:
    """Validate config values. Raises ConfigInvalidError on invalid values."""
    if config.ton.network not in VALID_NETWORKS:
        raise ConfigInvalidError(
            f"ton.network must be one of {sorted(VALID_NETWORKS)}, got {config.ton.network!r}"
        )
    if config.ton.wallet_version not in VALID_WALLET_VERSIONS:
        raise ConfigInvalidError(
            f"ton.wallet_version must be one of {sorted(VALID_WALLET_VERSIONS)}, "
            f"got {config.ton.wallet_version!r}"
        )
    if config.gate.interval_seconds < 0:
        raise ConfigInvalidError(
            f"gate.interval_seconds must be non-negative, got {config.gate.interval_seconds}"
        )
    if not 1 <= config.deposits.page_size <= 100:
        raise ConfigInvalidError(
            f"deposits.page_size must be 1–100, got {config.deposits.page_size}"
        )
    if config.deposits.dedup_expiry_seconds <= 0:
        raise ConfigInvalidError(
            f"deposits.dedup_expiry_seconds must be positive, "
            f"got {config.deposits.dedup_expiry_seconds}"
        )
    if config.withdrawals.max_retries < 1:
        raise ConfigInvalidError(
            f"withdrawals.max_retries must be >= 1, got {config.withdrawals.max_retries}"
        )
    if config.withdrawals.examined_cap < 1:
        raise ConfigInvalidError(
            f"withdrawals.examined_cap must be >= 1, got {config.withdrawals.examined_cap}"
        )
    if config.notify.webhook_url:
        _validate_webhook_url(config.notify.webhook_url)
    if config.logging.level not in VALID_LOG_LEVELS:
        raise ConfigInvalidError(
            f"logging.level must be one of {sorted(VALID_LOG_LEVELS)}, "
            f"got {config.logging.level!r}"
        )


def _validate_webhook_url(value: str) -> None:
    try:
        url = httpx.URL(value)
    except httpx.InvalidURL as e:
        raise ConfigInvalidError(f"notify.webhook_url is not a valid URL: {e}") from e
    if url.scheme not in ("http", "https") or not url.host:
        raise ConfigInvalidError(
            f"notify.webhook_url must be an http(s) URL with a host, got {value!r}"
        )
