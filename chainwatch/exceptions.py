"""
Custom exception hierarchy for chainwatch.

Each exception maps to a specific CLI exit code and JSON error_code field.
cli.py catches all ChainwatchError subclasses and formats them as JSON output.
The watcher loops catch them at the poll-cycle / withdrawal-step boundary and
log them; they never crash the service.

Exit code mapping:
  1 — ChainwatchError (generic error)
  2 — APIError (invalid key, rate limit, upstream error)
  3 — NetworkError (timeout, connection refused)
  4 — DataError (invalid address, wallet not found, insufficient balance)
  5 — ConfigError (malformed config, chain not active)
  6 — DatabaseError (SQLite failure)
  7 — SecurityError (encryption key missing, decryption failure)
  8 — WithdrawalError (illegal state transition, confirmation timeout)
"""


class ChainwatchError(Exception):
    """Base exception for all chainwatch errors."""

    exit_code: int = 1
    error_code: str = "unknown_error"

    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            "error": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class APIError(ChainwatchError):
    """Chain node returned an error response."""

    exit_code = 2
    error_code = "api_error"


class InvalidAPIKeyError(APIError):
    """API key is invalid or missing."""

    error_code = "invalid_api_key"


class RateLimitError(APIError):
    """Chain node rate limit exceeded."""

    error_code = "rate_limited"

    def __init__(self, message: str, retry_after: int = 1, **kwargs) -> None:
        super().__init__(message, details={"retry_after_seconds": retry_after})
        self.retry_after = retry_after


class NetworkError(ChainwatchError):
    """Network connectivity issue — timeout or connection failure."""

    exit_code = 3
    error_code = "network_error"


class NetworkTimeoutError(NetworkError):
    """Request timed out."""

    error_code = "network_timeout"


class ConnectionFailedError(NetworkError):
    """Could not connect to the chain node."""

    error_code = "connection_failed"


class DataError(ChainwatchError):
    """Data validation or not-found error."""

    exit_code = 4
    error_code = "data_error"


class InvalidAddressError(DataError):
    """Address format is invalid for the given chain."""

    error_code = "invalid_address"


class WalletNotFoundError(DataError):
    """Wallet id is unknown."""

    error_code = "wallet_not_found"


class WalletExistsError(DataError):
    """Wallet or watched address already exists."""

    error_code = "wallet_exists"


class WithdrawalNotFoundError(DataError):
    """Withdrawal request id is unknown."""

    error_code = "withdrawal_not_found"


class InsufficientBalanceError(DataError):
    """Withdrawal amount is not covered by the on-chain balance."""

    error_code = "insufficient_balance"


class DuplicateTransactionError(DataError):
    """A transaction with this hash is already persisted."""

    error_code = "duplicate_transaction"


class ConfigError(ChainwatchError):
    """Config file is malformed or names an inactive chain."""

    exit_code = 5
    error_code = "config_error"


class ConfigInvalidError(ConfigError):
    """Config file exists but contains invalid TOML or invalid values."""

    error_code = "config_invalid"


class ChainNotActiveError(ConfigError):
    """Chain is unsupported or disabled in config."""

    error_code = "chain_not_active"


class DatabaseError(ChainwatchError):
    """SQLite operation failed."""

    exit_code = 6
    error_code = "db_error"


class SecurityError(ChainwatchError):
    """Encryption key missing or invalid."""

    exit_code = 7
    error_code = "security_error"


class DecryptionError(SecurityError):
    """Stored signing material could not be decrypted."""

    error_code = "decryption_failed"


class WithdrawalError(ChainwatchError):
    """Withdrawal could not be completed."""

    exit_code = 8
    error_code = "withdrawal_error"


class InvalidTransitionError(WithdrawalError):
    """Withdrawal status change would move backwards or skip a state."""

    error_code = "invalid_transition"


class ConfirmationTimeoutError(WithdrawalError):
    """Broadcast transfer was not found on chain within the retry budget.

    Funds may have left the source wallet; needs manual reconciliation.
    """

    error_code = "confirmation_timeout"


class GateClosedError(ChainwatchError):
    """RPC gate was closed while the operation was still queued."""

    error_code = "gate_closed"
