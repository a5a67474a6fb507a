"""
Chain client layer for chainwatch.

Provides a unified factory function `get_chain_client()` that returns the
appropriate chain-specific client. All clients implement ChainClient.

Usage:
    from chainwatch.chains import get_chain_client
    client = get_chain_client("TON", config)
    txns = await client.get_recent_transactions(address, limit=10)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from chainwatch.chains.base import ChainClient, CreatedWallet
from chainwatch.exceptions import ChainNotActiveError

if TYPE_CHECKING:
    from chainwatch.config import ChainwatchConfig

SUPPORTED_CHAINS = {"TON"}

__all__ = ["SUPPORTED_CHAINS", "ChainClient", "CreatedWallet", "get_chain_client"]


def get_chain_client(chain: str, config: ChainwatchConfig) -> ChainClient:
    """
    Factory: return the correct client for the given chain.

    Args:
        chain: Chain identifier ("TON")
        config: ChainwatchConfig with endpoints and API keys

    Returns:
        Configured ChainClient implementation

    Raises:
        ChainNotActiveError: Unknown chain, or chain disabled in config
    """
    chain = chain.upper()
    if chain not in SUPPORTED_CHAINS:
        raise ChainNotActiveError(
            f"Unsupported chain: {chain!r}. Supported: {sorted(SUPPORTED_CHAINS)}",
            details={"chain": chain},
        )

    if chain == "TON":
        if not config.ton.enabled:
            raise ChainNotActiveError("Chain 'TON' is not active.", details={"chain": chain})

        from chainwatch.chains.ton import ToncenterClient

        return ToncenterClient(
            endpoint=config.ton.endpoint,
            api_key=config.ton.api_key,
            network=config.ton.network,
            wallet_version=config.ton.wallet_version,
        )

    raise ChainNotActiveError(f"Unreachable: {chain}")  # pragma: no cover
