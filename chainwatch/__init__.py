"""chainwatch — per-chain deposit watcher and withdrawal executor."""

__version__ = "0.1.0"
