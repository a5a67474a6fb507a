"""loguru setup for chainwatch.

Every module logs through `from loguru import logger`; this only installs
the sinks once at process start (CLI entry point or embedding service).
"""

from __future__ import annotations

import sys

from loguru import logger

from chainwatch.config import ChainwatchConfig


def setup_logging(config: ChainwatchConfig) -> None:
    """Configure stderr sink and optional rotating file sink."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=config.logging.level,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
        "<cyan>{name}</cyan> - <level>{message}</level>",
    )

    if config.logging.file:
        logger.add(
            config.logging.file,
            rotation=config.logging.rotation,
            retention=config.logging.retention,
            level=config.logging.level,
            encoding="utf-8",
        )
