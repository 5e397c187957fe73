"""
Run the indexer until interrupted.

    python -m erc8004_indexer --config configs/erc8004.yaml --log-level DEBUG
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from typing import List, Optional

from .core.config import ConfigurationError, IndexerSettings
from .core.indexer import AgentIndexer

logger = logging.getLogger("erc8004_indexer")

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="erc8004_indexer",
        description="Index ERC-8004 agent registrations and their agent cards.",
    )
    parser.add_argument("--config", help="network configuration YAML (default: $ERC8004_CONFIG)")
    parser.add_argument("--log-level", help="logging level (default: $INDEXER_LOG_LEVEL or INFO)")
    return parser.parse_args(argv)


async def serve(settings: IndexerSettings) -> None:
    indexer = AgentIndexer.from_settings(settings)
    task = asyncio.ensure_future(indexer.run())

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, task.cancel)
        except NotImplementedError:
            # Windows event loops; KeyboardInterrupt still reaches asyncio.run.
            pass

    try:
        await task
    except asyncio.CancelledError:
        logger.info("Shutdown requested")


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    settings = IndexerSettings.from_env()
    if args.config is not None:
        settings.config_path = args.config
    if args.log_level:
        settings.log_level = args.log_level.upper()

    logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)
    logger.info(f"Starting indexer: {settings.describe()}")

    try:
        asyncio.run(serve(settings))
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 2
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
