"""
Command-line entry point

    python -m copytrader --config config/config.yml
"""

import argparse
import asyncio
import sys

from copytrader.core.config import ConfigurationManager
from copytrader.core.logger import get_logger, setup_logging
from copytrader.core.worker import CopyTraderWorker


async def run(config_path: str) -> int:
    try:
        config = ConfigurationManager(config_path).load_config()
    except (FileNotFoundError, ValueError) as e:
        print(f"❌ Failed to load configuration from {config_path}: {e}", file=sys.stderr)
        return 1

    setup_logging(
        level=config.logging.level,
        format=config.logging.format,
        output_file=config.logging.output_file
    )
    logger = get_logger(__name__)
    logger.info("config_loaded", path=config_path, live=config.trading.live)

    worker = CopyTraderWorker(config)
    worker.install_signal_handlers()

    try:
        await worker.start()
    except KeyboardInterrupt:
        await worker.stop()

    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="pump.fun copy-trading worker")
    parser.add_argument(
        '--config',
        default='config/config.yml',
        help='Configuration file path (default: config/config.yml)'
    )
    args = parser.parse_args()

    print(f"🤖 Starting copy trader with config: {args.config}")
    sys.exit(asyncio.run(run(args.config)))


if __name__ == "__main__":
    main()
