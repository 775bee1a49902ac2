"""
b23bot command line entry point
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import List, Optional

from .bot import Bot
from .config import BotSettings, ConfigStore
from .exceptions import ConfigError

logger = logging.getLogger(__name__)


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="b23bot",
        description="Event-driven client for a OneBot WebSocket gateway",
    )
    parser.add_argument(
        "-c", "--config",
        default=None,
        help="Path to the persisted configuration document (default: $B23BOT_CONFIG or config.yaml)",
    )
    parser.add_argument(
        "-p", "--plugins-dir",
        default=None,
        help="Directory holding plugins (default: $B23BOT_PLUGINS_DIR or ./plugins)",
    )
    parser.add_argument(
        "-l", "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )
    return parser.parse_args(argv)


def build_settings(args: argparse.Namespace) -> BotSettings:
    settings = BotSettings.from_env()
    if args.config:
        settings.config_path = args.config
    if args.plugins_dir:
        settings.plugins_dir = args.plugins_dir
    if args.log_level:
        settings.log_level = args.log_level
    return settings


async def run(settings: BotSettings) -> int:
    store = ConfigStore(settings.config_path)
    try:
        store.load()
    except ConfigError as e:
        logger.error(f"Startup failed: {e}")
        return 1

    bot = Bot(settings, store)
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # add_signal_handler is unavailable on Windows event loops
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop_event.set))

    logger.info(f"Starting b23bot against {store.host}:{store.port}")
    await bot.run(stop_event)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    settings = build_settings(args)
    setup_logging(settings.log_level)
    return asyncio.run(run(settings))


if __name__ == "__main__":
    sys.exit(main())
