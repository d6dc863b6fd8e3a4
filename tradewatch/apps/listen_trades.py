"""
Trade Listener Entry Point

Streams Transfer/Swap activity of the watched wallets from the chain node,
turns each relevant transaction into a trade record and pushes a notification
to Telegram.

Usage:
    python -m tradewatch.apps.listen_trades --config settings.yaml
    python -m tradewatch.apps.listen_trades --wallets my_wallets.json --dry-run
"""
import argparse
import asyncio

from dotenv import load_dotenv
from loguru import logger

from tradewatch.core.config import ConfigError, load_settings
from tradewatch.live.runner import TradeListener

LOG_FORMAT = "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <level>{message}</level>"


def _parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="TradeWatch on-chain trade listener")
    parser.add_argument(
        "--config",
        type=str,
        default="settings.yaml",
        help="Path to the configuration file (default: settings.yaml)",
    )
    parser.add_argument("--wallets", type=str, default=None, help="Override the wallets file path")
    parser.add_argument("--dry-run", action="store_true", help="Log Telegram messages instead of sending them")
    parser.add_argument("--log-level", type=str, default=None, help="Override logging.level")
    return parser.parse_args(argv)


async def main_loop(argv=None):
    """Load settings and run the listener until interrupted."""
    args = _parse_args(argv)

    try:
        settings = load_settings(args.config)
    except ConfigError as e:
        logger.error(f"Failed to start due to configuration error: {e}")
        return

    if args.wallets:
        settings.wallets.file = args.wallets
    if args.dry_run:
        settings.transport.telegram.dry_run = True

    level = (args.log_level or settings.logging.level).upper()
    logger.remove()
    logger.add(lambda msg: print(msg, end=""), level=level, format=LOG_FORMAT, colorize=True)

    listener = TradeListener(settings)
    try:
        await listener.run()
    finally:
        await listener.stop()


def run():
    """Entry point to run the main async loop."""
    load_dotenv()  # Load .env file if it exists
    # Setup Loguru to be cleaner
    logger.remove()
    logger.add(lambda msg: print(msg, end=""), level="INFO", format=LOG_FORMAT, colorize=True)

    try:
        asyncio.run(main_loop())
    except KeyboardInterrupt:
        logger.info("Shutdown requested by user (Ctrl+C).")


if __name__ == "__main__":
    run()
