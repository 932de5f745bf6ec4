"""Command line entry point: ``fuel-watchtower`` / ``python -m fuel_watchtower``."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from collections.abc import Sequence
from pathlib import Path

from pydantic import ValidationError

from fuel_watchtower import __version__
from fuel_watchtower.config import ConfigError, get_settings, load_config
from fuel_watchtower.pipeline import Watchtower

logger = logging.getLogger("fuel_watchtower")

EXIT_CONFIG_ERROR = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fuel-watchtower",
        description="Watch the Fuel and Ethereum bridge and alert on anomalies.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        help="Path of the JSON rule file (overrides WATCHTOWER_CONFIG)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Evaluate rules and log alerts without notifying or pausing",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


async def _run_until_signalled(watchtower: Watchtower) -> None:
    loop = asyncio.get_running_loop()

    def _signal_handler(sig: signal.Signals) -> None:
        logger.info("Received %s, shutting down...", sig.name)
        watchtower.request_stop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, _signal_handler, sig)
        except (NotImplementedError, RuntimeError) as e:
            logger.debug("Cannot install %s handler: %s", sig.name, e)

    await watchtower.run()


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = get_settings()
    except ValidationError as e:
        logging.basicConfig(level=logging.ERROR)
        logger.error("Invalid environment settings: %s", e)
        return EXIT_CONFIG_ERROR

    logging.basicConfig(
        level=settings.get_logging_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info("Settings: %s", settings.redacted_summary())

    config_path = args.config or settings.config_path
    try:
        config = load_config(config_path)
    except ConfigError as e:
        logger.error("%s", e)
        return EXIT_CONFIG_ERROR

    watchtower = Watchtower(config, settings, dry_run=True if args.dry_run else None)
    try:
        asyncio.run(_run_until_signalled(watchtower))
    except ConfigError as e:
        logger.error("%s", e)
        return EXIT_CONFIG_ERROR
    except KeyboardInterrupt:
        logger.info("Interrupted, exiting")
    return 0


if __name__ == "__main__":
    sys.exit(main())
