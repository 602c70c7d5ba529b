"""Run the Oracle Monitor until interrupted.

Usage: python -m oracle_monitor [--dry-run] [--verbose] [--show-config]
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

from oracle_monitor.config import get_settings
from oracle_monitor.service import OracleMonitor

logger = logging.getLogger("oracle_monitor")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="oracle_monitor",
        description="Monitor price oracles across protocols and chains",
    )
    parser.add_argument(
        "--dry-run",
        dest="dry_run",
        action="store_true",
        default=None,
        help="Log alerts instead of delivering them (overrides DRY_RUN)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose (DEBUG) logging",
    )
    parser.add_argument(
        "--show-config",
        dest="show_config",
        action="store_true",
        help="Print the effective configuration with secrets redacted and exit",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else settings.get_logging_level(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if args.show_config:
        print(json.dumps(settings.redacted_summary(), indent=2))
        return 0

    logger.info("Configuration: %s", settings.redacted_summary())
    monitor = OracleMonitor(settings, dry_run=args.dry_run)
    try:
        asyncio.run(monitor.run())
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    return 0


if __name__ == "__main__":
    sys.exit(main())
