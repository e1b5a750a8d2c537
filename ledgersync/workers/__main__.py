from __future__ import annotations

import argparse
import logging
import sys
from typing import Sequence

from ledgersync.workers import TARGETS, run_targets


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Run ledger sync jobs on demand",
    )
    parser.add_argument(
        "target",
        choices=(*TARGETS, "all"),
        help=(
            "Which job to execute ('epoch-sync' for the last finished epoch, "
            "'epoch-backfill' to fill epochs with missing totals, "
            "'delegation-sync' for one delegation tracking cycle, or 'all' to run them in that order)"
        ),
    )
    parser.add_argument(
        "--config",
        dest="config_path",
        help="Optional explicit path to the ledgersync config file",
    )
    parser.add_argument(
        "--database-url",
        dest="database_url",
        help="Override the database URL (defaults to configuration/env)",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Increase logging verbosity for the CLI wrapper",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)
    logger = logging.getLogger("ledgersync.workers")

    targets = list(TARGETS) if args.target == "all" else [args.target]

    logger.info(
        "runner.start targets=%s config=%s",
        ",".join(targets),
        args.config_path or "<default>",
    )
    try:
        run_targets(
            targets,
            config_path=args.config_path,
            database_url=args.database_url,
        )
    except Exception:
        logger.exception("runner.failed targets=%s", ",".join(targets))
        return 1

    logger.info("runner.complete targets=%s", ",".join(targets))
    return 0


if __name__ == "__main__":
    sys.exit(main())
