#!/usr/bin/env python3
"""
update_targets.py - Apply reward signals to behavior targets (batch job)

Selects reward records that have not had target updates applied yet, runs the
four-quadrant learning rules over them and writes new INDIVIDUAL target
versions. Prints the run result as JSON.

Usage:
    python update_targets.py                      # newest 100 unprocessed rewards
    python update_targets.py --call=<id> -v       # one interaction, verbose
    python update_targets.py --plan               # preview the batch, no writes
    python update_targets.py --rate=0.05 --limit=500

Environment Variables Required:
    BEHAVIOR_DB_HOST, BEHAVIOR_DB_NAME, BEHAVIOR_DB_USER, BEHAVIOR_DB_PASSWORD

Exit code is 1 when any reward failed (those rewards stay queued for the next
run) or when the run could not start. An override that does not fit the
stored config (e.g. --min-confidence above the stored maximum) is a usage
error, exit code 2.
"""

import argparse
import json
import logging
import sys
from typing import List, Optional

from shared_code import db
from shared_code.errors import RejectedOptionError
from shared_code.learning_loop import LearningOptions, update_targets
from shared_code.reward_store import DEFAULT_BATCH_LIMIT


def _unit_interval(value: str) -> float:
    number = float(value)
    if not 0 <= number <= 1:
        raise argparse.ArgumentTypeError(f"{value} is not within [0, 1]")
    return number


def _positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"{value} must be at least 1")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Update behavior targets from unprocessed reward scores",
    )
    parser.add_argument("--call", dest="interaction_id", help="only process rewards for this interaction id")
    parser.add_argument("--limit", type=_positive_int, default=DEFAULT_BATCH_LIMIT, help="max rewards to process (default: %(default)s)")
    parser.add_argument("--rate", dest="learning_rate", type=_unit_interval, help="override the stored learning rate")
    parser.add_argument("--min-confidence", type=_unit_interval, help="override the stored minimum confidence")
    parser.add_argument("--plan", action="store_true", help="show the batch that would be processed without writing")
    parser.add_argument("--init-schema", action="store_true", help="create the learning tables before running")
    parser.add_argument("-v", "--verbose", action="store_true", help="log each adjustment")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    options = LearningOptions(
        interaction_id=args.interaction_id,
        limit=args.limit,
        learning_rate=args.learning_rate,
        min_confidence=args.min_confidence,
        dry_run=args.plan,
    )

    try:
        if args.init_schema:
            db.init_schema()
        result = update_targets(options)
    except RejectedOptionError as exc:
        parser.error(str(exc))
    except Exception as exc:  # noqa: BLE001
        logging.exception("update_targets: fatal error: %s", exc)
        return 1

    print(json.dumps(result.to_dict(), indent=2, default=str))
    return 1 if result.has_errors else 0


if __name__ == "__main__":
    sys.exit(main())
