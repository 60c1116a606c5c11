import logging
import os

import azure.functions as func

from shared_code.http import env_flag
from shared_code.learning_loop import LearningOptions, update_targets
from shared_code.reward_store import DEFAULT_BATCH_LIMIT


def _batch_limit() -> int:
    raw = os.getenv("TARGET_LEARNING_BATCH_LIMIT", "").strip()
    try:
        limit = int(raw) if raw else DEFAULT_BATCH_LIMIT
    except ValueError:
        logging.warning("target_learning_timer: invalid TARGET_LEARNING_BATCH_LIMIT %r; using %d", raw, DEFAULT_BATCH_LIMIT)
        return DEFAULT_BATCH_LIMIT
    return limit if limit > 0 else DEFAULT_BATCH_LIMIT


def main(timer: func.TimerRequest) -> None:
    if timer.past_due:
        logging.info("target_learning_timer: timer is past due")

    if not env_flag("TARGET_LEARNING_ENABLED"):
        logging.info("target_learning_timer: disabled via TARGET_LEARNING_ENABLED; skipping")
        return

    result = update_targets(LearningOptions(limit=_batch_limit()))

    if result.errors:
        logging.warning(
            "target_learning_timer: run %s finished with %d errors; failed rewards stay queued",
            result.run_id,
            len(result.errors),
        )
    else:
        logging.info(
            "target_learning_timer: run %s processed=%d created=%d",
            result.run_id,
            result.processed,
            result.created,
        )
