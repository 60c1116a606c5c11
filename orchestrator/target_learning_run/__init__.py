import logging
from typing import Any

import azure.functions as func

from shared_code.auth import require_admin_key
from shared_code.errors import RejectedOptionError
from shared_code.http import cors_headers, env_flag, json_body, json_ok, no_content, text_error
from shared_code.learning_loop import LearningOptions, update_targets


CORS_HEADERS = cors_headers("POST, OPTIONS")


def _ok(body: Any, status: int = 200) -> func.HttpResponse:
    return json_ok(body, status=status, headers=CORS_HEADERS)


def _error(message: str, status: int) -> func.HttpResponse:
    return text_error(message, status=status, headers=CORS_HEADERS)


@require_admin_key
def main(req: func.HttpRequest) -> func.HttpResponse:
    logging.info("target_learning_run request: %s", req.method)

    if req.method == "OPTIONS":
        return no_content(headers=CORS_HEADERS)

    if req.method != "POST":
        return _error("Method not allowed", 405)

    if not env_flag("TARGET_LEARNING_ENABLED"):
        return _error(
            "Target learning is disabled in this environment. "
            "Set TARGET_LEARNING_ENABLED to true to enable.",
            503,
        )

    try:
        options = LearningOptions.from_body(json_body(req, allow_empty=True))
    except ValueError as exc:
        return _error(str(exc), 400)

    try:
        result = update_targets(options)
    except RejectedOptionError as exc:
        return _error(str(exc), 400)
    except Exception as exc:  # noqa: BLE001
        logging.exception("target_learning_run: run failed: %s", exc)
        return _error("Failed to run target learning", 500)

    logging.info(
        "target_learning_run: run=%s dry_run=%s processed=%d errors=%d",
        result.run_id,
        result.dry_run,
        result.processed,
        len(result.errors),
    )
    # Per-reward errors are part of a completed run; callers read them from the body.
    return _ok(result.to_dict())
