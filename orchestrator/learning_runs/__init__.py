import logging
from typing import Any

import azure.functions as func

from shared_code import learning_reports
from shared_code.http import cors_headers, json_ok, no_content, text_error


CORS_HEADERS = cors_headers("GET, OPTIONS")

MAX_LIMIT = 100


def _ok(body: Any, status: int = 200) -> func.HttpResponse:
    return json_ok(body, status=status, headers=CORS_HEADERS)


def _error(message: str, status: int) -> func.HttpResponse:
    return text_error(message, status=status, headers=CORS_HEADERS)


def main(req: func.HttpRequest) -> func.HttpResponse:
    logging.info("learning_runs request: %s", req.method)

    if req.method == "OPTIONS":
        return no_content(headers=CORS_HEADERS)

    if req.method != "GET":
        return _error("Method not allowed", 405)

    raw_limit = req.params.get("limit") if req.params else None
    try:
        limit = int(raw_limit) if raw_limit else 20
    except ValueError:
        return _error("limit must be an integer", 400)
    limit = max(1, min(limit, MAX_LIMIT))

    try:
        reports = learning_reports.list_reports(limit=limit)
    except Exception as exc:  # noqa: BLE001
        logging.exception("learning_runs: failed to list run reports: %s", exc)
        return _error("Failed to load learning runs", 500)

    logging.info("learning_runs list: count=%d", len(reports))
    return _ok({"items": reports})
