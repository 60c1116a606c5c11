import logging
from typing import Any, Dict

import azure.functions as func

from shared_code.db import get_connection
from shared_code.http import cors_headers, json_ok, no_content, text_error
from shared_code.target_store import PgTargetStore, TargetScope


CORS_HEADERS = cors_headers("GET, OPTIONS")


def _ok(body: Any, status: int = 200) -> func.HttpResponse:
    return json_ok(body, status=status, headers=CORS_HEADERS)


def _error(message: str, status: int) -> func.HttpResponse:
    return text_error(message, status=status, headers=CORS_HEADERS)


def main(req: func.HttpRequest) -> func.HttpResponse:
    logging.info("behavior_targets request: %s", req.method)

    if req.method == "OPTIONS":
        return no_content(headers=CORS_HEADERS)

    if req.method != "GET":
        return _error("Method not allowed", 405)

    caller_id = None
    if hasattr(req, "route_params") and req.route_params:
        caller_id = req.route_params.get("callerId")
    if not caller_id and req.params:
        caller_id = req.params.get("callerId")

    if not caller_id:
        return _error("Missing callerId", 400)

    parameter_id = (req.params.get("parameterId") or "").strip() if req.params else ""

    try:
        with get_connection() as conn:
            store = PgTargetStore(conn)
            active = store.list_active(TargetScope.INDIVIDUAL, caller_id)
            history = store.history(parameter_id, TargetScope.INDIVIDUAL, caller_id) if parameter_id else None
    except Exception as exc:  # noqa: BLE001
        logging.exception("behavior_targets: failed to load targets for caller %s: %s", caller_id, exc)
        return _error("Failed to load behavior targets", 500)

    body: Dict[str, Any] = {
        "callerId": caller_id,
        "targets": [t.to_dict() for t in active],
    }
    if history is not None:
        body["parameterId"] = parameter_id
        body["history"] = [t.to_dict() for t in history]

    return _ok(body)
