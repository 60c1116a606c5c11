import json
import os
from typing import Any, Dict, Mapping, Optional

import azure.functions as func


Headers = Optional[Mapping[str, str]]


def cors_headers(methods: str) -> Dict[str, str]:
    return {
        "Access-Control-Allow-Origin": "*",
        "Access-Control-Allow-Methods": methods,
        "Access-Control-Allow-Headers": "Content-Type, Authorization, X-Admin-Key",
    }


def env_flag(name: str, default: str = "false") -> bool:
    value = os.getenv(name, default).strip().lower()
    return value in ("true", "1", "yes")


def json_ok(body: Any, status: int = 200, headers: Headers = None) -> func.HttpResponse:
    return func.HttpResponse(
        body=json.dumps(body, ensure_ascii=False, default=str),
        status_code=status,
        mimetype="application/json",
        headers=headers,
    )


def no_content(headers: Headers = None) -> func.HttpResponse:
    return func.HttpResponse(status_code=204, headers=headers)


def text_error(message: str, status: int, headers: Headers = None) -> func.HttpResponse:
    return func.HttpResponse(body=message, status_code=status, headers=headers)


def json_body(req: func.HttpRequest, allow_empty: bool = False) -> Dict[str, Any]:
    """Return the request body as a dict. Raises ValueError when it is not a JSON object."""
    if allow_empty and not req.get_body():
        return {}
    try:
        body = req.get_json()
    except ValueError as exc:
        raise ValueError("Invalid JSON") from exc
    if not isinstance(body, dict):
        raise ValueError("Invalid JSON")
    return body
