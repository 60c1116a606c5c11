import logging
from typing import Any

import azure.functions as func

from shared_code.auth import require_admin_key
from shared_code.http import cors_headers, env_flag, json_body, json_ok, no_content, text_error
from shared_code.learning_config import DEFAULT_LEARNING_CONFIG, ConfigResolver, InvalidLearningConfig
from shared_code.system_settings import SystemSettings


CORS_HEADERS = cors_headers("GET, PUT, OPTIONS")

# One settings cache per worker process; PUT invalidates it.
_resolver = ConfigResolver(SystemSettings())


def _ok(body: Any, status: int = 200) -> func.HttpResponse:
    return json_ok(body, status=status, headers=CORS_HEADERS)


def _error(message: str, status: int) -> func.HttpResponse:
    return text_error(message, status=status, headers=CORS_HEADERS)


def _describe() -> dict:
    return {
        "key": _resolver.key,
        "config": _resolver.load_config().to_dict(),
        "defaults": DEFAULT_LEARNING_CONFIG.to_dict(),
        "stored": _resolver.load_raw(),
    }


@require_admin_key
def main(req: func.HttpRequest) -> func.HttpResponse:
    logging.info("learning_config request: %s", req.method)

    if req.method == "OPTIONS":
        return no_content(headers=CORS_HEADERS)

    if req.method == "GET":
        return _ok(_describe())

    if req.method == "PUT":
        if not env_flag("ADMIN_EDIT_ENABLED"):
            return _error("Writes disabled in this environment", 403)
        try:
            body = json_body(req)
            config = _resolver.store(body)
        except InvalidLearningConfig as exc:
            return _error(f"Invalid learning config: {exc}", 400)
        except ValueError as exc:
            return _error(str(exc), 400)
        except Exception as exc:  # noqa: BLE001
            logging.exception("learning_config: failed to store config: %s", exc)
            return _error("Failed to store learning config", 500)

        logging.info("learning_config update: %s", config.to_dict())
        return _ok(_describe())

    return _error("Method not allowed", 405)
