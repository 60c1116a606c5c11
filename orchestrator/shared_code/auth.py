"""
Shared-secret check for admin endpoints that change learning state.
The admin UI authenticates users; this guards the function app itself.
"""

import hmac
import logging
import os
from functools import wraps
from typing import Any, Callable

import azure.functions as func


ADMIN_KEY_HEADER = "X-Admin-Key"


def validate_admin_key(req: func.HttpRequest) -> bool:
    """True when the X-Admin-Key header matches ADMIN_SHARED_SECRET, or no secret is configured."""
    expected = os.environ.get("ADMIN_SHARED_SECRET", "")
    if not expected:
        return True

    provided = req.headers.get(ADMIN_KEY_HEADER, "")
    if not provided:
        logging.warning("auth: missing %s header", ADMIN_KEY_HEADER)
        return False

    if not hmac.compare_digest(expected, provided):
        logging.warning("auth: invalid %s provided", ADMIN_KEY_HEADER)
        return False
    return True


def require_admin_key(handler: Callable[..., func.HttpResponse]) -> Callable[..., func.HttpResponse]:
    """Reject non-preflight requests without a valid admin key with 401."""

    @wraps(handler)
    def wrapper(req: func.HttpRequest, *args: Any, **kwargs: Any) -> func.HttpResponse:
        if req.method != "OPTIONS" and not validate_admin_key(req):
            return func.HttpResponse(
                body='{"error": "Unauthorized"}',
                status_code=401,
                mimetype="application/json",
            )
        return handler(req, *args, **kwargs)

    return wrapper
