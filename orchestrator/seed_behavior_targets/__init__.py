"""
Seed GLOBAL default behavior targets for the core conversation parameters.

Idempotent: parameters that already have an active GLOBAL target are left
alone, so re-seeding never supersedes a value an operator has set.
"""

import logging
from typing import Any, Dict, List

import azure.functions as func

from shared_code.auth import require_admin_key
from shared_code.db import get_connection
from shared_code.http import cors_headers, env_flag, json_ok, no_content, text_error
from shared_code.target_store import PgTargetStore, TargetScope, TargetSource


CORS_HEADERS = cors_headers("POST, OPTIONS")

DEFAULT_TARGET_VALUE = 0.5
DEFAULT_CONFIDENCE = 1.0

# Core behavior parameters every playbook measures, on a 0-1 scale.
CORE_PARAMETERS: List[Dict[str, str]] = [
    {"parameterId": "BEH-WARMTH", "name": "Warmth", "domainGroup": "tone"},
    {"parameterId": "BEH-EMPATHY-RATE", "name": "Empathy Rate", "domainGroup": "emotional"},
    {"parameterId": "BEH-FORMALITY", "name": "Formality", "domainGroup": "tone"},
    {"parameterId": "BEH-DIRECTNESS", "name": "Directness", "domainGroup": "style"},
    {"parameterId": "BEH-PROACTIVE", "name": "Proactivity", "domainGroup": "engagement"},
    {"parameterId": "BEH-QUESTION-RATE", "name": "Question Rate", "domainGroup": "engagement"},
    {"parameterId": "BEH-PACE-MATCH", "name": "Pace Matching", "domainGroup": "pacing"},
]


def seed_global_targets(store: Any) -> Dict[str, int]:
    results = {"created": 0, "existing": 0}
    for param in CORE_PARAMETERS:
        if store.find_active(param["parameterId"], TargetScope.GLOBAL) is not None:
            results["existing"] += 1
            continue
        store.create_version(
            param["parameterId"],
            TargetScope.GLOBAL,
            None,
            DEFAULT_TARGET_VALUE,
            DEFAULT_CONFIDENCE,
            source=TargetSource.SEED,
            observation_count=0,
        )
        results["created"] += 1
    return results


@require_admin_key
def main(req: func.HttpRequest) -> func.HttpResponse:
    logging.info("seed_behavior_targets request: %s", req.method)

    if req.method == "OPTIONS":
        return no_content(headers=CORS_HEADERS)

    if req.method != "POST":
        return text_error("Method not allowed", 405, headers=CORS_HEADERS)

    if not env_flag("ALLOW_TEST_SEED"):
        return text_error(
            "Target seeding is disabled. Set ALLOW_TEST_SEED=true to enable.",
            403,
            headers=CORS_HEADERS,
        )

    try:
        with get_connection() as conn:
            store = PgTargetStore(conn)
            with store.transaction():
                results = seed_global_targets(store)
    except Exception as exc:  # noqa: BLE001
        logging.exception("seed_behavior_targets: failed to seed targets: %s", exc)
        return text_error(f"Failed to seed behavior targets: {exc}", 500, headers=CORS_HEADERS)

    logging.info(
        "seed_behavior_targets: created %d, already present %d",
        results["created"],
        results["existing"],
    )
    return json_ok({"success": True, "results": results}, headers=CORS_HEADERS)
