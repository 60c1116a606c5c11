import logging
import os
from contextlib import contextmanager
from typing import Any, Iterator

import psycopg
from psycopg.conninfo import make_conninfo


_logger = logging.getLogger(__name__)


_DSN_ENV = {
    "host": "BEHAVIOR_DB_HOST",
    "dbname": "BEHAVIOR_DB_NAME",
    "user": "BEHAVIOR_DB_USER",
    "password": "BEHAVIOR_DB_PASSWORD",
}

# Tables owned by the learning loop. Reward rows are written by the upstream
# reward stage; this loop only ever sets target_updates_applied.
SCHEMA_SQL = """
CREATE SCHEMA IF NOT EXISTS learning;

CREATE TABLE IF NOT EXISTS learning.system_settings (
    key        TEXT PRIMARY KEY,
    value      TEXT NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS learning.behavior_targets (
    id                TEXT PRIMARY KEY,
    parameter_id      TEXT NOT NULL,
    scope             TEXT NOT NULL,
    scope_key         TEXT,
    target_value      DOUBLE PRECISION NOT NULL,
    confidence        DOUBLE PRECISION NOT NULL,
    source            TEXT NOT NULL,
    observation_count INTEGER NOT NULL DEFAULT 0,
    last_learned_at   TIMESTAMPTZ,
    created_at        TIMESTAMPTZ NOT NULL DEFAULT now(),
    effective_until   TIMESTAMPTZ,
    superseded_by_id  TEXT REFERENCES learning.behavior_targets (id),
    supersedes_id     TEXT REFERENCES learning.behavior_targets (id)
);

CREATE UNIQUE INDEX IF NOT EXISTS behavior_targets_one_active
    ON learning.behavior_targets (parameter_id, scope, COALESCE(scope_key, ''))
    WHERE effective_until IS NULL;

CREATE TABLE IF NOT EXISTS learning.reward_scores (
    id                     TEXT PRIMARY KEY,
    interaction_id         TEXT NOT NULL,
    caller_id              TEXT,
    segment_id             TEXT,
    overall_score          DOUBLE PRECISION NOT NULL,
    effective_targets      JSONB,
    parameter_diffs        JSONB,
    target_updates_applied JSONB,
    scored_at              TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE INDEX IF NOT EXISTS reward_scores_unprocessed
    ON learning.reward_scores (scored_at DESC)
    WHERE target_updates_applied IS NULL;
"""


def _build_dsn() -> str:
    settings = {key: os.getenv(env, "").strip() for key, env in _DSN_ENV.items()}
    missing = [_DSN_ENV[key] for key, value in settings.items() if not value]
    if missing:
        raise RuntimeError(f"Behavior database configuration is incomplete; missing {', '.join(missing)}")

    _logger.info("db: configuring connection", extra={"host": settings["host"], "db": settings["dbname"]})
    return make_conninfo(port=os.getenv("BEHAVIOR_DB_PORT", "").strip() or "5432", **settings)


@contextmanager
def get_connection() -> Iterator[Any]:
    """Autocommit connection; multi-statement writes use ``conn.transaction()``."""
    dsn = _build_dsn()
    conn = psycopg.connect(dsn, autocommit=True)
    try:
        yield conn
    finally:
        try:
            conn.close()
        except Exception:  # noqa: BLE001
            _logger.exception("db: failed to close connection")


def init_schema() -> None:
    """Create the learning schema and tables if they don't exist."""
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(SCHEMA_SQL)
    _logger.info("db: learning schema ensured")
