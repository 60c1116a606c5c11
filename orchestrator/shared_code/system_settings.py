"""
Key/value system settings backed by learning.system_settings.

Values are stored as JSON text. Reads go through a small TTL cache so a batch
run that resolves the same key repeatedly only touches the database once per
expiry window. The cache is an explicit object handed to ``SystemSettings``;
there is no process-wide cache state.
"""

import json
import logging
import time
from typing import Any, Callable, ContextManager, Dict, Optional, Tuple

from . import db


_logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 30.0

_MISSING = object()
# Cached marker for "no row stored"; callers still get their own default.
_ABSENT = object()


class SettingsCache:
    """Map of key -> (value, expiry) with explicit invalidation."""

    def __init__(self, ttl_seconds: float = DEFAULT_TTL_SECONDS, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[Any, float]] = {}

    def get(self, key: str, default: Any = None) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            return default
        value, expiry = entry
        if expiry <= self._clock():
            del self._entries[key]
            return default
        return value

    def set(self, key: str, value: Any) -> None:
        self._entries[key] = (value, self._clock() + self._ttl)

    def invalidate(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()


class SystemSettings:
    def __init__(
        self,
        cache: Optional[SettingsCache] = None,
        connection_factory: Callable[[], ContextManager[Any]] = db.get_connection,
    ) -> None:
        self.cache = cache if cache is not None else SettingsCache()
        self._connect = connection_factory

    def get(self, key: str, default: Any = None) -> Any:
        """Return the decoded value for ``key``, or ``default``.

        A missing row is cached as absent. Read or decode failures are logged
        and return the default without caching, so the next call retries the
        store.
        """
        cached = self.cache.get(key, _MISSING)
        if cached is _ABSENT:
            return default
        if cached is not _MISSING:
            return cached

        try:
            with self._connect() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        "SELECT value FROM learning.system_settings WHERE key = %s",
                        (key,),
                    )
                    row = cur.fetchone()
            if row is None:
                self.cache.set(key, _ABSENT)
                return default
            value = json.loads(row[0])
        except Exception as exc:  # noqa: BLE001
            _logger.warning("system_settings: failed to load %r, using default: %s", key, exc)
            return default

        self.cache.set(key, value)
        return value

    def put(self, key: str, value: Any) -> None:
        encoded = json.dumps(value, ensure_ascii=False)
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO learning.system_settings (key, value, updated_at)
                    VALUES (%(key)s, %(value)s, now())
                    ON CONFLICT (key)
                    DO UPDATE SET
                        value = EXCLUDED.value,
                        updated_at = now()
                    """,
                    {"key": key, "value": encoded},
                )
        self.cache.invalidate(key)
        _logger.info("system_settings: stored %r", key)
