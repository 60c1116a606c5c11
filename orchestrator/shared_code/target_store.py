"""
Versioned, scoped behavior targets.

A target is never edited in place. For each (parameter, scope, scope key)
the versions form a chain: the head has ``effective_until`` unset, every older
version carries the timestamp it stopped being effective and a
``superseded_by_id`` pointer to its replacement. At most one head exists per
key at any time.

``InMemoryTargetStore`` keeps the chain as an arena of versions plus a head
index and is what the loop runs against in tests and simulations.
``PgTargetStore`` is the Postgres implementation; it relies on a
compare-and-swap on ``effective_until`` and a partial unique index over active
rows so that a losing concurrent writer fails instead of leaving two heads.
"""

import copy
import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from psycopg import errors as pg_errors

from .errors import TargetConflictError


_logger = logging.getLogger(__name__)


class TargetScope(str, Enum):
    GLOBAL = "GLOBAL"
    SEGMENT = "SEGMENT"
    INDIVIDUAL = "INDIVIDUAL"


class TargetSource(str, Enum):
    SEED = "SEED"
    LEARNED = "LEARNED"


@dataclass(frozen=True)
class BehaviorTarget:
    id: str
    parameter_id: str
    scope: TargetScope
    scope_key: Optional[str]
    target_value: float
    confidence: float
    source: TargetSource
    observation_count: int = 0
    last_learned_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    effective_until: Optional[datetime] = None
    superseded_by_id: Optional[str] = None
    supersedes_id: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.effective_until is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "parameterId": self.parameter_id,
            "scope": self.scope.value,
            "scopeKey": self.scope_key,
            "targetValue": self.target_value,
            "confidence": self.confidence,
            "source": self.source.value,
            "observationCount": self.observation_count,
            "lastLearnedAt": _iso(self.last_learned_at),
            "createdAt": _iso(self.created_at),
            "effectiveUntil": _iso(self.effective_until),
            "supersededById": self.superseded_by_id,
            "supersedesId": self.supersedes_id,
        }


TargetKey = Tuple[str, TargetScope, Optional[str]]


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def target_key(parameter_id: str, scope: TargetScope, scope_key: Optional[str]) -> TargetKey:
    scope = TargetScope(scope)
    if scope is TargetScope.GLOBAL:
        return (parameter_id, scope, None)
    if not scope_key:
        raise ValueError(f"{scope.value} targets require a scope key")
    return (parameter_id, scope, scope_key)


class InMemoryTargetStore:
    def __init__(self, clock: Callable[[], datetime] = utc_now) -> None:
        self._clock = clock
        self._versions: Dict[str, BehaviorTarget] = {}
        self._heads: Dict[TargetKey, str] = {}

    @contextmanager
    def transaction(self) -> Iterator[None]:
        saved = (copy.copy(self._versions), copy.copy(self._heads))
        try:
            yield
        except BaseException:
            self._versions, self._heads = saved
            raise

    def find_active(self, parameter_id: str, scope: TargetScope, scope_key: Optional[str] = None) -> Optional[BehaviorTarget]:
        head_id = self._heads.get(target_key(parameter_id, scope, scope_key))
        return self._versions[head_id] if head_id else None

    def get(self, target_id: str) -> Optional[BehaviorTarget]:
        return self._versions.get(target_id)

    def supersede(self, target_id: str, effective_until: Optional[datetime] = None) -> BehaviorTarget:
        current = self._versions.get(target_id)
        if current is None or not current.is_active:
            raise TargetConflictError(f"target {target_id} is no longer active")
        updated = replace(current, effective_until=effective_until or self._clock())
        self._versions[target_id] = updated
        self._heads.pop(target_key(current.parameter_id, current.scope, current.scope_key), None)
        return updated

    def create_version(
        self,
        parameter_id: str,
        scope: TargetScope,
        scope_key: Optional[str],
        value: float,
        confidence: float,
        source: TargetSource = TargetSource.LEARNED,
        supersedes_id: Optional[str] = None,
        observation_count: int = 1,
        last_learned_at: Optional[datetime] = None,
    ) -> BehaviorTarget:
        key = target_key(parameter_id, scope, scope_key)
        if key in self._heads:
            raise TargetConflictError(f"an active {key[1].value} target already exists for {parameter_id}")

        source = TargetSource(source)
        if last_learned_at is None and source is TargetSource.LEARNED:
            last_learned_at = self._clock()
        target = BehaviorTarget(
            id=str(uuid.uuid4()),
            parameter_id=parameter_id,
            scope=key[1],
            scope_key=key[2],
            target_value=value,
            confidence=confidence,
            source=source,
            observation_count=observation_count,
            last_learned_at=last_learned_at,
            created_at=self._clock(),
            supersedes_id=supersedes_id,
        )
        self._versions[target.id] = target
        self._heads[key] = target.id
        if supersedes_id and supersedes_id in self._versions:
            self._versions[supersedes_id] = replace(self._versions[supersedes_id], superseded_by_id=target.id)
        return target

    def list_active(self, scope: Optional[TargetScope] = None, scope_key: Optional[str] = None) -> List[BehaviorTarget]:
        items = [self._versions[i] for i in self._heads.values()]
        if scope is not None:
            items = [t for t in items if t.scope is TargetScope(scope) and t.scope_key == scope_key]
        return sorted(items, key=lambda t: t.parameter_id)

    def history(self, parameter_id: str, scope: TargetScope, scope_key: Optional[str] = None) -> List[BehaviorTarget]:
        key = target_key(parameter_id, scope, scope_key)
        chain = [t for t in self._versions.values() if (t.parameter_id, t.scope, t.scope_key) == key]
        return sorted(chain, key=lambda t: t.created_at or datetime.min.replace(tzinfo=timezone.utc), reverse=True)


_COLUMNS = """
    id,
    parameter_id,
    scope,
    scope_key,
    target_value,
    confidence,
    source,
    observation_count,
    last_learned_at,
    created_at,
    effective_until,
    superseded_by_id,
    supersedes_id
"""


def _row_to_target(row: Tuple[Any, ...]) -> BehaviorTarget:
    (
        id_,
        parameter_id,
        scope,
        scope_key,
        target_value,
        confidence,
        source,
        observation_count,
        last_learned_at,
        created_at,
        effective_until,
        superseded_by_id,
        supersedes_id,
    ) = row
    return BehaviorTarget(
        id=id_,
        parameter_id=parameter_id,
        scope=TargetScope(scope),
        scope_key=scope_key,
        target_value=float(target_value),
        confidence=float(confidence),
        source=TargetSource(source),
        observation_count=int(observation_count or 0),
        last_learned_at=last_learned_at,
        created_at=created_at,
        effective_until=effective_until,
        superseded_by_id=superseded_by_id,
        supersedes_id=supersedes_id,
    )


class PgTargetStore:
    def __init__(self, conn: Any, clock: Callable[[], datetime] = utc_now) -> None:
        self.conn = conn
        self._clock = clock

    def transaction(self) -> Any:
        return self.conn.transaction()

    def find_active(self, parameter_id: str, scope: TargetScope, scope_key: Optional[str] = None) -> Optional[BehaviorTarget]:
        parameter_id, scope, scope_key = target_key(parameter_id, scope, scope_key)
        with self.conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT {_COLUMNS}
                FROM learning.behavior_targets
                WHERE parameter_id = %(parameter_id)s
                  AND scope = %(scope)s
                  AND scope_key IS NOT DISTINCT FROM %(scope_key)s
                  AND effective_until IS NULL
                """,
                {"parameter_id": parameter_id, "scope": scope.value, "scope_key": scope_key},
            )
            row = cur.fetchone()
        return _row_to_target(row) if row else None

    def supersede(self, target_id: str, effective_until: Optional[datetime] = None) -> BehaviorTarget:
        with self.conn.cursor() as cur:
            cur.execute(
                f"""
                UPDATE learning.behavior_targets
                SET effective_until = %(effective_until)s
                WHERE id = %(id)s
                  AND effective_until IS NULL
                RETURNING {_COLUMNS}
                """,
                {"id": target_id, "effective_until": effective_until or self._clock()},
            )
            row = cur.fetchone()
        if row is None:
            raise TargetConflictError(f"target {target_id} is no longer active")
        return _row_to_target(row)

    def create_version(
        self,
        parameter_id: str,
        scope: TargetScope,
        scope_key: Optional[str],
        value: float,
        confidence: float,
        source: TargetSource = TargetSource.LEARNED,
        supersedes_id: Optional[str] = None,
        observation_count: int = 1,
        last_learned_at: Optional[datetime] = None,
    ) -> BehaviorTarget:
        parameter_id, scope, scope_key = target_key(parameter_id, scope, scope_key)
        source = TargetSource(source)
        if last_learned_at is None and source is TargetSource.LEARNED:
            last_learned_at = self._clock()
        payload = {
            "id": str(uuid.uuid4()),
            "parameter_id": parameter_id,
            "scope": scope.value,
            "scope_key": scope_key,
            "target_value": value,
            "confidence": confidence,
            "source": source.value,
            "observation_count": observation_count,
            "last_learned_at": last_learned_at,
            "created_at": self._clock(),
            "supersedes_id": supersedes_id,
        }
        try:
            with self.conn.cursor() as cur:
                cur.execute(
                    f"""
                    INSERT INTO learning.behavior_targets (
                        id,
                        parameter_id,
                        scope,
                        scope_key,
                        target_value,
                        confidence,
                        source,
                        observation_count,
                        last_learned_at,
                        created_at,
                        supersedes_id
                    )
                    VALUES (
                        %(id)s,
                        %(parameter_id)s,
                        %(scope)s,
                        %(scope_key)s,
                        %(target_value)s,
                        %(confidence)s,
                        %(source)s,
                        %(observation_count)s,
                        %(last_learned_at)s,
                        %(created_at)s,
                        %(supersedes_id)s
                    )
                    RETURNING {_COLUMNS}
                    """,
                    payload,
                )
                row = cur.fetchone()
                if supersedes_id:
                    cur.execute(
                        """
                        UPDATE learning.behavior_targets
                        SET superseded_by_id = %(new_id)s
                        WHERE id = %(old_id)s
                        """,
                        {"new_id": payload["id"], "old_id": supersedes_id},
                    )
        except pg_errors.UniqueViolation as exc:
            raise TargetConflictError(
                f"an active {scope.value} target already exists for {parameter_id}",
            ) from exc
        return _row_to_target(row)

    def list_active(self, scope: Optional[TargetScope] = None, scope_key: Optional[str] = None) -> List[BehaviorTarget]:
        where = "effective_until IS NULL"
        params: Dict[str, Any] = {}
        if scope is not None:
            where += " AND scope = %(scope)s AND scope_key IS NOT DISTINCT FROM %(scope_key)s"
            params = {"scope": TargetScope(scope).value, "scope_key": scope_key}
        with self.conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT {_COLUMNS}
                FROM learning.behavior_targets
                WHERE {where}
                ORDER BY parameter_id
                """,
                params,
            )
            rows = cur.fetchall() or []
        return [_row_to_target(r) for r in rows]

    def history(self, parameter_id: str, scope: TargetScope, scope_key: Optional[str] = None) -> List[BehaviorTarget]:
        parameter_id, scope, scope_key = target_key(parameter_id, scope, scope_key)
        with self.conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT {_COLUMNS}
                FROM learning.behavior_targets
                WHERE parameter_id = %(parameter_id)s
                  AND scope = %(scope)s
                  AND scope_key IS NOT DISTINCT FROM %(scope_key)s
                ORDER BY created_at DESC
                """,
                {"parameter_id": parameter_id, "scope": scope.value, "scope_key": scope_key},
            )
            rows = cur.fetchall() or []
        return [_row_to_target(r) for r in rows]


def replace_active(
    store: Any,
    parameter_id: str,
    scope: TargetScope,
    scope_key: Optional[str],
    value: float,
    confidence: float,
    expected_active: Optional[BehaviorTarget],
    source: TargetSource = TargetSource.LEARNED,
    now: Optional[datetime] = None,
) -> Tuple[BehaviorTarget, Optional[BehaviorTarget]]:
    """Supersede ``expected_active`` (if any) and create its successor as one unit.

    ``expected_active`` is the head the caller based its computation on. If
    another writer replaced it in the meantime, or created a head where the
    caller saw none, TargetConflictError is raised and nothing is written.
    Returns (new version, superseded version or None).
    """
    superseded: Optional[BehaviorTarget] = None
    with store.transaction():
        if expected_active is not None:
            superseded = store.supersede(expected_active.id, effective_until=now)
        created = store.create_version(
            parameter_id,
            scope,
            scope_key,
            value,
            confidence,
            source=source,
            supersedes_id=expected_active.id if expected_active else None,
            observation_count=(expected_active.observation_count if expected_active else 0) + 1,
            last_learned_at=now,
        )
        if superseded is not None:
            superseded = replace(superseded, superseded_by_id=created.id)
    _logger.debug(
        "target_store: %s %s/%s -> %s (supersedes=%s)",
        parameter_id,
        created.scope.value,
        scope_key,
        created.id,
        created.supersedes_id,
    )
    return created, superseded
