import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from psycopg.types.json import Json

from .errors import RewardConflictError


_logger = logging.getLogger(__name__)

DEFAULT_BATCH_LIMIT = 100


@dataclass(frozen=True)
class RewardRecord:
    """Outcome signal for one completed interaction, as scored upstream.

    ``parameter_diffs`` maps parameter id -> {target, actual, withinTolerance};
    ``effective_targets`` maps parameter id -> {targetValue, confidence, scope}
    for the target versions in effect when the interaction ran.
    """

    id: str
    interaction_id: str
    overall_score: float
    parameter_diffs: Optional[Dict[str, Any]]
    effective_targets: Optional[Dict[str, Any]]
    individual_key: Optional[str] = None
    segment_key: Optional[str] = None
    scored_at: Optional[datetime] = None
    updates_applied: Optional[List[Dict[str, Any]]] = None

    @property
    def is_learnable(self) -> bool:
        # Empty maps are learnable (and get marked with no adjustments); missing ones are not.
        return self.parameter_diffs is not None and self.effective_targets is not None

    @property
    def is_processed(self) -> bool:
        return self.updates_applied is not None


def _is_selectable(reward: RewardRecord, interaction_id: Optional[str]) -> bool:
    if reward.is_processed or not reward.is_learnable:
        return False
    return interaction_id is None or reward.interaction_id == interaction_id


class InMemoryRewardStore:
    def __init__(self, rewards: Optional[List[RewardRecord]] = None) -> None:
        self._rewards: Dict[str, RewardRecord] = {r.id: r for r in rewards or []}

    def get(self, reward_id: str) -> Optional[RewardRecord]:
        return self._rewards.get(reward_id)

    def select_unprocessed(self, interaction_id: Optional[str] = None, limit: int = DEFAULT_BATCH_LIMIT) -> List[RewardRecord]:
        candidates = [r for r in self._rewards.values() if _is_selectable(r, interaction_id)]
        candidates.sort(key=lambda r: (r.scored_at is not None, r.scored_at or 0), reverse=True)
        return candidates[: max(limit, 0)]

    def mark_applied(self, reward_id: str, updates: List[Dict[str, Any]]) -> None:
        current = self._rewards.get(reward_id)
        if current is None or current.is_processed:
            raise RewardConflictError(f"reward {reward_id} was already processed")
        self._rewards[reward_id] = replace(current, updates_applied=list(updates))


_SELECT_COLUMNS = """
    id,
    interaction_id,
    caller_id,
    segment_id,
    overall_score,
    parameter_diffs,
    effective_targets,
    scored_at
"""


def _row_to_reward(row: Tuple[Any, ...]) -> RewardRecord:
    id_, interaction_id, caller_id, segment_id, overall_score, diffs, targets, scored_at = row
    return RewardRecord(
        id=id_,
        interaction_id=interaction_id,
        individual_key=caller_id,
        segment_key=segment_id,
        overall_score=float(overall_score),
        parameter_diffs=diffs,
        effective_targets=targets,
        scored_at=scored_at,
    )


class PgRewardStore:
    def __init__(self, conn: Any) -> None:
        self.conn = conn

    def select_unprocessed(self, interaction_id: Optional[str] = None, limit: int = DEFAULT_BATCH_LIMIT) -> List[RewardRecord]:
        """Rewards with no target updates applied yet and both snapshots present, newest first."""
        filters = ""
        params: Dict[str, Any] = {"limit": max(limit, 0)}
        if interaction_id:
            filters = "AND interaction_id = %(interaction_id)s"
            params["interaction_id"] = interaction_id

        with self.conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT {_SELECT_COLUMNS}
                FROM learning.reward_scores
                WHERE target_updates_applied IS NULL
                  AND effective_targets IS NOT NULL
                  AND parameter_diffs IS NOT NULL
                  AND jsonb_typeof(effective_targets) <> 'null'
                  AND jsonb_typeof(parameter_diffs) <> 'null'
                  {filters}
                ORDER BY scored_at DESC
                LIMIT %(limit)s
                """,
                params,
            )
            rows = cur.fetchall() or []
        return [_row_to_reward(r) for r in rows]

    def mark_applied(self, reward_id: str, updates: List[Dict[str, Any]]) -> None:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                UPDATE learning.reward_scores
                SET target_updates_applied = %(updates)s
                WHERE id = %(id)s
                  AND target_updates_applied IS NULL
                """,
                {"id": reward_id, "updates": Json(list(updates))},
            )
            if cur.rowcount != 1:
                raise RewardConflictError(f"reward {reward_id} was already processed")
