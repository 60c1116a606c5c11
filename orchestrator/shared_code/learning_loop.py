"""
Target learning loop: turns scored interactions into new behavior target versions.

One cycle selects a bounded batch of reward records that have not had target
updates applied, and for each (parameter, observed value) pair in a reward
computes a four-quadrant adjustment against the target that was in effect
during the interaction. Only INDIVIDUAL-scope targets are written, one new
version per adjusted parameter; when the interaction has no individual key
the adjustment is recorded as advisory only. Shared GLOBAL/SEGMENT policy is
never moved by a single interaction.

Each reward is handled inside one store transaction that ends by marking the
reward with the list of adjustments. A reward that fails rolls back, is
reported in ``errors`` and stays unmarked so the next run retries it.
"""

import logging
import uuid
from collections import Counter
from contextlib import nullcontext
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple

from . import db, learning_reports
from .adjustment import compute_adjustment
from .errors import MalformedRewardError, RejectedOptionError
from .learning_config import ConfigResolver, InvalidLearningConfig, LearningConfig, apply_overrides
from .reward_store import DEFAULT_BATCH_LIMIT, PgRewardStore, RewardRecord
from .system_settings import SystemSettings
from .target_store import PgTargetStore, TargetScope, replace_active, utc_now


_logger = logging.getLogger(__name__)

# Adjustments smaller than this on both target and confidence are not written.
MIN_MEANINGFUL_CHANGE = 0.01

PREVIEW_SIZE = 5

SKIP_LOW_CONFIDENCE = "lowConfidence"
SKIP_NEGLIGIBLE = "negligible"
SKIP_NOT_LEARNABLE = "notLearnable"


@dataclass
class LearningOptions:
    interaction_id: Optional[str] = None
    limit: int = DEFAULT_BATCH_LIMIT
    learning_rate: Optional[float] = None
    min_confidence: Optional[float] = None
    dry_run: bool = False

    @classmethod
    def from_body(cls, body: Mapping[str, Any]) -> "LearningOptions":
        """Parse a camelCase request body. Raises ValueError on bad input."""
        if not isinstance(body, Mapping):
            raise ValueError("Request body must be a JSON object")

        interaction_id = body.get("interactionId")
        if interaction_id is not None and not isinstance(interaction_id, str):
            raise ValueError("interactionId must be a string")

        limit = body.get("limit", DEFAULT_BATCH_LIMIT)
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
            raise ValueError("limit must be a positive integer")

        rates: Dict[str, Optional[float]] = {}
        for key in ("learningRate", "minConfidence"):
            value = body.get(key)
            if value is not None and (isinstance(value, bool) or not isinstance(value, (int, float)) or not 0 <= value <= 1):
                raise ValueError(f"{key} must be a number within [0, 1]")
            rates[key] = float(value) if value is not None else None

        dry_run = body.get("dryRun", False)
        if not isinstance(dry_run, bool):
            raise ValueError("dryRun must be a boolean")

        return cls(
            interaction_id=interaction_id or None,
            limit=limit,
            learning_rate=rates["learningRate"],
            min_confidence=rates["minConfidence"],
            dry_run=dry_run,
        )


@dataclass
class LearningRunResult:
    run_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    started_at: datetime = field(default_factory=utc_now)
    dry_run: bool = False
    config: Dict[str, float] = field(default_factory=dict)
    selected: int = 0
    processed: int = 0
    updated: int = 0
    created: int = 0
    advisory: int = 0
    skipped: Counter = field(default_factory=Counter)
    errors: List[str] = field(default_factory=list)
    updates: List[Dict[str, Any]] = field(default_factory=list)
    preview: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "runId": self.run_id,
            "startedAt": self.started_at.isoformat(),
            "dryRun": self.dry_run,
            "config": self.config,
            "selected": self.selected,
            "processed": self.processed,
            "updated": self.updated,
            "created": self.created,
            "advisory": self.advisory,
            "skipped": {
                SKIP_LOW_CONFIDENCE: self.skipped[SKIP_LOW_CONFIDENCE],
                SKIP_NEGLIGIBLE: self.skipped[SKIP_NEGLIGIBLE],
                SKIP_NOT_LEARNABLE: self.skipped[SKIP_NOT_LEARNABLE],
            },
            "errors": list(self.errors),
            "updates": list(self.updates),
            "preview": list(self.preview),
        }


def _number(data: Mapping[str, Any], key: str, parameter_id: str) -> float:
    value = data.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise MalformedRewardError(f"{parameter_id}: {key} must be a number, got {value!r}")
    return float(value)


def _read_snapshot(parameter_id: str, diff_data: Any, target_data: Any) -> Tuple[float, float, float, str]:
    if not isinstance(diff_data, Mapping) or not isinstance(target_data, Mapping):
        raise MalformedRewardError(f"{parameter_id}: snapshot entries must be objects")
    target_value = _number(diff_data, "target", parameter_id)
    actual_value = _number(diff_data, "actual", parameter_id)
    confidence = _number(target_data, "confidence", parameter_id)
    scope = str(target_data.get("scope") or TargetScope.GLOBAL.value)
    return target_value, actual_value, confidence, scope


def _apply_reward(
    reward: RewardRecord,
    targets: Any,
    config: LearningConfig,
    tally: Counter,
    now: Optional[datetime],
) -> List[Dict[str, Any]]:
    if not isinstance(reward.parameter_diffs, Mapping) or not isinstance(reward.effective_targets, Mapping):
        raise MalformedRewardError("parameter diffs and effective targets must be objects")

    entries: List[Dict[str, Any]] = []
    for parameter_id, diff_data in reward.parameter_diffs.items():
        target_data = reward.effective_targets.get(parameter_id)
        if target_data is None:
            continue

        target_value, actual_value, confidence, source_scope = _read_snapshot(parameter_id, diff_data, target_data)

        if confidence < config.min_confidence:
            tally[SKIP_LOW_CONFIDENCE] += 1
            _logger.debug(
                "learning_loop: %s %s confidence %.2f below %.2f; skipping",
                reward.interaction_id,
                parameter_id,
                confidence,
                config.min_confidence,
            )
            continue

        adjustment = compute_adjustment(target_value, actual_value, reward.overall_score, confidence, config)

        if (
            abs(adjustment.new_target - target_value) < MIN_MEANINGFUL_CHANGE
            and abs(adjustment.new_confidence - confidence) < MIN_MEANINGFUL_CHANGE
        ):
            tally[SKIP_NEGLIGIBLE] += 1
            _logger.debug("learning_loop: %s %s no significant change; skipping", reward.interaction_id, parameter_id)
            continue

        entry: Dict[str, Any] = {
            "parameterId": parameter_id,
            "oldTarget": target_value,
            "newTarget": adjustment.new_target,
            "oldConfidence": confidence,
            "newConfidence": adjustment.new_confidence,
            "reason": adjustment.reason,
            "quadrant": adjustment.quadrant.value,
            "sourceScope": source_scope,
        }

        if reward.individual_key:
            existing = targets.find_active(parameter_id, TargetScope.INDIVIDUAL, reward.individual_key)
            created, superseded = replace_active(
                targets,
                parameter_id,
                TargetScope.INDIVIDUAL,
                reward.individual_key,
                adjustment.new_target,
                adjustment.new_confidence,
                expected_active=existing,
                now=now,
            )
            tally["created"] += 1
            if superseded is not None:
                tally["updated"] += 1
            entry.update(
                scope=TargetScope.INDIVIDUAL.value,
                scopeKey=reward.individual_key,
                applied=True,
                targetId=created.id,
                supersededId=superseded.id if superseded else None,
            )
        else:
            tally["advisory"] += 1
            advisory_key = reward.segment_key if source_scope == TargetScope.SEGMENT.value else None
            entry.update(scope=source_scope, scopeKey=advisory_key, applied=False, targetId=None, supersededId=None)
            _logger.debug(
                "learning_loop: %s %s would update %s target; recorded as advisory",
                reward.interaction_id,
                parameter_id,
                source_scope,
            )

        _logger.debug(
            "learning_loop: %s %s %.2f -> %.2f (%s)",
            reward.interaction_id,
            parameter_id,
            target_value,
            adjustment.new_target,
            adjustment.reason,
        )
        entries.append(entry)
    return entries


def _preview(rewards: List[RewardRecord]) -> List[Dict[str, Any]]:
    return [
        {
            "rewardId": r.id,
            "interactionId": r.interaction_id,
            "overallScore": r.overall_score,
            "parameterCount": len(r.parameter_diffs or {}),
        }
        for r in rewards[:PREVIEW_SIZE]
    ]


def run_learning_cycle(
    targets: Any,
    rewards: Any,
    resolver: ConfigResolver,
    options: Optional[LearningOptions] = None,
    now: Optional[datetime] = None,
) -> LearningRunResult:
    """Run one batch over unprocessed rewards.

    ``targets`` and ``rewards`` are a target store and reward store sharing a
    transaction scope (the Postgres stores share one connection). Raises
    RejectedOptionError before selecting anything when an override does not
    fit the resolved config.
    """
    options = options or LearningOptions()
    try:
        config = apply_overrides(
            resolver.load_config(),
            learning_rate=options.learning_rate,
            min_confidence=options.min_confidence,
        )
    except InvalidLearningConfig as exc:
        raise RejectedOptionError(f"Rejected option: {exc}") from exc
    result = LearningRunResult(dry_run=options.dry_run, config=config.to_dict())

    batch = rewards.select_unprocessed(interaction_id=options.interaction_id, limit=options.limit)
    result.selected = len(batch)
    _logger.info(
        "learning_loop: selected %d rewards (limit=%d, interaction=%s, learning_rate=%.2f, min_confidence=%.2f)",
        len(batch),
        options.limit,
        options.interaction_id or "*",
        config.learning_rate,
        config.min_confidence,
    )

    if options.dry_run:
        result.preview = _preview(batch)
        for item in result.preview:
            _logger.info(
                "learning_loop: plan interaction=%s score=%s parameters=%d",
                item["interactionId"],
                item["overallScore"],
                item["parameterCount"],
            )
        return result

    for reward in batch:
        if not reward.is_learnable:
            result.skipped[SKIP_NOT_LEARNABLE] += 1
            _logger.debug("learning_loop: reward %s missing targets or diffs; skipping", reward.id)
            continue

        tally: Counter = Counter()
        try:
            with targets.transaction():
                entries = _apply_reward(reward, targets, config, tally, now)
                rewards.mark_applied(reward.id, entries)
        except Exception as exc:  # noqa: BLE001
            message = f"Error updating targets for interaction {reward.interaction_id} (reward {reward.id}): {exc}"
            _logger.exception("learning_loop: %s", message)
            result.errors.append(message)
            continue

        result.processed += 1
        result.created += tally.pop("created", 0)
        result.updated += tally.pop("updated", 0)
        result.advisory += tally.pop("advisory", 0)
        result.skipped.update(tally)
        if entries:
            result.updates.append(
                {
                    "rewardId": reward.id,
                    "interactionId": reward.interaction_id,
                    "updateCount": len(entries),
                    "updates": entries,
                }
            )

    _logger.info(
        "learning_loop: run %s processed=%d created=%d updated=%d advisory=%d errors=%d",
        result.run_id,
        result.processed,
        result.created,
        result.updated,
        result.advisory,
        len(result.errors),
    )
    return result


def update_targets(options: Optional[LearningOptions] = None, settings: Optional[SystemSettings] = None) -> LearningRunResult:
    """Run one learning cycle against the behavior database and archive the report."""
    options = options or LearningOptions()
    with db.get_connection() as conn:
        if settings is None:
            settings = SystemSettings(connection_factory=lambda: nullcontext(conn))
        result = run_learning_cycle(
            PgTargetStore(conn),
            PgRewardStore(conn),
            ConfigResolver(settings),
            options,
        )

    if not result.dry_run:
        learning_reports.archive_run(result.to_dict())
    return result
