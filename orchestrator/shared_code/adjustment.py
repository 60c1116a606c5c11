"""
Four-quadrant target adjustment.

Every observation falls into exactly one quadrant keyed by outcome valence
(reward score > 0) and whether the observed value landed within tolerance of
the target:

    good & hit     -> reinforce: keep the target, raise confidence
    good & missed  -> move the target toward what actually happened
    bad & hit      -> the target itself may be wrong: lower confidence and
                      nudge the target against the observed diff
    bad & missed   -> move the target away from what actually happened

Pure functions only; persistence lives in target_store.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Tuple

from .learning_config import LearningConfig


class Quadrant(str, Enum):
    REINFORCE = "reinforce"
    GOOD_MISSED = "good_missed"
    BAD_HIT = "bad_hit"
    BAD_MISSED = "bad_missed"


@dataclass(frozen=True)
class Adjustment:
    new_target: float
    new_confidence: float
    reason: str
    quadrant: Quadrant
    diff: float


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def classify(diff: float, outcome_score: float, tolerance: float) -> Quadrant:
    hit_target = abs(diff) <= tolerance
    good_outcome = outcome_score > 0
    return _QUADRANTS[(good_outcome, hit_target)]


_QUADRANTS: Dict[Tuple[bool, bool], Quadrant] = {
    (True, True): Quadrant.REINFORCE,
    (True, False): Quadrant.GOOD_MISSED,
    (False, True): Quadrant.BAD_HIT,
    (False, False): Quadrant.BAD_MISSED,
}


# Each rule maps (target, diff, confidence, config) to an unclamped
# (target, confidence, reason).
Rule = Callable[[float, float, float, LearningConfig], Tuple[float, float, str]]


def _reinforce(target: float, diff: float, confidence: float, config: LearningConfig) -> Tuple[float, float, str]:
    new_confidence = confidence + config.learning_rate * config.reinforce_confidence_boost
    return target, new_confidence, f"Good outcome, hit target (diff={diff:.2f}) - reinforcing"


def _good_missed(target: float, diff: float, confidence: float, config: LearningConfig) -> Tuple[float, float, str]:
    # Weaker beliefs take larger corrections.
    strength = config.learning_rate * (1 - confidence)
    new_target = target + diff * strength
    new_confidence = confidence + config.learning_rate * config.good_missed_confidence_boost
    return new_target, new_confidence, f"Good outcome but missed target (diff={diff:.2f}) - adjusting toward actual"


def _bad_hit(target: float, diff: float, confidence: float, config: LearningConfig) -> Tuple[float, float, str]:
    new_confidence = confidence - config.learning_rate * config.bad_hit_confidence_penalty
    new_target = target - diff * config.learning_rate * config.bad_hit_target_adjust
    return new_target, new_confidence, f"Bad outcome despite hitting target (diff={diff:.2f}) - reconsidering"


def _bad_missed(target: float, diff: float, confidence: float, config: LearningConfig) -> Tuple[float, float, str]:
    new_target = target - diff * config.learning_rate * config.bad_missed_target_adjust
    new_confidence = confidence - config.learning_rate * config.bad_missed_confidence_penalty
    return new_target, new_confidence, f"Bad outcome and missed target (diff={diff:.2f}) - adjusting away from actual"


RULES: Dict[Quadrant, Rule] = {
    Quadrant.REINFORCE: _reinforce,
    Quadrant.GOOD_MISSED: _good_missed,
    Quadrant.BAD_HIT: _bad_hit,
    Quadrant.BAD_MISSED: _bad_missed,
}


def _round_within(value: float, low: float, high: float) -> float:
    # Rounding may step past a bound that has more than two decimals.
    return _clamp(round(_clamp(value, low, high), 2), low, high)


def compute_adjustment(
    target_value: float,
    actual_value: float,
    outcome_score: float,
    confidence: float,
    config: LearningConfig,
) -> Adjustment:
    diff = actual_value - target_value
    quadrant = classify(diff, outcome_score, config.tolerance)
    new_target, new_confidence, reason = RULES[quadrant](target_value, diff, confidence, config)

    return Adjustment(
        new_target=_round_within(new_target, 0.0, 1.0),
        new_confidence=_round_within(new_confidence, config.min_confidence, config.max_confidence),
        reason=reason,
        quadrant=quadrant,
        diff=round(diff, 2),
    )
