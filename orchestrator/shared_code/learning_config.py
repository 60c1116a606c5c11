import logging
import math
from dataclasses import asdict, dataclass, fields, replace
from typing import Any, Dict, Mapping, Optional

from .system_settings import SystemSettings


_logger = logging.getLogger(__name__)

TARGET_LEARN_SETTING_KEY = "learning.target_learn"


@dataclass(frozen=True)
class LearningConfig:
    tolerance: float = 0.15
    learning_rate: float = 0.1
    min_confidence: float = 0.1
    max_confidence: float = 0.95
    reinforce_confidence_boost: float = 0.5
    good_missed_confidence_boost: float = 0.2
    bad_hit_confidence_penalty: float = 0.3
    bad_hit_target_adjust: float = 0.3
    bad_missed_confidence_penalty: float = 0.2
    bad_missed_target_adjust: float = 0.5

    def to_dict(self) -> Dict[str, float]:
        return {_CAMEL_KEYS[k]: v for k, v in asdict(self).items()}


DEFAULT_LEARNING_CONFIG = LearningConfig()

# Stored JSON uses the admin UI's camelCase keys.
_CAMEL_KEYS: Dict[str, str] = {
    "tolerance": "tolerance",
    "learning_rate": "learningRate",
    "min_confidence": "minConfidence",
    "max_confidence": "maxConfidence",
    "reinforce_confidence_boost": "reinforceConfidenceBoost",
    "good_missed_confidence_boost": "goodMissedConfidenceBoost",
    "bad_hit_confidence_penalty": "badHitConfidencePenalty",
    "bad_hit_target_adjust": "badHitTargetAdjust",
    "bad_missed_confidence_penalty": "badMissedConfidencePenalty",
    "bad_missed_target_adjust": "badMissedTargetAdjust",
}

# Fields that are fractions of the unit interval rather than free multipliers.
_UNIT_FIELDS = ("tolerance", "learning_rate", "min_confidence", "max_confidence")


class InvalidLearningConfig(ValueError):
    pass


def config_from_mapping(raw: Mapping[str, Any], base: LearningConfig = DEFAULT_LEARNING_CONFIG) -> LearningConfig:
    """Build a config from camelCase JSON, falling back to ``base`` per field.

    Raises InvalidLearningConfig when any supplied value is unusable.
    """
    if not isinstance(raw, Mapping):
        raise InvalidLearningConfig(f"expected an object, got {type(raw).__name__}")

    values: Dict[str, float] = {}
    for f in fields(LearningConfig):
        camel = _CAMEL_KEYS[f.name]
        if camel not in raw or raw[camel] is None:
            continue
        value = raw[camel]
        if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
            raise InvalidLearningConfig(f"{camel} must be a number, got {value!r}")
        values[f.name] = float(value)

    config = replace(base, **values)
    validate_config(config)
    return config


def validate_config(config: LearningConfig) -> None:
    for name, value in asdict(config).items():
        if value < 0:
            raise InvalidLearningConfig(f"{_CAMEL_KEYS[name]} must not be negative")
        if name in _UNIT_FIELDS and value > 1:
            raise InvalidLearningConfig(f"{_CAMEL_KEYS[name]} must be within [0, 1]")
    if config.min_confidence > config.max_confidence:
        raise InvalidLearningConfig("minConfidence must not exceed maxConfidence")


def apply_overrides(config: LearningConfig, **overrides: Optional[float]) -> LearningConfig:
    """Overlay explicitly supplied fields; ``None`` means "not supplied"."""
    supplied = {k: float(v) for k, v in overrides.items() if v is not None}
    unknown = set(supplied) - set(_CAMEL_KEYS)
    if unknown:
        raise TypeError(f"unknown learning config fields: {sorted(unknown)}")
    if not supplied:
        return config
    merged = replace(config, **supplied)
    validate_config(merged)
    return merged


class ConfigResolver:
    """Resolves the target-learning config from system settings with defaults."""

    def __init__(self, settings: SystemSettings, key: str = TARGET_LEARN_SETTING_KEY) -> None:
        self.settings = settings
        self.key = key

    def load_raw(self) -> Optional[Any]:
        return self.settings.get(self.key, None)

    def load_config(self) -> LearningConfig:
        """Return the stored config, or the defaults when absent or malformed. Never raises."""
        try:
            raw = self.load_raw()
        except Exception as exc:  # noqa: BLE001
            _logger.warning("learning_config: failed to read %s, using defaults: %s", self.key, exc)
            return DEFAULT_LEARNING_CONFIG

        if raw is None:
            return DEFAULT_LEARNING_CONFIG

        try:
            return config_from_mapping(raw)
        except InvalidLearningConfig as exc:
            _logger.warning("learning_config: malformed %s, using defaults: %s", self.key, exc)
            return DEFAULT_LEARNING_CONFIG

    def store(self, raw: Mapping[str, Any]) -> LearningConfig:
        """Validate and persist a partial camelCase config merged on the stored one."""
        config = config_from_mapping(raw, base=self.load_config())
        self.settings.put(self.key, config.to_dict())
        return config
