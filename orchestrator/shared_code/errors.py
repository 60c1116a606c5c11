class LearningStoreError(RuntimeError):
    """Base class for store failures that leave a reward retryable."""


class TargetConflictError(LearningStoreError):
    """Another writer already superseded or created the active target for a key."""


class RewardConflictError(LearningStoreError):
    """The reward was marked processed by another writer."""


class MalformedRewardError(ValueError):
    """A reward snapshot entry is missing fields or carries non-numeric values."""


class RejectedOptionError(ValueError):
    """A caller override makes the resolved learning config invalid."""
