"""Pool data models."""

from kindness_pool.models.pool import (
    DISTRIBUTION_TRANSITIONS,
    BatchOutcome,
    DistributionPhase,
    DistributionSnapshot,
    FailedTransfer,
    IndexedSet,
    PoolAggregate,
    PoolState,
    RetryOutcome,
    SweepOutcome,
    UserDailyRecord,
)

__all__ = [
    "DISTRIBUTION_TRANSITIONS",
    "BatchOutcome",
    "DistributionPhase",
    "DistributionSnapshot",
    "FailedTransfer",
    "IndexedSet",
    "PoolAggregate",
    "PoolState",
    "RetryOutcome",
    "SweepOutcome",
    "UserDailyRecord",
]
