"""Distribution subsystem: batched payout engine, retry registry, transport."""

from kindness_pool.distribution.engine import DistributionEngine
from kindness_pool.distribution.retry import FailedTransferRegistry
from kindness_pool.distribution.transport import (
    InMemoryTransport,
    PayoutTransport,
    TransferResult,
)

__all__ = [
    "DistributionEngine",
    "FailedTransferRegistry",
    "InMemoryTransport",
    "PayoutTransport",
    "TransferResult",
]
