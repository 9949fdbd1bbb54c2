"""Error taxonomy for the kindness pool.

Components raise these; the service facade converts them into failed
ServiceResults. A TransferError raised by a payout inside batch or retry
processing never reaches the caller; it becomes a FailedTransfer record.
"""

from __future__ import annotations


class PoolError(Exception):
    """Base class for every rejection the pool can produce."""


class ValidationError(PoolError, ValueError):
    """Bad input: amount bounds, value mismatch, blank identity."""


class AuthorizationError(PoolError):
    """Caller lacks the privileged role an operation requires."""


class StateError(PoolError):
    """Operation not valid in the current state (window, engine phase, membership)."""


class QuotaError(PoolError):
    """Daily cap, cooldown or transaction quota exhausted."""


class ResourceError(PoolError):
    """Insufficient balance, empty pool, too many or no receivers."""


class TransferError(PoolError):
    """A payout attempt failed."""


class RetryError(PoolError):
    """Retry not possible: no record, too early, or retries exhausted."""
