"""Accounting subsystem: rate limiting, contribution ledger, receiver set."""

from kindness_pool.accounting.ledger import ContributionLedger
from kindness_pool.accounting.quota import ActionKind, QuotaGuard
from kindness_pool.accounting.receivers import ReceiverSetManager

__all__ = [
    "ActionKind",
    "ContributionLedger",
    "QuotaGuard",
    "ReceiverSetManager",
]
