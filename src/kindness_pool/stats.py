"""Stats sink: the black-box collaborator that aggregates per-user totals.

The pool notifies it on every contribution, withdrawal, payout and
receiver-set change. Leaderboards and display names live behind this
interface and are not the pool's concern.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Optional, Protocol, runtime_checkable


@runtime_checkable
class StatsSink(Protocol):
    """Notifications emitted by the pool."""

    def update(self, user_id: str, is_giving: bool, amount: Decimal) -> None:
        """Record value given (is_giving) or received by a user."""
        ...

    def reduce_given(self, user_id: str, amount: Decimal) -> None:
        """Undo part of a user's given total after a withdrawal."""
        ...

    def set_receiver_status(self, user_id: str, in_pool: bool) -> None:
        """Mark a user as eligible (or no longer eligible) for payout."""
        ...


@dataclass
class UserStats:
    total_given: Decimal = Decimal("0")
    total_received: Decimal = Decimal("0")
    times_given: int = 0
    times_received: int = 0
    in_receiver_pool: bool = False


class InMemoryStatsSink:
    """Reference StatsSink keeping lifetime totals in a dict."""

    def __init__(self) -> None:
        self._stats: Dict[str, UserStats] = {}

    def update(self, user_id: str, is_giving: bool, amount: Decimal) -> None:
        stats = self._stats.setdefault(user_id, UserStats())
        if is_giving:
            stats.total_given += amount
            stats.times_given += 1
        else:
            stats.total_received += amount
            stats.times_received += 1

    def reduce_given(self, user_id: str, amount: Decimal) -> None:
        stats = self._stats.setdefault(user_id, UserStats())
        stats.total_given = max(Decimal("0"), stats.total_given - amount)

    def set_receiver_status(self, user_id: str, in_pool: bool) -> None:
        self._stats.setdefault(user_id, UserStats()).in_receiver_pool = in_pool

    def get(self, user_id: str) -> Optional[UserStats]:
        return self._stats.get(user_id)
