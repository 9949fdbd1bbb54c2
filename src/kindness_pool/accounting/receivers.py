"""Receiver set manager: who is waiting for today's payout.

Membership is an IndexedSet so that leaving is O(1) regardless of set
size. A user who contributed today cannot enter, and a registered
receiver cannot contribute (the ledger enforces the other direction).
"""

from __future__ import annotations

from datetime import datetime

from kindness_pool.accounting.quota import ActionKind, QuotaGuard, require_user_id
from kindness_pool.config import PoolConfig
from kindness_pool.errors import QuotaError, ResourceError, StateError
from kindness_pool.models.pool import PoolState
from kindness_pool.persistence.event_log import EventBuffer, EventKind
from kindness_pool.stats import StatsSink
from kindness_pool.timing import TimePolicy


class ReceiverSetManager:
    """Enter, leave and emergency-exit the receiver set."""

    def __init__(
        self,
        state: PoolState,
        config: PoolConfig,
        time_policy: TimePolicy,
        guard: QuotaGuard,
        stats: StatsSink,
        events: EventBuffer,
    ) -> None:
        self._state = state
        self._config = config
        self._time = time_policy
        self._guard = guard
        self._stats = stats
        self._events = events

    def enter(self, user_id: str, now: datetime) -> int:
        """Register `user_id` as a receiver. Returns the new set size."""
        record = self._guard.consume(user_id, ActionKind.RECEIVER_POOL, now)
        if user_id in self._state.receivers:
            raise StateError(f"{user_id} is already a registered receiver")
        if record.contribution_amount > 0:
            raise StateError("Contributors cannot enter the receiver pool today")
        if record.receiver_entries >= self._config.max_daily_receiver_entries:
            raise QuotaError(
                f"Daily receiver entry limit reached "
                f"({self._config.max_daily_receiver_entries})"
            )
        if len(self._state.receivers) >= self._config.max_receivers:
            raise ResourceError(
                f"Receiver pool is full ({self._config.max_receivers})"
            )

        self._state.receivers.add(user_id)
        record.receiver_entries += 1
        self._stats.set_receiver_status(user_id, True)
        size = len(self._state.receivers)
        self._events.emit(
            EventKind.RECEIVER_ENTERED, user_id, {"receiver_count": size}, now,
        )
        return size

    def leave(self, user_id: str, now: datetime) -> int:
        """Deregister `user_id`. Returns the new set size."""
        require_user_id(user_id)
        if user_id not in self._state.receivers:
            raise StateError(f"{user_id} is not a registered receiver")
        record = self._guard.consume(user_id, ActionKind.RECEIVER_POOL, now)
        if record.receiver_exits >= self._config.max_daily_receiver_exits:
            raise QuotaError(
                f"Daily receiver exit limit reached "
                f"({self._config.max_daily_receiver_exits})"
            )

        self._state.receivers.remove(user_id)
        record.receiver_exits += 1
        self._stats.set_receiver_status(user_id, False)
        size = len(self._state.receivers)
        self._events.emit(
            EventKind.RECEIVER_LEFT, user_id, {"receiver_count": size}, now,
        )
        return size

    def emergency_exit(self, user_id: str, actor_id: str, now: datetime) -> int:
        """Remove a receiver without quota or cooldown checks."""
        require_user_id(user_id)
        if user_id not in self._state.receivers:
            raise StateError(f"{user_id} is not a registered receiver")
        self._state.receivers.remove(user_id)
        self._stats.set_receiver_status(user_id, False)
        size = len(self._state.receivers)
        self._events.emit(
            EventKind.RECEIVER_EMERGENCY_EXIT,
            actor_id,
            {"receiver": user_id, "receiver_count": size},
            now,
        )
        return size

    def is_registered(self, user_id: str) -> bool:
        return user_id in self._state.receivers

    def count(self) -> int:
        return len(self._state.receivers)

    def members(self) -> list[str]:
        return sorted(self._state.receivers)
