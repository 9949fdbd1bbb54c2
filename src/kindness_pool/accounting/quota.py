"""Quota and cooldown guard: per-user rate limiting.

Every user-initiated mutating action passes through consume() before it
applies its effect. The guard checks the policies for that action kind,
then charges them (stamps the timestamp, increments the counter). If the
caller later rejects the action, the service rolls the whole call back,
charge included.

Policies per action kind:

    CONTRIBUTE       daily transaction quota
    WITHDRAW         daily transaction quota + withdrawal cooldown
    RECEIVER_POOL    daily transaction quota + receiver-pool cooldown
    AUTO_RETRY       daily transaction quota + general action cooldown

The transaction counter is a daily counter and resets with the rest of
the user's record at the start of each epoch.
"""

from __future__ import annotations

import enum
from datetime import datetime, timedelta
from typing import Optional

from kindness_pool.config import PoolConfig
from kindness_pool.errors import QuotaError, ValidationError
from kindness_pool.models.pool import PoolState, UserDailyRecord
from kindness_pool.timing import TimePolicy


class ActionKind(str, enum.Enum):
    CONTRIBUTE = "contribute"
    WITHDRAW = "withdraw"
    RECEIVER_POOL = "receiver_pool"
    AUTO_RETRY = "auto_retry"


def require_user_id(user_id: str) -> None:
    """Reject blank identities (the zero address of the pool)."""
    if not isinstance(user_id, str) or not user_id.strip():
        raise ValidationError("User ID must not be empty")


class QuotaGuard:
    """Verifies and consumes per-user capacity."""

    def __init__(
        self,
        state: PoolState,
        config: PoolConfig,
        time_policy: TimePolicy,
    ) -> None:
        self._state = state
        self._config = config
        self._time = time_policy

    def consume(
        self,
        user_id: str,
        action: ActionKind,
        now: datetime,
    ) -> UserDailyRecord:
        """Check and charge one unit of capacity for `action`.

        Returns the user's (reset-if-stale) daily record.

        Raises:
            QuotaError: cooldown still active or transaction quota used up.
        """
        require_user_id(user_id)
        record = self._state.record_for(user_id, self._time.epoch(now))

        self._check_cooldown(record, action, now)
        if record.transaction_count >= self._config.max_transactions_per_day:
            raise QuotaError(
                f"Daily transaction limit reached "
                f"({self._config.max_transactions_per_day})"
            )

        record.transaction_count += 1
        if action == ActionKind.WITHDRAW:
            record.last_withdrawal_utc = now
        elif action == ActionKind.RECEIVER_POOL:
            record.last_receiver_pool_action_utc = now
        elif action == ActionKind.AUTO_RETRY:
            record.last_action_utc = now
        return record

    def can_consume(self, user_id: str, action: ActionKind, now: datetime) -> bool:
        """Read-only check: would consume() succeed right now?"""
        record = self._state.view_for(user_id, self._time.epoch(now))
        try:
            self._check_cooldown(record, action, now)
        except QuotaError:
            return False
        return record.transaction_count < self._config.max_transactions_per_day

    def cooldown_ends_utc(
        self,
        user_id: str,
        action: ActionKind,
        now: datetime,
    ) -> Optional[datetime]:
        """When the cooldown for `action` lifts, or None if none applies."""
        record = self._state.view_for(user_id, self._time.epoch(now))
        stamp, interval = self._cooldown_for(record, action)
        if stamp is None or interval is None:
            return None
        return stamp + interval

    def _check_cooldown(
        self,
        record: UserDailyRecord,
        action: ActionKind,
        now: datetime,
    ) -> None:
        stamp, interval = self._cooldown_for(record, action)
        if stamp is None or interval is None:
            return
        if now < stamp + interval:
            remaining = int((stamp + interval - now).total_seconds())
            raise QuotaError(
                f"{action.value} cooldown active for another {remaining}s"
            )

    def _cooldown_for(
        self,
        record: UserDailyRecord,
        action: ActionKind,
    ) -> tuple[Optional[datetime], Optional[timedelta]]:
        if action == ActionKind.WITHDRAW:
            return record.last_withdrawal_utc, self._config.withdrawal_cooldown
        if action == ActionKind.RECEIVER_POOL:
            return (
                record.last_receiver_pool_action_utc,
                self._config.receiver_pool_cooldown,
            )
        if action == ActionKind.AUTO_RETRY:
            return record.last_action_utc, self._config.action_cooldown
        return None, None
