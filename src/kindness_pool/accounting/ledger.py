"""Contribution ledger: value given and withdrawn per user per epoch.

Contributions raise pool_total, held_balance and the user's daily
contribution together. The daily contribution is what the cap counts; a
distribution leaves it alone. Only the refundable part, given
since the last distribution start, can be withdrawn; a distribution start
folds every refundable amount into the pool at once.

Withdrawals lower the totals before the payout is attempted; if the
payout fails the decrements are reversed and the call is rejected with
TransferError.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from kindness_pool.accounting.quota import ActionKind, QuotaGuard, require_user_id
from kindness_pool.config import PoolConfig
from kindness_pool.errors import (
    QuotaError,
    ResourceError,
    StateError,
    TransferError,
    ValidationError,
)
from kindness_pool.distribution.transport import PayoutTransport, safe_send
from kindness_pool.models.pool import DistributionPhase, PoolState
from kindness_pool.persistence.event_log import EventBuffer, EventKind
from kindness_pool.stats import StatsSink
from kindness_pool.timing import TimePolicy


def as_amount(value: Any, unit: Decimal) -> Decimal:
    """Coerce to Decimal and reject anything not a whole number of units."""
    if isinstance(value, float):
        raise ValidationError("Amounts must be Decimal, int or str, not float")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
        if not amount.is_finite():
            raise ValidationError(f"Not a valid amount: {value!r}")
        fractional = amount % unit != 0
    except InvalidOperation as exc:
        raise ValidationError(f"Not a valid amount: {value!r}") from exc
    if fractional:
        raise ValidationError(f"Amount {amount} is finer than the unit {unit}")
    return amount


class ContributionLedger:
    """Tracks daily contributions and withdrawals.

    Usage:
        ledger.contribute("alice", Decimal("0.5"), Decimal("0.5"), now)
        ledger.withdraw("alice", Decimal("0.2"), now)
        ledger.daily_contribution("alice", now)  # Decimal("0.3")
    """

    def __init__(
        self,
        state: PoolState,
        config: PoolConfig,
        time_policy: TimePolicy,
        guard: QuotaGuard,
        stats: StatsSink,
        transport: PayoutTransport,
        events: EventBuffer,
    ) -> None:
        self._state = state
        self._config = config
        self._time = time_policy
        self._guard = guard
        self._stats = stats
        self._transport = transport
        self._events = events

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def contribute(
        self,
        user_id: str,
        amount: Any,
        paid_value: Any,
        now: datetime,
    ) -> Decimal:
        """Add `amount` to the pool. Returns the user's new daily total."""
        require_user_id(user_id)
        amount = as_amount(amount, self._config.amount_unit)
        paid = as_amount(paid_value, self._config.amount_unit)
        if not self._config.min_contribution <= amount <= self._config.max_contribution:
            raise ValidationError(
                f"Contribution must be between {self._config.min_contribution} "
                f"and {self._config.max_contribution}"
            )
        if paid != amount:
            raise ValidationError(
                f"Paid value {paid} does not match declared amount {amount}"
            )
        if self._state.phase == DistributionPhase.IN_PROGRESS:
            raise StateError("Contributions are closed while a distribution runs")
        if user_id in self._state.receivers:
            raise StateError("Registered receivers cannot contribute")

        record = self._guard.consume(user_id, ActionKind.CONTRIBUTE, now)
        new_total = record.contribution_amount + amount
        if new_total > self._config.max_daily_contribution:
            raise QuotaError(
                f"Daily contribution cap of {self._config.max_daily_contribution} "
                f"would be exceeded"
            )

        record.contribution_amount = new_total
        self._state.add_refundable(record, amount)
        agg = self._state.aggregate
        agg.pool_total += amount
        agg.held_balance += amount
        self._stats.update(user_id, True, amount)
        self._events.emit(
            EventKind.CONTRIBUTION_RECEIVED,
            user_id,
            {"amount": amount, "daily_total": new_total, "pool_total": agg.pool_total},
            now,
        )
        return new_total

    def withdraw(self, user_id: str, amount: Any, now: datetime) -> Decimal:
        """Return part of today's contribution. Returns the remaining total."""
        require_user_id(user_id)
        amount = as_amount(amount, self._config.amount_unit)
        if amount < self._config.min_withdrawal:
            raise ValidationError(
                f"Withdrawal must be at least {self._config.min_withdrawal}"
            )
        if self._state.phase == DistributionPhase.IN_PROGRESS:
            raise StateError("Withdrawals are closed while a distribution runs")

        view = self._state.view_for(user_id, self._time.epoch(now))
        refundable = self._state.refundable(view)
        if amount > refundable:
            raise ValidationError(
                f"Cannot withdraw {amount}: only {refundable} is still "
                f"withdrawable today"
            )
        if view.withdrawal_count >= self._config.max_daily_withdrawals:
            raise QuotaError(
                f"Daily withdrawal limit reached "
                f"({self._config.max_daily_withdrawals})"
            )

        record = self._guard.consume(user_id, ActionKind.WITHDRAW, now)
        agg = self._state.aggregate
        if agg.pool_total < amount:
            raise ResourceError("Pool total is insufficient for this withdrawal")
        if agg.held_balance < amount:
            raise ResourceError("Held balance is insufficient for this withdrawal")

        record.contribution_amount -= amount
        record.refundable_amount -= amount
        record.withdrawal_count += 1
        agg.pool_total -= amount
        agg.held_balance -= amount

        result = safe_send(self._transport, user_id, amount, None)
        if not result.success:
            record.contribution_amount += amount
            record.refundable_amount += amount
            record.withdrawal_count -= 1
            agg.pool_total += amount
            agg.held_balance += amount
            raise TransferError(f"Withdrawal payout failed: {result.reason}")

        self._stats.reduce_given(user_id, amount)
        self._events.emit(
            EventKind.CONTRIBUTION_WITHDRAWN,
            user_id,
            {
                "amount": amount,
                "daily_total": record.contribution_amount,
                "pool_total": agg.pool_total,
            },
            now,
        )
        return record.contribution_amount

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def daily_contribution(self, user_id: str, now: datetime) -> Decimal:
        return self._state.view_for(user_id, self._time.epoch(now)).contribution_amount

    def remaining_daily_contribution(self, user_id: str, now: datetime) -> Decimal:
        spent = self.daily_contribution(user_id, now)
        return max(Decimal("0"), self._config.max_daily_contribution - spent)

    def withdrawable_amount(self, user_id: str, now: datetime) -> Decimal:
        if self._state.phase == DistributionPhase.IN_PROGRESS:
            return Decimal("0")
        view = self._state.view_for(user_id, self._time.epoch(now))
        return self._state.refundable(view)

    def withdrawal_stats(self, user_id: str, now: datetime) -> dict[str, Any]:
        view = self._state.view_for(user_id, self._time.epoch(now))
        remaining = max(0, self._config.max_daily_withdrawals - view.withdrawal_count)
        withdrawable = self.withdrawable_amount(user_id, now)
        next_utc: Optional[datetime] = self._guard.cooldown_ends_utc(
            user_id, ActionKind.WITHDRAW, now,
        )
        if next_utc is not None and next_utc <= now:
            next_utc = None
        can_withdraw = (
            remaining > 0
            and withdrawable >= self._config.min_withdrawal
            and self._guard.can_consume(user_id, ActionKind.WITHDRAW, now)
        )
        return {
            "withdrawal_count": view.withdrawal_count,
            "remaining_withdrawals": remaining,
            "can_withdraw": can_withdraw,
            "next_withdrawal_utc": next_utc,
            "withdrawable": withdrawable,
        }

    def withdrawal_limits(self) -> tuple[int, int, Decimal]:
        """(max withdrawals per day, cooldown seconds, minimum amount)."""
        return (
            self._config.max_daily_withdrawals,
            self._config.withdrawal_cooldown_seconds,
            self._config.min_withdrawal,
        )
