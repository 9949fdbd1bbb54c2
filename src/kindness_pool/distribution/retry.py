"""Failed transfer registry: undelivered payouts and their retry schedule.

One entry per receiver, mirrored by an IndexedSet so removal stays
O(1). A sweep walks the index until it has made its quota of attempts.
A retry is eligible once RETRY_COOLDOWN * 2**retry_count has passed
since the last failure and fewer than MAX_RETRIES attempts have failed.

A failed redelivery is an outcome, not an error: the entry comes back
with retry_count + 1 and a fresh failure timestamp. Only a retry that
cannot be attempted at all (no entry, too early, exhausted) raises.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from kindness_pool.config import PoolConfig
from kindness_pool.distribution.transport import PayoutTransport, safe_send
from kindness_pool.errors import RetryError
from kindness_pool.models.pool import (
    FailedTransfer,
    PoolState,
    RetryOutcome,
    SweepOutcome,
)
from kindness_pool.persistence.event_log import EventBuffer, EventKind

logger = logging.getLogger(__name__)


class FailedTransferRegistry:
    """Bookkeeping and exponential-backoff redelivery."""

    def __init__(
        self,
        state: PoolState,
        config: PoolConfig,
        transport: PayoutTransport,
        events: EventBuffer,
    ) -> None:
        self._state = state
        self._config = config
        self._transport = transport
        self._events = events

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def record_failure(
        self,
        receiver: str,
        amount: Decimal,
        now: datetime,
    ) -> FailedTransfer:
        """Record an undelivered payout.

        An existing entry for the same receiver is merged: amounts add up
        and the retry schedule starts over from the new failure.
        """
        if amount <= Decimal("0"):
            raise ValueError("Failed transfer amount must be positive")
        existing = self._state.failed_transfers.get(receiver)
        if existing is not None:
            amount = existing.amount + amount
        entry = FailedTransfer(
            receiver=receiver, amount=amount, failed_at_utc=now, retry_count=0,
        )
        self._state.put_failed_transfer(entry)
        return entry

    # ------------------------------------------------------------------
    # Redelivery
    # ------------------------------------------------------------------

    def attempt_retry(
        self,
        receiver: str,
        now: datetime,
        actor_id: str = "",
        backoff_base: Optional[timedelta] = None,
    ) -> RetryOutcome:
        """Retry one receiver if the backoff schedule allows it.

        Raises:
            RetryError: no entry, retries exhausted, or backoff not elapsed.
        """
        entry = self._state.failed_transfers.get(receiver)
        if entry is None:
            raise RetryError(f"No failed transfer recorded for {receiver}")
        if entry.retry_count >= self._config.max_retries:
            raise RetryError(
                f"Retries exhausted for {receiver} ({entry.retry_count})"
            )
        eligible_at = self._eligible_at(entry, backoff_base)
        if now < eligible_at:
            raise RetryError(
                f"Retry for {receiver} not allowed before {eligible_at.isoformat()}"
            )
        return self._redeliver(entry, now, actor_id or receiver)

    def force_flush(self, receiver: str, now: datetime, actor_id: str) -> RetryOutcome:
        """Redeliver immediately, ignoring backoff and the retry cap."""
        entry = self._state.failed_transfers.get(receiver)
        if entry is None:
            raise RetryError(f"No failed transfer recorded for {receiver}")
        return self._redeliver(entry, now, actor_id)

    def sweep(self, now: datetime, actor_id: str) -> SweepOutcome:
        """Retry up to MAX_AUTO_RETRIES_PER_CALL eligible entries."""
        outcome = self._sweep(now, self._config.max_auto_retries_per_call, None, actor_id)
        self._events.emit(
            EventKind.AUTO_RETRY_COMPLETED,
            actor_id,
            {
                "examined": outcome.examined,
                "attempted": outcome.attempted,
                "succeeded": outcome.succeeded,
            },
            now,
        )
        logger.info(
            "Auto retry sweep: %d attempted, %d succeeded",
            outcome.attempted, outcome.succeeded,
        )
        return outcome

    def prepass(self, now: datetime, actor_id: str) -> SweepOutcome:
        """Opportunistic retries at half the normal backoff."""
        return self._sweep(
            now,
            self._config.prepass_max_retries,
            self._config.retry_cooldown / 2,
            actor_id,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, receiver: str) -> Optional[FailedTransfer]:
        return self._state.failed_transfers.get(receiver)

    def pending(self) -> list[FailedTransfer]:
        return [self._state.failed_transfers[r] for r in self._state.failed_index]

    def count(self) -> int:
        return len(self._state.failed_index)

    def next_eligible_utc(self, receiver: str) -> Optional[datetime]:
        """When the next scheduled retry opens, or None if there is none."""
        entry = self._state.failed_transfers.get(receiver)
        if entry is None or entry.retry_count >= self._config.max_retries:
            return None
        return self._eligible_at(entry, None)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _eligible_at(
        self,
        entry: FailedTransfer,
        backoff_base: Optional[timedelta],
    ) -> datetime:
        base = backoff_base if backoff_base is not None else self._config.retry_cooldown
        return entry.failed_at_utc + base * (2 ** entry.retry_count)

    def _is_eligible(
        self,
        entry: FailedTransfer,
        now: datetime,
        backoff_base: Optional[timedelta],
    ) -> bool:
        return (
            entry.retry_count < self._config.max_retries
            and now >= self._eligible_at(entry, backoff_base)
        )

    def _sweep(
        self,
        now: datetime,
        limit: int,
        backoff_base: Optional[timedelta],
        actor_id: str,
    ) -> SweepOutcome:
        # Walk a copy: redelivery moves entries within the index.
        # The limit counts attempts, not entries looked at.
        examined = 0
        outcomes: list[RetryOutcome] = []
        for receiver in self._state.failed_index.snapshot():
            if len(outcomes) >= limit:
                break
            examined += 1
            entry = self._state.failed_transfers[receiver]
            if not self._is_eligible(entry, now, backoff_base):
                continue
            outcomes.append(self._redeliver(entry, now, actor_id))
        return SweepOutcome(
            examined=examined,
            attempted=len(outcomes),
            succeeded=sum(1 for o in outcomes if o.delivered),
            outcomes=tuple(outcomes),
        )

    def _redeliver(
        self,
        entry: FailedTransfer,
        now: datetime,
        actor_id: str,
    ) -> RetryOutcome:
        receiver = entry.receiver
        self._state.pop_failed_transfer(receiver)

        result = safe_send(
            self._transport,
            receiver,
            entry.amount,
            self._config.payout_resource_ceiling,
        )
        if result.success:
            agg = self._state.aggregate
            agg.unclaimed_funds -= entry.amount
            agg.held_balance -= entry.amount
            self._events.emit(
                EventKind.RETRY_SUCCEEDED,
                actor_id,
                {
                    "receiver": receiver,
                    "amount": entry.amount,
                    "retry_count": entry.retry_count,
                },
                now,
            )
            logger.info("Redelivered %s to %s", entry.amount, receiver)
            return RetryOutcome(
                receiver=receiver,
                amount=entry.amount,
                delivered=True,
                retry_count=entry.retry_count,
            )

        retried = FailedTransfer(
            receiver=receiver,
            amount=entry.amount,
            failed_at_utc=now,
            retry_count=entry.retry_count + 1,
        )
        self._state.put_failed_transfer(retried)
        self._events.emit(
            EventKind.RETRY_FAILED,
            actor_id,
            {
                "receiver": receiver,
                "amount": entry.amount,
                "retry_count": retried.retry_count,
                "reason": result.reason,
            },
            now,
        )
        logger.warning(
            "Redelivery to %s failed (attempt %d): %s",
            receiver, retried.retry_count, result.reason,
        )
        return RetryOutcome(
            receiver=receiver,
            amount=entry.amount,
            delivered=False,
            retry_count=retried.retry_count,
            reason=result.reason,
        )
