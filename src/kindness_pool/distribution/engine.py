"""Distribution engine: batched, resumable payout of the daily pool.

State machine:
    IDLE -> IN_PROGRESS          start: snapshot taken, first batch run
    IN_PROGRESS -> IN_PROGRESS   continue: next batch, cursor advances
    IN_PROGRESS -> IDLE          finalize (cursor reached the end) or
                                 emergency stop

At start the live receiver set is frozen into a snapshot and cleared,
refundable contributions are folded into the pool, and the equal share is
fixed at floor(pool_total / n) in the configured unit. Each batch pays
the next BATCH_SIZE receivers in snapshot order. A payout that fails is
recorded in the FailedTransferRegistry and the batch carries on. Nobody
is paid twice because the cursor only moves forward and the snapshot is
destroyed when the run ends.

Accounting per receiver: pool_total drops by the share either way; a
delivered share also leaves held_balance, an undelivered one moves to
unclaimed_funds. At finalize the rounding remainder moves from
pool_total to carried_dust.
"""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import ROUND_DOWN, Decimal, localcontext
from typing import Any, Optional

from kindness_pool.config import PoolConfig
from kindness_pool.distribution.retry import FailedTransferRegistry
from kindness_pool.distribution.transport import PayoutTransport, safe_send
from kindness_pool.errors import ResourceError, StateError
from kindness_pool.models.pool import (
    DISTRIBUTION_TRANSITIONS,
    BatchOutcome,
    DistributionPhase,
    DistributionSnapshot,
    PoolState,
)
from kindness_pool.persistence.event_log import EventBuffer, EventKind
from kindness_pool.stats import StatsSink
from kindness_pool.timing import TimePolicy

logger = logging.getLogger(__name__)


class DistributionEngine:
    """Runs the daily distribution in bounded batches.

    Usage:
        outcome = engine.start(now, actor_id="scheduler")
        while not outcome.finalized:
            outcome = engine.continue_distribution(now, actor_id="scheduler")
    """

    def __init__(
        self,
        state: PoolState,
        config: PoolConfig,
        time_policy: TimePolicy,
        registry: FailedTransferRegistry,
        stats: StatsSink,
        transport: PayoutTransport,
        events: EventBuffer,
    ) -> None:
        self._state = state
        self._config = config
        self._time = time_policy
        self._registry = registry
        self._stats = stats
        self._transport = transport
        self._events = events

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, now: datetime, actor_id: str) -> BatchOutcome:
        """Snapshot the receiver set and process the first batch."""
        epoch, share = self._check_can_start(now)
        prepass = self._registry.prepass(now, actor_id)
        snapshot = self._take_snapshot(epoch, share, now)
        self._events.emit(
            EventKind.DISTRIBUTION_STARTED,
            actor_id,
            {
                "epoch": epoch,
                "receiver_count": snapshot.size,
                "share": share,
                "pool_total": self._state.aggregate.pool_total,
                "prepass_attempted": prepass.attempted,
                "prepass_succeeded": prepass.succeeded,
            },
            now,
        )
        logger.info(
            "Distribution started for epoch %d: %d receivers, share %s",
            epoch, snapshot.size, share,
        )
        return self.process_batch(now, actor_id)

    def continue_distribution(self, now: datetime, actor_id: str) -> BatchOutcome:
        snapshot = self._state.snapshot
        if snapshot is None or not snapshot.in_progress:
            raise StateError("No distribution in progress")
        if snapshot.exhausted:
            raise StateError("Distribution snapshot already exhausted")
        self._transition(DistributionPhase.IN_PROGRESS)
        return self.process_batch(now, actor_id)

    def process_batch(self, now: datetime, actor_id: str) -> BatchOutcome:
        """Pay the next slice of the snapshot; finalize after the last one."""
        snapshot = self._state.snapshot
        if snapshot is None or not snapshot.in_progress:
            raise StateError("No distribution in progress")
        if snapshot.exhausted:
            raise StateError("Distribution snapshot already exhausted")

        day = self._time.epoch(now)
        share = snapshot.share
        end = min(snapshot.cursor + self._config.batch_size, snapshot.size)
        batch = snapshot.receivers[snapshot.cursor:end]
        delivered_count = 0
        failed_count = 0
        delivered_amount = Decimal("0")
        failed_amount = Decimal("0")

        for receiver in batch:
            record = self._state.record_for(receiver, day)
            record.contribution_amount = Decimal("0")
            record.receiver_entries = 0
            record.receiver_exits = 0
            if receiver not in self._state.receivers:
                self._stats.set_receiver_status(receiver, False)
            self._stats.update(receiver, False, share)

            result = safe_send(
                self._transport, receiver, share, self._config.payout_resource_ceiling,
            )
            if result.success:
                delivered_count += 1
                delivered_amount += share
                self._state.aggregate.held_balance -= share
                self._events.emit(
                    EventKind.PAYOUT_DELIVERED,
                    actor_id,
                    {"receiver": receiver, "amount": share},
                    now,
                )
            else:
                failed_count += 1
                failed_amount += share
                self._registry.record_failure(receiver, share, now)
                self._events.emit(
                    EventKind.PAYOUT_FAILED,
                    actor_id,
                    {"receiver": receiver, "amount": share, "reason": result.reason},
                    now,
                )
                logger.warning("Payout to %s failed: %s", receiver, result.reason)

        agg = self._state.aggregate
        snapshot.cursor = end
        agg.pool_total -= share * len(batch)
        agg.unclaimed_funds += failed_amount
        self._events.emit(
            EventKind.BATCH_PROCESSED,
            actor_id,
            {
                "epoch": snapshot.epoch,
                "processed": len(batch),
                "delivered": delivered_count,
                "failed": failed_count,
                "failed_amount": failed_amount,
                "cursor": snapshot.cursor,
                "snapshot_size": snapshot.size,
            },
            now,
        )

        finalized = snapshot.exhausted
        if finalized:
            self._finalize(snapshot, now, actor_id)

        return BatchOutcome(
            processed=len(batch),
            delivered_count=delivered_count,
            delivered_amount=delivered_amount,
            failed_count=failed_count,
            failed_amount=failed_amount,
            cursor=snapshot.cursor,
            snapshot_size=snapshot.size,
            share=share,
            finalized=finalized,
        )

    def emergency_stop(self, now: datetime, actor_id: str) -> int:
        """Abandon the running distribution. Returns the unpaid count.

        Receivers past the cursor are not paid and their shares stay in
        pool_total. The epoch is not marked as distributed.
        """
        snapshot = self._state.snapshot
        if snapshot is None or not snapshot.in_progress:
            raise StateError("No distribution in progress")
        self._transition(DistributionPhase.IDLE)
        unpaid = snapshot.receivers[snapshot.cursor:]
        for receiver in unpaid:
            if receiver not in self._state.receivers:
                self._stats.set_receiver_status(receiver, False)
        self._state.snapshot = None
        self._events.emit(
            EventKind.DISTRIBUTION_STOPPED,
            actor_id,
            {
                "epoch": snapshot.epoch,
                "cursor": snapshot.cursor,
                "unpaid_count": len(unpaid),
                "pool_total": self._state.aggregate.pool_total,
            },
            now,
        )
        logger.warning(
            "Distribution for epoch %d stopped at %d/%d",
            snapshot.epoch, snapshot.cursor, snapshot.size,
        )
        return len(unpaid)

    def distribute_all(self, now: datetime, actor_id: str) -> BatchOutcome:
        """Single-call distribution of the whole snapshot, no retry pre-pass."""
        epoch, share = self._check_can_start(now)
        snapshot = self._take_snapshot(epoch, share, now)
        pool_before = self._state.aggregate.pool_total

        delivered_count = failed_count = 0
        delivered_amount = failed_amount = Decimal("0")
        outcome: Optional[BatchOutcome] = None
        while outcome is None or not outcome.finalized:
            outcome = self.process_batch(now, actor_id)
            delivered_count += outcome.delivered_count
            failed_count += outcome.failed_count
            delivered_amount += outcome.delivered_amount
            failed_amount += outcome.failed_amount

        self._events.emit(
            EventKind.POOL_DISTRIBUTED,
            actor_id,
            {
                "epoch": epoch,
                "pool_total": pool_before,
                "receiver_count": snapshot.size,
                "share": share,
                "delivered_amount": delivered_amount,
                "failed_amount": failed_amount,
            },
            now,
        )
        return BatchOutcome(
            processed=snapshot.size,
            delivered_count=delivered_count,
            delivered_amount=delivered_amount,
            failed_count=failed_count,
            failed_amount=failed_amount,
            cursor=snapshot.size,
            snapshot_size=snapshot.size,
            share=share,
            finalized=True,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def status(self) -> dict[str, Any]:
        snapshot = self._state.snapshot
        return {
            "phase": self._state.phase.value,
            "cursor": snapshot.cursor if snapshot else 0,
            "snapshot_size": snapshot.size if snapshot else 0,
            "share": snapshot.share if snapshot else Decimal("0"),
            "epoch": snapshot.epoch if snapshot else None,
        }

    def is_distributed(self, epoch: int) -> bool:
        return self._state.aggregate.last_distribution_epoch == epoch

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _check_can_start(self, now: datetime) -> tuple[int, Decimal]:
        if self._state.phase != DistributionPhase.IDLE:
            raise StateError("A distribution is already in progress")
        if not self._time.in_distribution_window(now):
            raise StateError("Outside the distribution window")
        epoch = self._time.epoch(now)
        if self.is_distributed(epoch):
            raise StateError(f"Epoch {epoch} has already been distributed")

        agg = self._state.aggregate
        count = len(self._state.receivers)
        if agg.pool_total <= Decimal("0"):
            raise ResourceError("Pool is empty")
        if count == 0:
            raise ResourceError("No receivers registered")
        if count > self._config.max_receivers:
            raise ResourceError(
                f"Too many receivers ({count} > {self._config.max_receivers})"
            )
        if agg.held_balance < agg.pool_total:
            raise ResourceError("Held balance does not cover the pool")
        if agg.pool_total < self._config.min_distributable:
            raise ResourceError(
                f"Pool below the distributable minimum "
                f"({self._config.min_distributable})"
            )

        with localcontext() as ctx:
            ctx.prec = 60
            share = (agg.pool_total / count).quantize(
                self._config.amount_unit, rounding=ROUND_DOWN,
            )
        if share <= Decimal("0"):
            raise ResourceError("Pool too small to split between receivers")
        return epoch, share

    def _take_snapshot(
        self,
        epoch: int,
        share: Decimal,
        now: datetime,
    ) -> DistributionSnapshot:
        receivers = self._state.receivers.snapshot()
        self._state.receivers.clear()
        # Refundable contributions now live in the snapshot's pool.
        self._state.aggregate.fold_generation += 1
        self._state.snapshot = DistributionSnapshot(
            receivers=receivers, share=share, epoch=epoch, started_utc=now,
        )
        self._transition(DistributionPhase.IN_PROGRESS)
        return self._state.snapshot

    def _finalize(
        self,
        snapshot: DistributionSnapshot,
        now: datetime,
        actor_id: str,
    ) -> None:
        self._transition(DistributionPhase.IDLE)
        agg = self._state.aggregate
        dust = agg.pool_total
        agg.carried_dust += dust
        agg.pool_total = Decimal("0")
        agg.last_distribution_epoch = snapshot.epoch
        self._state.snapshot = None
        self._events.emit(
            EventKind.DISTRIBUTION_FINALIZED,
            actor_id,
            {
                "epoch": snapshot.epoch,
                "receiver_count": snapshot.size,
                "share": snapshot.share,
                "dust": dust,
                "unclaimed_funds": agg.unclaimed_funds,
            },
            now,
        )
        logger.info(
            "Distribution for epoch %d finalized (dust %s)", snapshot.epoch, dust,
        )

    def _transition(self, target: DistributionPhase) -> None:
        current = self._state.phase
        allowed = DISTRIBUTION_TRANSITIONS.get(current, frozenset())
        if target not in allowed:
            raise StateError(
                f"Invalid distribution transition: {current.value} -> {target.value}"
            )
        snapshot = self._state.snapshot
        if snapshot is not None:
            snapshot.in_progress = target == DistributionPhase.IN_PROGRESS
