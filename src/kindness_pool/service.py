"""Pool service: the single facade over the kindness pool.

This is the primary interface for programmatic access. It wires the
components to the injected collaborators and owns the one PoolState:
- Contributions and withdrawals (ContributionLedger)
- Receiver registration (ReceiverSetManager)
- Daily distribution (DistributionEngine)
- Failed payout recovery (FailedTransferRegistry)
- Rate limiting (QuotaGuard)
- Audit trail (EventLog)

Every mutating operation is all-or-nothing. The state journals each
change the call makes; if any PoolError is raised the journal is rolled
back, the buffered events are discarded and a failed ServiceResult is
returned. Events reach the log only after the call has succeeded.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Optional

from kindness_pool.access import AuthorizationCheck, Role
from kindness_pool.accounting.ledger import ContributionLedger
from kindness_pool.accounting.quota import ActionKind, QuotaGuard, require_user_id
from kindness_pool.accounting.receivers import ReceiverSetManager
from kindness_pool.config import PoolConfig
from kindness_pool.distribution.engine import DistributionEngine
from kindness_pool.distribution.retry import FailedTransferRegistry
from kindness_pool.distribution.transport import InMemoryTransport, PayoutTransport
from kindness_pool.errors import AuthorizationError, PoolError, StateError
from kindness_pool.models.pool import (
    BatchOutcome,
    DistributionPhase,
    FailedTransfer,
    PoolState,
    RetryOutcome,
)
from kindness_pool.persistence.event_log import (
    EventBuffer,
    EventKind,
    EventLog,
    EventRecord,
)
from kindness_pool.stats import InMemoryStatsSink, StatsSink
from kindness_pool.timing import TimePolicy

logger = logging.getLogger(__name__)


@dataclass
class ServiceResult:
    """Result of a service operation."""
    success: bool
    errors: list[str] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)
    error_type: Optional[str] = None


class PoolService:
    """Kindness pool facade.

    Usage:
        config = PoolConfig.from_config_dir(config_dir)
        roles = RoleRegistry(admin="ops")
        roles.grant(Role.DISTRIBUTOR, "scheduler")
        service = PoolService(config, roles)

        service.contribute("alice", Decimal("0.5"))
        service.enter_receiver_pool("bob")
        # ... inside the distribution window ...
        result = service.start_distribution("scheduler")
        while not result.data["finalized"]:
            result = service.continue_distribution("scheduler")

    Persistence (optional):
        service = PoolService(config, roles, event_log=EventLog(path))
        # Every committed event is appended to the JSONL file.
    """

    def __init__(
        self,
        config: PoolConfig,
        authorization: AuthorizationCheck,
        stats: Optional[StatsSink] = None,
        transport: Optional[PayoutTransport] = None,
        time_policy: Optional[TimePolicy] = None,
        event_log: Optional[EventLog] = None,
    ) -> None:
        self._config = config
        self._auth = authorization
        self._stats = stats if stats is not None else InMemoryStatsSink()
        self._transport = transport if transport is not None else InMemoryTransport()
        self._time = time_policy if time_policy is not None else TimePolicy(config)
        self._event_log = event_log if event_log is not None else EventLog()

        self._state = PoolState()
        self._events = EventBuffer()
        self._guard = QuotaGuard(self._state, config, self._time)
        self._ledger = ContributionLedger(
            self._state, config, self._time, self._guard,
            self._stats, self._transport, self._events,
        )
        self._receivers = ReceiverSetManager(
            self._state, config, self._time, self._guard, self._stats, self._events,
        )
        self._registry = FailedTransferRegistry(
            self._state, config, self._transport, self._events,
        )
        self._engine = DistributionEngine(
            self._state, config, self._time, self._registry,
            self._stats, self._transport, self._events,
        )

        # Continue numbering after a reloaded log to avoid ID collision
        self._event_counter = self._event_log.count
        # Set when the log file could not be written after a call succeeded.
        self._persistence_degraded = False

    # ------------------------------------------------------------------
    # Contributions
    # ------------------------------------------------------------------

    def contribute(
        self,
        user_id: str,
        amount: Any,
        paid_value: Any = None,
    ) -> ServiceResult:
        """Contribute `amount` to today's pool.

        `paid_value` is the value actually transferred with the call; it
        must match `amount` exactly. Omitted, it is taken to be `amount`.
        """
        def _op(now: datetime) -> dict[str, Any]:
            paid = amount if paid_value is None else paid_value
            daily_total = self._ledger.contribute(user_id, amount, paid, now)
            return {
                "user_id": user_id,
                "daily_total": daily_total,
                "pool_total": self._state.aggregate.pool_total,
            }
        return self._run("contribute", _op)

    def withdraw(self, user_id: str, amount: Any) -> ServiceResult:
        """Withdraw part of today's contribution back to the user."""
        def _op(now: datetime) -> dict[str, Any]:
            remaining = self._ledger.withdraw(user_id, amount, now)
            return {
                "user_id": user_id,
                "daily_total": remaining,
                "pool_total": self._state.aggregate.pool_total,
            }
        return self._run("withdraw", _op)

    # ------------------------------------------------------------------
    # Receiver set
    # ------------------------------------------------------------------

    def enter_receiver_pool(self, user_id: str) -> ServiceResult:
        def _op(now: datetime) -> dict[str, Any]:
            count = self._receivers.enter(user_id, now)
            return {"user_id": user_id, "receiver_count": count}
        return self._run("enter_receiver_pool", _op)

    def leave_receiver_pool(self, user_id: str) -> ServiceResult:
        def _op(now: datetime) -> dict[str, Any]:
            count = self._receivers.leave(user_id, now)
            return {"user_id": user_id, "receiver_count": count}
        return self._run("leave_receiver_pool", _op)

    def emergency_exit(self, actor_id: str, user_id: str) -> ServiceResult:
        """Remove a receiver, bypassing quotas. ADMIN only."""
        def _op(now: datetime) -> dict[str, Any]:
            self._require_role(actor_id, Role.ADMIN)
            count = self._receivers.emergency_exit(user_id, actor_id, now)
            return {"user_id": user_id, "receiver_count": count}
        return self._run("emergency_exit", _op)

    # ------------------------------------------------------------------
    # Distribution
    # ------------------------------------------------------------------

    def start_distribution(self, actor_id: str) -> ServiceResult:
        def _op(now: datetime) -> dict[str, Any]:
            self._require_distributor(actor_id)
            return self._engine.start(now, actor_id).to_dict()
        return self._run("start_distribution", _op)

    def continue_distribution(self, actor_id: str) -> ServiceResult:
        def _op(now: datetime) -> dict[str, Any]:
            self._require_distributor(actor_id)
            return self._engine.continue_distribution(now, actor_id).to_dict()
        return self._run("continue_distribution", _op)

    def emergency_stop_distribution(self, actor_id: str) -> ServiceResult:
        """Abandon the running distribution without finalizing. ADMIN only."""
        def _op(now: datetime) -> dict[str, Any]:
            self._require_role(actor_id, Role.ADMIN)
            unpaid = self._engine.emergency_stop(now, actor_id)
            return {
                "unpaid_count": unpaid,
                "pool_total": self._state.aggregate.pool_total,
            }
        return self._run("emergency_stop_distribution", _op)

    def distribute_all(self, actor_id: str) -> ServiceResult:
        """Distribute the whole pool in one call. DISTRIBUTOR only."""
        def _op(now: datetime) -> dict[str, Any]:
            self._require_role(actor_id, Role.DISTRIBUTOR)
            return self._engine.distribute_all(now, actor_id).to_dict()
        return self._run("distribute_all", _op)

    def attempt_distribution(self, actor_id: str) -> ServiceResult:
        """Time-based trigger: start today's distribution or continue it.

        Meant to be called on a schedule by a DISTRIBUTOR. Outside the
        window it is rejected like start_distribution.
        """
        def _op(now: datetime) -> dict[str, Any]:
            self._require_role(actor_id, Role.DISTRIBUTOR)
            if not self._time.in_distribution_window(now):
                raise StateError("Outside the distribution window")
            if self._state.phase == DistributionPhase.IN_PROGRESS:
                action = "continued"
                outcome: BatchOutcome = self._engine.continue_distribution(now, actor_id)
            else:
                action = "started"
                outcome = self._engine.start(now, actor_id)
            self._events.emit(
                EventKind.DISTRIBUTION_ATTEMPTED,
                actor_id,
                {"action": action, "finalized": outcome.finalized},
                now,
            )
            data = outcome.to_dict()
            data["action"] = action
            return data
        return self._run("attempt_distribution", _op)

    def set_distribution_window_override(
        self,
        actor_id: str,
        enabled: bool,
    ) -> ServiceResult:
        """Force the distribution window open (or back to schedule). ADMIN only."""
        def _op(now: datetime) -> dict[str, Any]:
            self._require_role(actor_id, Role.ADMIN)
            self._time.set_window_override(enabled)
            self._events.emit(
                EventKind.DISTRIBUTION_WINDOW_OVERRIDDEN,
                actor_id,
                {"enabled": enabled},
                now,
            )
            return {"window_override": enabled}
        return self._run("set_distribution_window_override", _op)

    # ------------------------------------------------------------------
    # Failed transfers
    # ------------------------------------------------------------------

    def retry_failed_transfer(self, actor_id: str, receiver: str) -> ServiceResult:
        """Retry one failed payout on its backoff schedule. DISTRIBUTOR only.

        A redelivery that fails again is still a successful call; see
        data["delivered"].
        """
        def _op(now: datetime) -> dict[str, Any]:
            self._require_role(actor_id, Role.DISTRIBUTOR)
            return _retry_data(self._registry.attempt_retry(receiver, now, actor_id))
        return self._run("retry_failed_transfer", _op)

    def auto_retry_sweep(self, caller_id: str) -> ServiceResult:
        """Bounded sweep over failed payouts. Anyone may call, rate limited."""
        def _op(now: datetime) -> dict[str, Any]:
            self._guard.consume(caller_id, ActionKind.AUTO_RETRY, now)
            outcome = self._registry.sweep(now, caller_id)
            return {
                "examined": outcome.examined,
                "attempted": outcome.attempted,
                "succeeded": outcome.succeeded,
                "outcomes": [_retry_data(o) for o in outcome.outcomes],
            }
        return self._run("auto_retry_sweep", _op)

    def force_flush(self, actor_id: str, receiver: str) -> ServiceResult:
        """Redeliver now, ignoring backoff and the retry cap. ADMIN only."""
        def _op(now: datetime) -> dict[str, Any]:
            self._require_role(actor_id, Role.ADMIN)
            return _retry_data(self._registry.force_flush(receiver, now, actor_id))
        return self._run("force_flush", _op)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def daily_stats(self, user_id: str) -> dict[str, Any]:
        now = self._time.now()
        record = self._state.view_for(user_id, self._time.epoch(now))
        return {
            "user_id": user_id,
            "contribution_amount": record.contribution_amount,
            "receiver_entries": record.receiver_entries,
            "receiver_exits": record.receiver_exits,
            "withdrawal_count": record.withdrawal_count,
            "transaction_count": record.transaction_count,
            "is_receiver": self._receivers.is_registered(user_id),
            "remaining_daily_contribution": self._ledger.remaining_daily_contribution(
                user_id, now,
            ),
            "can_contribute": self._guard.can_consume(
                user_id, ActionKind.CONTRIBUTE, now,
            ),
        }

    def remaining_daily_contribution(self, user_id: str) -> Decimal:
        return self._ledger.remaining_daily_contribution(user_id, self._time.now())

    def withdrawable_amount(self, user_id: str) -> Decimal:
        return self._ledger.withdrawable_amount(user_id, self._time.now())

    def withdrawal_stats(self, user_id: str) -> dict[str, Any]:
        return self._ledger.withdrawal_stats(user_id, self._time.now())

    def withdrawal_limits(self) -> tuple[int, int, Decimal]:
        return self._ledger.withdrawal_limits()

    def unclaimed_funds(self) -> Decimal:
        return self._state.aggregate.unclaimed_funds

    def in_distribution_window(self) -> bool:
        return self._time.in_distribution_window(self._time.now())

    def is_distributed_this_epoch(self) -> bool:
        now = self._time.now()
        return self._engine.is_distributed(self._time.epoch(now))

    def next_distribution_utc(self) -> datetime:
        now = self._time.now()
        return self._time.next_distribution_utc(
            now, self._engine.is_distributed(self._time.epoch(now)),
        )

    def receiver_count(self) -> int:
        return self._receivers.count()

    def is_receiver(self, user_id: str) -> bool:
        return self._receivers.is_registered(user_id)

    def receivers(self) -> list[str]:
        return self._receivers.members()

    def failed_transfer(self, receiver: str) -> Optional[FailedTransfer]:
        return self._registry.get(receiver)

    def failed_transfers(self) -> list[FailedTransfer]:
        return self._registry.pending()

    def next_retry_utc(self, receiver: str) -> Optional[datetime]:
        return self._registry.next_eligible_utc(receiver)

    def distribution_status(self) -> dict[str, Any]:
        return self._engine.status()

    def events(self, kind: Optional[EventKind] = None) -> list[EventRecord]:
        return self._event_log.events(kind)

    def status(self) -> dict[str, Any]:
        """Overall pool snapshot for operators."""
        now = self._time.now()
        agg = self._state.aggregate
        return {
            "epoch": self._time.epoch(now),
            "pool_total": agg.pool_total,
            "held_balance": agg.held_balance,
            "unclaimed_funds": agg.unclaimed_funds,
            "carried_dust": agg.carried_dust,
            "balanced": agg.is_balanced(),
            "last_distribution_epoch": agg.last_distribution_epoch,
            "receiver_count": self._receivers.count(),
            "failed_transfer_count": self._registry.count(),
            "distribution": self._engine.status(),
            "in_distribution_window": self._time.in_distribution_window(now),
            "window_override": self._time.window_override,
            "event_count": self._event_log.count,
            "persistence_degraded": self._persistence_degraded,
        }

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _run(
        self,
        action: str,
        op: Callable[[datetime], dict[str, Any]],
    ) -> ServiceResult:
        """Execute `op` all-or-nothing and commit its events."""
        now = self._time.now()
        self._state.begin()
        self._events.discard()
        try:
            data = op(now)
        except PoolError as e:
            self._state.rollback()
            self._events.discard()
            logger.debug("%s rejected: %s", action, e)
            return ServiceResult(
                success=False, errors=[str(e)], error_type=type(e).__name__,
            )
        except Exception:
            self._state.rollback()
            self._events.discard()
            raise

        self._state.commit()
        warning = self._commit_events()
        if warning:
            data["warning"] = warning
        logger.info("%s succeeded", action)
        return ServiceResult(success=True, data=data)

    def _commit_events(self) -> Optional[str]:
        """Append buffered events to the log.

        Runs after the state change is final, so a write failure must
        not roll anything back. The in-memory log stays complete; the
        file is stale and the service reports itself degraded.
        """
        warning: Optional[str] = None
        for pending in self._events.drain():
            event = EventRecord.create(
                event_id=self._next_event_id(),
                event_kind=pending.kind,
                actor_id=pending.actor_id,
                payload=pending.payload,
                timestamp_utc=pending.timestamp_utc,
            )
            try:
                self._event_log.append(event)
            except OSError as e:
                self._persistence_degraded = True
                logger.error("Event log write failed for %s: %s", event.event_id, e)
                warning = f"Persistence degraded: {e}"
        return warning

    def _next_event_id(self) -> str:
        """Generate a monotonically increasing unique event ID."""
        self._event_counter += 1
        return f"EVT-{self._event_counter:08d}"

    def _require_role(self, actor_id: str, role: Role) -> None:
        require_user_id(actor_id)
        if not self._auth.has_role(actor_id, role):
            raise AuthorizationError(f"{actor_id} lacks role {role.value}")

    def _require_distributor(self, actor_id: str) -> None:
        if self._config.distribution_requires_role:
            self._require_role(actor_id, Role.DISTRIBUTOR)


def _retry_data(outcome: RetryOutcome) -> dict[str, Any]:
    return {
        "receiver": outcome.receiver,
        "amount": outcome.amount,
        "delivered": outcome.delivered,
        "retry_count": outcome.retry_count,
        "reason": outcome.reason,
    }
