"""Tests for PoolService: proves the facade orchestrates a pool day correctly."""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Optional

from kindness_pool.access import Role, RoleRegistry
from kindness_pool.config import PoolConfig
from kindness_pool.distribution.transport import InMemoryTransport
from kindness_pool.persistence.event_log import EventKind, EventLog
from kindness_pool.service import PoolService
from kindness_pool.stats import InMemoryStatsSink
from kindness_pool.timing import TimePolicy


CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"

ADMIN = "ops"
DISTRIBUTOR = "scheduler"


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class _Pool:
    """Service plus the collaborators a test wants to poke at."""

    def __init__(self, config: PoolConfig, event_log: Optional[EventLog] = None) -> None:
        self.clock = ManualClock(datetime(2026, 2, 16, 12, 0, 0, tzinfo=timezone.utc))
        self.roles = RoleRegistry(admin=ADMIN)
        self.roles.grant(Role.DISTRIBUTOR, DISTRIBUTOR)
        self.transport = InMemoryTransport()
        self.stats = InMemoryStatsSink()
        self.service = PoolService(
            config, self.roles,
            stats=self.stats,
            transport=self.transport,
            time_policy=TimePolicy(config, clock=self.clock),
            event_log=event_log,
        )

    def to_window(self) -> None:
        """Jump to 23:15 on the current day."""
        now = self.clock.now
        self.clock.now = now.replace(hour=23, minute=15, second=0)

    def run_distribution(self) -> None:
        result = self.service.start_distribution(DISTRIBUTOR)
        assert result.success, result.errors
        while not result.data["finalized"]:
            result = self.service.continue_distribution(DISTRIBUTOR)
            assert result.success, result.errors


@pytest.fixture
def config() -> PoolConfig:
    return PoolConfig.from_config_dir(CONFIG_DIR)


@pytest.fixture
def pool(config: PoolConfig) -> _Pool:
    return _Pool(config)


class TestScenarios:
    def test_contribution_enters_pool(self, pool: _Pool) -> None:
        result = pool.service.contribute("alice", Decimal("0.5"))
        assert result.success
        assert result.data["pool_total"] == Decimal("0.5")
        assert pool.service.status()["pool_total"] == Decimal("0.5")

    def test_three_receivers_split_evenly(self, pool: _Pool) -> None:
        for giver in ("g1", "g2", "g3"):
            assert pool.service.contribute(giver, Decimal("0.1")).success
        for receiver in ("r1", "r2", "r3"):
            assert pool.service.enter_receiver_pool(receiver).success
        pool.to_window()
        pool.run_distribution()
        for receiver in ("r1", "r2", "r3"):
            assert pool.transport.balance_of(receiver) == Decimal("0.1")
        status = pool.service.status()
        assert status["carried_dust"] == 0
        assert status["failed_transfer_count"] == 0
        assert status["receiver_count"] == 0
        assert pool.service.is_distributed_this_epoch()

    def test_rejecting_receiver_does_not_block_finalize(self, pool: _Pool) -> None:
        for giver in ("g1", "g2", "g3"):
            pool.service.contribute(giver, Decimal("0.1"))
        for receiver in ("r1", "r2", "r3"):
            pool.service.enter_receiver_pool(receiver)
        pool.transport.reject("r2")
        pool.to_window()
        pool.run_distribution()
        failed = pool.service.failed_transfer("r2")
        assert failed is not None
        assert failed.retry_count == 0
        assert pool.service.unclaimed_funds() == Decimal("0.1")
        assert pool.transport.balance_of("r1") == Decimal("0.1")
        assert pool.transport.balance_of("r3") == Decimal("0.1")
        assert pool.service.is_distributed_this_epoch()

    def test_withdraw_then_become_receiver(self, pool: _Pool) -> None:
        assert pool.service.contribute("alice", Decimal("0.5")).success
        too_much = pool.service.withdraw("alice", Decimal("0.6"))
        assert not too_much.success
        assert too_much.error_type == "ValidationError"
        assert pool.service.withdraw("alice", Decimal("0.5")).success
        pool.clock.advance(seconds=1800)
        assert pool.service.enter_receiver_pool("alice").success


class TestAllOrNothing:
    def test_rejected_call_keeps_quota_charge_off(self, pool: _Pool) -> None:
        for _ in range(5):
            assert pool.service.contribute("alice", Decimal("1")).success
        result = pool.service.contribute("alice", Decimal("0.5"))
        assert not result.success
        assert result.error_type == "QuotaError"
        assert pool.service.daily_stats("alice")["transaction_count"] == 5

    def test_failed_withdrawal_changes_nothing(self, pool: _Pool) -> None:
        pool.service.contribute("alice", Decimal("0.5"))
        events_before = len(pool.service.events())
        pool.transport.reject("alice")
        result = pool.service.withdraw("alice", Decimal("0.5"))
        assert not result.success
        assert result.error_type == "TransferError"
        stats = pool.service.daily_stats("alice")
        assert stats["contribution_amount"] == Decimal("0.5")
        assert stats["transaction_count"] == 1
        assert stats["withdrawal_count"] == 0
        assert pool.service.withdrawal_stats("alice")["next_withdrawal_utc"] is None
        assert len(pool.service.events()) == events_before

    def test_receiver_cannot_contribute(self, pool: _Pool) -> None:
        pool.service.enter_receiver_pool("bob")
        result = pool.service.contribute("bob", Decimal("0.5"))
        assert not result.success
        assert result.error_type == "StateError"

    def test_contributor_cannot_enter_same_day(self, pool: _Pool) -> None:
        pool.service.contribute("alice", Decimal("0.5"))
        result = pool.service.enter_receiver_pool("alice")
        assert not result.success
        assert not pool.service.is_receiver("alice")

    def test_mismatched_payment(self, pool: _Pool) -> None:
        result = pool.service.contribute("alice", Decimal("0.5"), Decimal("0.4"))
        assert not result.success
        assert pool.service.status()["pool_total"] == 0


class TestQuotaReset:
    def test_transaction_quota_resets_next_day(self) -> None:
        pool = _Pool(PoolConfig(max_transactions_per_day=2))
        assert pool.service.contribute("alice", Decimal("0.1")).success
        assert pool.service.contribute("alice", Decimal("0.1")).success
        assert pool.service.contribute("alice", Decimal("0.1")).error_type == "QuotaError"
        pool.clock.advance(days=1)
        assert pool.service.contribute("alice", Decimal("0.1")).success


class TestDailyCapAcrossDistribution:
    def _give_full_cap(self, pool: _Pool) -> None:
        for _ in range(5):
            assert pool.service.contribute("alice", Decimal("1")).success
        assert pool.service.contribute("alice", Decimal("1")).error_type == "QuotaError"
        assert pool.service.enter_receiver_pool("bob").success
        pool.to_window()
        pool.run_distribution()

    def test_cap_still_binds_after_finalize(self, pool: _Pool) -> None:
        self._give_full_cap(pool)
        result = pool.service.contribute("alice", Decimal("1"))
        assert not result.success
        assert result.error_type == "QuotaError"
        assert pool.service.remaining_daily_contribution("alice") == 0
        assert pool.service.daily_stats("alice")["contribution_amount"] == Decimal("5")

    def test_distributed_funds_cannot_be_withdrawn(self, pool: _Pool) -> None:
        self._give_full_cap(pool)
        assert pool.service.withdrawable_amount("alice") == 0
        result = pool.service.withdraw("alice", Decimal("1"))
        assert result.error_type == "ValidationError"
        assert pool.service.status()["balanced"]

    def test_contributor_still_excluded_after_finalize(self, pool: _Pool) -> None:
        self._give_full_cap(pool)
        assert pool.service.enter_receiver_pool("alice").error_type == "StateError"

    def test_late_contribution_waits_for_next_pool(self, pool: _Pool) -> None:
        self._give_full_cap(pool)
        assert pool.service.contribute("carol", Decimal("0.3")).success
        assert pool.service.withdrawable_amount("carol") == Decimal("0.3")
        assert pool.service.status()["pool_total"] == Decimal("0.3")


class TestAuthorization:
    def test_start_requires_distributor(self, pool: _Pool) -> None:
        pool.service.contribute("g", Decimal("0.1"))
        pool.service.enter_receiver_pool("r")
        pool.to_window()
        result = pool.service.start_distribution("mallory")
        assert result.error_type == "AuthorizationError"
        assert pool.service.distribution_status()["phase"] == "idle"

    def test_open_start_when_role_not_required(self) -> None:
        pool = _Pool(PoolConfig(distribution_requires_role=False))
        pool.service.contribute("g", Decimal("0.1"))
        pool.service.enter_receiver_pool("r")
        pool.to_window()
        assert pool.service.start_distribution("anyone").success

    def test_distribute_all_always_needs_role(self) -> None:
        pool = _Pool(PoolConfig(distribution_requires_role=False))
        pool.to_window()
        assert pool.service.distribute_all("anyone").error_type == "AuthorizationError"

    def test_emergency_exit_admin_only(self, pool: _Pool) -> None:
        pool.service.enter_receiver_pool("bob")
        assert pool.service.emergency_exit(DISTRIBUTOR, "bob").error_type == "AuthorizationError"
        assert pool.service.emergency_exit(ADMIN, "bob").success
        assert not pool.service.is_receiver("bob")

    def test_force_flush_admin_only(self, pool: _Pool) -> None:
        assert pool.service.force_flush(DISTRIBUTOR, "bob").error_type == "AuthorizationError"
        assert pool.service.force_flush(ADMIN, "bob").error_type == "RetryError"

    def test_window_override_admin_only(self, pool: _Pool) -> None:
        assert not pool.service.set_distribution_window_override(DISTRIBUTOR, True).success
        assert not pool.service.in_distribution_window()
        assert pool.service.set_distribution_window_override(ADMIN, True).success
        assert pool.service.in_distribution_window()


class TestDistributionControl:
    def _fill(self, pool: _Pool, receivers: int) -> None:
        pool.service.contribute("giver", Decimal("1"))
        for i in range(receivers):
            pool.service.enter_receiver_pool(f"r{i}")

    def test_outside_window(self, pool: _Pool) -> None:
        self._fill(pool, 2)
        result = pool.service.start_distribution(DISTRIBUTOR)
        assert result.error_type == "StateError"
        assert pool.service.receiver_count() == 2

    def test_batches_and_emergency_stop(self) -> None:
        pool = _Pool(PoolConfig(batch_size=2))
        self._fill(pool, 5)
        pool.to_window()
        first = pool.service.start_distribution(DISTRIBUTOR)
        assert first.data["cursor"] == 2
        assert pool.service.contribute("late", Decimal("0.1")).error_type == "StateError"
        stop = pool.service.emergency_stop_distribution(ADMIN)
        assert stop.success
        assert stop.data["unpaid_count"] == 3
        assert pool.service.continue_distribution(DISTRIBUTOR).error_type == "StateError"
        assert not pool.service.is_distributed_this_epoch()
        assert pool.service.status()["balanced"]

    def test_attempt_distribution_starts_then_continues(self) -> None:
        pool = _Pool(PoolConfig(batch_size=1))
        self._fill(pool, 2)
        assert pool.service.attempt_distribution(DISTRIBUTOR).error_type == "StateError"
        pool.to_window()
        first = pool.service.attempt_distribution(DISTRIBUTOR)
        assert first.data["action"] == "started"
        second = pool.service.attempt_distribution(DISTRIBUTOR)
        assert second.data["action"] == "continued"
        assert second.data["finalized"]
        assert len(pool.service.events(EventKind.DISTRIBUTION_ATTEMPTED)) == 2

    def test_distribute_all(self, pool: _Pool) -> None:
        self._fill(pool, 4)
        pool.to_window()
        result = pool.service.distribute_all(DISTRIBUTOR)
        assert result.success
        assert Decimal(result.data["delivered_amount"]) == 1
        assert result.data["share"] == str(Decimal("0.25").quantize(Decimal("1e-18")))

    def test_next_distribution_time(self, pool: _Pool) -> None:
        expected = datetime(2026, 2, 16, 23, 0, 0, tzinfo=timezone.utc)
        assert pool.service.next_distribution_utc() == expected
        self._fill(pool, 1)
        pool.to_window()
        pool.run_distribution()
        assert pool.service.next_distribution_utc() == expected + timedelta(days=1)


class TestFailedTransfers:
    def _failed_day(self, pool: _Pool) -> None:
        pool.service.contribute("giver", Decimal("0.2"))
        pool.service.enter_receiver_pool("good")
        pool.service.enter_receiver_pool("bad")
        pool.transport.reject("bad")
        pool.to_window()
        pool.run_distribution()

    def test_auto_retry_after_cooldown(self, pool: _Pool) -> None:
        self._failed_day(pool)
        pool.transport.accept("bad")
        early = pool.service.auto_retry_sweep("helper")
        assert early.success
        assert early.data["attempted"] == 0
        pool.clock.advance(seconds=3600)
        result = pool.service.auto_retry_sweep("other-helper")
        assert result.data["succeeded"] == 1
        assert pool.service.unclaimed_funds() == 0
        assert pool.transport.balance_of("bad") == Decimal("0.1")
        assert pool.service.status()["held_balance"] == 0

    def test_sweep_rate_limited_per_caller(self, pool: _Pool) -> None:
        assert pool.service.auto_retry_sweep("helper").success
        assert pool.service.auto_retry_sweep("helper").error_type == "QuotaError"

    def test_retry_too_early_is_rejected(self, pool: _Pool) -> None:
        self._failed_day(pool)
        result = pool.service.retry_failed_transfer(DISTRIBUTOR, "bad")
        assert result.error_type == "RetryError"

    def test_failed_retry_is_still_a_successful_call(self, pool: _Pool) -> None:
        self._failed_day(pool)
        pool.clock.advance(hours=1)
        result = pool.service.retry_failed_transfer(DISTRIBUTOR, "bad")
        assert result.success
        assert result.data["delivered"] is False
        assert pool.service.failed_transfer("bad").retry_count == 1
        assert pool.service.next_retry_utc("bad") == pool.clock.now + timedelta(hours=2)

    def test_force_flush_after_remediation(self, pool: _Pool) -> None:
        self._failed_day(pool)
        pool.transport.accept("bad")
        result = pool.service.force_flush(ADMIN, "bad")
        assert result.data["delivered"]
        assert pool.service.failed_transfers() == []


class TestAuditTrail:
    def test_events_numbered_in_order(self, pool: _Pool) -> None:
        pool.service.contribute("alice", Decimal("0.5"))
        pool.service.enter_receiver_pool("bob")
        events = pool.service.events()
        assert [e.event_id for e in events] == ["EVT-00000001", "EVT-00000002"]
        assert events[0].event_kind == EventKind.CONTRIBUTION_RECEIVED
        assert events[0].payload["amount"] == "0.5"

    def test_rejected_call_logs_nothing(self, pool: _Pool) -> None:
        pool.service.withdraw("alice", Decimal("1"))
        assert pool.service.events() == []

    def test_persisted_log_reloads(self, config: PoolConfig, tmp_path: Path) -> None:
        path = tmp_path / "events.jsonl"
        first = _Pool(config, event_log=EventLog(storage_path=path))
        first.service.contribute("alice", Decimal("0.5"))
        first.service.enter_receiver_pool("bob")

        second = _Pool(config, event_log=EventLog(storage_path=path))
        assert second.service.status()["event_count"] == 2
        second.service.contribute("carol", Decimal("0.1"))
        assert second.service.events()[-1].event_id == "EVT-00000003"


class TestQueries:
    def test_withdrawal_limits(self, pool: _Pool) -> None:
        assert pool.service.withdrawal_limits() == (3, 7200, Decimal("0.001"))

    def test_withdrawable_resets_next_day(self, pool: _Pool) -> None:
        pool.service.contribute("alice", Decimal("0.5"))
        assert pool.service.withdrawable_amount("alice") == Decimal("0.5")
        pool.clock.advance(days=1)
        assert pool.service.withdrawable_amount("alice") == 0

    def test_daily_stats_shape(self, pool: _Pool) -> None:
        pool.service.contribute("alice", Decimal("0.5"))
        stats = pool.service.daily_stats("alice")
        assert stats["contribution_amount"] == Decimal("0.5")
        assert stats["remaining_daily_contribution"] == Decimal("4.5")
        assert stats["can_contribute"]
        assert not stats["is_receiver"]

    def test_stats_sink_sees_activity(self, pool: _Pool) -> None:
        pool.service.contribute("alice", Decimal("0.5"))
        pool.service.enter_receiver_pool("bob")
        assert pool.stats.get("alice").total_given == Decimal("0.5")
        assert pool.stats.get("bob").in_receiver_pool

    def test_accounting_identity_through_a_day(self, pool: _Pool) -> None:
        pool.service.contribute("g1", Decimal("1"))
        pool.service.contribute("g2", Decimal("0.7"))
        pool.service.withdraw("g2", Decimal("0.2"))
        for r in ("r1", "r2", "r3"):
            pool.service.enter_receiver_pool(r)
        assert pool.service.status()["balanced"]
        pool.transport.reject("r3")
        pool.to_window()
        pool.run_distribution()
        status = pool.service.status()
        assert status["balanced"]
        assert status["pool_total"] == 0
        assert status["held_balance"] == status["unclaimed_funds"] + status["carried_dust"]
