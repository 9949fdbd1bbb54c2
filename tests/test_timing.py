"""Tests for TimePolicy: proves epoch arithmetic and the distribution window."""

import pytest
from datetime import datetime, timedelta, timezone

from kindness_pool.config import PoolConfig
from kindness_pool.timing import TimePolicy


def _day(hour: int = 12, minute: int = 0) -> datetime:
    return datetime(2026, 2, 16, hour, minute, 0, tzinfo=timezone.utc)


@pytest.fixture
def policy() -> TimePolicy:
    return TimePolicy(PoolConfig())


class TestEpochs:
    def test_same_day_same_epoch(self, policy: TimePolicy) -> None:
        assert policy.epoch(_day(0, 0)) == policy.epoch(_day(23, 59))

    def test_midnight_starts_next_epoch(self, policy: TimePolicy) -> None:
        assert policy.epoch(_day(0, 0) + timedelta(days=1)) == policy.epoch(_day()) + 1

    def test_epoch_start_is_midnight(self, policy: TimePolicy) -> None:
        assert policy.epoch_start(policy.epoch(_day(15))) == _day(0, 0)

    def test_naive_datetime_rejected(self, policy: TimePolicy) -> None:
        with pytest.raises(ValueError):
            policy.epoch(datetime(2026, 2, 16, 12, 0))


class TestWindow:
    def test_closed_during_day(self, policy: TimePolicy) -> None:
        assert not policy.in_distribution_window(_day(12))

    def test_open_in_last_hour(self, policy: TimePolicy) -> None:
        assert policy.in_distribution_window(_day(23, 0))
        assert policy.in_distribution_window(_day(23, 59))

    def test_closed_at_midnight(self, policy: TimePolicy) -> None:
        assert not policy.in_distribution_window(_day(0, 0) + timedelta(days=1))

    def test_override_opens_window(self, policy: TimePolicy) -> None:
        policy.set_window_override(True)
        assert policy.window_override
        assert policy.in_distribution_window(_day(9))

    def test_override_from_config(self) -> None:
        policy = TimePolicy(PoolConfig(window_override=True))
        assert policy.in_distribution_window(_day(9))

    def test_clock_is_injected(self) -> None:
        policy = TimePolicy(PoolConfig(), clock=lambda: _day(7))
        assert policy.now() == _day(7)


class TestNextDistribution:
    def test_before_window_returns_opening(self, policy: TimePolicy) -> None:
        assert policy.next_distribution_utc(_day(12), False) == _day(23, 0)

    def test_inside_window_returns_now(self, policy: TimePolicy) -> None:
        assert policy.next_distribution_utc(_day(23, 30), False) == _day(23, 30)

    def test_after_distribution_returns_tomorrow(self, policy: TimePolicy) -> None:
        expected = _day(23, 0) + timedelta(days=1)
        assert policy.next_distribution_utc(_day(23, 30), True) == expected

    def test_override_returns_now_until_distributed(self, policy: TimePolicy) -> None:
        policy.set_window_override(True)
        assert policy.next_distribution_utc(_day(9), False) == _day(9)
        assert policy.next_distribution_utc(_day(9), True) == _day(0, 0) + timedelta(days=1)
