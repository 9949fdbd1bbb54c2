"""Time policy: epoch arithmetic and the distribution window.

An epoch (day) is floor(unix_seconds / DAY_LENGTH_SECONDS). Every daily
reset in the pool is lazy and keyed off this number; there are no
background timers.

The production distribution window is a fixed slice of each day,
[WINDOW_START, WINDOW_START + WINDOW_LENGTH). The window override is an
explicit toggle for test and operational tooling: while it is on the
window is always open. It starts from config and can only be flipped
through the service's privileged setter.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Optional

from kindness_pool.config import PoolConfig


Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TimePolicy:
    """Current time plus the window predicate.

    Usage:
        policy = TimePolicy(config)
        now = policy.now()
        if policy.in_distribution_window(now):
            ...
    """

    def __init__(self, config: PoolConfig, clock: Optional[Clock] = None) -> None:
        self._config = config
        self._clock = clock or _utc_now
        self._window_override = config.window_override

    def now(self) -> datetime:
        return self._clock()

    @property
    def window_override(self) -> bool:
        return self._window_override

    def set_window_override(self, enabled: bool) -> None:
        self._window_override = enabled

    def epoch(self, now: datetime) -> int:
        """Epoch number (day index) containing `now`."""
        return _unix_seconds(now) // self._config.day_length_seconds

    def epoch_start(self, epoch: int) -> datetime:
        return datetime.fromtimestamp(
            epoch * self._config.day_length_seconds, tz=timezone.utc,
        )

    def in_distribution_window(self, now: datetime) -> bool:
        if self._window_override:
            return True
        offset = _unix_seconds(now) % self._config.day_length_seconds
        start = self._config.window_start_seconds
        return start <= offset < start + self._config.window_length_seconds

    def next_distribution_utc(
        self,
        now: datetime,
        distributed_this_epoch: bool,
    ) -> datetime:
        """Earliest moment a distribution could start.

        Returns `now` when the window is open and this epoch has not
        distributed yet; otherwise the opening of the next usable window.
        """
        epoch = self.epoch(now)
        if self._window_override:
            if not distributed_this_epoch:
                return now
            return self.epoch_start(epoch + 1)

        day_start = epoch * self._config.day_length_seconds
        opens = day_start + self._config.window_start_seconds
        closes = opens + self._config.window_length_seconds
        if not distributed_this_epoch and _unix_seconds(now) < closes:
            if _unix_seconds(now) >= opens:
                return now
            return datetime.fromtimestamp(opens, tz=timezone.utc)
        return datetime.fromtimestamp(
            opens + self._config.day_length_seconds, tz=timezone.utc,
        )


def _unix_seconds(moment: datetime) -> int:
    if moment.tzinfo is None:
        raise ValueError("Timestamps must be timezone-aware")
    return int(moment.timestamp())
