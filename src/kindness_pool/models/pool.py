"""Pool models: daily records, pool aggregate, snapshots, failed transfers.

All monetary values use Decimal for exact arithmetic. No floats in finance.

Invariants maintained by the components that mutate these models:
- pool_total == sum of refundable amounts of the current fold generation,
  except while a distribution is pending (snapshot taken but not
  finalized) or an earlier pool has not been distributed yet
- held_balance == pool_total + unclaimed_funds + carried_dust
- a user with contribution_amount > 0 is never in the receiver set
- len(receivers) <= MAX_RECEIVERS
- 0 <= snapshot.cursor <= len(snapshot.receivers)
- a FailedTransfer exists for a receiver iff the receiver is in the
  failure index, and its amount is always positive
"""

from __future__ import annotations

import copy
import enum
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, Iterator, List, Optional, Set, Tuple


class IndexedSet:
    """Unordered set of ids with O(1) add, lookup and swap-with-last removal.

    Iteration order is insertion order until the first removal; after
    that it is not stable. Callers must not depend on it.

    Between begin() and commit() every change records its inverse, and
    rollback() replays them so the exact prior order comes back.
    """

    def __init__(self) -> None:
        self._items: List[str] = []
        self._positions: Dict[str, int] = {}
        self._undo: Optional[List[Callable[[], None]]] = None

    def add(self, item: str) -> None:
        if item in self._positions:
            raise ValueError(f"Already present: {item}")
        self._positions[item] = len(self._items)
        self._items.append(item)
        if self._undo is not None:
            self._undo.append(lambda: self._unadd(item))

    def remove(self, item: str) -> None:
        index = self._positions.pop(item, None)
        if index is None:
            raise KeyError(item)
        last = self._items.pop()
        if index < len(self._items):
            self._items[index] = last
            self._positions[last] = index
        if self._undo is not None:
            self._undo.append(lambda: self._unremove(item, index))

    def clear(self) -> None:
        items, positions = self._items, self._positions
        self._items = []
        self._positions = {}
        if self._undo is not None:
            def _rollback() -> None:
                self._items = items
                self._positions = positions
            self._undo.append(_rollback)

    def snapshot(self) -> Tuple[str, ...]:
        return tuple(self._items)

    def begin(self) -> None:
        self._undo = []

    def commit(self) -> None:
        self._undo = None

    def rollback(self) -> None:
        undo, self._undo = self._undo or [], None
        for step in reversed(undo):
            step()

    def _unadd(self, item: str) -> None:
        self._items.pop()
        del self._positions[item]

    def _unremove(self, item: str, index: int) -> None:
        if index < len(self._items):
            # The former last element was moved into the hole.
            moved = self._items[index]
            self._positions[moved] = len(self._items)
            self._items.append(moved)
            self._items[index] = item
        else:
            self._items.append(item)
        self._positions[item] = index

    def __contains__(self, item: object) -> bool:
        return item in self._positions

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._items))


@dataclass
class UserDailyRecord:
    """Per-user daily counters and rate-limit timestamps.

    Created lazily on first touch. Counters are only meaningful when
    last_reset_day equals the current epoch; see PoolState.record_for.

    contribution_amount is everything given today and drives the daily
    cap. refundable_amount is the part not yet folded into a
    distribution; it only counts while refund_generation matches the
    pool's fold_generation.
    """
    user_id: str
    contribution_amount: Decimal = Decimal("0")
    refundable_amount: Decimal = Decimal("0")
    refund_generation: int = 0
    receiver_entries: int = 0
    receiver_exits: int = 0
    withdrawal_count: int = 0
    transaction_count: int = 0
    last_reset_day: Optional[int] = None
    last_action_utc: Optional[datetime] = None
    last_withdrawal_utc: Optional[datetime] = None
    last_receiver_pool_action_utc: Optional[datetime] = None

    def reset_daily(self, day: int) -> None:
        """Zero every daily counter, transaction_count included."""
        self.contribution_amount = Decimal("0")
        self.refundable_amount = Decimal("0")
        self.receiver_entries = 0
        self.receiver_exits = 0
        self.withdrawal_count = 0
        self.transaction_count = 0
        self.last_reset_day = day


@dataclass
class PoolAggregate:
    """Observable pool totals."""
    pool_total: Decimal = Decimal("0")
    last_distribution_epoch: Optional[int] = None
    unclaimed_funds: Decimal = Decimal("0")
    held_balance: Decimal = Decimal("0")
    carried_dust: Decimal = Decimal("0")
    # Bumped at every distribution start.
    fold_generation: int = 0

    def is_balanced(self) -> bool:
        return self.held_balance == (
            self.pool_total + self.unclaimed_funds + self.carried_dust
        )


@dataclass(frozen=True)
class FailedTransfer:
    """An undelivered payout awaiting retry.

    Frozen: a failed retry replaces the entry with retry_count + 1.
    """
    receiver: str
    amount: Decimal
    failed_at_utc: datetime
    retry_count: int = 0


class DistributionPhase(str, enum.Enum):
    """Distribution engine state.

    State machine:
        IDLE → IN_PROGRESS          (start)
        IN_PROGRESS → IN_PROGRESS   (continue, cursor advances)
        IN_PROGRESS → IDLE          (finalize or emergency stop)
    """
    IDLE = "idle"
    IN_PROGRESS = "in_progress"


DISTRIBUTION_TRANSITIONS: Dict[DistributionPhase, frozenset] = {
    DistributionPhase.IDLE: frozenset({DistributionPhase.IN_PROGRESS}),
    DistributionPhase.IN_PROGRESS: frozenset({
        DistributionPhase.IN_PROGRESS,
        DistributionPhase.IDLE,
    }),
}


@dataclass
class DistributionSnapshot:
    """Receivers frozen at distribution start, plus the resume cursor.

    The receiver tuple and share never change after creation; only the
    cursor and the in-progress flag move.
    """
    receivers: Tuple[str, ...]
    share: Decimal
    epoch: int
    started_utc: datetime
    cursor: int = 0
    in_progress: bool = False

    @property
    def size(self) -> int:
        return len(self.receivers)

    @property
    def exhausted(self) -> bool:
        return self.cursor >= len(self.receivers)


@dataclass(frozen=True)
class BatchOutcome:
    """What one batch (or a whole synchronous run) did."""
    processed: int
    delivered_count: int
    delivered_amount: Decimal
    failed_count: int
    failed_amount: Decimal
    cursor: int
    snapshot_size: int
    share: Decimal
    finalized: bool

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "delivered_count": self.delivered_count,
            "delivered_amount": str(self.delivered_amount),
            "failed_count": self.failed_count,
            "failed_amount": str(self.failed_amount),
            "cursor": self.cursor,
            "snapshot_size": self.snapshot_size,
            "share": str(self.share),
            "finalized": self.finalized,
        }


@dataclass(frozen=True)
class RetryOutcome:
    """Result of one redelivery attempt."""
    receiver: str
    amount: Decimal
    delivered: bool
    retry_count: int
    reason: str = ""


@dataclass(frozen=True)
class SweepOutcome:
    """Result of a bounded sweep over the failure index."""
    examined: int
    attempted: int
    succeeded: int
    outcomes: Tuple[RetryOutcome, ...] = ()


@dataclass
class PoolState:
    """All mutable pool state, owned by one service instance.

    Components share a single PoolState. The service brackets every
    mutating call with begin() and commit(); a rejected call ends in
    rollback() instead. While a call is open, each user record, failed
    transfer and set membership records how to undo its first change,
    so rolling back costs what the call touched and nothing more.
    """
    users: Dict[str, UserDailyRecord] = field(default_factory=dict)
    aggregate: PoolAggregate = field(default_factory=PoolAggregate)
    receivers: IndexedSet = field(default_factory=IndexedSet)
    snapshot: Optional[DistributionSnapshot] = None
    failed_transfers: Dict[str, FailedTransfer] = field(default_factory=dict)
    failed_index: IndexedSet = field(default_factory=IndexedSet)
    _undo: Optional[List[Callable[[], None]]] = field(
        default=None, init=False, repr=False,
    )
    _touched_users: Set[str] = field(default_factory=set, init=False, repr=False)
    _touched_failures: Set[str] = field(
        default_factory=set, init=False, repr=False,
    )

    @property
    def phase(self) -> DistributionPhase:
        if self.snapshot is not None and self.snapshot.in_progress:
            return DistributionPhase.IN_PROGRESS
        return DistributionPhase.IDLE

    def record_for(self, user_id: str, day: int) -> UserDailyRecord:
        """Return the user's record, creating or lazily resetting it."""
        record = self.users.get(user_id)
        if self._undo is not None and user_id not in self._touched_users:
            self._touched_users.add(user_id)
            self._undo.append(self._user_rollback(user_id, record))
        if record is None:
            record = UserDailyRecord(user_id=user_id)
            self.users[user_id] = record
        if record.last_reset_day != day:
            record.reset_daily(day)
        return record

    def view_for(self, user_id: str, day: int) -> UserDailyRecord:
        """Read-only view with the lazy reset applied, never stored."""
        record = self.users.get(user_id)
        if record is None:
            return UserDailyRecord(user_id=user_id, last_reset_day=day)
        if record.last_reset_day != day:
            view = copy.copy(record)
            view.reset_daily(day)
            return view
        return record

    # ------------------------------------------------------------------
    # Refundable contributions
    # ------------------------------------------------------------------

    def refundable(self, record: UserDailyRecord) -> Decimal:
        if record.refund_generation != self.aggregate.fold_generation:
            return Decimal("0")
        return record.refundable_amount

    def add_refundable(self, record: UserDailyRecord, amount: Decimal) -> None:
        generation = self.aggregate.fold_generation
        if record.refund_generation != generation:
            record.refundable_amount = Decimal("0")
            record.refund_generation = generation
        record.refundable_amount += amount

    def refundable_sum(self) -> Decimal:
        return sum(
            (self.refundable(r) for r in self.users.values()),
            Decimal("0"),
        )

    # ------------------------------------------------------------------
    # Failed transfers
    # ------------------------------------------------------------------

    def put_failed_transfer(self, entry: FailedTransfer) -> None:
        """Store `entry`, indexing its receiver if it is new."""
        self._journal_failure(entry.receiver)
        if entry.receiver not in self.failed_index:
            self.failed_index.add(entry.receiver)
        self.failed_transfers[entry.receiver] = entry

    def pop_failed_transfer(self, receiver: str) -> FailedTransfer:
        self._journal_failure(receiver)
        entry = self.failed_transfers.pop(receiver)
        self.failed_index.remove(receiver)
        return entry

    # ------------------------------------------------------------------
    # All-or-nothing calls
    # ------------------------------------------------------------------

    def begin(self) -> None:
        """Open a call: from here on every change can be undone."""
        totals = copy.copy(self.aggregate)
        snapshot = self.snapshot
        cursor = snapshot.cursor if snapshot is not None else 0
        in_progress = snapshot.in_progress if snapshot is not None else False

        def _rollback() -> None:
            vars(self.aggregate).update(vars(totals))
            self.snapshot = snapshot
            if snapshot is not None:
                snapshot.cursor = cursor
                snapshot.in_progress = in_progress

        self._undo = [_rollback]
        self._touched_users.clear()
        self._touched_failures.clear()
        self.receivers.begin()
        self.failed_index.begin()

    def commit(self) -> None:
        self._undo = None
        self._touched_users.clear()
        self._touched_failures.clear()
        self.receivers.commit()
        self.failed_index.commit()

    def rollback(self) -> None:
        """Undo everything since begin(), in reverse order."""
        undo, self._undo = self._undo or [], None
        for step in reversed(undo):
            step()
        self.failed_index.rollback()
        self.receivers.rollback()
        self._touched_users.clear()
        self._touched_failures.clear()

    def _user_rollback(
        self,
        user_id: str,
        record: Optional[UserDailyRecord],
    ) -> Callable[[], None]:
        saved = copy.copy(record) if record is not None else None

        def _rollback() -> None:
            if saved is None:
                self.users.pop(user_id, None)
            else:
                self.users[user_id] = saved
        return _rollback

    def _journal_failure(self, receiver: str) -> None:
        if self._undo is None or receiver in self._touched_failures:
            return
        self._touched_failures.add(receiver)
        saved = self.failed_transfers.get(receiver)

        def _rollback() -> None:
            if saved is None:
                self.failed_transfers.pop(receiver, None)
            else:
                self.failed_transfers[receiver] = saved
        self._undo.append(_rollback)
