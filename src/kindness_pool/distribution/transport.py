"""Payout transport: the capability that moves value to a receiver.

The distribution engine and the retry registry never talk to a wallet,
a bank API or a chain directly. They call a PayoutTransport and branch
on the TransferResult it returns. A transport that raises instead of
returning is tolerated: safe_send converts the exception into a failed
result so it can never unwind a batch loop.

Every batch and retry payout passes the fixed PAYOUT_RESOURCE_CEILING as
`limit`. Withdrawals pass None (no ceiling).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Optional, Protocol, Set, runtime_checkable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransferResult:
    """Outcome of one payout attempt."""
    success: bool
    reason: str = ""

    @classmethod
    def ok(cls) -> TransferResult:
        return cls(success=True)

    @classmethod
    def failed(cls, reason: str) -> TransferResult:
        return cls(success=False, reason=reason)


@runtime_checkable
class PayoutTransport(Protocol):
    """Abstract contract for payout backends."""

    def send(
        self,
        recipient: str,
        amount: Decimal,
        limit: Optional[int] = None,
    ) -> TransferResult:
        """Attempt to deliver `amount` to `recipient`.

        `limit` caps the resource units the recipient side may consume.
        """
        ...


def safe_send(
    transport: PayoutTransport,
    recipient: str,
    amount: Decimal,
    limit: Optional[int] = None,
) -> TransferResult:
    """Call transport.send, turning any raised exception into a failure."""
    try:
        return transport.send(recipient, amount, limit)
    except Exception as exc:  # any transport fault is a failed delivery
        logger.warning("Transport raised for %s: %r", recipient, exc)
        return TransferResult.failed(f"transport error: {exc}")


class InMemoryTransport:
    """Reference transport that credits balances in a dict.

    Recipients can be made to reject payments (reject) or to demand more
    resource units than the ceiling allows (set_receive_cost), which is
    how a hostile receiver is modelled in tests and simulations.

    Usage:
        transport = InMemoryTransport()
        transport.reject("mallory")
        transport.send("alice", Decimal("0.1"), limit=2300).success  # True
        transport.balance_of("alice")  # Decimal("0.1")
    """

    def __init__(self) -> None:
        self._balances: Dict[str, Decimal] = {}
        self._rejecting: Set[str] = set()
        self._receive_costs: Dict[str, int] = {}
        self.sent_count = 0

    def reject(self, recipient: str) -> None:
        self._rejecting.add(recipient)

    def accept(self, recipient: str) -> None:
        self._rejecting.discard(recipient)
        self._receive_costs.pop(recipient, None)

    def set_receive_cost(self, recipient: str, units: int) -> None:
        if units < 0:
            raise ValueError("Receive cost must be non-negative")
        self._receive_costs[recipient] = units

    def balance_of(self, recipient: str) -> Decimal:
        return self._balances.get(recipient, Decimal("0"))

    def send(
        self,
        recipient: str,
        amount: Decimal,
        limit: Optional[int] = None,
    ) -> TransferResult:
        self.sent_count += 1
        if recipient in self._rejecting:
            return TransferResult.failed("recipient rejected payment")
        cost = self._receive_costs.get(recipient, 0)
        if limit is not None and cost > limit:
            return TransferResult.failed(
                f"receive cost {cost} exceeds limit {limit}"
            )
        self._balances[recipient] = self.balance_of(recipient) + amount
        return TransferResult.ok()
