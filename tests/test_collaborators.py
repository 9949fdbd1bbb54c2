"""Tests for injected collaborators: roles, stats sink and payout transport."""

import pytest
from decimal import Decimal

from kindness_pool.access import AuthorizationCheck, Role, RoleRegistry
from kindness_pool.distribution.transport import (
    InMemoryTransport,
    PayoutTransport,
    TransferResult,
    safe_send,
)
from kindness_pool.stats import InMemoryStatsSink, StatsSink


class TestRoleRegistry:
    def test_admin_seeded(self) -> None:
        roles = RoleRegistry(admin="ops")
        assert roles.has_role("ops", Role.ADMIN)
        assert not roles.has_role("ops", Role.DISTRIBUTOR)

    def test_grant_and_revoke(self) -> None:
        roles = RoleRegistry(admin="ops")
        roles.grant(Role.DISTRIBUTOR, "cron")
        assert roles.members(Role.DISTRIBUTOR) == ["cron"]
        roles.revoke(Role.DISTRIBUTOR, "cron")
        assert not roles.has_role("cron", Role.DISTRIBUTOR)

    def test_last_admin_cannot_be_revoked(self) -> None:
        roles = RoleRegistry(admin="ops")
        with pytest.raises(ValueError, match="last admin"):
            roles.revoke(Role.ADMIN, "ops")

    def test_blank_admin_rejected(self) -> None:
        with pytest.raises(ValueError):
            RoleRegistry(admin=" ")

    def test_satisfies_protocol(self) -> None:
        assert isinstance(RoleRegistry(admin="ops"), AuthorizationCheck)


class TestStatsSink:
    def test_given_and_received_tracked_separately(self) -> None:
        sink = InMemoryStatsSink()
        sink.update("alice", True, Decimal("0.5"))
        sink.update("alice", False, Decimal("0.1"))
        stats = sink.get("alice")
        assert (stats.total_given, stats.times_given) == (Decimal("0.5"), 1)
        assert (stats.total_received, stats.times_received) == (Decimal("0.1"), 1)

    def test_reduce_given_floors_at_zero(self) -> None:
        sink = InMemoryStatsSink()
        sink.update("alice", True, Decimal("0.5"))
        sink.reduce_given("alice", Decimal("0.7"))
        assert sink.get("alice").total_given == 0

    def test_unknown_user(self) -> None:
        assert InMemoryStatsSink().get("nobody") is None

    def test_satisfies_protocol(self) -> None:
        assert isinstance(InMemoryStatsSink(), StatsSink)


class TestTransport:
    def test_delivery_credits_balance(self) -> None:
        transport = InMemoryTransport()
        assert transport.send("bob", Decimal("0.1"), 2300).success
        assert transport.balance_of("bob") == Decimal("0.1")

    def test_rejecting_recipient(self) -> None:
        transport = InMemoryTransport()
        transport.reject("bob")
        result = transport.send("bob", Decimal("0.1"))
        assert not result.success
        assert "rejected" in result.reason

    def test_cost_over_limit_fails(self) -> None:
        transport = InMemoryTransport()
        transport.set_receive_cost("bob", 5000)
        assert not transport.send("bob", Decimal("0.1"), 2300).success
        assert transport.send("bob", Decimal("0.1"), None).success

    def test_safe_send_contains_exceptions(self) -> None:
        class Broken:
            def send(self, recipient, amount, limit=None) -> TransferResult:
                raise ConnectionError("node unreachable")

        result = safe_send(Broken(), "bob", Decimal("0.1"), 2300)
        assert not result.success
        assert "node unreachable" in result.reason

    def test_satisfies_protocol(self) -> None:
        assert isinstance(InMemoryTransport(), PayoutTransport)
