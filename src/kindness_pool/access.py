"""Authorization capability: who may call the privileged operations.

The pool only ever asks one question: does this caller hold this role?
Anything that answers it (an on-chain role table, an IAM lookup, the
in-memory RoleRegistry below) can be injected into the service.
"""

from __future__ import annotations

import enum
from typing import Dict, Protocol, Set, runtime_checkable


class Role(str, enum.Enum):
    """Privileged roles recognised by the pool."""
    ADMIN = "admin"
    DISTRIBUTOR = "distributor"


@runtime_checkable
class AuthorizationCheck(Protocol):
    """Yes/no capability check consumed by the service."""

    def has_role(self, user_id: str, role: Role) -> bool:
        ...


class RoleRegistry:
    """In-memory role table.

    Usage:
        roles = RoleRegistry(admin="ops")
        roles.grant(Role.DISTRIBUTOR, "scheduler")
        roles.has_role("scheduler", Role.DISTRIBUTOR)  # True
    """

    def __init__(self, admin: str) -> None:
        if not admin.strip():
            raise ValueError("Admin ID must not be empty")
        self._members: Dict[Role, Set[str]] = {role: set() for role in Role}
        self._members[Role.ADMIN].add(admin)

    def grant(self, role: Role, user_id: str) -> None:
        if not user_id.strip():
            raise ValueError("User ID must not be empty")
        self._members[role].add(user_id)

    def revoke(self, role: Role, user_id: str) -> None:
        if role == Role.ADMIN and self._members[role] == {user_id}:
            raise ValueError("Cannot revoke the last admin")
        self._members[role].discard(user_id)

    def has_role(self, user_id: str, role: Role) -> bool:
        return user_id in self._members[role]

    def members(self, role: Role) -> list[str]:
        return sorted(self._members[role])
