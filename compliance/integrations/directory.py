"""
Compliance Engine
Directory adapter — turns user ids and roles into notifiable identities.

Branch/user management lives outside the engine. A failed lookup raises
``DirectoryError``; the lifecycle records it against the delivery and the
schedule itself is unaffected.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from compliance.core.exceptions import DirectoryError


class Recipient:
    """A resolved notification target."""

    def __init__(self, kind: str, ref, address: str, display_name: str | None = None) -> None:
        self.kind = kind            # "user" | "role"
        self.ref = ref
        self.address = address
        self.display_name = display_name or address

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "ref": self.ref,
            "address": self.address,
            "display_name": self.display_name,
        }

    def __eq__(self, other):
        return isinstance(other, Recipient) and self.to_dict() == other.to_dict()

    def __repr__(self):
        return f"<Recipient {self.kind}:{self.ref} {self.address}>"


class DirectoryService(ABC):
    @abstractmethod
    def resolve(self, user_id: int | None = None, role: str | None = None) -> Recipient:
        """Resolve a user (preferred) or a role.

        Raises:
            DirectoryError: nothing to resolve, or the lookup failed.
        """


class StaticDirectory(DirectoryService):
    """Directory backed by in-memory maps, with derived fallbacks.

    Unknown ids resolve to ``user-<id>@<domain>`` and roles to
    ``role-<name>@<domain>`` unless ``strict`` is set.
    """

    def __init__(self, users: dict | None = None, roles: dict | None = None,
                 domain: str = "compliance.local", strict: bool = False) -> None:
        self.users = dict(users or {})
        self.roles = dict(roles or {})
        self.domain = domain
        self.strict = strict

    def resolve(self, user_id=None, role=None) -> Recipient:
        if user_id is not None:
            if user_id in self.users:
                return Recipient("user", user_id, self.users[user_id])
            if self.strict:
                raise DirectoryError(f"Unknown user id={user_id}")
            return Recipient("user", user_id, f"user-{user_id}@{self.domain}")
        if role:
            if role in self.roles:
                return Recipient("role", role, self.roles[role])
            if self.strict:
                raise DirectoryError(f"Unknown role '{role}'")
            return Recipient("role", role, f"role-{role}@{self.domain}")
        raise DirectoryError("No user or role to resolve")
