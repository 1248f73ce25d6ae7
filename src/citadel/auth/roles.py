"""Closed role and provider enums.

Roles form a total order: ``user < admin < superadmin``. Comparisons go through
``Role.level`` so the ordering never depends on string values.
"""

from __future__ import annotations

import enum


class Role(str, enum.Enum):
    USER = "user"
    ADMIN = "admin"
    SUPERADMIN = "superadmin"

    @property
    def level(self) -> int:
        return _ROLE_LEVELS[self]

    def at_least(self, required: Role) -> bool:
        """True if this role grants everything ``required`` grants."""
        return self.level >= required.level


_ROLE_LEVELS = {Role.USER: 0, Role.ADMIN: 1, Role.SUPERADMIN: 2}


def has_role(role: Role | str, required: Role | str) -> bool:
    """Compare two roles; unknown role strings never satisfy a requirement."""
    try:
        return Role(role).at_least(Role(required))
    except ValueError:
        return False


class Provider(str, enum.Enum):
    GOOGLE = "google"
    APPLE = "apple"
    SYSTEM = "system"
