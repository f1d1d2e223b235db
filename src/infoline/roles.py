"""Role tags and parsing of raw role identifiers.

Raw role spellings arrive from several places (the ``roles`` relation of a
profile row, auth user metadata, route declarations) and are parsed here,
once, into the closed :class:`Role` enumeration.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class Role(str, Enum):
    """Normalized role tag, ordered by privilege through ``level``."""

    SUPER_ADMIN = "super-admin"
    REGION_ADMIN = "region-admin"
    SECTOR_ADMIN = "sector-admin"
    SCHOOL_ADMIN = "school-admin"

    @property
    def level(self) -> int:
        return _LEVELS[self]

    def at_least(self, other: Role) -> bool:
        """True when this role is as privileged as ``other`` or more."""
        return self.level >= other.level

    @property
    def label(self) -> str:
        return _LABELS[self]


LOWEST_ROLE = Role.SCHOOL_ADMIN
ALL_ROLES: frozenset[Role] = frozenset(Role)

_LEVELS = {
    Role.SUPER_ADMIN: 4,
    Role.REGION_ADMIN: 3,
    Role.SECTOR_ADMIN: 2,
    Role.SCHOOL_ADMIN: 1,
}

_LABELS = {
    Role.SUPER_ADMIN: "Super Admin",
    Role.REGION_ADMIN: "Region Admin",
    Role.SECTOR_ADMIN: "Sector Admin",
    Role.SCHOOL_ADMIN: "School Admin",
}

# Keys are canonicalized spellings: lower case, separators removed.
_ALIASES = {
    "superadmin": Role.SUPER_ADMIN,
    "admin": Role.SUPER_ADMIN,
    "regionadmin": Role.REGION_ADMIN,
    "regionadministrator": Role.REGION_ADMIN,
    "sectoradmin": Role.SECTOR_ADMIN,
    "sektoradmin": Role.SECTOR_ADMIN,
    "sectoradministrator": Role.SECTOR_ADMIN,
    "schooladmin": Role.SCHOOL_ADMIN,
    "schooladministrator": Role.SCHOOL_ADMIN,
}

_SEPARATORS = re.compile(r"[\s_\-.]+")


def _canonical(raw: str) -> str:
    return _SEPARATORS.sub("", raw.strip().lower())


def _role_name(raw: Any) -> str | None:
    """Pull the role name out of a string or a ``{"name": ...}`` role object."""
    if isinstance(raw, Mapping):
        raw = raw.get("name")
    if isinstance(raw, str) and raw.strip():
        return raw
    return None


def parse_role(raw: Any) -> Role | None:
    """Parse a raw identifier into a :class:`Role`, or ``None`` if unknown."""
    if isinstance(raw, Role):
        return raw
    name = _role_name(raw)
    if name is None:
        return None
    return _ALIASES.get(_canonical(name))


def normalize_role(raw: Any) -> Role:
    """Parse a raw identifier, falling back to the lowest-privilege tag.

    The fallback never grants more than :data:`LOWEST_ROLE`.
    """
    role = parse_role(raw)
    if role is None:
        logger.warning(
            "Unrecognized role identifier %r, defaulting to %s", raw, LOWEST_ROLE.value
        )
        return LOWEST_ROLE
    return role


def parse_required_roles(roles: Iterable[Any] | None) -> frozenset[Role]:
    """Parse a view's required-role declaration.

    Unknown spellings raise: an empty set means "no restriction", so a typo
    in a declaration must never open a view.
    """
    if not roles:
        return frozenset()
    parsed = set()
    for raw in roles:
        role = parse_role(raw)
        if role is None:
            raise ValueError(f"Unknown required role: {raw!r}")
        parsed.add(role)
    return frozenset(parsed)


def roles_at_least(minimum: Role) -> frozenset[Role]:
    """All roles at or above ``minimum`` in the hierarchy."""
    return frozenset(role for role in Role if role.at_least(minimum))
