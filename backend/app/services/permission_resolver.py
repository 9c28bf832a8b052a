"""Effective-permission resolution (role defaults + per-user overrides).

Precedence, strictly in this order:

1. an Allow override for (user, permission) → allowed, ``OVERRIDE_ALLOW``
2. a Deny override for (user, permission)  → denied,  ``OVERRIDE_DENY``
3. otherwise the role default from the matrix → ``ROLE``

Unknown users and unknown permissions resolve to denied (fail-closed).
There is no bypass for the super role: it is allowed only where the matrix
actually lists it.
"""
from __future__ import annotations

import dataclasses
import enum
from collections.abc import Iterable

from app.rbac import (
    PermissionId,
    RolePermissionMatrix,
    UserPermissionOverrides,
    UserRecord,
)


class PermissionSource(str, enum.Enum):
    ROLE = "ROLE"
    OVERRIDE_ALLOW = "OVERRIDE_ALLOW"
    OVERRIDE_DENY = "OVERRIDE_DENY"


@dataclasses.dataclass(frozen=True)
class EffectivePermission:
    allowed: bool
    source: PermissionSource

    def to_dict(self) -> dict[str, object]:
        return {"allowed": self.allowed, "source": self.source.value}


_DENIED_BY_DEFAULT = EffectivePermission(allowed=False, source=PermissionSource.ROLE)


def resolve(
    user: UserRecord | None,
    permission: PermissionId,
    matrix: RolePermissionMatrix,
    overrides: UserPermissionOverrides,
) -> EffectivePermission:
    """Return the effective decision for one user and one permission."""
    if user is None:
        return _DENIED_BY_DEFAULT

    override = overrides.get(user.id, {}).get(permission)
    if override is True:
        return EffectivePermission(allowed=True, source=PermissionSource.OVERRIDE_ALLOW)
    if override is False:
        return EffectivePermission(allowed=False, source=PermissionSource.OVERRIDE_DENY)

    return EffectivePermission(
        allowed=user.role in matrix.get(permission, frozenset()),
        source=PermissionSource.ROLE,
    )


def resolve_many(
    user: UserRecord | None,
    permissions: Iterable[PermissionId],
    matrix: RolePermissionMatrix,
    overrides: UserPermissionOverrides,
) -> dict[PermissionId, EffectivePermission]:
    return {p: resolve(user, p, matrix, overrides) for p in permissions}
