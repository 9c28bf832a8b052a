"""Pure update functions for the role matrix and the user override store.

Every function returns a new structure and leaves its input untouched, so
earlier drafts stay valid for undo.  None of them raise: a rejected edit is
a no-op that returns the input unchanged.
"""
from __future__ import annotations

import logging

from app.rbac import (
    SUPER_ROLE,
    PermissionId,
    Role,
    RolePermissionMatrix,
    UserId,
    UserPermissionOverrides,
)

logger = logging.getLogger(__name__)


def toggle_role_permission(
    matrix: RolePermissionMatrix,
    role: Role,
    permission: PermissionId,
) -> RolePermissionMatrix:
    """Flip *role*'s membership in ``matrix[permission]``.

    The super role is locked: toggling it returns *matrix* itself.
    A permission left with no roles is dropped from the matrix (a missing
    key already means "no role has it"), so toggling twice returns an equal
    matrix only when the input is canonical (see :func:`normalize_matrix`).
    """
    if role == SUPER_ROLE:
        logger.debug("Ignoring toggle of locked role %s on %s", role.value, permission)
        return matrix

    current = matrix.get(permission, frozenset())
    updated = dict(matrix)
    if role in current:
        remaining = current - {role}
        if remaining:
            updated[permission] = remaining
        else:
            del updated[permission]
    else:
        updated[permission] = current | {role}
    return updated


def set_user_override(
    overrides: UserPermissionOverrides,
    user_id: UserId,
    permission: PermissionId,
    value: bool | None,
) -> UserPermissionOverrides:
    """Set (``True``/``False``) or clear (``None``) one override entry.

    A user whose last override is cleared is dropped from the outer mapping.
    """
    entries = dict(overrides.get(user_id, {}))
    if value is None:
        entries.pop(permission, None)
    else:
        entries[permission] = bool(value)

    updated = dict(overrides)
    if entries:
        updated[user_id] = entries
    else:
        updated.pop(user_id, None)
    return updated


# Inherit → Allow → Deny → Inherit
_NEXT_OVERRIDE: dict[bool | None, bool | None] = {None: True, True: False, False: None}


def cycle_user_override(
    overrides: UserPermissionOverrides,
    user_id: UserId,
    permission: PermissionId,
) -> UserPermissionOverrides:
    """Advance the tri-state override for (user, permission) one step."""
    current = overrides.get(user_id, {}).get(permission)
    return set_user_override(overrides, user_id, permission, _NEXT_OVERRIDE[current])


def normalize_matrix(matrix: RolePermissionMatrix) -> RolePermissionMatrix:
    """Drop permissions whose role set is empty.

    Returns *matrix* itself when it is already canonical.
    """
    if all(matrix.values()):
        return matrix
    return {p: roles for p, roles in matrix.items() if roles}


def normalize_overrides(overrides: UserPermissionOverrides) -> UserPermissionOverrides:
    """Drop users whose override mapping is empty."""
    if all(overrides.values()):
        return overrides
    return {u: entries for u, entries in overrides.items() if entries}
