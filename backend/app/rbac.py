"""
RBAC Policy Model - Access Control Editor

Defines the roles, identifier types and permission catalog shared by the
resolver, the draft editor and the persistence layer.

Policy is encoded in two structures:

* the role→permission matrix (``PermissionId → frozenset[Role]``), the
  default-grant layer, and
* the per-user overrides (``UserId → {PermissionId: bool}``), where ``True``
  force-allows and ``False`` force-denies one permission for one user.  An
  absent key means "inherit from role".

Permission identifier format: ``UPPER_SNAKE_CASE`` (e.g. ``VIEW_DASHBOARD``).
"""
from __future__ import annotations

import dataclasses
import enum
import functools
import logging
from pathlib import Path
from typing import NewType

from pydantic import BaseModel, TypeAdapter

from app.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Identifier types
# ---------------------------------------------------------------------------

PermissionId = NewType("PermissionId", str)
UserId = NewType("UserId", str)


class Role(str, enum.Enum):
    ADMIN = "ADMIN"
    SUPERVISOR = "SUPERVISOR"
    OPERADOR = "OPERADOR"
    RONDA = "RONDA"
    OUTROS = "OUTROS"


# The locked role: its matrix membership cannot be edited.
SUPER_ROLE: Role = Role.ADMIN

RolePermissionMatrix = dict[PermissionId, frozenset[Role]]
UserPermissionOverrides = dict[UserId, dict[PermissionId, bool]]


@dataclasses.dataclass(frozen=True)
class UserRecord:
    """A Directory user as seen by the resolver."""

    id: UserId
    name: str
    role: Role
    secondary_id: str | None = None
    avatar_ref: str | None = None


# ---------------------------------------------------------------------------
# Permission catalog (display metadata only)
# ---------------------------------------------------------------------------


class PermissionEntry(BaseModel):
    id: str
    label: str


class PermissionGroup(BaseModel):
    title: str
    permissions: list[PermissionEntry]


BUILTIN_CATALOG: list[PermissionGroup] = [
    PermissionGroup(title="Dashboard & General", permissions=[
        PermissionEntry(id="VIEW_DASHBOARD", label="Open the main dashboard"),
        PermissionEntry(id="VIEW_MAP", label="View the map"),
        PermissionEntry(id="VIEW_CHARTS", label="View statistics"),
        PermissionEntry(id="VIEW_ANNOUNCEMENTS", label="Read the announcement board"),
    ]),
    PermissionGroup(title="Incident Reports", permissions=[
        PermissionEntry(id="CREATE_INCIDENT", label="Create incident reports"),
        PermissionEntry(id="VIEW_MY_INCIDENTS", label="View own incident reports"),
        PermissionEntry(id="VIEW_ALL_INCIDENTS", label="View the full incident history"),
        PermissionEntry(id="EDIT_INCIDENT", label="Edit existing incident reports"),
        PermissionEntry(id="APPROVE_INCIDENT", label="Validate/approve incident reports"),
        PermissionEntry(id="DELETE_INCIDENT", label="Cancel/delete incident reports"),
    ]),
    PermissionGroup(title="Loans", permissions=[
        PermissionEntry(id="CREATE_LOAN", label="Create equipment loans"),
        PermissionEntry(id="APPROVE_LOAN", label="Approve equipment loans"),
        PermissionEntry(id="RETURN_LOAN", label="Register returns"),
        PermissionEntry(id="VIEW_MY_LOANS", label="View own loans"),
        PermissionEntry(id="VIEW_ALL_LOANS", label="View all loans"),
    ]),
    PermissionGroup(title="Assets", permissions=[
        PermissionEntry(id="VIEW_ASSETS", label="View the inventory"),
        PermissionEntry(id="MANAGE_ASSETS", label="Manage assets (vehicles, radios, vests, equipment)"),
        PermissionEntry(id="DELETE_ASSETS", label="Delete assets from the inventory"),
    ]),
    PermissionGroup(title="Administration", permissions=[
        PermissionEntry(id="MANAGE_USERS", label="Manage users"),
        PermissionEntry(id="DELETE_USERS", label="Delete users"),
        PermissionEntry(id="MANAGE_BUILDINGS", label="Manage buildings/locations"),
        PermissionEntry(id="MANAGE_SECTORS", label="Manage sectors"),
        PermissionEntry(id="MANAGE_JOB_TITLES", label="Manage job titles"),
        PermissionEntry(id="MANAGE_ALTERATION_TYPES", label="Manage alteration types"),
        PermissionEntry(id="MANAGE_ANNOUNCEMENTS", label="Publish announcements"),
        PermissionEntry(id="ACCESS_TOOLS", label="Access advanced tools"),
        PermissionEntry(id="MANAGE_PERMISSIONS", label="Edit role and user permissions"),
        PermissionEntry(id="EXPORT_REPORTS", label="Export PDF/Excel reports"),
    ]),
]

_catalog_adapter = TypeAdapter(list[PermissionGroup])


def load_catalog(path: str | Path) -> list[PermissionGroup]:
    """Parse a grouped catalog from a JSON file.

    Raises ``pydantic.ValidationError`` when the file does not match
    ``[{"title": ..., "permissions": [{"id": ..., "label": ...}]}]``.
    """
    return _catalog_adapter.validate_json(Path(path).read_text(encoding="utf-8"))


@functools.lru_cache(maxsize=1)
def get_catalog() -> list[PermissionGroup]:
    """Return the configured catalog, falling back to the built-in one."""
    if settings.PERMISSION_CATALOG_PATH:
        logger.info("Loading permission catalog from %s", settings.PERMISSION_CATALOG_PATH)
        return load_catalog(settings.PERMISSION_CATALOG_PATH)
    return BUILTIN_CATALOG


def all_permissions(catalog: list[PermissionGroup] | None = None) -> list[PermissionId]:
    """Flatten a catalog into its permission ids, in display order."""
    groups = catalog if catalog is not None else get_catalog()
    seen: dict[PermissionId, None] = {}
    for group in groups:
        for entry in group.permissions:
            seen.setdefault(PermissionId(entry.id), None)
    return list(seen)


def permission_label(permission: str, catalog: list[PermissionGroup] | None = None) -> str:
    """Return the human-readable label for a permission id."""
    groups = catalog if catalog is not None else get_catalog()
    for group in groups:
        for entry in group.permissions:
            if entry.id == permission:
                return entry.label
    return permission


# ---------------------------------------------------------------------------
# Seed matrix (used only when nothing has been committed yet)
# ---------------------------------------------------------------------------

_DEFAULT_GRANTS: dict[str, set[Role]] = {
    "VIEW_DASHBOARD": {Role.SUPERVISOR, Role.OPERADOR, Role.RONDA, Role.OUTROS},
    "VIEW_ANNOUNCEMENTS": {Role.SUPERVISOR, Role.OPERADOR, Role.RONDA, Role.OUTROS},
    "CREATE_INCIDENT": {Role.SUPERVISOR, Role.OPERADOR, Role.RONDA},
    "VIEW_MY_INCIDENTS": {Role.SUPERVISOR, Role.OPERADOR, Role.RONDA},
    "VIEW_ALL_INCIDENTS": {Role.SUPERVISOR},
    "EDIT_INCIDENT": {Role.SUPERVISOR},
    "APPROVE_INCIDENT": {Role.SUPERVISOR},
    "DELETE_INCIDENT": {Role.SUPERVISOR},
    "CREATE_LOAN": {Role.SUPERVISOR, Role.OPERADOR},
    "RETURN_LOAN": {Role.SUPERVISOR, Role.OPERADOR},
    "VIEW_MY_LOANS": {Role.SUPERVISOR, Role.OPERADOR, Role.RONDA},
    "VIEW_ALL_LOANS": {Role.SUPERVISOR},
    "VIEW_ASSETS": {Role.SUPERVISOR, Role.OPERADOR},
    "MANAGE_ASSETS": {Role.SUPERVISOR},
    "MANAGE_BUILDINGS": {Role.SUPERVISOR},
    "MANAGE_SECTORS": {Role.SUPERVISOR},
    "MANAGE_ALTERATION_TYPES": {Role.SUPERVISOR},
    "EXPORT_REPORTS": {Role.SUPERVISOR},
}


def default_matrix(catalog: list[PermissionGroup] | None = None) -> RolePermissionMatrix:
    """Initial matrix: the super role holds every catalog permission."""
    matrix: RolePermissionMatrix = {}
    for permission in all_permissions(catalog):
        matrix[permission] = frozenset(_DEFAULT_GRANTS.get(permission, set()) | {SUPER_ROLE})
    return matrix
