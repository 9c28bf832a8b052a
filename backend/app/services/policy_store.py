"""Persistence for the access policy and the user Directory.

The matrix and the overrides live in two ``app_config`` rows and are
written independently: each ``persist_*`` call runs in its own session and
transaction, so one can succeed while the other fails.  Last writer wins per
document.
"""
from __future__ import annotations

import logging
import uuid
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.models.permission import MATRIX_KEY, OVERRIDES_KEY, AppConfig, AuditLog
from app.rbac import (
    PermissionId,
    Role,
    RolePermissionMatrix,
    UserId,
    UserPermissionOverrides,
    UserRecord,
    default_matrix,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# JSON codecs
# ---------------------------------------------------------------------------


def matrix_to_json(matrix: RolePermissionMatrix) -> dict[str, list[str]]:
    return {
        str(permission): sorted(role.value for role in roles)
        for permission, roles in matrix.items()
        if roles
    }


def matrix_from_json(data: Any) -> RolePermissionMatrix:
    """Decode a stored matrix, dropping unknown roles and empty entries."""
    matrix: RolePermissionMatrix = {}
    if not isinstance(data, dict):
        return matrix
    for permission, role_names in data.items():
        if not isinstance(role_names, list):
            continue
        roles = set()
        for name in role_names:
            try:
                roles.add(Role(name))
            except ValueError:
                logger.warning("Dropping unknown role %r from permission %s", name, permission)
        if roles:
            matrix[PermissionId(permission)] = frozenset(roles)
    return matrix


def overrides_to_json(overrides: UserPermissionOverrides) -> dict[str, dict[str, bool]]:
    return {
        str(user_id): {str(p): bool(v) for p, v in entries.items()}
        for user_id, entries in overrides.items()
        if entries
    }


def overrides_from_json(data: Any) -> UserPermissionOverrides:
    """Decode stored overrides, restoring the no-empty-user invariant."""
    overrides: UserPermissionOverrides = {}
    if not isinstance(data, dict):
        return overrides
    for user_id, entries in data.items():
        if not isinstance(entries, dict):
            continue
        clean = {
            PermissionId(p): v for p, v in entries.items() if isinstance(v, bool)
        }
        if clean:
            overrides[UserId(user_id)] = clean
    return overrides


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class PolicyStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def _load(self, key: str) -> Any | None:
        async with self._session_factory() as session:
            result = await session.execute(select(AppConfig.value).where(AppConfig.key == key))
            return result.scalar_one_or_none()

    async def _save(self, key: str, value: Any) -> None:
        stmt = insert(AppConfig).values(key=key, value=value)
        stmt = stmt.on_conflict_do_update(
            index_elements=[AppConfig.key],
            set_={"value": stmt.excluded.value, "updated_at": func.now()},
        )
        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(stmt)

    async def load_matrix(self) -> RolePermissionMatrix | None:
        """Committed matrix, or ``None`` when nothing was ever stored."""
        data = await self._load(MATRIX_KEY)
        return None if data is None else matrix_from_json(data)

    async def load_overrides(self) -> UserPermissionOverrides:
        return overrides_from_json(await self._load(OVERRIDES_KEY))

    async def persist_matrix(self, matrix: RolePermissionMatrix) -> None:
        await self._save(MATRIX_KEY, matrix_to_json(matrix))
        logger.info("Stored role matrix (%d permissions)", len(matrix))

    async def persist_overrides(self, overrides: UserPermissionOverrides) -> None:
        await self._save(OVERRIDES_KEY, overrides_to_json(overrides))
        logger.info("Stored user overrides (%d users)", len(overrides))

    async def write_audit_log(
        self,
        action: str,
        user_id: uuid.UUID | None = None,
        username: str | None = None,
        resource_type: str | None = None,
        resource_id: str | None = None,
        details: dict | None = None,
    ) -> None:
        """Append one ``audit_log`` row in its own transaction."""
        entry = AuditLog(
            user_id=user_id,
            username=username,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            details=details,
        )
        async with self._session_factory() as session:
            async with session.begin():
                session.add(entry)

    # ---- Directory ----

    async def load_users(self) -> list[UserRecord]:
        from app.models.user import User

        async with self._session_factory() as session:
            result = await session.execute(
                select(User).where(User.is_active.is_(True)).order_by(User.name)
            )
            users = result.scalars().all()

        records = []
        for u in users:
            try:
                records.append(u.to_record())
            except ValueError:
                logger.warning("Skipping user %s with unknown role %r", u.id, u.role)
        return records

    async def get_user(self, user_id: str) -> UserRecord | None:
        from app.models.user import User

        try:
            key = uuid.UUID(str(user_id))
        except ValueError:
            return None
        async with self._session_factory() as session:
            result = await session.execute(select(User).where(User.id == key))
            user = result.scalar_one_or_none()
        if user is None or not user.is_active:
            return None
        try:
            return user.to_record()
        except ValueError:
            logger.warning("User %s has unknown role %r", user.id, user.role)
            return None


async def load_policy(store: PolicyStore) -> tuple[RolePermissionMatrix, UserPermissionOverrides]:
    """Committed (matrix, overrides).

    A store that never held a matrix is seeded with :func:`default_matrix`
    when ``SEED_SUPER_ROLE`` is on; otherwise it starts empty.
    """
    matrix = await store.load_matrix()
    if matrix is None:
        if settings.SEED_SUPER_ROLE:
            logger.info("No committed role matrix; using the seed matrix")
            matrix = default_matrix()
        else:
            matrix = {}
    return matrix, await store.load_overrides()


# ---------------------------------------------------------------------------
# FastAPI dependency
# ---------------------------------------------------------------------------

_store: PolicyStore | None = None


def get_policy_store() -> PolicyStore:
    """Lazy-initialise the singleton store bound to the app's engine."""
    global _store
    if _store is None:
        from app.database import AsyncSessionLocal

        _store = PolicyStore(AsyncSessionLocal)
    return _store
