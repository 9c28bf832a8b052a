"""Authentication and authorization dependencies for the access-control API.

Authentication happens upstream; this module only trusts it:

- JWT creation / validation (``sub`` carries the Directory user id)
- ``get_current_user()`` dependency
- ``require_permission()``, resolved against the committed policy
- ``write_audit_log()`` helper
"""
from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from app.config import settings
from app.rbac import PermissionId, UserRecord
from app.services.permission_resolver import resolve
from app.services.policy_store import PolicyStore, get_policy_store, load_policy

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# JWT helpers
# ---------------------------------------------------------------------------


def create_access_token(data: dict[str, Any]) -> str:
    """Create a signed JWT containing *sub* (user id) and *exp*."""
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + timedelta(minutes=settings.JWT_EXPIRY_MINUTES)
    to_encode.update({"exp": expire})

    # UUIDs are not JSON-serialisable
    if "sub" in to_encode and not isinstance(to_encode["sub"], str):
        to_encode["sub"] = str(to_encode["sub"])

    return jwt.encode(to_encode, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


bearer_scheme = HTTPBearer(auto_error=False)

# ---------------------------------------------------------------------------
# Current-user dependency
# ---------------------------------------------------------------------------


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    store: PolicyStore = Depends(get_policy_store),
) -> UserRecord:
    """Decode the bearer JWT and look its subject up in the Directory.

    Raises ``HTTPException(401)`` when the token is missing or invalid, or the
    user does not exist (or is inactive).
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if credentials is None:
        raise credentials_exception

    try:
        payload = jwt.decode(
            credentials.credentials,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
        )
        user_id: str | None = payload.get("sub")
        if user_id is None:
            raise credentials_exception
    except JWTError:
        raise credentials_exception

    user = await store.get_user(user_id)
    if user is None:
        raise credentials_exception
    return user


# ---------------------------------------------------------------------------
# Permission-checking dependency factory
# ---------------------------------------------------------------------------


def require_permission(*permissions: str):
    """Return a FastAPI dependency that ensures the authenticated user is
    allowed ALL of the specified permissions under the committed policy.

    Usage::

        @router.get("/catalog")
        async def catalog(user: UserRecord = Depends(require_permission("ACCESS_TOOLS"))):
            ...
    """
    required = [PermissionId(p) for p in permissions]

    async def _check_permission(
        current_user: UserRecord = Depends(get_current_user),
        store: PolicyStore = Depends(get_policy_store),
    ) -> UserRecord:
        matrix, overrides = await load_policy(store)
        missing = [
            p for p in required
            if not resolve(current_user, p, matrix, overrides).allowed
        ]
        if missing:
            logger.info("Denied %s to user %s", ", ".join(missing), current_user.id)
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing permissions: {', '.join(sorted(missing))}.",
            )
        return current_user

    return _check_permission


# ---------------------------------------------------------------------------
# Audit log helper
# ---------------------------------------------------------------------------


async def write_audit_log(
    store: PolicyStore,
    user: UserRecord | None,
    action: str,
    resource_type: str | None = None,
    resource_id: str | None = None,
    details: dict | None = None,
) -> None:
    """Record *action* by *user* in the audit log."""
    user_id = None
    username = None
    if user is not None:
        try:
            user_id = uuid.UUID(str(user.id))
        except ValueError:
            logger.warning("Audit actor %r is not a Directory id", user.id)
        username = user.name

    await store.write_audit_log(
        action,
        user_id=user_id,
        username=username,
        resource_type=resource_type,
        resource_id=resource_id,
        details=details,
    )
