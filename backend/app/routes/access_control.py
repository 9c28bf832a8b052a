"""Access-control routes --- catalog, committed policy, draft editing and commit."""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, StrictBool

from app.middleware.auth import require_permission, write_audit_log
from app.rbac import (
    SUPER_ROLE,
    PermissionId,
    Role,
    UserId,
    UserRecord,
    all_permissions,
    get_catalog,
    permission_label,
)
from app.services.access_draft import (
    AccessDraft,
    CommitInProgressError,
    DraftRegistry,
    PersistenceFailure,
    get_draft_registry,
)
from app.services.permission_resolver import resolve_many
from app.services.policy_store import (
    PolicyStore,
    get_policy_store,
    load_policy,
    matrix_to_json,
    overrides_to_json,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/access", tags=["access-control"])

VIEW = "ACCESS_TOOLS"
EDIT = "MANAGE_PERMISSIONS"

# Commit halves, as named in PersistenceFailure.failures
DOCUMENTS = ("matrix", "overrides")


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------


class OverrideUpdate(BaseModel):
    # true = allow, false = deny, null = inherit from role
    value: StrictBool | None = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _user_dict(u: UserRecord) -> dict:
    return {
        "id": u.id,
        "name": u.name,
        "role": u.role.value,
        "secondary_id": u.secondary_id,
        "avatar_ref": u.avatar_ref,
    }


def _draft_dict(draft_id: str, draft: AccessDraft) -> dict:
    return {
        "id": draft_id,
        "state": draft.state.value,
        "has_changes": draft.has_changes,
        "matrix": matrix_to_json(draft.matrix),
        "overrides": overrides_to_json(draft.overrides),
    }


def _get_draft(registry: DraftRegistry, draft_id: str) -> AccessDraft:
    draft = registry.get(draft_id)
    if draft is None:
        raise HTTPException(status_code=404, detail="Draft not found")
    return draft


# ---------------------------------------------------------------------------
# CATALOG, ROLES, USERS (committed policy)
# ---------------------------------------------------------------------------


@router.get("/catalog")
async def get_permission_catalog(
    user: UserRecord = Depends(require_permission(VIEW)),
):
    """Grouped permission ids and labels, for display."""
    return {"groups": [g.model_dump() for g in get_catalog()]}


@router.get("/roles")
async def list_roles(
    store: PolicyStore = Depends(get_policy_store),
    user: UserRecord = Depends(require_permission(VIEW)),
):
    """List all roles with the permissions the committed matrix grants them."""
    matrix, _ = await load_policy(store)
    roles = []
    for role in Role:
        roles.append({
            "code": role.value,
            "locked": role == SUPER_ROLE,
            "permissions": sorted(p for p, members in matrix.items() if role in members),
        })
    return {"roles": roles, "super_role": SUPER_ROLE.value}


@router.get("/users")
async def list_users(
    store: PolicyStore = Depends(get_policy_store),
    user: UserRecord = Depends(require_permission(VIEW)),
):
    """List Directory users with whether they carry any override."""
    _, overrides = await load_policy(store)
    users = await store.load_users()
    items = [{**_user_dict(u), "has_overrides": u.id in overrides} for u in users]
    return {"items": items, "total": len(items)}


@router.get("/users/{user_id}/effective")
async def get_user_effective_permissions(
    user_id: str,
    store: PolicyStore = Depends(get_policy_store),
    user: UserRecord = Depends(require_permission(VIEW)),
):
    """Resolved decision for every catalog permission under the committed policy."""
    target = await store.get_user(user_id)
    if target is None:
        raise HTTPException(status_code=404, detail="User not found")

    matrix, overrides = await load_policy(store)
    effective = resolve_many(target, all_permissions(), matrix, overrides)
    return {
        "user": _user_dict(target),
        "permissions": {
            p: {**e.to_dict(), "label": permission_label(p)} for p, e in effective.items()
        },
    }


# ---------------------------------------------------------------------------
# DRAFTS
# ---------------------------------------------------------------------------


@router.post("/drafts", status_code=201)
async def create_draft(
    store: PolicyStore = Depends(get_policy_store),
    registry: DraftRegistry = Depends(get_draft_registry),
    user: UserRecord = Depends(require_permission(VIEW, EDIT)),
):
    """Open a draft seeded from the committed matrix and overrides."""
    matrix, overrides = await load_policy(store)
    users = await store.load_users()
    draft = AccessDraft(matrix, overrides, users, store.persist_matrix, store.persist_overrides)
    draft_id = registry.add(draft)
    logger.info("User %s opened access draft %s", user.id, draft_id)
    return _draft_dict(draft_id, draft)


@router.get("/drafts/{draft_id}")
async def get_draft(
    draft_id: str,
    registry: DraftRegistry = Depends(get_draft_registry),
    user: UserRecord = Depends(require_permission(VIEW, EDIT)),
):
    return _draft_dict(draft_id, _get_draft(registry, draft_id))


@router.delete("/drafts/{draft_id}")
async def discard_draft(
    draft_id: str,
    registry: DraftRegistry = Depends(get_draft_registry),
    user: UserRecord = Depends(require_permission(VIEW, EDIT)),
):
    if not registry.discard(draft_id):
        raise HTTPException(status_code=404, detail="Draft not found")
    return {"status": "discarded"}


@router.post("/drafts/{draft_id}/roles/{role}/permissions/{permission}/toggle")
async def toggle_role_permission(
    draft_id: str,
    role: Role,
    permission: str,
    registry: DraftRegistry = Depends(get_draft_registry),
    user: UserRecord = Depends(require_permission(VIEW, EDIT)),
):
    """Flip a role's default grant.  The super role is locked (no-op)."""
    draft = _get_draft(registry, draft_id)
    draft.toggle_role_permission(role, PermissionId(permission))
    return _draft_dict(draft_id, draft)


@router.put("/drafts/{draft_id}/users/{user_id}/overrides/{permission}")
async def set_user_override(
    draft_id: str,
    user_id: str,
    permission: str,
    body: OverrideUpdate,
    registry: DraftRegistry = Depends(get_draft_registry),
    user: UserRecord = Depends(require_permission(VIEW, EDIT)),
):
    draft = _get_draft(registry, draft_id)
    draft.set_user_override(UserId(user_id), PermissionId(permission), body.value)
    return _draft_dict(draft_id, draft)


@router.post("/drafts/{draft_id}/users/{user_id}/overrides/{permission}/cycle")
async def cycle_user_override(
    draft_id: str,
    user_id: str,
    permission: str,
    registry: DraftRegistry = Depends(get_draft_registry),
    user: UserRecord = Depends(require_permission(VIEW, EDIT)),
):
    """Step the override Inherit → Allow → Deny → Inherit."""
    draft = _get_draft(registry, draft_id)
    draft.cycle_user_override(UserId(user_id), PermissionId(permission))
    return _draft_dict(draft_id, draft)


@router.post("/drafts/{draft_id}/undo")
async def undo_draft_edit(
    draft_id: str,
    registry: DraftRegistry = Depends(get_draft_registry),
    user: UserRecord = Depends(require_permission(VIEW, EDIT)),
):
    draft = _get_draft(registry, draft_id)
    undone = draft.undo()
    return {**_draft_dict(draft_id, draft), "undone": undone}


@router.get("/drafts/{draft_id}/resolve")
async def resolve_in_draft(
    draft_id: str,
    user_id: str = Query(...),
    permission: str = Query(...),
    registry: DraftRegistry = Depends(get_draft_registry),
    user: UserRecord = Depends(require_permission(VIEW, EDIT)),
):
    """Effective decision under the draft.  Unknown users resolve to denied."""
    draft = _get_draft(registry, draft_id)
    return draft.resolve(UserId(user_id), PermissionId(permission)).to_dict()


@router.get("/drafts/{draft_id}/users/{user_id}/effective")
async def get_draft_user_effective_permissions(
    draft_id: str,
    user_id: str,
    registry: DraftRegistry = Depends(get_draft_registry),
    user: UserRecord = Depends(require_permission(VIEW, EDIT)),
):
    draft = _get_draft(registry, draft_id)
    effective = draft.effective_permissions(UserId(user_id))
    return {"permissions": {p: e.to_dict() for p, e in effective.items()}}


@router.post("/drafts/{draft_id}/commit")
async def commit_draft(
    draft_id: str,
    store: PolicyStore = Depends(get_policy_store),
    registry: DraftRegistry = Depends(get_draft_registry),
    user: UserRecord = Depends(require_permission(VIEW, EDIT)),
):
    """Persist the draft's matrix and overrides.

    On failure the draft is left untouched so the caller can retry; one of
    the two documents may already have been stored.  Edits made while the
    commit was saving stay in the draft as pending changes.
    """
    draft = _get_draft(registry, draft_id)
    try:
        await draft.commit()
    except CommitInProgressError:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="A commit for this draft is already in progress",
        )
    except PersistenceFailure as exc:
        written = [half for half in DOCUMENTS if half not in exc.failures]
        if written:
            await write_audit_log(
                store,
                user,
                action="permissions.update",
                resource_type="access_policy",
                resource_id=draft_id,
                details={"written": written, "failed": sorted(exc.failures)},
            )
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"message": "Failed to save access policy", "failed": sorted(exc.failures)},
        )

    logger.info("User %s committed access draft %s", user.id, draft_id)
    await write_audit_log(
        store,
        user,
        action="permissions.update",
        resource_type="access_policy",
        resource_id=draft_id,
        details={"written": list(DOCUMENTS), "failed": []},
    )

    matrix, overrides = await load_policy(store)
    draft.refresh(matrix, overrides, await store.load_users(), keep_edits=draft.has_changes)
    return _draft_dict(draft_id, draft)
