"""Draft/commit controller for the access-control editor.

An ``AccessDraft`` holds an editable copy of the role matrix and the user
overrides, seeded from the last committed values.  Edits replace the draft
pair with a new one (see :mod:`app.services.policy_edit`); ``commit()``
persists both halves with two independent, concurrent writes.

Commit lifecycle::

    IDLE ──commit()──▶ SAVING ──both writes ok──▶ IDLE (committed = draft)
                              └─any write failed─▶ IDLE (draft kept, raises)

A second ``commit()`` while SAVING raises ``CommitInProgressError``.  A failed
commit takes no compensating action: one half may already be stored.
"""
from __future__ import annotations

import asyncio
import enum
import logging
import time
import uuid
from collections import OrderedDict
from collections.abc import Awaitable, Callable, Iterable

from app.config import settings
from app.rbac import (
    PermissionId,
    Role,
    RolePermissionMatrix,
    UserId,
    UserPermissionOverrides,
    UserRecord,
    all_permissions,
)
from app.services import policy_edit
from app.services.permission_resolver import EffectivePermission, resolve, resolve_many
from app.services.policy_edit import normalize_matrix, normalize_overrides

logger = logging.getLogger(__name__)

PersistMatrix = Callable[[RolePermissionMatrix], Awaitable[None]]
PersistOverrides = Callable[[UserPermissionOverrides], Awaitable[None]]


class CommitState(str, enum.Enum):
    IDLE = "idle"
    SAVING = "saving"


class CommitInProgressError(RuntimeError):
    """Raised when ``commit()`` is called while a commit is still saving."""


class PersistenceFailure(RuntimeError):
    """One or both persistence writes failed.

    ``failures`` maps ``"matrix"`` / ``"overrides"`` to the exception raised
    by that write.  The half not listed may have been stored.
    """

    def __init__(self, failures: dict[str, BaseException]):
        self.failures = failures
        parts = ", ".join(f"{name}: {exc!r}" for name, exc in failures.items())
        super().__init__(f"Commit failed ({parts})")

    @property
    def partial(self) -> bool:
        return len(self.failures) == 1


class AccessDraft:
    def __init__(
        self,
        matrix: RolePermissionMatrix,
        overrides: UserPermissionOverrides,
        users: Iterable[UserRecord],
        persist_matrix: PersistMatrix,
        persist_overrides: PersistOverrides,
    ):
        self._persist_matrix = persist_matrix
        self._persist_overrides = persist_overrides
        self.users: dict[UserId, UserRecord] = {u.id: u for u in users}
        self.committed_matrix = normalize_matrix(matrix)
        self.committed_overrides = normalize_overrides(overrides)
        self.matrix = self.committed_matrix
        self.overrides = self.committed_overrides
        self.state = CommitState.IDLE
        self._history: list[tuple[RolePermissionMatrix, UserPermissionOverrides]] = []

    # ------------------------------------------------------------------
    # Edits
    # ------------------------------------------------------------------

    def _replace(
        self,
        matrix: RolePermissionMatrix,
        overrides: UserPermissionOverrides,
    ) -> None:
        if matrix is self.matrix and overrides is self.overrides:
            return
        self._history.append((self.matrix, self.overrides))
        self.matrix = matrix
        self.overrides = overrides

    def toggle_role_permission(self, role: Role, permission: PermissionId) -> RolePermissionMatrix:
        self._replace(
            policy_edit.toggle_role_permission(self.matrix, role, permission),
            self.overrides,
        )
        return self.matrix

    def set_user_override(
        self,
        user_id: UserId,
        permission: PermissionId,
        value: bool | None,
    ) -> UserPermissionOverrides:
        self._replace(
            self.matrix,
            policy_edit.set_user_override(self.overrides, user_id, permission, value),
        )
        return self.overrides

    def cycle_user_override(self, user_id: UserId, permission: PermissionId) -> UserPermissionOverrides:
        self._replace(
            self.matrix,
            policy_edit.cycle_user_override(self.overrides, user_id, permission),
        )
        return self.overrides

    def undo(self) -> bool:
        """Restore the previous draft pair.  Returns False if there is none."""
        if not self._history:
            return False
        self.matrix, self.overrides = self._history.pop()
        return True

    @property
    def has_changes(self) -> bool:
        return (
            self.matrix != self.committed_matrix
            or self.overrides != self.committed_overrides
        )

    def refresh(
        self,
        matrix: RolePermissionMatrix,
        overrides: UserPermissionOverrides,
        users: Iterable[UserRecord] | None = None,
        keep_edits: bool = False,
    ) -> None:
        """Replace the committed values.

        The draft and its undo history are discarded unless *keep_edits* is
        set, in which case pending edits stay on top of the new baseline.
        """
        self.committed_matrix = normalize_matrix(matrix)
        self.committed_overrides = normalize_overrides(overrides)
        if not keep_edits:
            self.matrix = self.committed_matrix
            self.overrides = self.committed_overrides
            self._history.clear()
        if users is not None:
            self.users = {u.id: u for u in users}

    # ------------------------------------------------------------------
    # Reads (always against the current draft)
    # ------------------------------------------------------------------

    def resolve(self, user_id: UserId, permission: PermissionId) -> EffectivePermission:
        return resolve(self.users.get(user_id), permission, self.matrix, self.overrides)

    def effective_permissions(
        self,
        user_id: UserId,
        permissions: Iterable[PermissionId] | None = None,
    ) -> dict[PermissionId, EffectivePermission]:
        return resolve_many(
            self.users.get(user_id),
            permissions if permissions is not None else all_permissions(),
            self.matrix,
            self.overrides,
        )

    # ------------------------------------------------------------------
    # Commit
    # ------------------------------------------------------------------

    async def commit(self) -> None:
        if self.state is CommitState.SAVING:
            raise CommitInProgressError("A commit is already in progress")

        matrix, overrides = self.matrix, self.overrides
        self.state = CommitState.SAVING
        logger.info(
            "Committing access policy (%d permissions, %d users with overrides)",
            len(matrix), len(overrides),
        )
        try:
            results = await asyncio.gather(
                self._persist_matrix(matrix),
                self._persist_overrides(overrides),
                return_exceptions=True,
            )
        finally:
            self.state = CommitState.IDLE

        failures = {
            name: result
            for name, result in zip(("matrix", "overrides"), results)
            if isinstance(result, BaseException)
        }
        if failures:
            error = PersistenceFailure(failures)
            logger.error("%s; draft kept for retry", error)
            raise error

        self.committed_matrix = matrix
        self.committed_overrides = overrides
        logger.info("Access policy committed")


class DraftRegistry:
    """In-memory table of open drafts, keyed by a random id.

    Drafts untouched for longer than *idle_ttl* seconds are dropped, and
    opening a draft beyond *max_drafts* drops the least recently used one.
    A draft that is saving is never dropped.
    """

    def __init__(
        self,
        max_drafts: int | None = None,
        idle_ttl: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_drafts = max_drafts if max_drafts is not None else settings.MAX_OPEN_DRAFTS
        self.idle_ttl = idle_ttl if idle_ttl is not None else settings.DRAFT_IDLE_TTL_SECONDS
        self._clock = clock
        # Least recently used first
        self._drafts: OrderedDict[str, AccessDraft] = OrderedDict()
        self._last_seen: dict[str, float] = {}

    def _drop(self, draft_id: str) -> None:
        del self._drafts[draft_id]
        del self._last_seen[draft_id]

    def _expire(self) -> None:
        now = self._clock()
        for draft_id, draft in list(self._drafts.items()):
            if draft.state is CommitState.SAVING:
                continue
            if now - self._last_seen[draft_id] > self.idle_ttl:
                self._drop(draft_id)
                logger.info("Dropped idle access draft %s", draft_id)

    def add(self, draft: AccessDraft) -> str:
        self._expire()
        for draft_id, open_draft in list(self._drafts.items()):
            if len(self._drafts) < self.max_drafts:
                break
            if open_draft.state is CommitState.SAVING:
                continue
            self._drop(draft_id)
            logger.warning("Dropped access draft %s (limit of %d open drafts)", draft_id, self.max_drafts)

        draft_id = uuid.uuid4().hex
        self._drafts[draft_id] = draft
        self._last_seen[draft_id] = self._clock()
        return draft_id

    def get(self, draft_id: str) -> AccessDraft | None:
        self._expire()
        draft = self._drafts.get(draft_id)
        if draft is not None:
            self._drafts.move_to_end(draft_id)
            self._last_seen[draft_id] = self._clock()
        return draft

    def discard(self, draft_id: str) -> bool:
        if draft_id not in self._drafts:
            return False
        self._drop(draft_id)
        return True

    def __len__(self) -> int:
        return len(self._drafts)


_registry = DraftRegistry()


def get_draft_registry() -> DraftRegistry:
    return _registry
