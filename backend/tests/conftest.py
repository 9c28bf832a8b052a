"""
Test fixtures for the access-control editor.

API tests drive the FastAPI app in-process through ``httpx.ASGITransport``.
The PostgreSQL-backed store is replaced by ``FakePolicyStore``, which keeps
the two policy documents as JSON (through the real codecs) and can be told
to fail or stall either write.
"""
import asyncio

import httpx
import pytest
import pytest_asyncio

from app.main import app
from app.middleware.auth import create_access_token
from app.models.permission import MATRIX_KEY, OVERRIDES_KEY
from app.rbac import Role, UserId, UserRecord, default_matrix
from app.services.access_draft import DraftRegistry, get_draft_registry
from app.services.policy_store import (
    get_policy_store,
    matrix_from_json,
    matrix_to_json,
    overrides_from_json,
    overrides_to_json,
)

# ---------------------------------------------------------------------------
# Directory
# ---------------------------------------------------------------------------
ADMIN = UserRecord(
    id=UserId("6b1f0d2e-0000-4000-8000-000000000001"), name="Ana Costa", role=Role.ADMIN,
)
SUPERVISOR = UserRecord(
    id=UserId("6b1f0d2e-0000-4000-8000-000000000002"), name="Bruno Lima", role=Role.SUPERVISOR,
    secondary_id="1020",
)
OPERATOR = UserRecord(
    id=UserId("6b1f0d2e-0000-4000-8000-000000000003"), name="Carla Souza", role=Role.OPERADOR,
    secondary_id="4471", avatar_ref="avatars/carla.png",
)


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------

class FakePolicyStore:
    """Drop-in for ``PolicyStore`` used by the API tests."""

    def __init__(self, users, matrix=None, overrides=None):
        self.users = {u.id: u for u in users}
        self.documents: dict[str, object] = {}
        if matrix is not None:
            self.documents[MATRIX_KEY] = matrix_to_json(matrix)
        if overrides is not None:
            self.documents[OVERRIDES_KEY] = overrides_to_json(overrides)
        self.fail_matrix: Exception | None = None
        self.fail_overrides: Exception | None = None
        self.gate: asyncio.Event | None = None
        self.writes: list[str] = []
        self.audit: list[dict] = []

    async def load_matrix(self):
        data = self.documents.get(MATRIX_KEY)
        return None if data is None else matrix_from_json(data)

    async def load_overrides(self):
        return overrides_from_json(self.documents.get(OVERRIDES_KEY))

    async def persist_matrix(self, matrix):
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_matrix is not None:
            raise self.fail_matrix
        self.documents[MATRIX_KEY] = matrix_to_json(matrix)
        self.writes.append("matrix")

    async def persist_overrides(self, overrides):
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_overrides is not None:
            raise self.fail_overrides
        self.documents[OVERRIDES_KEY] = overrides_to_json(overrides)
        self.writes.append("overrides")

    async def write_audit_log(self, action, **fields):
        self.audit.append({"action": action, **fields})

    async def load_users(self):
        return sorted(self.users.values(), key=lambda u: u.name)

    async def get_user(self, user_id):
        return self.users.get(user_id)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def auth_headers(user: UserRecord) -> dict:
    """Return auth header dict carrying a token for *user*."""
    token = create_access_token({"sub": user.id})
    return {"Authorization": f"Bearer {token}"}


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def store():
    """Store seeded with the default matrix and no overrides."""
    return FakePolicyStore([ADMIN, SUPERVISOR, OPERATOR], matrix=default_matrix())


@pytest.fixture
def registry():
    return DraftRegistry()


@pytest_asyncio.fixture
async def client(store, registry):
    """In-process HTTP client wired to the fake store and a fresh registry."""
    app.dependency_overrides[get_policy_store] = lambda: store
    app.dependency_overrides[get_draft_registry] = lambda: registry

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c

    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers():
    return auth_headers(ADMIN)


@pytest.fixture
def supervisor_headers():
    return auth_headers(SUPERVISOR)


@pytest.fixture
def operator_headers():
    return auth_headers(OPERATOR)


@pytest.fixture
def empty_store():
    """Store that has never held a matrix or overrides."""
    return FakePolicyStore([ADMIN, SUPERVISOR, OPERATOR])


@pytest.fixture
def admin_user():
    return ADMIN


@pytest.fixture
def operator_user():
    return OPERATOR


@pytest.fixture
def supervisor_user():
    return SUPERVISOR


@pytest.fixture
def make_headers():
    """Factory fixture: bearer headers for any ``UserRecord``."""
    return auth_headers
