"""Shared fixtures for the Agapefy onboarding test suite.

Provides:
- Temporary SQLite database per test (isolated from production)
- FastAPI async test client via httpx.AsyncClient
- Signed-in user + admin fixtures with bearer headers
- Catalog builders for the resolver unit tests
"""

import pytest
import pytest_asyncio

import auth
import db


# ---------------------------------------------------------------------------
# Pure resolver fixtures
# ---------------------------------------------------------------------------

def make_form(form_id, step=None, *, name=None, parent=None, active=True, form_type="onboarding", schema=None):
    """An admin_forms row as db.list_forms() returns it."""
    return {
        "id": form_id,
        "name": name if name is not None else f"Form {form_id}",
        "description": None,
        "schema": schema if schema is not None else [{"label": "Paz", "category_id": "cat-1"}],
        "onboard_step": step,
        "is_active": active,
        "form_type": form_type,
        "parent_form_id": parent,
        "allow_other_option": False,
        "other_option_label": None,
        "created_at": "2025-01-01T00:00:00.000",
    }


@pytest.fixture
def root_form():
    return make_form("root", 1, name="Como você está se sentindo?")


# ---------------------------------------------------------------------------
# Database / API fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def test_db(tmp_path, monkeypatch):
    """Patch db.DB_PATH to a temp file and initialise all tables."""
    temp_db = tmp_path / "test.db"
    monkeypatch.setattr(db, "DB_PATH", temp_db)
    await db.init_db()
    return temp_db


@pytest.fixture
def service_role(monkeypatch):
    """Pretend the backend service-role key is configured."""
    monkeypatch.setenv("SUPABASE_SERVICE_ROLE_KEY", "test-service-role")
    monkeypatch.delenv("SB_SERVICE_ROLE_KEY", raising=False)


@pytest_asyncio.fixture
async def app_client(test_db, service_role):
    """Create an httpx.AsyncClient wired to the FastAPI app.

    Uses httpx.ASGITransport so no real HTTP server is started.
    """
    import httpx
    from app import app, lifespan

    async with lifespan(app):
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(
            transport=transport,
            base_url="http://testserver",
            timeout=30.0,
        ) as client:
            yield client


@pytest_asyncio.fixture
async def test_user(test_db):
    """A regular profile and its access token."""
    user = await db.create_profile("fiel@agapefy.test")
    return user, auth.create_access_token(user["id"], user["email"])


@pytest_asyncio.fixture
async def auth_headers(test_user):
    _, token = test_user
    return {"Authorization": f"Bearer {token}"}


@pytest_asyncio.fixture
async def admin_user(test_db):
    user = await db.create_profile("admin@agapefy.test", role="admin")
    return user, auth.create_access_token(user["id"], user["email"])


@pytest_asyncio.fixture
async def admin_headers(admin_user):
    _, token = admin_user
    return {"Authorization": f"Bearer {token}"}
