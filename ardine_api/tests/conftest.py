"""Shared fixtures for Ardine API tests.

Provides an in-memory SQLite database wired into the FastAPI app through
dependency overrides, an async httpx client, a seeded team with one user
per team role, and helpers that sign session tokens.
"""

from __future__ import annotations

import os
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

import jwt
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Set the secret BEFORE importing application modules so the module-level
# app and AuthenticationMiddleware agree with the tokens signed here.
_TEST_JWT_SECRET = "test-secret-key-for-ardine-tests"
os.environ.setdefault("ARDINE_JWT_SECRET", _TEST_JWT_SECRET)
os.environ.setdefault("ARDINE_DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from ardine_api.config import APISettings
from ardine_api.dependencies import get_db_session, get_settings
from ardine_api.main import create_app
from ardine_core.state.repository import TeamMembershipRepository, TeamRepository, UserRepository
from ardine_core.state.sqlite_adapter import create_local_tables, get_local_engine
from fastapi import FastAPI
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------


def make_token(
    user_id: str,
    instance_role: str = "USER",
    *,
    expires_in: int = 3600,
    secret: str | None = None,
    **claims: Any,
) -> str:
    """Sign a session token the way the issuing service does."""
    payload: dict[str, Any] = {
        "userId": user_id,
        "instanceRole": instance_role,
        "iat": int(time.time()),
        "exp": int(time.time()) + expires_in,
        **claims,
    }
    return jwt.encode(payload, secret or _TEST_JWT_SECRET, algorithm="HS256")


@pytest.fixture()
def sign_token():
    """Expose :func:`make_token` to test modules."""
    return make_token


# ---------------------------------------------------------------------------
# Settings and database
# ---------------------------------------------------------------------------


@pytest.fixture()
def test_settings() -> APISettings:
    """Return a settings object suitable for testing."""
    return APISettings(
        database_url="sqlite+aiosqlite:///:memory:",
        jwt_secret=_TEST_JWT_SECRET,
        platform_env="dev",
        cors_origins=["http://localhost:3000"],
        default_page_limit=25,
        max_page_limit=100,
    )


@pytest_asyncio.fixture()
async def db_engine() -> AsyncIterator[AsyncEngine]:
    engine = get_local_engine(":memory:")
    await create_local_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture()
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, expire_on_commit=False)


# ---------------------------------------------------------------------------
# Application and client
# ---------------------------------------------------------------------------


@pytest.fixture()
def app(test_settings: APISettings, session_factory: async_sessionmaker[AsyncSession]) -> FastAPI:
    """Create the app with the session and settings dependencies overridden."""
    application = create_app(test_settings)

    async def _override_session() -> AsyncIterator[AsyncSession]:
        session = session_factory()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    application.dependency_overrides[get_db_session] = _override_session
    application.dependency_overrides[get_settings] = lambda: test_settings
    return application


@pytest_asyncio.fixture()
async def client(app: FastAPI) -> AsyncIterator[AsyncClient]:
    """Yield an async httpx client bound to the test app.

    Requests carry no credentials by default; pass ``headers=world.headers(...)``.
    """
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


# ---------------------------------------------------------------------------
# Seeded team
# ---------------------------------------------------------------------------


@dataclass
class World:
    """One team with a user per team role, plus an outsider and an instance admin."""

    team_id: str
    other_team_id: str
    users: dict[str, str] = field(default_factory=dict)

    def headers(self, who: str, *, team_id: str | None = None, instance_role: str = "USER") -> dict[str, str]:
        if who == "instance_admin":
            instance_role = "ADMIN"
        return {
            "Authorization": f"Bearer {make_token(self.users[who], instance_role)}",
            "X-Team-ID": team_id or self.team_id,
        }


@pytest_asyncio.fixture()
async def world(session_factory: async_sessionmaker[AsyncSession]) -> World:
    async with session_factory() as session:
        team = await TeamRepository(session).create("Acme Studio", "acme", default_hourly_rate_cents=5000)
        other = await TeamRepository(session).create("Other Co", "other")
        users = UserRepository(session)
        memberships = TeamMembershipRepository(session, team.id)

        seeded = World(team_id=team.id, other_team_id=other.id)
        for role in ("OWNER", "ADMIN", "MEMBER", "VIEWER", "BILLING"):
            user = await users.create(f"{role.lower()}@acme.test", role.title())
            await memberships.add(user.id, role)
            seeded.users[role.lower()] = user.id

        outsider = await users.create("outsider@other.test", "Outsider")
        await TeamMembershipRepository(session, other.id).add(outsider.id, "OWNER")
        seeded.users["outsider"] = outsider.id

        admin = await users.create("root@ardine.test", "Root", instance_role="ADMIN")
        seeded.users["instance_admin"] = admin.id

        await session.commit()
    return seeded
