"""Shared fixtures for ardine_core unit tests.

Every test gets its own in-memory SQLite database with the full schema,
an ``AsyncSession`` bound to it, and a :class:`Factory` for seeding
teams, users, projects and time entries.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any

import pytest_asyncio
from ardine_core.auth.context import RequestContext
from ardine_core.state.repository import (
    ClientRepository,
    ProjectRepository,
    TeamMembershipRepository,
    TeamRepository,
    UserRepository,
)
from ardine_core.state.sqlite_adapter import create_local_tables, get_local_engine
from ardine_core.state.tables import (
    ClientTable,
    InvoiceTable,
    ProjectTable,
    TeamTable,
    TimeEntryTable,
    UserTable,
)
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

# ---------------------------------------------------------------------------
# Engine and session
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture()
async def engine() -> AsyncIterator[AsyncEngine]:
    eng = get_local_engine(":memory:")
    await create_local_tables(eng)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture()
async def session(engine: AsyncEngine) -> AsyncIterator[AsyncSession]:
    factory = async_sessionmaker(engine, expire_on_commit=False)
    async with factory() as sess:
        yield sess


# ---------------------------------------------------------------------------
# Seeding
# ---------------------------------------------------------------------------


class Factory:
    """Small seeding helpers; every method flushes and returns the ORM row."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self._seq = 0

    def _next(self) -> int:
        self._seq += 1
        return self._seq

    async def team(self, **fields: Any) -> TeamTable:
        n = self._next()
        return await TeamRepository(self.session).create(fields.pop("name", f"Team {n}"), f"team-{n}", **fields)

    async def user(self, *, instance_role: str = "USER") -> UserTable:
        n = self._next()
        return await UserRepository(self.session).create(
            f"user{n}@example.com", f"User {n}", instance_role=instance_role
        )

    async def member(self, team: TeamTable, role: str, *, instance_role: str = "USER") -> UserTable:
        user = await self.user(instance_role=instance_role)
        await TeamMembershipRepository(self.session, team.id).add(user.id, role)
        return user

    async def client(self, team: TeamTable, **fields: Any) -> ClientTable:
        name = fields.pop("name", f"Client {self._next()}")
        return await ClientRepository(self.session, team.id).create(name, **fields)

    async def project(self, team: TeamTable, **fields: Any) -> ProjectTable:
        name = fields.pop("name", f"Project {self._next()}")
        return await ProjectRepository(self.session, team.id).create(name, **fields)

    async def assign(self, project: ProjectTable, user: UserTable, role: str) -> None:
        await ProjectRepository(self.session, project.team_id).add_member(project.id, user.id, role)

    async def entry(
        self,
        project: ProjectTable,
        user: UserTable,
        *,
        seconds: int = 3600,
        started_at: datetime | None = None,
        billable: bool = True,
        rate_cents: int | None = 6000,
    ) -> TimeEntryTable:
        """A stopped entry of *seconds* length."""
        start = started_at or datetime(2024, 1, 1, 9, 0, tzinfo=UTC) + timedelta(minutes=self._next())
        row = TimeEntryTable(
            team_id=project.team_id,
            project_id=project.id,
            user_id=user.id,
            client_id=project.client_id,
            started_at=start,
            stopped_at=start + timedelta(seconds=seconds),
            duration_seconds=seconds,
            billable=billable,
            hourly_rate_cents=rate_cents,
        )
        self.session.add(row)
        await self.session.flush()
        return row

    async def invoice(self, team: TeamTable, client: ClientTable, number: str, **fields: Any) -> InvoiceTable:
        row = InvoiceTable(
            team_id=team.id,
            client_id=client.id,
            invoice_number=number,
            status=fields.pop("status", "draft"),
            issued_date=fields.pop("issued_date", datetime(2024, 2, 1).date()),
            due_date=fields.pop("due_date", datetime(2024, 3, 1).date()),
            tax_rate_percent=fields.pop("tax_rate_percent", Decimal("0")),
            **fields,
        )
        self.session.add(row)
        await self.session.flush()
        return row

    async def context(self, user: UserTable | None, team: TeamTable | None) -> RequestContext:
        return await RequestContext.build(
            self.session,
            user_id=user.id if user else None,
            team_id=team.id if team else None,
            instance_role=user.instance_role if user else None,
        )


@pytest_asyncio.fixture()
async def factory(session: AsyncSession) -> Factory:
    return Factory(session)
