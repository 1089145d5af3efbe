"""Repository classes providing CRUD access to the Ardine store.

Each repository takes an ``AsyncSession`` (and, for tenant data, the
team id) at construction time and operates within the caller's
transaction boundary.  All writes call ``session.flush()`` so generated
defaults are populated; the caller is responsible for committing.

Filtered list reads do not live here: they go through
:mod:`ardine_core.query.builder` at the service layer.
"""

from __future__ import annotations

import logging
import zlib
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import Integer, cast, delete, func, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from ardine_core.state.tables import (
    ClientTable,
    InvoiceTable,
    InvoiceTimeEntryTable,
    ProjectMemberTable,
    ProjectTable,
    ProjectTaskTable,
    TaskAssigneeTable,
    TeamMembershipTable,
    TeamTable,
    TimeEntryTable,
    UserTable,
)

logger = logging.getLogger(__name__)


def _escape_like(value: str) -> str:
    """Escape SQL LIKE metacharacters so they are treated as literal characters."""
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _dialect_name(session: AsyncSession) -> str:
    bind = session.get_bind()
    return str(getattr(getattr(bind, "dialect", None), "name", ""))


# ---------------------------------------------------------------------------
# Teams and users
# ---------------------------------------------------------------------------


class TeamRepository:
    """CRUD operations for the ``teams`` table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        name: str,
        slug: str,
        *,
        default_hourly_rate_cents: int | None = None,
        default_tax_rate_percent: Decimal = Decimal("0"),
    ) -> TeamTable:
        row = TeamTable(
            name=name.strip(),
            slug=slug.strip().lower(),
            default_hourly_rate_cents=default_hourly_rate_cents,
            default_tax_rate_percent=default_tax_rate_percent,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, team_id: str) -> TeamTable | None:
        result = await self._session.execute(select(TeamTable).where(TeamTable.id == team_id))
        return result.scalar_one_or_none()

    async def update(self, team: TeamTable, **fields: Any) -> TeamTable:
        for key, value in fields.items():
            setattr(team, key, value)
        await self._session.flush()
        return team

    async def get_by_slug(self, slug: str) -> TeamTable | None:
        result = await self._session.execute(select(TeamTable).where(TeamTable.slug == slug.strip().lower()))
        return result.scalar_one_or_none()

    async def list_for_user(self, user_id: str) -> list[tuple[TeamTable, str]]:
        """Return ``(team, role)`` for every team the user belongs to, by name."""
        stmt = (
            select(TeamTable, TeamMembershipTable.role)
            .join(TeamMembershipTable, TeamMembershipTable.team_id == TeamTable.id)
            .where(TeamMembershipTable.user_id == user_id)
            .order_by(TeamTable.name, TeamTable.id)
        )
        result = await self._session.execute(stmt)
        return [(team, role) for team, role in result.all()]


class UserRepository:
    """CRUD operations for the ``users`` table.

    Password hashing happens outside this core; ``password_hash`` is
    stored as given.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        email: str,
        name: str,
        *,
        instance_role: str = "USER",
        password_hash: str | None = None,
    ) -> UserTable:
        row = UserTable(
            email=email.lower().strip(),
            name=name.strip(),
            instance_role=instance_role,
            password_hash=password_hash,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, user_id: str) -> UserTable | None:
        result = await self._session.execute(select(UserTable).where(UserTable.id == user_id))
        return result.scalar_one_or_none()

    async def get_by_email(self, email: str) -> UserTable | None:
        result = await self._session.execute(select(UserTable).where(UserTable.email == email.lower().strip()))
        return result.scalar_one_or_none()


class TeamMembershipRepository:
    """Team memberships for one team."""

    def __init__(self, session: AsyncSession, team_id: str) -> None:
        self._session = session
        self._team_id = team_id

    async def add(self, user_id: str, role: str) -> TeamMembershipTable:
        row = TeamMembershipTable(team_id=self._team_id, user_id=user_id, role=role)
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, user_id: str) -> TeamMembershipTable | None:
        result = await self._session.execute(
            select(TeamMembershipTable).where(
                TeamMembershipTable.team_id == self._team_id,
                TeamMembershipTable.user_id == user_id,
            )
        )
        return result.scalar_one_or_none()

    async def list_with_users(self) -> list[tuple[TeamMembershipTable, UserTable]]:
        stmt = (
            select(TeamMembershipTable, UserTable)
            .join(UserTable, UserTable.id == TeamMembershipTable.user_id)
            .where(TeamMembershipTable.team_id == self._team_id)
            .order_by(TeamMembershipTable.created_at, TeamMembershipTable.id)
        )
        result = await self._session.execute(stmt)
        return [(membership, user) for membership, user in result.all()]

    async def count_owners(self) -> int:
        """Count OWNER memberships, locking them on PostgreSQL.

        The lock keeps two concurrent demotions from both seeing a
        second owner.
        """
        stmt = select(TeamMembershipTable.id).where(
            TeamMembershipTable.team_id == self._team_id,
            TeamMembershipTable.role == "OWNER",
        )
        if _dialect_name(self._session) == "postgresql":
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        return len(result.scalars().all())

    async def set_role(self, membership: TeamMembershipTable, role: str) -> TeamMembershipTable:
        membership.role = role
        await self._session.flush()
        return membership

    async def remove(self, membership: TeamMembershipTable) -> None:
        await self._session.delete(membership)
        await self._session.flush()


# ---------------------------------------------------------------------------
# Clients and projects
# ---------------------------------------------------------------------------


class ClientRepository:
    def __init__(self, session: AsyncSession, team_id: str) -> None:
        self._session = session
        self._team_id = team_id

    async def create(self, name: str, **fields: Any) -> ClientTable:
        row = ClientTable(team_id=self._team_id, name=name.strip(), **fields)
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, client_id: str) -> ClientTable | None:
        result = await self._session.execute(
            select(ClientTable).where(ClientTable.id == client_id, ClientTable.team_id == self._team_id)
        )
        return result.scalar_one_or_none()


class ProjectRepository:
    """Projects, project members, and tasks for one team."""

    def __init__(self, session: AsyncSession, team_id: str) -> None:
        self._session = session
        self._team_id = team_id

    async def create(self, name: str, **fields: Any) -> ProjectTable:
        row = ProjectTable(team_id=self._team_id, name=name.strip(), **fields)
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, project_id: str) -> ProjectTable | None:
        result = await self._session.execute(
            select(ProjectTable).where(ProjectTable.id == project_id, ProjectTable.team_id == self._team_id)
        )
        return result.scalar_one_or_none()

    async def update(self, project: ProjectTable, **fields: Any) -> ProjectTable:
        for key, value in fields.items():
            setattr(project, key, value)
        await self._session.flush()
        return project

    async def delete(self, project: ProjectTable) -> None:
        await self._session.delete(project)
        await self._session.flush()

    # -- members -------------------------------------------------------------

    async def get_member(self, project_id: str, user_id: str) -> ProjectMemberTable | None:
        result = await self._session.execute(
            select(ProjectMemberTable).where(
                ProjectMemberTable.project_id == project_id,
                ProjectMemberTable.user_id == user_id,
            )
        )
        return result.scalar_one_or_none()

    async def add_member(self, project_id: str, user_id: str, role: str) -> ProjectMemberTable:
        row = ProjectMemberTable(project_id=project_id, user_id=user_id, role=role)
        self._session.add(row)
        await self._session.flush()
        return row

    async def remove_member(self, member: ProjectMemberTable) -> None:
        await self._session.delete(member)
        await self._session.flush()

    # -- tasks ---------------------------------------------------------------

    async def create_task(self, project_id: str, name: str, **fields: Any) -> ProjectTaskTable:
        """Insert a task at the end of the project's ordering."""
        result = await self._session.execute(
            select(func.coalesce(func.max(ProjectTaskTable.order_index), -1)).where(
                ProjectTaskTable.project_id == project_id
            )
        )
        next_index = int(result.scalar_one()) + 1
        row = ProjectTaskTable(
            team_id=self._team_id,
            project_id=project_id,
            name=name.strip(),
            order_index=next_index,
            **fields,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def update_task(self, task: ProjectTaskTable, **fields: Any) -> ProjectTaskTable:
        for key, value in fields.items():
            setattr(task, key, value)
        await self._session.flush()
        return task

    async def delete_task(self, task: ProjectTaskTable) -> None:
        await self._session.delete(task)
        await self._session.flush()

    async def reorder_tasks(self, project_id: str, task_ids: list[str]) -> int:
        """Set ``order_index`` to each task's position in *task_ids*.

        Ids that do not belong to the project are skipped.  Returns the
        number of tasks updated.
        """
        result = await self._session.execute(
            select(ProjectTaskTable).where(
                ProjectTaskTable.project_id == project_id,
                ProjectTaskTable.team_id == self._team_id,
                ProjectTaskTable.id.in_(task_ids),
            )
        )
        by_id = {task.id: task for task in result.scalars().all()}
        for index, task_id in enumerate(task_ids):
            if task_id in by_id:
                by_id[task_id].order_index = index
        await self._session.flush()
        return len(by_id)

    async def get_assignee(self, task_id: str, user_id: str) -> TaskAssigneeTable | None:
        result = await self._session.execute(
            select(TaskAssigneeTable).where(
                TaskAssigneeTable.task_id == task_id,
                TaskAssigneeTable.user_id == user_id,
            )
        )
        return result.scalar_one_or_none()

    async def add_assignee(self, task_id: str, user_id: str) -> TaskAssigneeTable:
        row = TaskAssigneeTable(team_id=self._team_id, task_id=task_id, user_id=user_id)
        self._session.add(row)
        await self._session.flush()
        return row

    async def remove_assignee(self, assignee: TaskAssigneeTable) -> None:
        await self._session.delete(assignee)
        await self._session.flush()

    async def get_task(self, task_id: str) -> ProjectTaskTable | None:
        result = await self._session.execute(
            select(ProjectTaskTable).where(
                ProjectTaskTable.id == task_id,
                ProjectTaskTable.team_id == self._team_id,
            )
        )
        return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# Time entries
# ---------------------------------------------------------------------------


class TimeEntryRepository:
    def __init__(self, session: AsyncSession, team_id: str) -> None:
        self._session = session
        self._team_id = team_id

    async def create(self, **fields: Any) -> TimeEntryTable:
        row = TimeEntryTable(team_id=self._team_id, **fields)
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, entry_id: str) -> TimeEntryTable | None:
        result = await self._session.execute(
            select(TimeEntryTable).where(TimeEntryTable.id == entry_id, TimeEntryTable.team_id == self._team_id)
        )
        return result.scalar_one_or_none()

    async def get_running(self, user_id: str) -> TimeEntryTable | None:
        result = await self._session.execute(
            select(TimeEntryTable)
            .where(
                TimeEntryTable.team_id == self._team_id,
                TimeEntryTable.user_id == user_id,
                TimeEntryTable.stopped_at.is_(None),
            )
            .order_by(TimeEntryTable.started_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def is_invoiced(self, entry_id: str) -> bool:
        result = await self._session.execute(
            select(func.count())
            .select_from(InvoiceTimeEntryTable)
            .where(InvoiceTimeEntryTable.time_entry_id == entry_id)
        )
        return int(result.scalar_one()) > 0

    async def delete(self, entry: TimeEntryTable) -> None:
        await self._session.delete(entry)
        await self._session.flush()


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------


class InvoiceRepository:
    """Invoice headers.  Items, links and totals belong to the engine."""

    def __init__(self, session: AsyncSession, team_id: str) -> None:
        self._session = session
        self._team_id = team_id

    async def get_next_invoice_number(self, today: date | None = None) -> str:
        """Generate the next sequential invoice number for the team.

        Format: ``INV-YYYY-NNNN``, numbered per team and calendar year.
        The sequence continues from the highest suffix in use, so numbers
        freed by deleted drafts are never handed out again while a later
        number is still live.  Acquires a transaction-scoped advisory lock
        on PostgreSQL so two concurrent requests cannot pick the same number.
        """
        if _dialect_name(self._session) == "postgresql":
            # crc32 is stable across processes; hash() is salted per interpreter.
            lock_id = zlib.crc32(f"invoice_number_{self._team_id}".encode()) & 0x7FFFFFFF
            await self._session.execute(text("SELECT pg_advisory_xact_lock(:id)"), {"id": lock_id})

        year = (today or datetime.now(UTC).date()).year
        prefix = f"INV-{year}-"
        suffix = cast(func.substr(InvoiceTable.invoice_number, len(prefix) + 1), Integer)
        stmt = select(func.max(suffix)).where(
            InvoiceTable.team_id == self._team_id,
            InvoiceTable.invoice_number.like(f"{_escape_like(prefix)}%", escape="\\"),
        )
        result = await self._session.execute(stmt)
        highest = result.scalar_one_or_none() or 0
        return f"{prefix}{int(highest) + 1:04d}"

    async def create(self, **fields: Any) -> InvoiceTable:
        row = InvoiceTable(team_id=self._team_id, **fields)
        self._session.add(row)
        await self._session.flush()
        return row

    async def update(self, invoice: InvoiceTable, **fields: Any) -> InvoiceTable:
        for key, value in fields.items():
            setattr(invoice, key, value)
        await self._session.flush()
        return invoice

    async def delete(self, invoice: InvoiceTable) -> None:
        await self._session.execute(delete(InvoiceTimeEntryTable).where(InvoiceTimeEntryTable.invoice_id == invoice.id))
        await self._session.delete(invoice)
        await self._session.flush()
