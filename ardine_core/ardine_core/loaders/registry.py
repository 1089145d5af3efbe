"""Request-scoped registry of entity and relation loaders.

One :class:`Loaders` instance is built per request alongside the
request's ``AsyncSession`` and discarded with it.  There is no process
wide cache: every request re-fetches what it needs.

All loaders share one ``asyncio.Lock`` because an ``AsyncSession``
must not run two statements concurrently.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import Any, TypeVar

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import InstrumentedAttribute

from ardine_core.loaders.batch import BatchLoader
from ardine_core.state.tables import (
    Base,
    ClientTable,
    InvoiceItemTable,
    InvoiceTable,
    ProjectMemberTable,
    ProjectTable,
    ProjectTaskTable,
    TaskAssigneeTable,
    TeamTable,
    TimeEntryTable,
    UserTable,
)

T = TypeVar("T", bound=Base)

ProjectUserKey = tuple[str, str]


class Loaders:
    """Typed by-id and by-foreign-key loaders for one request."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session
        self._lock = asyncio.Lock()
        self.query_count = 0

        # Entities by primary key.
        self.teams = self._by_id(TeamTable)
        self.users = self._by_id(UserTable)
        self.clients = self._by_id(ClientTable)
        self.projects = self._by_id(ProjectTable)
        self.tasks = self._by_id(ProjectTaskTable)
        self.time_entries = self._by_id(TimeEntryTable)
        self.invoices = self._by_id(InvoiceTable)
        self.invoice_items = self._by_id(InvoiceItemTable)

        # One-to-many relations.
        self.projects_by_client_id = self._by_foreign_key(ProjectTable, ProjectTable.client_id)
        self.tasks_by_project_id = self._by_foreign_key(ProjectTaskTable, ProjectTaskTable.project_id)
        self.invoices_by_client_id = self._by_foreign_key(InvoiceTable, InvoiceTable.client_id)
        self.members_by_project_id = self._by_foreign_key(ProjectMemberTable, ProjectMemberTable.project_id)
        self.assignees_by_task_id = self._by_foreign_key(TaskAssigneeTable, TaskAssigneeTable.task_id)
        self.invoice_items_by_invoice_id = self._by_foreign_key(InvoiceItemTable, InvoiceItemTable.invoice_id)
        self.time_entries_by_project_id = self._by_foreign_key(TimeEntryTable, TimeEntryTable.project_id)
        self.time_entries_by_task_id = self._by_foreign_key(TimeEntryTable, TimeEntryTable.task_id)
        self.time_entries_by_client_id = self._by_foreign_key(TimeEntryTable, TimeEntryTable.client_id)

        # Project role of a user, keyed by (project_id, user_id).
        self.project_role: BatchLoader[ProjectUserKey, str | None] = BatchLoader(
            self._load_project_roles, name="project_role"
        )

    async def _fetch(self, stmt: Any) -> list[Any]:
        async with self._lock:
            self.query_count += 1
            result = await self._session.execute(stmt)
            return list(result.scalars().all())

    def _by_id(self, table: type[T]) -> BatchLoader[str, T | None]:
        async def batch(ids: list[str]) -> list[T | None]:
            rows = await self._fetch(select(table).where(table.id.in_(ids)))  # type: ignore[attr-defined]
            by_id = {row.id: row for row in rows}
            return [by_id.get(entity_id) for entity_id in ids]

        return BatchLoader(batch, name=f"{table.__tablename__}_by_id")

    def _by_foreign_key(
        self,
        table: type[T],
        column: InstrumentedAttribute[Any],
    ) -> BatchLoader[str, list[T]]:
        async def batch(keys: list[str]) -> list[list[T]]:
            stmt = (
                select(table)
                .where(column.in_(keys))
                .order_by(table.created_at, table.id)  # type: ignore[attr-defined]
            )
            grouped: dict[str, list[T]] = defaultdict(list)
            for row in await self._fetch(stmt):
                grouped[getattr(row, column.key)].append(row)
            return [grouped.get(key, []) for key in keys]

        return BatchLoader(batch, name=f"{table.__tablename__}_by_{column.key}")

    async def _load_project_roles(self, keys: list[ProjectUserKey]) -> list[str | None]:
        project_ids = {project_id for project_id, _ in keys}
        user_ids = {user_id for _, user_id in keys}
        stmt = select(ProjectMemberTable).where(
            ProjectMemberTable.project_id.in_(project_ids),
            ProjectMemberTable.user_id.in_(user_ids),
        )
        roles = {(row.project_id, row.user_id): row.role for row in await self._fetch(stmt)}
        return [roles.get(key) for key in keys]

    def clear_project_members(self, project_id: str, user_id: str | None = None) -> None:
        """Invalidate member caches after a project membership write."""
        self.members_by_project_id.clear(project_id)
        if user_id is not None:
            self.project_role.clear((project_id, user_id))
