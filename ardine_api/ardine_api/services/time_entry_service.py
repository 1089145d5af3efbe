"""Time tracking: timers, manual entries, edits, and the filtered list.

Billing figures are computed once, when an entry is stopped (or created
or edited with an end time), and stored on the row::

    duration_seconds = floor(stopped_at - started_at)
    hourly_rate      = task -> project -> client -> team default
    amount_cents     = round(hours * rate)   if billable and a rate exists

Entries that have been linked to an invoice are frozen.
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from datetime import UTC, date, datetime
from typing import Any

from ardine_core.auth.context import RequestContext
from ardine_core.auth.roles import ProjectRole, TeamRole
from ardine_core.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError, error_mapping
from ardine_core.query.builder import Fragment, ListQueryOptions, build_list_query, execute_list_query
from ardine_core.state.repository import TimeEntryRepository
from ardine_core.state.tables import ProjectTable, TimeEntryTable, as_dict
from ardine_core.timekeeping import duration_seconds, effective_rate_cents, entry_amount_cents

logger = logging.getLogger(__name__)

TIME_ENTRY_SORT_FIELDS = ("started_at", "stopped_at", "duration_seconds", "created_at")

_PROJECT_MEMBERSHIP_FILTER = (
    "EXISTS (SELECT 1 FROM project_members WHERE project_id = time_entries.project_id AND user_id = ?)"
)
_TEAM_WIDE_ROLES = frozenset({TeamRole.OWNER, TeamRole.ADMIN, TeamRole.VIEWER, TeamRole.BILLING})
_LOGGING_ROLES = (ProjectRole.MANAGER, ProjectRole.CONTRIBUTOR)

_UNSET: Any = object()


def _utc(value: datetime) -> datetime:
    """Treat naive timestamps as UTC."""
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


def _range_bound(value: date | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _utc(value)
    return datetime(value.year, value.month, value.day, tzinfo=UTC)


class TimeEntryService:
    """Time entry operations scoped to the caller's active team."""

    def __init__(self, ctx: RequestContext, *, default_limit: int = 25, max_limit: int = 100) -> None:
        self._ctx = ctx
        self._default_limit = default_limit
        self._max_limit = max_limit

    def _repo(self) -> TimeEntryRepository:
        return TimeEntryRepository(self._ctx.session, self._ctx.require_team())

    # -- list ----------------------------------------------------------------

    async def list_time_entries(
        self,
        *,
        project_id: str | None = None,
        task_id: str | None = None,
        user_id: str | None = None,
        client_id: str | None = None,
        billable: bool | None = None,
        uninvoiced_only: bool = False,
        date_from: date | datetime | None = None,
        date_to: date | datetime | None = None,
        order_by: str | None = None,
        order: str | None = None,
        offset: int | None = None,
        limit: int | None = None,
    ) -> dict[str, Any]:
        """Return one page of time entries visible to the caller.

        MEMBERs and callers without a team role only see entries on
        projects they are assigned to.
        """
        ctx = self._ctx
        team_id = ctx.require_team()

        filters = [Fragment.of("team_id = ?", team_id)]
        if not ctx.is_instance_admin and ctx.team_role not in _TEAM_WIDE_ROLES:
            filters.append(Fragment.of(_PROJECT_MEMBERSHIP_FILTER, ctx.require_auth()))
        if project_id:
            filters.append(Fragment.of("project_id = ?", project_id))
        if task_id:
            filters.append(Fragment.of("task_id = ?", task_id))
        if user_id:
            filters.append(Fragment.of("user_id = ?", user_id))
        if client_id:
            filters.append(Fragment.of("client_id = ?", client_id))
        if billable is not None:
            filters.append(Fragment.of("billable = ?", billable))
        if uninvoiced_only:
            filters.append(Fragment.of("id NOT IN (SELECT time_entry_id FROM invoice_time_entries)"))

        query = build_list_query(
            ListQueryOptions(
                select="*",
                source="time_entries",
                filters=filters,
                date_from=_range_bound(date_from),
                date_to=_range_bound(date_to),
                date_column="started_at",
                order_by=order_by,
                order=order,
                allowed_sort=TIME_ENTRY_SORT_FIELDS,
                default_sort="started_at",
                offset=offset,
                limit=limit,
                default_limit=self._default_limit,
                max_limit=self._max_limit,
            )
        )
        page = await execute_list_query(ctx.session, query, TimeEntryTable.__table__)
        return {"items": page.rows, "page_info": asdict(page.page_info)}

    async def get_time_entry(self, entry_id: str) -> dict[str, Any]:
        entry = await self._load_entry(entry_id)
        role = await self._ctx.get_effective_project_role(entry.project_id)
        if role is None:
            raise NotFoundError("Time entry not found")
        return as_dict(entry)

    # -- helpers -------------------------------------------------------------

    async def _load_entry(self, entry_id: str) -> TimeEntryTable:
        ctx = self._ctx
        ctx.require_auth()
        entry = await ctx.loaders.time_entries.load(entry_id)
        if entry is None:
            raise NotFoundError("Time entry not found")
        ctx.require_team_access(entry.team_id)
        return entry

    async def _require_can_log(self, project_id: str) -> ProjectTable:
        ctx = self._ctx
        project = await ctx.load_project(project_id)
        role = await ctx.get_effective_project_role(project.id)
        if role not in _LOGGING_ROLES:
            logger.info("Time logging denied: user=%s project=%s", ctx.user_id, project.id)
            raise ForbiddenError("You do not have permission to log time on this project")
        return project

    async def _check_task(self, task_id: str | None, project_id: str) -> None:
        if task_id is None:
            return
        task = await self._ctx.loaders.tasks.load(task_id)
        if task is None or task.project_id != project_id:
            raise ValidationError("Task does not belong to the specified project", field="taskId")

    async def _require_can_edit(self, entry: TimeEntryTable) -> None:
        """MANAGERs edit any entry on the project, CONTRIBUTORs only their own."""
        ctx = self._ctx
        role = await ctx.get_effective_project_role(entry.project_id)
        if role is None:
            raise ForbiddenError("You do not have access to this project")
        if role is ProjectRole.VIEWER:
            raise ForbiddenError("Viewers cannot edit time entries")
        if role is ProjectRole.CONTRIBUTOR and entry.user_id != ctx.user_id:
            raise ForbiddenError("Contributors can only edit their own time entries")

    async def _require_not_invoiced(self, entry: TimeEntryTable) -> None:
        if await self._repo().is_invoiced(entry.id):
            raise ConflictError("Cannot modify a time entry that is on an invoice")

    async def _finalize(self, entry: TimeEntryTable, project: ProjectTable, stopped_at: datetime) -> None:
        """Stamp duration, rate, and amount onto a stopped entry."""
        loaders = self._ctx.loaders
        seconds = duration_seconds(entry.started_at, stopped_at)

        task = await loaders.tasks.load(entry.task_id) if entry.task_id else None
        client = await loaders.clients.load(project.client_id) if project.client_id else None
        team = await loaders.teams.load(project.team_id)
        resolution = effective_rate_cents(
            task_rate_cents=task.hourly_rate_cents if task is not None else None,
            project_rate_cents=project.default_hourly_rate_cents,
            client_rate_cents=client.default_hourly_rate_cents if client is not None else None,
            team_default_rate_cents=team.default_hourly_rate_cents if team is not None else None,
        )

        entry.stopped_at = stopped_at
        entry.duration_seconds = seconds
        entry.hourly_rate_cents = resolution.rate_cents
        entry.amount_cents = entry_amount_cents(seconds, resolution.rate_cents, entry.billable)
        logger.debug("Entry=%s rate from %s", entry.id, resolution.source.value)

    # -- timers --------------------------------------------------------------

    async def start_timer(
        self,
        project_id: str,
        *,
        task_id: str | None = None,
        note: str | None = None,
        billable: bool = True,
    ) -> dict[str, Any]:
        """Start a running entry for the caller.  One running timer per user."""
        user_id = self._ctx.require_auth()
        project = await self._require_can_log(project_id)
        await self._check_task(task_id, project.id)

        repo = self._repo()
        if await repo.get_running(user_id) is not None:
            raise ConflictError("A timer is already running")

        async with error_mapping():
            entry = await repo.create(
                project_id=project.id,
                task_id=task_id,
                user_id=user_id,
                client_id=project.client_id,
                note=note,
                billable=billable,
                started_at=datetime.now(UTC),
            )
        logger.info("Timer started: entry=%s user=%s project=%s", entry.id, user_id, project.id)
        return as_dict(entry)

    async def stop_timer(self, entry_id: str, *, stopped_at: datetime | None = None) -> dict[str, Any]:
        ctx = self._ctx
        entry = await self._load_entry(entry_id)
        project = await self._require_can_log(entry.project_id)
        if entry.user_id != ctx.user_id:
            raise ForbiddenError("You can only stop your own timers")
        if entry.stopped_at is not None:
            raise ValidationError("Timer already stopped")

        await self._finalize(entry, project, _utc(stopped_at) if stopped_at else datetime.now(UTC))
        async with error_mapping():
            await ctx.session.flush()
        ctx.loaders.time_entries.clear(entry.id)
        logger.info("Timer stopped: entry=%s duration=%ss", entry.id, entry.duration_seconds)
        return as_dict(entry)

    async def get_running_timer(self) -> dict[str, Any] | None:
        entry = await self._repo().get_running(self._ctx.require_auth())
        return as_dict(entry) if entry is not None else None

    # -- manual entries ------------------------------------------------------

    async def create_time_entry(
        self,
        project_id: str,
        *,
        started_at: datetime,
        stopped_at: datetime,
        task_id: str | None = None,
        note: str | None = None,
        billable: bool = True,
    ) -> dict[str, Any]:
        user_id = self._ctx.require_auth()
        project = await self._require_can_log(project_id)
        await self._check_task(task_id, project.id)
        started_at, stopped_at = _utc(started_at), _utc(stopped_at)
        duration_seconds(started_at, stopped_at)

        entry = TimeEntryTable(
            team_id=project.team_id,
            project_id=project.id,
            task_id=task_id,
            user_id=user_id,
            client_id=project.client_id,
            note=note,
            billable=billable,
            started_at=started_at,
        )
        await self._finalize(entry, project, stopped_at)
        async with error_mapping():
            self._ctx.session.add(entry)
            await self._ctx.session.flush()
        logger.info("Time entry created: entry=%s user=%s", entry.id, user_id)
        return as_dict(entry)

    async def update_time_entry(
        self,
        entry_id: str,
        *,
        project_id: str | None = None,
        task_id: str | None = _UNSET,
        note: str | None = _UNSET,
        started_at: datetime | None = None,
        stopped_at: datetime | None = None,
        billable: bool | None = None,
    ) -> dict[str, Any]:
        """Edit an entry and recompute its billing figures.

        ``task_id`` and ``note`` may be set to ``None`` explicitly to
        clear them; omitted arguments keep their current values.
        """
        ctx = self._ctx
        entry = await self._load_entry(entry_id)
        await self._require_can_edit(entry)
        await self._require_not_invoiced(entry)

        target_project_id = project_id or entry.project_id
        if target_project_id != entry.project_id:
            project = await self._require_can_log(target_project_id)
        else:
            project = await ctx.load_project(entry.project_id)

        new_task_id = entry.task_id if task_id is _UNSET else task_id
        await self._check_task(new_task_id, project.id)

        entry.project_id = project.id
        entry.client_id = project.client_id
        entry.task_id = new_task_id
        if note is not _UNSET:
            entry.note = note
        if billable is not None:
            entry.billable = billable
        if started_at is not None:
            entry.started_at = _utc(started_at)

        new_stop = _utc(stopped_at) if stopped_at is not None else entry.stopped_at
        if new_stop is not None:
            await self._finalize(entry, project, new_stop)

        async with error_mapping():
            await ctx.session.flush()
        ctx.loaders.time_entries.clear(entry.id)
        return as_dict(entry)

    async def delete_time_entry(self, entry_id: str) -> None:
        ctx = self._ctx
        entry = await self._load_entry(entry_id)
        await self._require_can_edit(entry)
        await self._require_not_invoiced(entry)
        async with error_mapping():
            await self._repo().delete(entry)
        ctx.loaders.time_entries.clear(entry_id)
        logger.info("Time entry deleted: entry=%s", entry_id)
