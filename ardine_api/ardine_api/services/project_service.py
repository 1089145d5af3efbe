"""Project, project-member, and task operations.

Visibility follows the effective project role: team OWNER/ADMIN/VIEWER/
BILLING see every project in the team, while MEMBERs and callers with
no team role only see projects they are explicitly assigned to.  Reads
of a project the caller cannot see return ``None`` rather than raising,
so its existence is not revealed.
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from datetime import UTC, datetime
from typing import Any

from ardine_core.auth.context import RequestContext
from ardine_core.auth.permissions import can_view_project
from ardine_core.auth.roles import ProjectRole, ProjectStatus, TeamRole, parse_project_role
from ardine_core.errors import ConflictError, NotFoundError, ValidationError, error_mapping
from ardine_core.query.builder import Fragment, ListQueryOptions, build_list_query, execute_list_query
from ardine_core.state.repository import ClientRepository, ProjectRepository, TeamMembershipRepository
from ardine_core.state.tables import ProjectTable, ProjectTaskTable, as_dict
from ardine_core.timekeeping import summarize_time_entries

logger = logging.getLogger(__name__)

PROJECT_SORT_FIELDS = ("name", "code", "status", "created_at", "updated_at", "start_date", "due_date")
PROJECT_SEARCH_COLUMNS = ("name", "code", "description")

_MEMBERSHIP_FILTER = "EXISTS (SELECT 1 FROM project_members WHERE project_id = projects.id AND user_id = ?)"

# Team roles that see every project without an explicit assignment.
_TEAM_WIDE_ROLES = frozenset({TeamRole.OWNER, TeamRole.ADMIN, TeamRole.VIEWER, TeamRole.BILLING})

_TASK_STATUSES = frozenset({"active", "on_hold", "completed", "archived"})


def _require_role(value: ProjectRole | str) -> ProjectRole:
    role = parse_project_role(value)
    if role is None:
        raise ValidationError("Project role is required", field="role")
    return role


class ProjectService:
    """Project reads and writes for the caller's active team.

    Parameters
    ----------
    ctx:
        Request context carrying identity, team role, and loaders.
    default_limit / max_limit:
        Pagination bounds applied to list operations.
    """

    def __init__(self, ctx: RequestContext, *, default_limit: int = 25, max_limit: int = 100) -> None:
        self._ctx = ctx
        self._default_limit = default_limit
        self._max_limit = max_limit

    def _repo(self) -> ProjectRepository:
        return ProjectRepository(self._ctx.session, self._ctx.require_team())

    # -- reads ---------------------------------------------------------------

    async def list_projects(
        self,
        *,
        status: str | None = None,
        client_id: str | None = None,
        search: str | None = None,
        order_by: str | None = None,
        order: str | None = None,
        offset: int | None = None,
        limit: int | None = None,
        include_client: bool = False,
    ) -> dict[str, Any]:
        """Return one page of projects visible to the caller.

        ``status="archived"`` selects projects with ``archived_at`` set;
        any other status is matched exactly.  With ``include_client``,
        each row gains a ``client`` dict resolved through one batched
        lookup for the whole page.
        """
        ctx = self._ctx
        team_id = ctx.require_team()

        filters = [Fragment.of("team_id = ?", team_id)]
        if not ctx.is_instance_admin and ctx.team_role not in _TEAM_WIDE_ROLES:
            filters.append(Fragment.of(_MEMBERSHIP_FILTER, ctx.require_auth()))
        if status == ProjectStatus.ARCHIVED.value:
            filters.append(Fragment.of("archived_at IS NOT NULL"))
        elif status:
            filters.append(Fragment.of("status = ?", status))
        if client_id:
            filters.append(Fragment.of("client_id = ?", client_id))

        query = build_list_query(
            ListQueryOptions(
                select="*",
                source="projects",
                filters=filters,
                search=search,
                search_columns=PROJECT_SEARCH_COLUMNS,
                order_by=order_by,
                order=order,
                allowed_sort=PROJECT_SORT_FIELDS,
                default_sort="created_at",
                offset=offset,
                limit=limit,
                default_limit=self._default_limit,
                max_limit=self._max_limit,
            )
        )
        page = await execute_list_query(ctx.session, query, ProjectTable.__table__)

        if include_client:
            client_ids = list(dict.fromkeys(row["client_id"] for row in page.rows if row["client_id"]))
            clients = dict(zip(client_ids, await ctx.loaders.clients.load_many(client_ids), strict=True))
            for row in page.rows:
                client = clients.get(row["client_id"])
                row["client"] = as_dict(client) if client is not None else None

        return {"items": page.rows, "page_info": asdict(page.page_info)}

    async def _visible(self, project_id: str) -> tuple[ProjectTable, ProjectRole] | None:
        ctx = self._ctx
        ctx.require_team()
        project = await ctx.loaders.projects.load(project_id)
        if project is None:
            return None
        if not ctx.is_instance_admin and project.team_id != ctx.team_id:
            return None
        role = await ctx.get_effective_project_role(project.id)
        if role is None or not can_view_project(role):
            return None
        return project, role

    async def get_project(self, project_id: str) -> dict[str, Any] | None:
        """Return the project, or ``None`` when missing or not visible."""
        visible = await self._visible(project_id)
        if visible is None:
            return None
        return as_dict(visible[0])

    async def get_project_details(self, project_id: str) -> dict[str, Any]:
        """Return the project with its client, members, tasks, and time totals.

        Every nested relation goes through the request loaders, so the
        tasks' assignees and tracked time cost one query each no matter
        how many tasks the project has.
        """
        visible = await self._visible(project_id)
        if visible is None:
            raise NotFoundError("Project not found")
        project, role = visible

        loaders = self._ctx.loaders
        client = await loaders.clients.load(project.client_id) if project.client_id else None
        members = await loaders.members_by_project_id.load(project.id)
        entries = await loaders.time_entries_by_project_id.load(project.id)
        return {
            **as_dict(project),
            "client": as_dict(client) if client is not None else None,
            "members": [as_dict(member) for member in members],
            "tasks": await self._task_views(project.id),
            "time_summary": asdict(summarize_time_entries(entries)),
            "effective_role": role.value,
        }

    async def _task_views(self, project_id: str) -> list[dict[str, Any]]:
        loaders = self._ctx.loaders
        tasks = sorted(
            await loaders.tasks_by_project_id.load(project_id),
            key=lambda task: (task.order_index is None, task.order_index or 0, task.created_at),
        )
        task_ids = [task.id for task in tasks]
        assignees = await loaders.assignees_by_task_id.load_many(task_ids)
        entries = await loaders.time_entries_by_task_id.load_many(task_ids)
        return [
            {
                **as_dict(task),
                "assignee_ids": [assignee.user_id for assignee in task_assignees],
                "tracked_seconds": summarize_time_entries(task_entries).total_seconds,
            }
            for task, task_assignees, task_entries in zip(tasks, assignees, entries, strict=True)
        ]

    async def list_tasks(self, project_id: str) -> dict[str, Any]:
        """Tasks of a visible project in display order (``order_index``)."""
        visible = await self._visible(project_id)
        if visible is None:
            raise NotFoundError("Project not found")
        return {"items": await self._task_views(visible[0].id)}

    # -- writes --------------------------------------------------------------

    async def _check_client(self, client_id: str | None) -> None:
        if client_id is None:
            return
        client = await ClientRepository(self._ctx.session, self._ctx.require_team()).get(client_id)
        if client is None:
            raise ValidationError("Client not found in this team", field="clientId")

    async def create_project(self, name: str, **fields: Any) -> dict[str, Any]:
        self._ctx.require_team_management()
        if not name or not name.strip():
            raise ValidationError("Project name is required", field="name")
        await self._check_client(fields.get("client_id"))

        async with error_mapping():
            project = await self._repo().create(name, **fields)
        logger.info("Created project=%s team=%s", project.id, project.team_id)
        return as_dict(project)

    async def update_project(self, project_id: str, **fields: Any) -> dict[str, Any]:
        """Apply the given field changes; requires project MANAGER."""
        ctx = self._ctx
        project = await ctx.load_project(project_id)
        await ctx.require_project_role(project.id, [ProjectRole.MANAGER])
        if "name" in fields and (fields["name"] is None or not fields["name"].strip()):
            raise ValidationError("Project name is required", field="name")
        if "client_id" in fields:
            await self._check_client(fields["client_id"])

        async with error_mapping():
            await self._repo().update(project, **fields)
        ctx.loaders.projects.clear(project.id)
        return as_dict(project)

    async def set_project_status(self, project_id: str, status: ProjectStatus | str) -> dict[str, Any]:
        ctx = self._ctx
        project = await ctx.load_project(project_id)
        await ctx.require_project_role(project.id, [ProjectRole.MANAGER])
        try:
            new_status = ProjectStatus(status)
        except ValueError:
            raise ValidationError(f"Invalid project status: {status}", field="status") from None

        archived_at = project.archived_at
        if new_status is ProjectStatus.ARCHIVED:
            archived_at = archived_at or datetime.now(UTC)
        else:
            archived_at = None

        async with error_mapping():
            await self._repo().update(project, status=new_status.value, archived_at=archived_at)
        ctx.loaders.projects.clear(project.id)
        logger.info("Project=%s status -> %s", project.id, new_status.value)
        return as_dict(project)

    async def delete_project(self, project_id: str) -> None:
        """Delete a project.  Invoiced time entries block the delete."""
        ctx = self._ctx
        ctx.require_team_management()
        project = await ctx.load_project(project_id)
        async with error_mapping():
            await self._repo().delete(project)
        ctx.loaders.projects.clear(project_id)
        logger.info("Deleted project=%s", project_id)

    async def create_task(self, project_id: str, name: str, **fields: Any) -> dict[str, Any]:
        ctx = self._ctx
        project = await ctx.load_project(project_id)
        await ctx.require_project_role(project.id, [ProjectRole.MANAGER])
        if not name or not name.strip():
            raise ValidationError("Task name is required", field="name")
        async with error_mapping():
            task = await self._repo().create_task(project.id, name, **fields)
        ctx.loaders.tasks_by_project_id.clear(project.id)
        return {**as_dict(task), "assignee_ids": [], "tracked_seconds": 0}

    async def _managed_task(self, project_id: str, task_id: str) -> ProjectTaskTable:
        ctx = self._ctx
        project = await ctx.load_project(project_id)
        await ctx.require_project_role(project.id, [ProjectRole.MANAGER])
        task = await ctx.loaders.tasks.load(task_id)
        if task is None or task.project_id != project.id:
            raise NotFoundError("Task not found")
        return task

    def _forget_task(self, task: ProjectTaskTable) -> None:
        loaders = self._ctx.loaders
        loaders.tasks.clear(task.id)
        loaders.tasks_by_project_id.clear(task.project_id)
        loaders.assignees_by_task_id.clear(task.id)

    async def _task_view(self, task: ProjectTaskTable) -> dict[str, Any]:
        loaders = self._ctx.loaders
        assignees = await loaders.assignees_by_task_id.load(task.id)
        entries = await loaders.time_entries_by_task_id.load(task.id)
        return {
            **as_dict(task),
            "assignee_ids": [assignee.user_id for assignee in assignees],
            "tracked_seconds": summarize_time_entries(entries).total_seconds,
        }

    async def update_task(self, project_id: str, task_id: str, **fields: Any) -> dict[str, Any]:
        """Edit a task's name, description, status, billability or rate."""
        task = await self._managed_task(project_id, task_id)
        if "name" in fields:
            if fields["name"] is None or not fields["name"].strip():
                raise ValidationError("Task name is required", field="name")
            fields["name"] = fields["name"].strip()
        if "status" in fields and fields["status"] not in _TASK_STATUSES:
            raise ValidationError(f"Invalid task status: {fields['status']}", field="status")
        if "billable" in fields and fields["billable"] is None:
            raise ValidationError("Billable flag is required", field="billable")

        async with error_mapping():
            await self._repo().update_task(task, **fields)
        self._forget_task(task)
        return await self._task_view(task)

    async def delete_task(self, project_id: str, task_id: str) -> None:
        """Delete a task.  Its time entries stay on the project, untasked."""
        task = await self._managed_task(project_id, task_id)
        async with error_mapping():
            await self._repo().delete_task(task)
        self._forget_task(task)
        self._ctx.loaders.time_entries_by_task_id.clear(task.id)
        logger.info("Deleted task=%s project=%s", task.id, task.project_id)

    async def reorder_tasks(self, project_id: str, task_ids: list[str]) -> dict[str, Any]:
        """Give each listed task its position as ``order_index``.

        Ids of tasks in other projects are ignored; unlisted tasks keep
        their current index.
        """
        ctx = self._ctx
        project = await ctx.load_project(project_id)
        await ctx.require_project_role(project.id, [ProjectRole.MANAGER])
        if len(set(task_ids)) != len(task_ids):
            raise ValidationError("Task order contains duplicates", field="taskIds")

        async with error_mapping():
            await self._repo().reorder_tasks(project.id, task_ids)
        ctx.loaders.tasks_by_project_id.clear(project.id)
        for task_id in task_ids:
            ctx.loaders.tasks.clear(task_id)
        return {"items": await self._task_views(project.id)}

    async def add_task_assignee(self, project_id: str, task_id: str, user_id: str) -> dict[str, Any]:
        ctx = self._ctx
        task = await self._managed_task(project_id, task_id)
        membership = await TeamMembershipRepository(ctx.session, task.team_id).get(user_id)
        if membership is None:
            raise ValidationError("User is not a member of this team", field="userId")

        repo = self._repo()
        if await repo.get_assignee(task.id, user_id) is not None:
            raise ConflictError("User is already assigned to this task")
        async with error_mapping():
            await repo.add_assignee(task.id, user_id)
        ctx.loaders.assignees_by_task_id.clear(task.id)
        logger.info("Assigned user=%s to task=%s", user_id, task.id)
        return await self._task_view(task)

    async def remove_task_assignee(self, project_id: str, task_id: str, user_id: str) -> None:
        ctx = self._ctx
        task = await self._managed_task(project_id, task_id)
        repo = self._repo()
        assignee = await repo.get_assignee(task.id, user_id)
        if assignee is None:
            raise NotFoundError("Task assignee not found")
        async with error_mapping():
            await repo.remove_assignee(assignee)
        ctx.loaders.assignees_by_task_id.clear(task.id)
        logger.info("Unassigned user=%s from task=%s", user_id, task.id)

    # -- members -------------------------------------------------------------

    async def add_project_member(
        self,
        project_id: str,
        user_id: str,
        role: ProjectRole | str = ProjectRole.CONTRIBUTOR,
    ) -> dict[str, Any]:
        ctx = self._ctx
        project = await ctx.load_project(project_id)
        await ctx.require_project_role(project.id, [ProjectRole.MANAGER])
        project_role = _require_role(role)

        membership = await TeamMembershipRepository(ctx.session, project.team_id).get(user_id)
        if membership is None:
            raise ValidationError("User is not a member of this team", field="userId")

        async with error_mapping():
            member = await self._repo().add_member(project.id, user_id, project_role.value)
        ctx.loaders.clear_project_members(project.id, user_id)
        logger.info("Added user=%s to project=%s as %s", user_id, project.id, project_role.value)
        return as_dict(member)

    async def update_project_member_role(
        self,
        project_id: str,
        user_id: str,
        role: ProjectRole | str,
    ) -> dict[str, Any]:
        ctx = self._ctx
        project = await ctx.load_project(project_id)
        await ctx.require_project_role(project.id, [ProjectRole.MANAGER])
        project_role = _require_role(role)

        repo = self._repo()
        member = await repo.get_member(project.id, user_id)
        if member is None:
            raise NotFoundError("Project member not found")
        async with error_mapping():
            member.role = project_role.value
            await ctx.session.flush()
        ctx.loaders.clear_project_members(project.id, user_id)
        return as_dict(member)

    async def remove_project_member(self, project_id: str, user_id: str) -> None:
        ctx = self._ctx
        project = await ctx.load_project(project_id)
        await ctx.require_project_role(project.id, [ProjectRole.MANAGER])

        repo = self._repo()
        member = await repo.get_member(project.id, user_id)
        if member is None:
            raise NotFoundError("Project member not found")
        async with error_mapping():
            await repo.remove_member(member)
        ctx.loaders.clear_project_members(project.id, user_id)
        logger.info("Removed user=%s from project=%s", user_id, project.id)
