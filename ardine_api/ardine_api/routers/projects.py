"""Project endpoints: list, details, lifecycle, tasks, and members.

Reads are filtered to what the caller's effective project role allows.
Creation and deletion require team OWNER/ADMIN; edits, tasks, and
membership changes require project MANAGER.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Query, status

from ardine_api.dependencies import ContextDep, SettingsDep
from ardine_api.schemas import (
    ProjectCreateRequest,
    ProjectDetailResponse,
    ProjectListResponse,
    ProjectMemberRequest,
    ProjectMemberResponse,
    ProjectMemberRoleRequest,
    ProjectResponse,
    ProjectStatusRequest,
    ProjectUpdateRequest,
    TaskAssigneeRequest,
    TaskCreateRequest,
    TaskListResponse,
    TaskReorderRequest,
    TaskResponse,
    TaskUpdateRequest,
)
from ardine_api.services.project_service import ProjectService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/projects", tags=["projects"])


def _service(ctx: ContextDep, settings: SettingsDep) -> ProjectService:
    return ProjectService(ctx, default_limit=settings.default_page_limit, max_limit=settings.max_page_limit)


@router.get("", response_model=ProjectListResponse)
async def list_projects(
    ctx: ContextDep,
    settings: SettingsDep,
    status_filter: str | None = Query(default=None, alias="status"),
    client_id: str | None = None,
    search: str | None = None,
    order_by: str | None = Query(default=None, alias="orderBy"),
    order: str | None = None,
    offset: int = 0,
    limit: int | None = None,
    include_client: bool = False,
) -> dict[str, Any]:
    return await _service(ctx, settings).list_projects(
        status=status_filter,
        client_id=client_id,
        search=search,
        order_by=order_by,
        order=order,
        offset=offset,
        limit=limit,
        include_client=include_client,
    )


@router.post("", response_model=ProjectResponse, status_code=status.HTTP_201_CREATED)
async def create_project(body: ProjectCreateRequest, ctx: ContextDep, settings: SettingsDep) -> dict[str, Any]:
    fields = body.model_dump(exclude={"name"})
    return await _service(ctx, settings).create_project(body.name, **fields)


@router.get("/{project_id}", response_model=ProjectDetailResponse)
async def get_project(project_id: str, ctx: ContextDep, settings: SettingsDep) -> dict[str, Any]:
    return await _service(ctx, settings).get_project_details(project_id)


@router.patch("/{project_id}", response_model=ProjectResponse)
async def update_project(
    project_id: str,
    body: ProjectUpdateRequest,
    ctx: ContextDep,
    settings: SettingsDep,
) -> dict[str, Any]:
    return await _service(ctx, settings).update_project(project_id, **body.model_dump(exclude_unset=True))


@router.put("/{project_id}/status", response_model=ProjectResponse)
async def set_project_status(
    project_id: str,
    body: ProjectStatusRequest,
    ctx: ContextDep,
    settings: SettingsDep,
) -> dict[str, Any]:
    return await _service(ctx, settings).set_project_status(project_id, body.status)


@router.delete("/{project_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_project(project_id: str, ctx: ContextDep, settings: SettingsDep) -> None:
    await _service(ctx, settings).delete_project(project_id)


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


@router.post("/{project_id}/tasks", response_model=TaskResponse, status_code=status.HTTP_201_CREATED)
async def create_task(
    project_id: str,
    body: TaskCreateRequest,
    ctx: ContextDep,
    settings: SettingsDep,
) -> dict[str, Any]:
    fields = body.model_dump(exclude={"name"})
    return await _service(ctx, settings).create_task(project_id, body.name, **fields)


@router.get("/{project_id}/tasks", response_model=TaskListResponse)
async def list_tasks(project_id: str, ctx: ContextDep, settings: SettingsDep) -> dict[str, Any]:
    return await _service(ctx, settings).list_tasks(project_id)


@router.put("/{project_id}/tasks/order", response_model=TaskListResponse)
async def reorder_tasks(
    project_id: str,
    body: TaskReorderRequest,
    ctx: ContextDep,
    settings: SettingsDep,
) -> dict[str, Any]:
    """Set task display order; each listed task takes its position as index."""
    return await _service(ctx, settings).reorder_tasks(project_id, body.task_ids)


@router.patch("/{project_id}/tasks/{task_id}", response_model=TaskResponse)
async def update_task(
    project_id: str,
    task_id: str,
    body: TaskUpdateRequest,
    ctx: ContextDep,
    settings: SettingsDep,
) -> dict[str, Any]:
    return await _service(ctx, settings).update_task(project_id, task_id, **body.model_dump(exclude_unset=True))


@router.delete("/{project_id}/tasks/{task_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_task(project_id: str, task_id: str, ctx: ContextDep, settings: SettingsDep) -> None:
    await _service(ctx, settings).delete_task(project_id, task_id)


@router.post(
    "/{project_id}/tasks/{task_id}/assignees",
    response_model=TaskResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_task_assignee(
    project_id: str,
    task_id: str,
    body: TaskAssigneeRequest,
    ctx: ContextDep,
    settings: SettingsDep,
) -> dict[str, Any]:
    return await _service(ctx, settings).add_task_assignee(project_id, task_id, body.user_id)


@router.delete("/{project_id}/tasks/{task_id}/assignees/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_task_assignee(
    project_id: str,
    task_id: str,
    user_id: str,
    ctx: ContextDep,
    settings: SettingsDep,
) -> None:
    await _service(ctx, settings).remove_task_assignee(project_id, task_id, user_id)


# ---------------------------------------------------------------------------
# Members
# ---------------------------------------------------------------------------


@router.post(
    "/{project_id}/members",
    response_model=ProjectMemberResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_member(
    project_id: str,
    body: ProjectMemberRequest,
    ctx: ContextDep,
    settings: SettingsDep,
) -> dict[str, Any]:
    return await _service(ctx, settings).add_project_member(project_id, body.user_id, body.role)


@router.patch("/{project_id}/members/{user_id}", response_model=ProjectMemberResponse)
async def update_member_role(
    project_id: str,
    user_id: str,
    body: ProjectMemberRoleRequest,
    ctx: ContextDep,
    settings: SettingsDep,
) -> dict[str, Any]:
    return await _service(ctx, settings).update_project_member_role(project_id, user_id, body.role)


@router.delete("/{project_id}/members/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_member(project_id: str, user_id: str, ctx: ContextDep, settings: SettingsDep) -> None:
    await _service(ctx, settings).remove_project_member(project_id, user_id)
