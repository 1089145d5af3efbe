"""Time entry endpoints: timers, manual entries, and the filtered list."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Query, status

from ardine_api.dependencies import ContextDep, SettingsDep
from ardine_api.schemas import (
    StartTimerRequest,
    TimeEntryCreateRequest,
    TimeEntryListResponse,
    TimeEntryResponse,
    TimeEntryUpdateRequest,
)
from ardine_api.services.time_entry_service import TimeEntryService

router = APIRouter(prefix="/time-entries", tags=["time-entries"])


def _service(ctx: ContextDep, settings: SettingsDep) -> TimeEntryService:
    return TimeEntryService(ctx, default_limit=settings.default_page_limit, max_limit=settings.max_page_limit)


@router.get("", response_model=TimeEntryListResponse)
async def list_time_entries(
    ctx: ContextDep,
    settings: SettingsDep,
    project_id: str | None = None,
    task_id: str | None = None,
    user_id: str | None = None,
    client_id: str | None = None,
    billable: bool | None = None,
    uninvoiced_only: bool = False,
    date_from: datetime | None = Query(default=None, alias="from"),
    date_to: datetime | None = Query(default=None, alias="to"),
    order_by: str | None = Query(default=None, alias="orderBy"),
    order: str | None = None,
    offset: int = 0,
    limit: int | None = None,
) -> dict[str, Any]:
    return await _service(ctx, settings).list_time_entries(
        project_id=project_id,
        task_id=task_id,
        user_id=user_id,
        client_id=client_id,
        billable=billable,
        uninvoiced_only=uninvoiced_only,
        date_from=date_from,
        date_to=date_to,
        order_by=order_by,
        order=order,
        offset=offset,
        limit=limit,
    )


@router.get("/running", response_model=TimeEntryResponse | None)
async def get_running_timer(ctx: ContextDep, settings: SettingsDep) -> dict[str, Any] | None:
    return await _service(ctx, settings).get_running_timer()


@router.post("/timer", response_model=TimeEntryResponse, status_code=status.HTTP_201_CREATED)
async def start_timer(body: StartTimerRequest, ctx: ContextDep, settings: SettingsDep) -> dict[str, Any]:
    return await _service(ctx, settings).start_timer(
        body.project_id,
        task_id=body.task_id,
        note=body.note,
        billable=body.billable,
    )


@router.post("/{entry_id}/stop", response_model=TimeEntryResponse)
async def stop_timer(entry_id: str, ctx: ContextDep, settings: SettingsDep) -> dict[str, Any]:
    return await _service(ctx, settings).stop_timer(entry_id)


@router.post("", response_model=TimeEntryResponse, status_code=status.HTTP_201_CREATED)
async def create_time_entry(body: TimeEntryCreateRequest, ctx: ContextDep, settings: SettingsDep) -> dict[str, Any]:
    return await _service(ctx, settings).create_time_entry(
        body.project_id,
        started_at=body.started_at,
        stopped_at=body.stopped_at,
        task_id=body.task_id,
        note=body.note,
        billable=body.billable,
    )


@router.get("/{entry_id}", response_model=TimeEntryResponse)
async def get_time_entry(entry_id: str, ctx: ContextDep, settings: SettingsDep) -> dict[str, Any]:
    return await _service(ctx, settings).get_time_entry(entry_id)


@router.patch("/{entry_id}", response_model=TimeEntryResponse)
async def update_time_entry(
    entry_id: str,
    body: TimeEntryUpdateRequest,
    ctx: ContextDep,
    settings: SettingsDep,
) -> dict[str, Any]:
    return await _service(ctx, settings).update_time_entry(entry_id, **body.model_dump(exclude_unset=True))


@router.delete("/{entry_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_time_entry(entry_id: str, ctx: ContextDep, settings: SettingsDep) -> None:
    await _service(ctx, settings).delete_time_entry(entry_id)
