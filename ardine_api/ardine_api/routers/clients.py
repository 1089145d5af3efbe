"""Client endpoints.  Any team member reads; OWNER and ADMIN write."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Query, status

from ardine_api.dependencies import ContextDep, SettingsDep
from ardine_api.schemas import (
    ClientCreateRequest,
    ClientDetailResponse,
    ClientListResponse,
    ClientResponse,
    ClientUpdateRequest,
)
from ardine_api.services.client_service import ClientService

router = APIRouter(prefix="/clients", tags=["clients"])


def _service(ctx: ContextDep, settings: SettingsDep) -> ClientService:
    return ClientService(ctx, default_limit=settings.default_page_limit, max_limit=settings.max_page_limit)


@router.get("", response_model=ClientListResponse)
async def list_clients(
    ctx: ContextDep,
    settings: SettingsDep,
    status_filter: str | None = Query(default=None, alias="status"),
    search: str | None = None,
    order_by: str | None = Query(default=None, alias="orderBy"),
    order: str | None = None,
    offset: int = 0,
    limit: int | None = None,
) -> dict[str, Any]:
    return await _service(ctx, settings).list_clients(
        status=status_filter,
        search=search,
        order_by=order_by,
        order=order,
        offset=offset,
        limit=limit,
    )


@router.post("", response_model=ClientResponse, status_code=status.HTTP_201_CREATED)
async def create_client(body: ClientCreateRequest, ctx: ContextDep, settings: SettingsDep) -> dict[str, Any]:
    return await _service(ctx, settings).create_client(body.name, **body.model_dump(exclude={"name"}))


@router.get("/{client_id}", response_model=ClientResponse)
async def get_client(client_id: str, ctx: ContextDep, settings: SettingsDep) -> dict[str, Any]:
    return await _service(ctx, settings).get_client(client_id)


@router.get("/{client_id}/details", response_model=ClientDetailResponse)
async def get_client_details(client_id: str, ctx: ContextDep, settings: SettingsDep) -> dict[str, Any]:
    """Client with its visible projects; billing roles also get invoices and tracked time."""
    return await _service(ctx, settings).get_client_details(client_id)


@router.patch("/{client_id}", response_model=ClientResponse)
async def update_client(
    client_id: str,
    body: ClientUpdateRequest,
    ctx: ContextDep,
    settings: SettingsDep,
) -> dict[str, Any]:
    return await _service(ctx, settings).update_client(client_id, **body.model_dump(exclude_unset=True))


@router.post("/{client_id}/archive", response_model=ClientResponse)
async def archive_client(client_id: str, ctx: ContextDep, settings: SettingsDep) -> dict[str, Any]:
    return await _service(ctx, settings).set_archived(client_id, True)


@router.post("/{client_id}/unarchive", response_model=ClientResponse)
async def unarchive_client(client_id: str, ctx: ContextDep, settings: SettingsDep) -> dict[str, Any]:
    return await _service(ctx, settings).set_archived(client_id, False)


@router.delete("/{client_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_client(client_id: str, ctx: ContextDep, settings: SettingsDep) -> None:
    await _service(ctx, settings).delete_client(client_id)
