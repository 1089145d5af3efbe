"""Invoice endpoints.

All endpoints require invoice access (team OWNER, ADMIN, or BILLING).
Item and time-entry link changes are only accepted on draft invoices
and return the full invoice with recalculated totals.
"""

from __future__ import annotations

from datetime import date
from typing import Any

from fastapi import APIRouter, Query, status

from ardine_api.dependencies import ContextDep, SettingsDep
from ardine_api.schemas import (
    InvoiceCreateRequest,
    InvoiceDetailResponse,
    InvoiceItemCreateRequest,
    InvoiceItemUpdateRequest,
    InvoiceListResponse,
    InvoiceUpdateRequest,
    LinkTimeEntriesRequest,
    MarkPaidRequest,
    RemovedResponse,
)
from ardine_api.services.invoice_service import InvoiceService

router = APIRouter(prefix="/invoices", tags=["invoices"])


def _service(ctx: ContextDep, settings: SettingsDep) -> InvoiceService:
    return InvoiceService(ctx, default_limit=settings.default_page_limit, max_limit=settings.max_page_limit)


@router.get("", response_model=InvoiceListResponse)
async def list_invoices(
    ctx: ContextDep,
    settings: SettingsDep,
    client_id: str | None = None,
    status_filter: str | None = Query(default=None, alias="status"),
    date_from: date | None = Query(default=None, alias="from"),
    date_to: date | None = Query(default=None, alias="to"),
    order_by: str | None = Query(default=None, alias="orderBy"),
    order: str | None = None,
    offset: int = 0,
    limit: int | None = None,
) -> dict[str, Any]:
    return await _service(ctx, settings).list_invoices(
        client_id=client_id,
        status=status_filter,
        date_from=date_from,
        date_to=date_to,
        order_by=order_by,
        order=order,
        offset=offset,
        limit=limit,
    )


@router.post("", response_model=InvoiceDetailResponse, status_code=status.HTTP_201_CREATED)
async def create_invoice(body: InvoiceCreateRequest, ctx: ContextDep, settings: SettingsDep) -> dict[str, Any]:
    return await _service(ctx, settings).create_invoice(
        body.client_id,
        issued_date=body.issued_date,
        due_date=body.due_date,
        tax_rate_percent=body.tax_rate_percent,
        notes=body.notes,
    )


@router.get("/{invoice_id}", response_model=InvoiceDetailResponse)
async def get_invoice(invoice_id: str, ctx: ContextDep, settings: SettingsDep) -> dict[str, Any]:
    return await _service(ctx, settings).get_invoice(invoice_id)


@router.patch("/{invoice_id}", response_model=InvoiceDetailResponse)
async def update_invoice(
    invoice_id: str,
    body: InvoiceUpdateRequest,
    ctx: ContextDep,
    settings: SettingsDep,
) -> dict[str, Any]:
    return await _service(ctx, settings).update_invoice(invoice_id, **body.model_dump(exclude_unset=True))


@router.delete("/{invoice_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_invoice(invoice_id: str, ctx: ContextDep, settings: SettingsDep) -> None:
    await _service(ctx, settings).delete_invoice(invoice_id)


# ---------------------------------------------------------------------------
# Items and time-entry links
# ---------------------------------------------------------------------------


@router.post("/{invoice_id}/items", response_model=InvoiceDetailResponse, status_code=status.HTTP_201_CREATED)
async def add_item(
    invoice_id: str,
    body: InvoiceItemCreateRequest,
    ctx: ContextDep,
    settings: SettingsDep,
) -> dict[str, Any]:
    return await _service(ctx, settings).add_item(
        invoice_id,
        description=body.description,
        quantity=body.quantity,
        rate_cents=body.rate_cents,
        time_entry_ids=body.time_entry_ids,
    )


@router.patch("/items/{item_id}", response_model=InvoiceDetailResponse)
async def update_item(
    item_id: str,
    body: InvoiceItemUpdateRequest,
    ctx: ContextDep,
    settings: SettingsDep,
) -> dict[str, Any]:
    return await _service(ctx, settings).update_item(item_id, **body.model_dump(exclude_unset=True))


@router.delete("/items/{item_id}", response_model=InvoiceDetailResponse)
async def remove_item(item_id: str, ctx: ContextDep, settings: SettingsDep) -> dict[str, Any]:
    return await _service(ctx, settings).remove_item(item_id)


@router.post("/items/{item_id}/time-entries", response_model=InvoiceDetailResponse)
async def link_time_entries(
    item_id: str,
    body: LinkTimeEntriesRequest,
    ctx: ContextDep,
    settings: SettingsDep,
) -> dict[str, Any]:
    return await _service(ctx, settings).link_time_entries(item_id, body.time_entry_ids)


@router.delete("/{invoice_id}/time-entries/{time_entry_id}", response_model=RemovedResponse)
async def unlink_time_entry(
    invoice_id: str,
    time_entry_id: str,
    ctx: ContextDep,
    settings: SettingsDep,
) -> dict[str, Any]:
    removed = await _service(ctx, settings).unlink_time_entry(invoice_id, time_entry_id)
    return {"removed": removed}


# ---------------------------------------------------------------------------
# Status transitions
# ---------------------------------------------------------------------------


@router.post("/{invoice_id}/send", response_model=InvoiceDetailResponse)
async def mark_sent(invoice_id: str, ctx: ContextDep, settings: SettingsDep) -> dict[str, Any]:
    return await _service(ctx, settings).mark_sent(invoice_id)


@router.post("/{invoice_id}/mark-paid", response_model=InvoiceDetailResponse)
async def mark_paid(
    invoice_id: str,
    ctx: ContextDep,
    settings: SettingsDep,
    body: MarkPaidRequest | None = None,
) -> dict[str, Any]:
    return await _service(ctx, settings).mark_paid(invoice_id, body.paid_date if body else None)


@router.post("/{invoice_id}/cancel", response_model=InvoiceDetailResponse)
async def cancel_invoice(invoice_id: str, ctx: ContextDep, settings: SettingsDep) -> dict[str, Any]:
    return await _service(ctx, settings).cancel(invoice_id)
