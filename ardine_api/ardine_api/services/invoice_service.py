"""Invoice headers, items, and status transitions for one team.

Every operation requires invoice access (team OWNER, ADMIN, or
BILLING).  Item and link mutations delegate to
:class:`~ardine_core.invoicing.engine.InvoiceEngine`, which keeps the
derived totals consistent and rejects double billing.
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from ardine_core.auth.context import RequestContext
from ardine_core.auth.roles import InvoiceStatus
from ardine_core.errors import ConflictError, ValidationError, error_mapping
from ardine_core.invoicing.engine import InvoiceEngine, InvoiceWithItems
from ardine_core.query.builder import Fragment, ListQueryOptions, build_list_query, execute_list_query
from ardine_core.state.repository import ClientRepository, InvoiceRepository
from ardine_core.state.tables import InvoiceTable, as_dict

logger = logging.getLogger(__name__)

INVOICE_SORT_FIELDS = ("invoice_number", "issued_date", "due_date", "total_cents", "created_at")


def _as_date(value: date | datetime | None) -> date | None:
    if isinstance(value, datetime):
        return value.date()
    return value


def _detail(view: InvoiceWithItems) -> dict[str, Any]:
    return {
        **as_dict(view.invoice),
        "items": [
            {**as_dict(item), "time_entry_ids": view.time_entry_ids_by_item.get(item.id, [])}
            for item in view.items
        ],
    }


class InvoiceService:
    """Invoice operations for the caller's active team."""

    def __init__(self, ctx: RequestContext, *, default_limit: int = 25, max_limit: int = 100) -> None:
        self._ctx = ctx
        self._default_limit = default_limit
        self._max_limit = max_limit

    def _engine(self) -> InvoiceEngine:
        self._ctx.require_invoice_access()
        return InvoiceEngine(self._ctx.session, self._ctx.require_team(), self._ctx.loaders)

    # -- reads ---------------------------------------------------------------

    async def list_invoices(
        self,
        *,
        client_id: str | None = None,
        status: str | None = None,
        date_from: date | datetime | None = None,
        date_to: date | datetime | None = None,
        order_by: str | None = None,
        order: str | None = None,
        offset: int | None = None,
        limit: int | None = None,
    ) -> dict[str, Any]:
        ctx = self._ctx
        ctx.require_invoice_access()
        team_id = ctx.require_team()

        filters = [Fragment.of("team_id = ?", team_id)]
        if client_id:
            filters.append(Fragment.of("client_id = ?", client_id))
        if status:
            filters.append(Fragment.of("status = ?", status))

        query = build_list_query(
            ListQueryOptions(
                select="*",
                source="invoices",
                filters=filters,
                date_from=_as_date(date_from),
                date_to=_as_date(date_to),
                date_column="issued_date",
                order_by=order_by,
                order=order,
                allowed_sort=INVOICE_SORT_FIELDS,
                default_sort="issued_date",
                offset=offset,
                limit=limit,
                default_limit=self._default_limit,
                max_limit=self._max_limit,
            )
        )
        page = await execute_list_query(ctx.session, query, InvoiceTable.__table__)
        return {"items": page.rows, "page_info": asdict(page.page_info)}

    async def get_invoice(self, invoice_id: str) -> dict[str, Any]:
        """Return the invoice with its items and linked time entry ids."""
        return _detail(await self._engine().get_invoice_with_items(invoice_id))

    # -- header writes -------------------------------------------------------

    async def create_invoice(
        self,
        client_id: str,
        *,
        issued_date: date,
        due_date: date,
        tax_rate_percent: Decimal | None = None,
        notes: str | None = None,
    ) -> dict[str, Any]:
        """Create an empty draft invoice with the team's next number.

        The tax rate defaults to the team's default when not given.
        """
        ctx = self._ctx
        ctx.require_invoice_access()
        team_id = ctx.require_team()
        if due_date < issued_date:
            raise ValidationError("Due date must be on or after the issue date", field="dueDate")

        client = await ClientRepository(ctx.session, team_id).get(client_id)
        if client is None:
            raise ValidationError("Client not found in this team", field="clientId")
        if tax_rate_percent is None:
            team = await ctx.loaders.teams.load(team_id)
            tax_rate_percent = team.default_tax_rate_percent if team is not None else Decimal("0")

        repo = InvoiceRepository(ctx.session, team_id)
        async with error_mapping():
            number = await repo.get_next_invoice_number(issued_date)
            invoice = await repo.create(
                client_id=client.id,
                invoice_number=number,
                status=InvoiceStatus.DRAFT.value,
                issued_date=issued_date,
                due_date=due_date,
                tax_rate_percent=Decimal(tax_rate_percent).quantize(Decimal("0.01")),
                notes=notes,
            )
        logger.info(
            "Created invoice %s (id=%s) for client=%s",
            number,
            invoice.id,
            client.id,
            extra={"team_id": team_id, "user_id": ctx.user_id, "invoice_id": invoice.id, "invoice_number": number},
        )
        return _detail(InvoiceWithItems(invoice=invoice, items=[]))

    async def update_invoice(
        self,
        invoice_id: str,
        *,
        issued_date: date | None = None,
        due_date: date | None = None,
        tax_rate_percent: Decimal | None = None,
        notes: str | None = None,
    ) -> dict[str, Any]:
        """Edit a draft invoice's header.  A tax change recalculates totals."""
        ctx = self._ctx
        engine = self._engine()
        invoice = await engine.get_invoice(invoice_id, for_update=True)
        if invoice.status != InvoiceStatus.DRAFT.value:
            raise ConflictError("Only draft invoices can be edited")

        new_issued = issued_date or invoice.issued_date
        new_due = due_date or invoice.due_date
        if new_due < new_issued:
            raise ValidationError("Due date must be on or after the issue date", field="dueDate")

        fields: dict[str, Any] = {"issued_date": new_issued, "due_date": new_due}
        if notes is not None:
            fields["notes"] = notes
        async with error_mapping():
            await InvoiceRepository(ctx.session, invoice.team_id).update(invoice, **fields)

        if tax_rate_percent is not None:
            await engine.set_tax_rate(invoice.id, tax_rate_percent)
        ctx.loaders.invoices.clear(invoice.id)
        return await self.get_invoice(invoice.id)

    async def delete_invoice(self, invoice_id: str) -> None:
        """Delete a draft invoice, releasing its time entries."""
        ctx = self._ctx
        engine = self._engine()
        invoice = await engine.get_invoice(invoice_id, for_update=True)
        if invoice.status != InvoiceStatus.DRAFT.value:
            raise ConflictError("Only draft invoices can be deleted")
        async with error_mapping():
            await InvoiceRepository(ctx.session, invoice.team_id).delete(invoice)
        ctx.loaders.invoices.clear(invoice_id)
        logger.info(
            "Deleted invoice %s (id=%s)",
            invoice.invoice_number,
            invoice_id,
            extra={"team_id": invoice.team_id, "user_id": ctx.user_id, "invoice_id": invoice_id},
        )

    # -- items and links -----------------------------------------------------

    async def add_item(
        self,
        invoice_id: str,
        *,
        description: str,
        quantity: Decimal,
        rate_cents: int,
        time_entry_ids: list[str] | None = None,
    ) -> dict[str, Any]:
        engine = self._engine()
        await engine.add_invoice_item(invoice_id, description, quantity, rate_cents, time_entry_ids)
        return _detail(await engine.get_invoice_with_items(invoice_id))

    async def update_item(
        self,
        item_id: str,
        *,
        description: str | None = None,
        quantity: Decimal | None = None,
        rate_cents: int | None = None,
    ) -> dict[str, Any]:
        engine = self._engine()
        item = await engine.update_invoice_item(
            item_id,
            description=description,
            quantity=quantity,
            rate_cents=rate_cents,
        )
        return _detail(await engine.get_invoice_with_items(item.invoice_id))

    async def remove_item(self, item_id: str) -> dict[str, Any]:
        engine = self._engine()
        item = await engine.get_item(item_id)
        invoice_id = item.invoice_id
        await engine.remove_invoice_item(item_id)
        return _detail(await engine.get_invoice_with_items(invoice_id))

    async def link_time_entries(self, item_id: str, time_entry_ids: list[str]) -> dict[str, Any]:
        engine = self._engine()
        item = await engine.add_time_entries_to_invoice_item(item_id, time_entry_ids)
        return _detail(await engine.get_invoice_with_items(item.invoice_id))

    async def unlink_time_entry(self, invoice_id: str, time_entry_id: str) -> bool:
        return await self._engine().remove_time_entry_from_invoice(invoice_id, time_entry_id)

    # -- status --------------------------------------------------------------

    async def mark_sent(self, invoice_id: str) -> dict[str, Any]:
        engine = self._engine()
        await engine.mark_sent(invoice_id)
        return _detail(await engine.get_invoice_with_items(invoice_id))

    async def mark_paid(self, invoice_id: str, paid_date: date | None = None) -> dict[str, Any]:
        engine = self._engine()
        await engine.mark_paid(invoice_id, paid_date)
        return _detail(await engine.get_invoice_with_items(invoice_id))

    async def cancel(self, invoice_id: str) -> dict[str, Any]:
        engine = self._engine()
        await engine.cancel(invoice_id)
        return _detail(await engine.get_invoice_with_items(invoice_id))
