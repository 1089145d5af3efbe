"""Invoice consistency engine.

Owns two invariants:

1. A time entry is billed on at most one invoice.  Checked up front so
   the caller gets the conflicting invoice number, and backed by the
   UNIQUE constraint on ``invoice_time_entries.time_entry_id`` for
   concurrent writers; a losing insert surfaces as the same
   :class:`~ardine_core.errors.ConflictError`.
2. Invoice totals are a pure function of the invoice's items::

       subtotal = sum(item.amount_cents)
       tax      = round(subtotal * tax_rate_percent / 100)
       total    = subtotal + tax

Every item/link mutation runs inside :meth:`InvoiceEngine._mutation`,
which locks the invoice row, refuses invoices that are no longer
``draft``, and always finishes with :meth:`recalculate_invoice_totals`.

Status transitions::

    draft -> sent -> paid
    draft | sent -> cancelled
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Iterable, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from decimal import Decimal, InvalidOperation

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ardine_core.auth.roles import InvoiceStatus
from ardine_core.errors import (
    UNIQUE_VIOLATION,
    ConflictError,
    NotFoundError,
    ValidationError,
    error_mapping,
    sqlstate_of,
)
from ardine_core.invoicing.money import (
    hours_from_seconds,
    item_amount_cents,
    quantity_from_seconds,
    tax_amount_cents,
)
from ardine_core.loaders import Loaders
from ardine_core.state.tables import (
    InvoiceItemTable,
    InvoiceTable,
    InvoiceTimeEntryTable,
    TimeEntryTable,
)

logger = logging.getLogger(__name__)

_QUANTITY_PLACES = Decimal("0.01")


@dataclass
class InvoiceWithItems:
    """Read model: an invoice, its items, and the entries linked to each."""

    invoice: InvoiceTable
    items: list[InvoiceItemTable]
    time_entry_ids_by_item: dict[str, list[str]] = field(default_factory=dict)


def _to_decimal(value: Decimal | int | float | str, name: str) -> Decimal:
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid {name}: {value}", field=name) from None
    if not result.is_finite() or result < 0:
        raise ValidationError(f"{name} must be a non-negative number", field=name)
    return result


class InvoiceEngine:
    """Item, link, and total maintenance for invoices of one team.

    Authorization is the caller's job; the engine only enforces team
    scoping and the billing invariants.
    """

    def __init__(self, session: AsyncSession, team_id: str, loaders: Loaders | None = None) -> None:
        self._session = session
        self._team_id = team_id
        self._loaders = loaders

    # -- reads ---------------------------------------------------------------

    async def get_invoice(self, invoice_id: str, *, for_update: bool = False) -> InvoiceTable:
        stmt = select(InvoiceTable).where(
            InvoiceTable.id == invoice_id,
            InvoiceTable.team_id == self._team_id,
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        invoice = result.scalar_one_or_none()
        if invoice is None:
            raise NotFoundError("Invoice not found")
        return invoice

    async def get_item(self, item_id: str) -> InvoiceItemTable:
        result = await self._session.execute(
            select(InvoiceItemTable).where(
                InvoiceItemTable.id == item_id,
                InvoiceItemTable.team_id == self._team_id,
            )
        )
        item = result.scalar_one_or_none()
        if item is None:
            raise NotFoundError("Invoice item not found")
        return item

    async def get_invoice_with_items(self, invoice_id: str) -> InvoiceWithItems:
        invoice = await self.get_invoice(invoice_id)
        if self._loaders is not None:
            items = list(await self._loaders.invoice_items_by_invoice_id.load(invoice.id))
        else:
            items_result = await self._session.execute(
                select(InvoiceItemTable)
                .where(InvoiceItemTable.invoice_id == invoice.id)
                .order_by(InvoiceItemTable.created_at, InvoiceItemTable.id)
            )
            items = list(items_result.scalars().all())
        links_result = await self._session.execute(
            select(InvoiceTimeEntryTable.invoice_item_id, InvoiceTimeEntryTable.time_entry_id)
            .where(InvoiceTimeEntryTable.invoice_id == invoice.id)
            .order_by(InvoiceTimeEntryTable.created_at, InvoiceTimeEntryTable.id)
        )
        by_item: dict[str, list[str]] = {item.id: [] for item in items}
        for item_id, entry_id in links_result.all():
            if item_id is not None:
                by_item.setdefault(item_id, []).append(entry_id)
        return InvoiceWithItems(invoice=invoice, items=items, time_entry_ids_by_item=by_item)

    # -- totals --------------------------------------------------------------

    async def recalculate_invoice_totals(self, invoice_id: str) -> InvoiceTable:
        """Recompute the derived money columns from the current items.

        Idempotent; safe to call redundantly and on any status.
        """
        invoice = await self.get_invoice(invoice_id, for_update=True)
        result = await self._session.execute(
            select(func.coalesce(func.sum(InvoiceItemTable.amount_cents), 0)).where(
                InvoiceItemTable.invoice_id == invoice.id
            )
        )
        subtotal = int(result.scalar_one())
        tax = tax_amount_cents(subtotal, invoice.tax_rate_percent)

        invoice.subtotal_cents = subtotal
        invoice.tax_amount_cents = tax
        invoice.total_cents = subtotal + tax
        await self._session.flush()
        return invoice

    @asynccontextmanager
    async def _mutation(self, invoice_id: str) -> AsyncIterator[InvoiceTable]:
        """Lock a draft invoice, run the mutation, then recalculate.

        Recalculation only runs when the body succeeds; a failed body
        propagates and the caller's transaction is rolled back.
        """
        invoice = await self.get_invoice(invoice_id, for_update=True)
        if invoice.status != InvoiceStatus.DRAFT.value:
            raise ConflictError("Invoice must be in draft status to modify items")

        async with error_mapping():
            yield invoice
            await self._session.flush()

        await self.recalculate_invoice_totals(invoice.id)
        self._invalidate(invoice.id)

    def _invalidate(self, invoice_id: str, *item_ids: str) -> None:
        if self._loaders is None:
            return
        self._loaders.invoices.clear(invoice_id)
        self._loaders.invoice_items_by_invoice_id.clear(invoice_id)
        for item_id in item_ids:
            self._loaders.invoice_items.clear(item_id)

    # -- time-entry links ----------------------------------------------------

    async def _conflicting_invoice_numbers(self, invoice_id: str, entry_ids: Sequence[str]) -> list[str]:
        result = await self._session.execute(
            select(InvoiceTable.invoice_number)
            .join(InvoiceTimeEntryTable, InvoiceTimeEntryTable.invoice_id == InvoiceTable.id)
            .where(
                InvoiceTimeEntryTable.time_entry_id.in_(entry_ids),
                InvoiceTimeEntryTable.invoice_id != invoice_id,
            )
            .distinct()
        )
        return sorted(result.scalars().all())

    async def _linkable_entries(self, invoice: InvoiceTable, time_entry_ids: Iterable[str]) -> list[str]:
        """Validate entries for linking and return those not yet on *invoice*.

        Raises :class:`ConflictError` naming the other invoice(s) when any
        entry is already billed elsewhere.
        """
        entry_ids = list(dict.fromkeys(time_entry_ids))
        if not entry_ids:
            return []

        result = await self._session.execute(select(TimeEntryTable).where(TimeEntryTable.id.in_(entry_ids)))
        entries = {entry.id: entry for entry in result.scalars().all()}
        for entry_id in entry_ids:
            entry = entries.get(entry_id)
            if entry is None or entry.team_id != self._team_id:
                raise NotFoundError(f"Time entry not found: {entry_id}")
            if entry.stopped_at is None or entry.duration_seconds is None:
                raise ValidationError("Cannot invoice a running time entry", field="timeEntryIds")
            if not entry.billable:
                raise ValidationError("Cannot invoice a non-billable time entry", field="timeEntryIds")

        conflicts = await self._conflicting_invoice_numbers(invoice.id, entry_ids)
        if conflicts:
            logger.info("Double billing rejected on invoice=%s: already on %s", invoice.id, conflicts)
            raise ConflictError(f"Time entry is already on invoice {', '.join(conflicts)}")

        existing = await self._session.execute(
            select(InvoiceTimeEntryTable.time_entry_id).where(
                InvoiceTimeEntryTable.invoice_id == invoice.id,
                InvoiceTimeEntryTable.time_entry_id.in_(entry_ids),
            )
        )
        already_linked = set(existing.scalars().all())
        return [entry_id for entry_id in entry_ids if entry_id not in already_linked]

    async def _insert_links(self, invoice: InvoiceTable, item_id: str, entry_ids: Sequence[str]) -> None:
        if not entry_ids:
            return
        self._session.add_all(
            [
                InvoiceTimeEntryTable(invoice_id=invoice.id, time_entry_id=entry_id, invoice_item_id=item_id)
                for entry_id in entry_ids
            ]
        )
        try:
            await self._session.flush()
        except IntegrityError as exc:
            # A concurrent writer linked one of these entries first.
            if sqlstate_of(exc) == UNIQUE_VIOLATION:
                logger.info("Concurrent double billing rejected on invoice=%s", invoice.id)
                raise ConflictError("Time entry is already on another invoice") from exc
            raise

    async def _recompute_item_from_links(self, item: InvoiceItemTable) -> None:
        result = await self._session.execute(
            select(func.coalesce(func.sum(TimeEntryTable.duration_seconds), 0))
            .select_from(InvoiceTimeEntryTable)
            .join(TimeEntryTable, TimeEntryTable.id == InvoiceTimeEntryTable.time_entry_id)
            .where(InvoiceTimeEntryTable.invoice_item_id == item.id)
        )
        total_seconds = int(result.scalar_one())
        item.quantity = quantity_from_seconds(total_seconds)
        item.amount_cents = item_amount_cents(hours_from_seconds(total_seconds), item.rate_cents)
        await self._session.flush()

    async def _item_has_links(self, item_id: str) -> bool:
        result = await self._session.execute(
            select(func.count())
            .select_from(InvoiceTimeEntryTable)
            .where(InvoiceTimeEntryTable.invoice_item_id == item_id)
        )
        return int(result.scalar_one()) > 0

    # -- item operations -----------------------------------------------------

    async def add_invoice_item(
        self,
        invoice_id: str,
        description: str,
        quantity: Decimal | int | float | str,
        rate_cents: int,
        time_entry_ids: Sequence[str] | None = None,
    ) -> InvoiceItemTable:
        """Add a line with an explicit quantity and rate, optionally linking entries."""
        if not description or not description.strip():
            raise ValidationError("Description is required", field="description")
        qty = _to_decimal(quantity, "quantity")
        if rate_cents < 0:
            raise ValidationError("rate_cents must be a non-negative number", field="rateCents")

        async with self._mutation(invoice_id) as invoice:
            to_link = await self._linkable_entries(invoice, time_entry_ids or [])
            item = InvoiceItemTable(
                team_id=invoice.team_id,
                invoice_id=invoice.id,
                description=description.strip(),
                quantity=qty.quantize(_QUANTITY_PLACES),
                rate_cents=rate_cents,
                amount_cents=item_amount_cents(qty, rate_cents),
            )
            self._session.add(item)
            await self._session.flush()
            await self._insert_links(invoice, item.id, to_link)

        logger.info("Added item=%s to invoice=%s (linked=%d)", item.id, invoice_id, len(to_link))
        return item

    async def add_time_entries_to_invoice_item(
        self,
        item_id: str,
        time_entry_ids: Sequence[str],
    ) -> InvoiceItemTable:
        """Link entries to an item and rebuild its quantity from all its links.

        Quantity is replaced from the full linked set, so passing a
        superset of already-linked entries is safe.
        """
        item = await self.get_item(item_id)
        async with self._mutation(item.invoice_id) as invoice:
            to_link = await self._linkable_entries(invoice, time_entry_ids)
            await self._insert_links(invoice, item.id, to_link)
            await self._recompute_item_from_links(item)

        self._invalidate(item.invoice_id, item.id)
        logger.info("Linked %d time entries to item=%s", len(to_link), item.id)
        return item

    async def remove_time_entry_from_invoice(self, invoice_id: str, time_entry_id: str) -> bool:
        """Unlink an entry; returns ``False`` when it was not on the invoice.

        The owning item is recomputed from its remaining entries and is
        kept even when none remain.
        """
        removed = False
        async with self._mutation(invoice_id) as invoice:
            result = await self._session.execute(
                select(InvoiceTimeEntryTable).where(
                    InvoiceTimeEntryTable.invoice_id == invoice.id,
                    InvoiceTimeEntryTable.time_entry_id == time_entry_id,
                )
            )
            link = result.scalar_one_or_none()
            if link is not None:
                item_id = link.invoice_item_id
                await self._session.delete(link)
                await self._session.flush()
                if item_id is not None:
                    await self._recompute_item_from_links(await self.get_item(item_id))
                    self._invalidate(invoice.id, item_id)
                removed = True

        return removed

    async def update_invoice_item(
        self,
        item_id: str,
        *,
        description: str | None = None,
        quantity: Decimal | int | float | str | None = None,
        rate_cents: int | None = None,
    ) -> InvoiceItemTable:
        """Edit a line.  Quantity of a time-linked item cannot be set directly."""
        item = await self.get_item(item_id)
        async with self._mutation(item.invoice_id):
            linked = await self._item_has_links(item.id)
            if description is not None:
                if not description.strip():
                    raise ValidationError("Description is required", field="description")
                item.description = description.strip()
            if rate_cents is not None:
                if rate_cents < 0:
                    raise ValidationError("rate_cents must be a non-negative number", field="rateCents")
                item.rate_cents = rate_cents
            if quantity is not None:
                if linked:
                    raise ValidationError(
                        "Quantity of a time-linked item is derived from its time entries",
                        field="quantity",
                    )
                item.quantity = _to_decimal(quantity, "quantity").quantize(_QUANTITY_PLACES)
                item.amount_cents = item_amount_cents(_to_decimal(quantity, "quantity"), item.rate_cents)
            if linked:
                await self._recompute_item_from_links(item)
            elif rate_cents is not None and quantity is None:
                item.amount_cents = item_amount_cents(Decimal(item.quantity), item.rate_cents)

        self._invalidate(item.invoice_id, item.id)
        return item

    async def remove_invoice_item(self, item_id: str) -> None:
        """Delete a line and release its time entries for billing elsewhere."""
        item = await self.get_item(item_id)
        async with self._mutation(item.invoice_id):
            await self._session.execute(
                delete(InvoiceTimeEntryTable).where(InvoiceTimeEntryTable.invoice_item_id == item.id)
            )
            await self._session.delete(item)
        self._invalidate(item.invoice_id, item.id)

    async def set_tax_rate(self, invoice_id: str, tax_rate_percent: Decimal | int | float | str) -> InvoiceTable:
        rate = _to_decimal(tax_rate_percent, "taxRatePercent")
        if rate > 100:
            raise ValidationError("taxRatePercent must be between 0 and 100", field="taxRatePercent")
        async with self._mutation(invoice_id) as invoice:
            invoice.tax_rate_percent = rate.quantize(_QUANTITY_PLACES)
        return invoice

    # -- status transitions --------------------------------------------------

    async def mark_sent(self, invoice_id: str) -> InvoiceTable:
        invoice = await self.get_invoice(invoice_id, for_update=True)
        if invoice.status != InvoiceStatus.DRAFT.value:
            raise ConflictError("Invoice must be in draft status to mark as sent")
        invoice.status = InvoiceStatus.SENT.value
        await self._session.flush()
        self._invalidate(invoice.id)
        logger.info("Invoice %s marked sent", invoice.invoice_number)
        return invoice

    async def mark_paid(self, invoice_id: str, paid_date: date | None = None) -> InvoiceTable:
        invoice = await self.get_invoice(invoice_id, for_update=True)
        if invoice.status != InvoiceStatus.SENT.value:
            raise ConflictError("Invoice must be in sent status to mark as paid")
        invoice.status = InvoiceStatus.PAID.value
        invoice.paid_date = paid_date or datetime.now(UTC).date()
        await self._session.flush()
        self._invalidate(invoice.id)
        logger.info("Invoice %s marked paid", invoice.invoice_number)
        return invoice

    async def cancel(self, invoice_id: str) -> InvoiceTable:
        invoice = await self.get_invoice(invoice_id, for_update=True)
        if invoice.status not in (InvoiceStatus.DRAFT.value, InvoiceStatus.SENT.value):
            raise ConflictError("Only draft or sent invoices can be cancelled")
        invoice.status = InvoiceStatus.CANCELLED.value
        await self._session.flush()
        self._invalidate(invoice.id)
        logger.info("Invoice %s cancelled", invoice.invoice_number)
        return invoice
