"""Tests for ardine_core/invoicing/engine.py

Covers:
- Totals are a pure function of the items and recalculation is idempotent
- Items built from time entries derive quantity and amount from durations
- Unlinking an entry recomputes its item
- Double billing is rejected with the other invoice's number, totals unchanged
- A concurrent double-billing insert surfaces as ConflictError
- Item mutation is refused once an invoice leaves draft
- Status transitions draft -> sent -> paid and cancellation
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest
import pytest_asyncio
from ardine_core.errors import ConflictError, NotFoundError, ValidationError
from ardine_core.invoicing.engine import InvoiceEngine
from ardine_core.state.tables import InvoiceTimeEntryTable
from sqlalchemy import func, select

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture()
async def billing(factory):
    """A team with one client, project, and user, plus a draft invoice."""
    team = await factory.team()
    client = await factory.client(team)
    project = await factory.project(team, client_id=client.id)
    user = await factory.member(team, "OWNER")
    invoice = await factory.invoice(team, client, "INV-2024-0001", tax_rate_percent=Decimal("10"))
    return {"team": team, "client": client, "project": project, "user": user, "invoice": invoice}


async def _link_count(session, entry_id: str) -> int:
    result = await session.execute(
        select(func.count()).select_from(InvoiceTimeEntryTable).where(InvoiceTimeEntryTable.time_entry_id == entry_id)
    )
    return int(result.scalar_one())


async def _totals(engine: InvoiceEngine, invoice_id: str) -> tuple[int, int, int]:
    invoice = await engine.get_invoice(invoice_id)
    return invoice.subtotal_cents, invoice.tax_amount_cents, invoice.total_cents


# ---------------------------------------------------------------------------
# Totals
# ---------------------------------------------------------------------------


class TestTotals:
    @pytest.mark.asyncio
    async def test_manual_items_drive_totals(self, session, billing) -> None:
        engine = InvoiceEngine(session, billing["team"].id)
        invoice = billing["invoice"]
        await engine.add_invoice_item(invoice.id, "Design", Decimal("2"), 5000)
        await engine.add_invoice_item(invoice.id, "Hosting", Decimal("1.5"), 333)

        refreshed = await engine.get_invoice(invoice.id)
        assert refreshed.subtotal_cents == 10000 + 500
        assert refreshed.tax_amount_cents == 1050
        assert refreshed.total_cents == 11550

    @pytest.mark.asyncio
    async def test_recalculation_is_idempotent(self, session, billing) -> None:
        engine = InvoiceEngine(session, billing["team"].id)
        invoice = billing["invoice"]
        await engine.add_invoice_item(invoice.id, "Work", Decimal("3"), 2500)

        first = await engine.recalculate_invoice_totals(invoice.id)
        snapshot = (first.subtotal_cents, first.tax_amount_cents, first.total_cents)
        second = await engine.recalculate_invoice_totals(invoice.id)
        assert (second.subtotal_cents, second.tax_amount_cents, second.total_cents) == snapshot

    @pytest.mark.asyncio
    async def test_tax_rate_change_recalculates(self, session, billing) -> None:
        engine = InvoiceEngine(session, billing["team"].id)
        invoice = billing["invoice"]
        await engine.add_invoice_item(invoice.id, "Work", Decimal("1"), 10000)
        updated = await engine.set_tax_rate(invoice.id, Decimal("7.5"))
        assert updated.tax_amount_cents == 750
        assert updated.total_cents == 10750

    @pytest.mark.asyncio
    async def test_empty_invoice_totals_are_zero(self, session, billing) -> None:
        engine = InvoiceEngine(session, billing["team"].id)
        invoice = await engine.recalculate_invoice_totals(billing["invoice"].id)
        assert (invoice.subtotal_cents, invoice.tax_amount_cents, invoice.total_cents) == (0, 0, 0)

    @pytest.mark.asyncio
    async def test_invalid_item_input(self, session, billing) -> None:
        engine = InvoiceEngine(session, billing["team"].id)
        invoice_id = billing["invoice"].id
        with pytest.raises(ValidationError, match="Description is required"):
            await engine.add_invoice_item(invoice_id, "  ", Decimal("1"), 100)
        with pytest.raises(ValidationError):
            await engine.add_invoice_item(invoice_id, "x", Decimal("-1"), 100)
        with pytest.raises(ValidationError):
            await engine.add_invoice_item(invoice_id, "x", "abc", 100)


# ---------------------------------------------------------------------------
# Time-entry links
# ---------------------------------------------------------------------------


class TestTimeEntryLinks:
    @pytest.mark.asyncio
    async def test_item_from_entries_then_unlink(self, session, factory, billing) -> None:
        engine = InvoiceEngine(session, billing["team"].id)
        invoice = billing["invoice"]
        hour = await factory.entry(billing["project"], billing["user"], seconds=3600)
        half = await factory.entry(billing["project"], billing["user"], seconds=1800)

        item = await engine.add_invoice_item(invoice.id, "Consulting", Decimal("0"), 6000)
        item = await engine.add_time_entries_to_invoice_item(item.id, [hour.id, half.id])
        assert item.quantity == Decimal("1.50")
        assert item.amount_cents == 9000

        assert await engine.remove_time_entry_from_invoice(invoice.id, half.id) is True
        item = await engine.get_item(item.id)
        assert item.quantity == Decimal("1.00")
        assert item.amount_cents == 6000

        refreshed = await engine.get_invoice(invoice.id)
        assert refreshed.subtotal_cents == 6000
        assert refreshed.total_cents == 6600

    @pytest.mark.asyncio
    async def test_unlink_unknown_entry_returns_false(self, session, billing) -> None:
        engine = InvoiceEngine(session, billing["team"].id)
        assert await engine.remove_time_entry_from_invoice(billing["invoice"].id, "nope") is False

    @pytest.mark.asyncio
    async def test_relinking_same_entries_is_stable(self, session, factory, billing) -> None:
        engine = InvoiceEngine(session, billing["team"].id)
        entry = await factory.entry(billing["project"], billing["user"], seconds=5400)
        item = await engine.add_invoice_item(billing["invoice"].id, "Dev", Decimal("0"), 10000)
        await engine.add_time_entries_to_invoice_item(item.id, [entry.id])
        item = await engine.add_time_entries_to_invoice_item(item.id, [entry.id])
        assert item.quantity == Decimal("1.50")
        assert item.amount_cents == 15000
        assert await _link_count(session, entry.id) == 1

    @pytest.mark.asyncio
    async def test_double_billing_rejected_with_invoice_number(self, session, factory, billing) -> None:
        engine = InvoiceEngine(session, billing["team"].id)
        entry = await factory.entry(billing["project"], billing["user"], seconds=3600)
        first = await engine.add_invoice_item(billing["invoice"].id, "First", Decimal("0"), 6000)
        await engine.add_time_entries_to_invoice_item(first.id, [entry.id])

        second_invoice = await factory.invoice(billing["team"], billing["client"], "INV-2024-0002")
        second_item = await engine.add_invoice_item(second_invoice.id, "Second", Decimal("1"), 4000)
        invoice_ids = (billing["invoice"].id, second_invoice.id)
        totals_before = [await _totals(engine, invoice_id) for invoice_id in invoice_ids]
        assert totals_before[0] == (6000, 600, 6600)

        with pytest.raises(ConflictError, match="INV-2024-0001"):
            await engine.add_time_entries_to_invoice_item(second_item.id, [entry.id])

        assert [await _totals(engine, invoice_id) for invoice_id in invoice_ids] == totals_before
        assert await _link_count(session, entry.id) == 1

    @pytest.mark.asyncio
    async def test_concurrent_link_conflict_from_unique_constraint(
        self, session, factory, billing, monkeypatch
    ) -> None:
        engine = InvoiceEngine(session, billing["team"].id)
        entry = await factory.entry(billing["project"], billing["user"], seconds=3600)
        first = await engine.add_invoice_item(billing["invoice"].id, "First", Decimal("0"), 6000)
        await engine.add_time_entries_to_invoice_item(first.id, [entry.id])
        second_invoice = await factory.invoice(billing["team"], billing["client"], "INV-2024-0002")
        second_item = await engine.add_invoice_item(second_invoice.id, "Second", Decimal("0"), 6000)

        # Simulate a writer that passed the up-front check before the first link committed.
        async def _no_conflicts(invoice_id, entry_ids):
            return []

        monkeypatch.setattr(engine, "_conflicting_invoice_numbers", _no_conflicts)
        with pytest.raises(ConflictError, match="already on another invoice"):
            await engine.add_time_entries_to_invoice_item(second_item.id, [entry.id])

    @pytest.mark.asyncio
    async def test_running_and_non_billable_entries_rejected(self, session, factory, billing) -> None:
        engine = InvoiceEngine(session, billing["team"].id)
        unbillable = await factory.entry(billing["project"], billing["user"], billable=False)
        item = await engine.add_invoice_item(billing["invoice"].id, "Work", Decimal("0"), 6000)
        with pytest.raises(ValidationError, match="non-billable"):
            await engine.add_time_entries_to_invoice_item(item.id, [unbillable.id])

        running = await factory.entry(billing["project"], billing["user"])
        running.stopped_at = None
        running.duration_seconds = None
        await session.flush()
        with pytest.raises(ValidationError, match="running"):
            await engine.add_time_entries_to_invoice_item(item.id, [running.id])

    @pytest.mark.asyncio
    async def test_entry_from_other_team_not_found(self, session, factory, billing) -> None:
        other_team = await factory.team()
        other_project = await factory.project(other_team)
        foreign = await factory.entry(other_project, billing["user"])
        engine = InvoiceEngine(session, billing["team"].id)
        item = await engine.add_invoice_item(billing["invoice"].id, "Work", Decimal("0"), 6000)
        with pytest.raises(NotFoundError):
            await engine.add_time_entries_to_invoice_item(item.id, [foreign.id])

    @pytest.mark.asyncio
    async def test_linked_quantity_cannot_be_set(self, session, factory, billing) -> None:
        engine = InvoiceEngine(session, billing["team"].id)
        entry = await factory.entry(billing["project"], billing["user"], seconds=3600)
        item = await engine.add_invoice_item(billing["invoice"].id, "Work", Decimal("0"), 6000, [entry.id])
        with pytest.raises(ValidationError, match="derived from its time entries"):
            await engine.update_invoice_item(item.id, quantity=Decimal("5"))

    @pytest.mark.asyncio
    async def test_removing_item_releases_entries(self, session, factory, billing) -> None:
        engine = InvoiceEngine(session, billing["team"].id)
        entry = await factory.entry(billing["project"], billing["user"], seconds=3600)
        item = await engine.add_invoice_item(billing["invoice"].id, "Work", Decimal("1"), 6000, [entry.id])
        await engine.remove_invoice_item(item.id)
        assert await _link_count(session, entry.id) == 0
        invoice = await engine.get_invoice(billing["invoice"].id)
        assert invoice.total_cents == 0


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------


class TestStatus:
    @pytest.mark.asyncio
    async def test_lifecycle(self, session, billing) -> None:
        engine = InvoiceEngine(session, billing["team"].id)
        invoice_id = billing["invoice"].id
        with pytest.raises(ConflictError, match="sent status"):
            await engine.mark_paid(invoice_id)

        sent = await engine.mark_sent(invoice_id)
        assert sent.status == "sent"
        with pytest.raises(ConflictError, match="draft status"):
            await engine.mark_sent(invoice_id)

        paid = await engine.mark_paid(invoice_id, date(2024, 3, 15))
        assert paid.status == "paid"
        assert paid.paid_date == date(2024, 3, 15)
        with pytest.raises(ConflictError, match="draft or sent"):
            await engine.cancel(invoice_id)

    @pytest.mark.asyncio
    async def test_items_frozen_after_draft(self, session, billing) -> None:
        engine = InvoiceEngine(session, billing["team"].id)
        invoice_id = billing["invoice"].id
        item = await engine.add_invoice_item(invoice_id, "Work", Decimal("1"), 1000)
        await engine.mark_sent(invoice_id)
        with pytest.raises(ConflictError, match="draft status to modify items"):
            await engine.add_invoice_item(invoice_id, "Late", Decimal("1"), 1000)
        with pytest.raises(ConflictError):
            await engine.update_invoice_item(item.id, rate_cents=2000)
        with pytest.raises(ConflictError):
            await engine.set_tax_rate(invoice_id, Decimal("20"))

    @pytest.mark.asyncio
    async def test_cancel_from_sent(self, session, billing) -> None:
        engine = InvoiceEngine(session, billing["team"].id)
        invoice_id = billing["invoice"].id
        await engine.mark_sent(invoice_id)
        cancelled = await engine.cancel(invoice_id)
        assert cancelled.status == "cancelled"

    @pytest.mark.asyncio
    async def test_invoice_of_other_team_not_found(self, session, factory, billing) -> None:
        other = await factory.team()
        engine = InvoiceEngine(session, other.id)
        with pytest.raises(NotFoundError, match="Invoice not found"):
            await engine.get_invoice(billing["invoice"].id)
