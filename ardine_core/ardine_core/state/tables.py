"""SQLAlchemy 2.0 ORM table definitions for the Ardine store.

All tables use the ``Mapped`` / ``mapped_column`` declaration style.
Column names are the contract with raw list queries built by
:mod:`ardine_core.query.builder`, so renaming a column here means
updating the whitelists at the call sites as well.

Every domain table carries ``team_id``.  Monetary values are integer
cents; percentages and quantities are ``NUMERIC``.
"""

from __future__ import annotations

import uuid
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Cross-dialect JSON type: JSONB on PostgreSQL, plain JSON on SQLite.
_JsonType = JSONB().with_variant(JSON(), "sqlite")


class UTCDateTime(TypeDecorator[datetime]):
    """``TIMESTAMPTZ`` that always returns timezone-aware UTC values.

    SQLite drops the offset on storage; values read back are tagged
    as UTC so arithmetic against aware timestamps keeps working.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is not None and value.tzinfo is not None and dialect.name == "sqlite":
            return value.astimezone(UTC).replace(tzinfo=None)
        return value

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


def _new_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all Ardine tables."""


# ---------------------------------------------------------------------------
# Identity and tenancy
# ---------------------------------------------------------------------------


class TeamTable(Base):
    """Tenant boundary.  All domain data hangs off exactly one team."""

    __tablename__ = "teams"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    slug: Mapped[str] = mapped_column(String(120), nullable=False, unique=True)
    billing_address: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    default_hourly_rate_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    default_tax_rate_percent: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False, default=Decimal("0"))
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "default_hourly_rate_cents IS NULL OR default_hourly_rate_cents >= 0",
            name="ck_teams_default_rate",
        ),
    )


class UserTable(Base):
    """Instance-level user account."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    password_hash: Mapped[str | None] = mapped_column(String(256), nullable=True)
    instance_role: Mapped[str] = mapped_column(String(16), nullable=False, default="USER")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (CheckConstraint("instance_role IN ('USER', 'ADMIN')", name="ck_users_instance_role"),)


class TeamMembershipTable(Base):
    """(team, user) pair carrying the user's team role."""

    __tablename__ = "team_memberships"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    team_id: Mapped[str] = mapped_column(String(36), ForeignKey("teams.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    role: Mapped[str] = mapped_column(String(16), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("team_id", "user_id", name="uq_team_memberships_team_user"),
        CheckConstraint(
            "role IN ('OWNER', 'ADMIN', 'MEMBER', 'VIEWER', 'BILLING')",
            name="ck_team_memberships_role",
        ),
        Index("ix_team_memberships_user", "user_id"),
    )


# ---------------------------------------------------------------------------
# Clients and projects
# ---------------------------------------------------------------------------


class ClientTable(Base):
    __tablename__ = "clients"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    team_id: Mapped[str] = mapped_column(String(36), ForeignKey("teams.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    contact_name: Mapped[str | None] = mapped_column(String(120), nullable=True)
    billing_address: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    default_hourly_rate_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    archived_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "default_hourly_rate_cents IS NULL OR default_hourly_rate_cents >= 0",
            name="ck_clients_default_rate",
        ),
        Index("ix_clients_team", "team_id"),
    )


class ProjectTable(Base):
    """Project within a team, optionally billed to one client."""

    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    team_id: Mapped[str] = mapped_column(String(36), ForeignKey("teams.id", ondelete="CASCADE"), nullable=False)
    client_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("clients.id", ondelete="CASCADE"), nullable=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")
    color: Mapped[str | None] = mapped_column(String(16), nullable=True)
    tags: Mapped[list[str]] = mapped_column(_JsonType, nullable=False, default=list)
    default_hourly_rate_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    start_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    archived_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "status IN ('active', 'on_hold', 'completed', 'archived')",
            name="ck_projects_status",
        ),
        CheckConstraint(
            "default_hourly_rate_cents IS NULL OR default_hourly_rate_cents >= 0",
            name="ck_projects_default_rate",
        ),
        UniqueConstraint("team_id", "name", name="uq_projects_team_name"),
        Index("ix_projects_team", "team_id"),
        Index("ix_projects_team_client", "team_id", "client_id"),
    )


class ProjectMemberTable(Base):
    """(project, user) pair with a project role, distinct from team membership."""

    __tablename__ = "project_members"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    project_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    role: Mapped[str] = mapped_column(String(16), nullable=False, default="CONTRIBUTOR")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("project_id", "user_id", name="uq_project_members_project_user"),
        CheckConstraint("role IN ('MANAGER', 'CONTRIBUTOR', 'VIEWER')", name="ck_project_members_role"),
        Index("ix_project_members_user", "user_id"),
    )


class ProjectTaskTable(Base):
    __tablename__ = "project_tasks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    team_id: Mapped[str] = mapped_column(String(36), ForeignKey("teams.id", ondelete="CASCADE"), nullable=False)
    project_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")
    billable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    hourly_rate_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    order_index: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("project_id", "name", name="uq_project_tasks_project_name"),
        CheckConstraint(
            "status IN ('active', 'on_hold', 'completed', 'archived')",
            name="ck_project_tasks_status",
        ),
        CheckConstraint(
            "hourly_rate_cents IS NULL OR hourly_rate_cents >= 0",
            name="ck_project_tasks_rate",
        ),
        Index("ix_project_tasks_project", "project_id"),
    )


class TaskAssigneeTable(Base):
    __tablename__ = "task_assignees"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    team_id: Mapped[str] = mapped_column(String(36), ForeignKey("teams.id", ondelete="CASCADE"), nullable=False)
    task_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("project_tasks.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)

    __table_args__ = (UniqueConstraint("task_id", "user_id", name="uq_task_assignees_task_user"),)


# ---------------------------------------------------------------------------
# Time tracking
# ---------------------------------------------------------------------------


class TimeEntryTable(Base):
    """A tracked span of work.  Running while ``stopped_at`` is NULL."""

    __tablename__ = "time_entries"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    team_id: Mapped[str] = mapped_column(String(36), ForeignKey("teams.id", ondelete="CASCADE"), nullable=False)
    project_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False
    )
    task_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("project_tasks.id", ondelete="SET NULL"), nullable=True
    )
    user_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=True
    )
    client_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("clients.id", ondelete="CASCADE"), nullable=True
    )
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    stopped_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    duration_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    billable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    hourly_rate_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    amount_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("stopped_at IS NULL OR stopped_at > started_at", name="ck_time_entries_stop_after_start"),
        CheckConstraint(
            "hourly_rate_cents IS NULL OR hourly_rate_cents >= 0",
            name="ck_time_entries_rate",
        ),
        Index("ix_time_entries_team_started", "team_id", "started_at"),
        Index("ix_time_entries_project", "project_id"),
        Index("ix_time_entries_user", "user_id"),
    )


# ---------------------------------------------------------------------------
# Invoicing
# ---------------------------------------------------------------------------


class InvoiceTable(Base):
    """Invoice header.  The four money columns are derived from items."""

    __tablename__ = "invoices"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    team_id: Mapped[str] = mapped_column(String(36), ForeignKey("teams.id", ondelete="CASCADE"), nullable=False)
    client_id: Mapped[str] = mapped_column(String(36), ForeignKey("clients.id", ondelete="RESTRICT"), nullable=False)
    invoice_number: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="draft")
    issued_date: Mapped[date] = mapped_column(Date, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    paid_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    subtotal_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    tax_rate_percent: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False, default=Decimal("0"))
    tax_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("status IN ('draft', 'sent', 'paid', 'cancelled')", name="ck_invoices_status"),
        UniqueConstraint("team_id", "invoice_number", name="uq_invoices_team_number"),
        Index("ix_invoices_team", "team_id"),
        Index("ix_invoices_client", "client_id"),
        Index("ix_invoices_team_status", "team_id", "status"),
    )


class InvoiceItemTable(Base):
    """Invoice line.  ``amount_cents == round(quantity * rate_cents)``."""

    __tablename__ = "invoice_items"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    team_id: Mapped[str] = mapped_column(String(36), ForeignKey("teams.id", ondelete="CASCADE"), nullable=False)
    invoice_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False
    )
    description: Mapped[str] = mapped_column(Text, nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    rate_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_invoice_items_invoice", "invoice_id"),)


class InvoiceTimeEntryTable(Base):
    """Link row billing one time entry on one invoice item.

    The UNIQUE constraint on ``time_entry_id`` is the storage-level
    guarantee against double billing.
    """

    __tablename__ = "invoice_time_entries"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    invoice_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False
    )
    time_entry_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("time_entries.id", ondelete="RESTRICT"), nullable=False
    )
    invoice_item_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("invoice_items.id", ondelete="CASCADE"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("time_entry_id", name="uq_invoice_time_entries_time_entry"),
        Index("ix_invoice_time_entries_invoice", "invoice_id"),
        Index("ix_invoice_time_entries_item", "invoice_item_id"),
    )


# Case-insensitive client name uniqueness per team.
Index("uq_clients_team_lower_name", ClientTable.team_id, func.lower(ClientTable.name), unique=True)


def as_dict(row: Base) -> dict[str, Any]:
    """Return the column values of an ORM row keyed by column name."""
    return {column.key: getattr(row, column.key) for column in row.__table__.columns}
