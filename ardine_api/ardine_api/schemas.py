"""Pydantic request and response models for API endpoints.

Routers import from here to avoid duplication.  Role and status fields
use the core enums so only the exact stored strings are accepted.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal

from ardine_core.auth.roles import InvoiceStatus, ProjectRole, ProjectStatus, TeamRole
from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Pagination
# ---------------------------------------------------------------------------


class PageInfoResponse(BaseModel):
    total: int
    has_next_page: bool
    next_offset: int | None = None


# ---------------------------------------------------------------------------
# Clients
# ---------------------------------------------------------------------------


class ClientCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    email: str | None = Field(default=None, max_length=255)
    contact_name: str | None = Field(default=None, max_length=120)
    billing_address: dict[str, Any] | None = None
    default_hourly_rate_cents: int | None = Field(default=None, ge=0)
    currency: str = Field(default="USD", min_length=3, max_length=3)


class ClientUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    email: str | None = Field(default=None, max_length=255)
    contact_name: str | None = Field(default=None, max_length=120)
    billing_address: dict[str, Any] | None = None
    default_hourly_rate_cents: int | None = Field(default=None, ge=0)
    currency: str | None = Field(default=None, min_length=3, max_length=3)


class ClientResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    team_id: str
    name: str
    email: str | None = None
    contact_name: str | None = None
    default_hourly_rate_cents: int | None = None
    currency: str = "USD"
    archived_at: datetime | None = None
    created_at: datetime | None = None


class ClientListResponse(BaseModel):
    items: list[ClientResponse]
    page_info: PageInfoResponse


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------


class ProjectCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    client_id: str | None = None
    code: str | None = Field(default=None, max_length=64)
    description: str | None = None
    color: str | None = Field(default=None, max_length=16)
    tags: list[str] = Field(default_factory=list)
    default_hourly_rate_cents: int | None = Field(default=None, ge=0)
    start_date: date | None = None
    due_date: date | None = None


class ProjectUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    client_id: str | None = None
    code: str | None = Field(default=None, max_length=64)
    description: str | None = None
    color: str | None = Field(default=None, max_length=16)
    tags: list[str] | None = None
    default_hourly_rate_cents: int | None = Field(default=None, ge=0)
    start_date: date | None = None
    due_date: date | None = None


class ProjectStatusRequest(BaseModel):
    status: ProjectStatus


class ProjectResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    team_id: str
    client_id: str | None = None
    name: str
    code: str | None = None
    description: str | None = None
    status: ProjectStatus
    color: str | None = None
    tags: list[str] = Field(default_factory=list)
    default_hourly_rate_cents: int | None = None
    start_date: date | None = None
    due_date: date | None = None
    archived_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    client: ClientResponse | None = None


class ProjectListResponse(BaseModel):
    items: list[ProjectResponse]
    page_info: PageInfoResponse


class ProjectMemberRequest(BaseModel):
    user_id: str
    role: ProjectRole = ProjectRole.CONTRIBUTOR


class ProjectMemberRoleRequest(BaseModel):
    role: ProjectRole


class ProjectMemberResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    project_id: str
    user_id: str
    role: ProjectRole


class TaskCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    billable: bool = True
    hourly_rate_cents: int | None = Field(default=None, ge=0)


class TaskUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    status: Literal["active", "on_hold", "completed", "archived"] | None = None
    billable: bool | None = None
    hourly_rate_cents: int | None = Field(default=None, ge=0)


class TaskReorderRequest(BaseModel):
    task_ids: list[str]


class TaskAssigneeRequest(BaseModel):
    user_id: str


class TaskResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    project_id: str
    name: str
    description: str | None = None
    status: str
    billable: bool
    hourly_rate_cents: int | None = None
    order_index: int | None = None
    assignee_ids: list[str] = Field(default_factory=list)
    tracked_seconds: int = 0


class TaskListResponse(BaseModel):
    items: list[TaskResponse]


class TimeSummaryResponse(BaseModel):
    total_seconds: int
    billable_seconds: int
    billable_amount_cents: int
    entry_count: int
    running_count: int


class ProjectDetailResponse(ProjectResponse):
    members: list[ProjectMemberResponse] = Field(default_factory=list)
    tasks: list[TaskResponse] = Field(default_factory=list)
    time_summary: TimeSummaryResponse | None = None
    effective_role: ProjectRole | None = None


# ---------------------------------------------------------------------------
# Time entries
# ---------------------------------------------------------------------------


class StartTimerRequest(BaseModel):
    project_id: str
    task_id: str | None = None
    note: str | None = None
    billable: bool = True


class TimeEntryCreateRequest(BaseModel):
    project_id: str
    task_id: str | None = None
    note: str | None = None
    billable: bool = True
    started_at: datetime
    stopped_at: datetime


class TimeEntryUpdateRequest(BaseModel):
    project_id: str | None = None
    task_id: str | None = None
    note: str | None = None
    billable: bool | None = None
    started_at: datetime | None = None
    stopped_at: datetime | None = None


class TimeEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    team_id: str
    project_id: str
    task_id: str | None = None
    user_id: str | None = None
    client_id: str | None = None
    note: str | None = None
    started_at: datetime
    stopped_at: datetime | None = None
    duration_seconds: int | None = None
    billable: bool
    hourly_rate_cents: int | None = None
    amount_cents: int | None = None


class TimeEntryListResponse(BaseModel):
    items: list[TimeEntryResponse]
    page_info: PageInfoResponse


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------


class InvoiceCreateRequest(BaseModel):
    client_id: str
    issued_date: date
    due_date: date
    tax_rate_percent: Decimal | None = Field(default=None, ge=0, le=100)
    notes: str | None = None


class InvoiceUpdateRequest(BaseModel):
    issued_date: date | None = None
    due_date: date | None = None
    tax_rate_percent: Decimal | None = Field(default=None, ge=0, le=100)
    notes: str | None = None


class InvoiceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    team_id: str
    client_id: str
    invoice_number: str
    status: InvoiceStatus
    issued_date: date
    due_date: date
    paid_date: date | None = None
    subtotal_cents: int
    tax_rate_percent: Decimal
    tax_amount_cents: int
    total_cents: int
    notes: str | None = None


class InvoiceListResponse(BaseModel):
    items: list[InvoiceResponse]
    page_info: PageInfoResponse


class InvoiceItemCreateRequest(BaseModel):
    description: str = Field(min_length=1)
    quantity: Decimal = Field(ge=0)
    rate_cents: int = Field(ge=0)
    time_entry_ids: list[str] = Field(default_factory=list)


class InvoiceItemUpdateRequest(BaseModel):
    description: str | None = Field(default=None, min_length=1)
    quantity: Decimal | None = Field(default=None, ge=0)
    rate_cents: int | None = Field(default=None, ge=0)


class LinkTimeEntriesRequest(BaseModel):
    time_entry_ids: list[str] = Field(min_length=1)


class MarkPaidRequest(BaseModel):
    paid_date: date | None = None


class InvoiceItemResponse(BaseModel):
    id: str
    invoice_id: str
    description: str
    quantity: Decimal
    rate_cents: int
    amount_cents: int
    time_entry_ids: list[str] = Field(default_factory=list)


class InvoiceDetailResponse(InvoiceResponse):
    items: list[InvoiceItemResponse] = Field(default_factory=list)


class RemovedResponse(BaseModel):
    removed: bool


# ---------------------------------------------------------------------------
# Team
# ---------------------------------------------------------------------------


class TeamResponse(BaseModel):
    id: str
    name: str
    slug: str
    billing_address: dict[str, Any] | None = None
    default_hourly_rate_cents: int | None = None
    default_tax_rate_percent: Decimal
    created_at: datetime | None = None


class TeamMemberResponse(BaseModel):
    user_id: str
    email: str
    name: str
    role: TeamRole
    joined_at: datetime | None = None


class TeamMembersResponse(BaseModel):
    members: list[TeamMemberResponse]


class UpdateRoleRequest(BaseModel):
    role: TeamRole


class TeamCreateRequest(BaseModel):
    name: str = Field(max_length=120)
    slug: str | None = Field(default=None, max_length=120)
    default_hourly_rate_cents: int | None = Field(default=None, ge=0)
    default_tax_rate_percent: Decimal = Field(default=Decimal("0"), ge=0, le=100)


class TeamUpdateRequest(BaseModel):
    name: str | None = Field(default=None, max_length=120)
    slug: str | None = Field(default=None, max_length=120)
    billing_address: dict[str, Any] | None = None
    default_hourly_rate_cents: int | None = Field(default=None, ge=0)
    default_tax_rate_percent: Decimal | None = Field(default=None, ge=0, le=100)


class MyTeamResponse(TeamResponse):
    role: TeamRole


class MyTeamsResponse(BaseModel):
    teams: list[MyTeamResponse]


class AddMemberRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320)
    role: TeamRole = TeamRole.MEMBER


# ---------------------------------------------------------------------------
# Client details
# ---------------------------------------------------------------------------


class ClientDetailResponse(ClientResponse):
    projects: list[ProjectResponse] = Field(default_factory=list)
    invoices: list[InvoiceResponse] = Field(default_factory=list)
    time_summary: TimeSummaryResponse | None = None
