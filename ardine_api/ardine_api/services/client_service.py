"""Client records of the active team, with their projects and billing."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict
from datetime import UTC, datetime
from typing import Any

from ardine_core.auth.context import RequestContext
from ardine_core.auth.permissions import can_view_project
from ardine_core.auth.roles import BILLING_ROLES, TeamRole
from ardine_core.errors import NotFoundError, ValidationError, error_mapping
from ardine_core.query.builder import Fragment, ListQueryOptions, build_list_query, execute_list_query
from ardine_core.state.repository import ClientRepository
from ardine_core.state.tables import ClientTable, as_dict
from ardine_core.timekeeping import summarize_time_entries

logger = logging.getLogger(__name__)

CLIENT_SORT_FIELDS = ("name", "email", "created_at", "updated_at")
CLIENT_SEARCH_COLUMNS = ("name", "email", "contact_name")


class ClientService:
    """Any team member reads clients; OWNER and ADMIN write them."""

    def __init__(self, ctx: RequestContext, *, default_limit: int = 25, max_limit: int = 100) -> None:
        self._ctx = ctx
        self._default_limit = default_limit
        self._max_limit = max_limit

    async def list_clients(
        self,
        *,
        status: str | None = None,
        search: str | None = None,
        order_by: str | None = None,
        order: str | None = None,
        offset: int | None = None,
        limit: int | None = None,
    ) -> dict[str, Any]:
        """Return one page of clients.

        ``status`` is ``"active"`` or ``"archived"``; anything else
        lists both.
        """
        ctx = self._ctx
        ctx.require_at_least_team_role(TeamRole.VIEWER)

        filters = [Fragment.of("team_id = ?", ctx.require_team())]
        if status == "archived":
            filters.append(Fragment.of("archived_at IS NOT NULL"))
        elif status == "active":
            filters.append(Fragment.of("archived_at IS NULL"))

        query = build_list_query(
            ListQueryOptions(
                select="*",
                source="clients",
                filters=filters,
                search=search,
                search_columns=CLIENT_SEARCH_COLUMNS,
                order_by=order_by,
                order=order,
                allowed_sort=CLIENT_SORT_FIELDS,
                default_sort="name",
                offset=offset,
                limit=limit,
                default_limit=self._default_limit,
                max_limit=self._max_limit,
            )
        )
        page = await execute_list_query(ctx.session, query, ClientTable.__table__)
        return {"items": page.rows, "page_info": asdict(page.page_info)}

    async def _load(self, client_id: str) -> ClientTable:
        ctx = self._ctx
        ctx.require_auth()
        client = await ctx.loaders.clients.load(client_id)
        if client is None:
            raise NotFoundError("Client not found")
        ctx.require_team_access(client.team_id)
        return client

    async def get_client(self, client_id: str) -> dict[str, Any]:
        self._ctx.require_at_least_team_role(TeamRole.VIEWER)
        return as_dict(await self._load(client_id))

    async def get_client_details(self, client_id: str) -> dict[str, Any]:
        """Return the client with its visible projects and, for billing roles, its invoices.

        Projects are filtered by the caller's effective project role.
        ``invoices`` and ``time_summary`` are only filled for OWNER,
        ADMIN and BILLING callers; everyone else gets an empty list and
        ``None``.
        """
        ctx = self._ctx
        ctx.require_at_least_team_role(TeamRole.VIEWER)
        client = await self._load(client_id)
        loaders = ctx.loaders

        projects = await loaders.projects_by_client_id.load(client.id)
        roles = await asyncio.gather(*(ctx.get_effective_project_role(project.id) for project in projects))
        visible = [as_dict(project) for project, role in zip(projects, roles, strict=True) if can_view_project(role)]

        invoices: list[dict[str, Any]] = []
        time_summary = None
        if ctx.is_instance_admin or ctx.team_role in BILLING_ROLES:
            invoices = [as_dict(invoice) for invoice in await loaders.invoices_by_client_id.load(client.id)]
            entries = await loaders.time_entries_by_client_id.load(client.id)
            time_summary = asdict(summarize_time_entries(entries))

        return {**as_dict(client), "projects": visible, "invoices": invoices, "time_summary": time_summary}

    async def create_client(self, name: str, **fields: Any) -> dict[str, Any]:
        ctx = self._ctx
        ctx.require_team_management()
        if not name or not name.strip():
            raise ValidationError("Client name is required", field="name")
        async with error_mapping():
            client = await ClientRepository(ctx.session, ctx.require_team()).create(name, **fields)
        logger.info("Created client=%s team=%s", client.id, client.team_id)
        return as_dict(client)

    async def update_client(self, client_id: str, **fields: Any) -> dict[str, Any]:
        ctx = self._ctx
        ctx.require_team_management()
        client = await self._load(client_id)
        if "name" in fields and (fields["name"] is None or not fields["name"].strip()):
            raise ValidationError("Client name is required", field="name")
        async with error_mapping():
            for key, value in fields.items():
                setattr(client, key, value)
            await ctx.session.flush()
        ctx.loaders.clients.clear(client.id)
        return as_dict(client)

    async def set_archived(self, client_id: str, archived: bool) -> dict[str, Any]:
        ctx = self._ctx
        ctx.require_team_management()
        client = await self._load(client_id)
        client.archived_at = (client.archived_at or datetime.now(UTC)) if archived else None
        async with error_mapping():
            await ctx.session.flush()
        ctx.loaders.clients.clear(client.id)
        return as_dict(client)

    async def delete_client(self, client_id: str) -> None:
        """Delete a client.  Clients with invoices cannot be deleted."""
        ctx = self._ctx
        ctx.require_team_management()
        client = await self._load(client_id)
        async with error_mapping():
            await ctx.session.delete(client)
            await ctx.session.flush()
        ctx.loaders.clients.clear(client_id)
        logger.info("Deleted client=%s", client_id)
