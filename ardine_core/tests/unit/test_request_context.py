"""Tests for ardine_core/auth/context.py

Covers:
- RequestContext.build looks up the team role from storage
- Anonymous, team-less and cross-team callers are rejected with the right kind
- Instance ADMIN bypasses team scoping and resolves to MANAGER
- Effective project role lookups are batched per request
"""

from __future__ import annotations

import asyncio

import pytest
from ardine_core.auth.roles import InstanceRole, ProjectRole, TeamRole
from ardine_core.errors import ForbiddenError, NotFoundError, UnauthorizedError

# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


class TestBuild:
    @pytest.mark.asyncio
    async def test_team_role_resolved_from_membership(self, factory) -> None:
        team = await factory.team()
        user = await factory.member(team, "BILLING")
        ctx = await factory.context(user, team)
        assert ctx.team_role is TeamRole.BILLING
        assert ctx.instance_role is InstanceRole.USER

    @pytest.mark.asyncio
    async def test_non_member_keeps_team_without_role(self, factory) -> None:
        team = await factory.team()
        outsider = await factory.user()
        ctx = await factory.context(outsider, team)
        assert ctx.team_id == team.id
        assert ctx.team_role is None

    @pytest.mark.asyncio
    async def test_anonymous_context(self, factory) -> None:
        ctx = await factory.context(None, None)
        assert ctx.user_id is None
        assert ctx.instance_role is None
        with pytest.raises(UnauthorizedError, match="Authentication required"):
            ctx.require_auth()


# ---------------------------------------------------------------------------
# Team scope
# ---------------------------------------------------------------------------


class TestTeamScope:
    @pytest.mark.asyncio
    async def test_require_team_without_active_team(self, factory) -> None:
        user = await factory.user()
        ctx = await factory.context(user, None)
        with pytest.raises(ForbiddenError, match="No active team selected"):
            ctx.require_team()

    @pytest.mark.asyncio
    async def test_cross_team_entity_is_not_found(self, factory) -> None:
        team_a = await factory.team()
        team_b = await factory.team()
        user = await factory.member(team_a, "OWNER")
        ctx = await factory.context(user, team_a)
        ctx.require_team_access(team_a.id)
        with pytest.raises(NotFoundError):
            ctx.require_team_access(team_b.id)

    @pytest.mark.asyncio
    async def test_instance_admin_bypasses_team_checks(self, factory) -> None:
        team_a = await factory.team()
        team_b = await factory.team()
        admin = await factory.user(instance_role="ADMIN")
        ctx = await factory.context(admin, team_a)
        assert ctx.team_role is None
        ctx.require_team_access(team_b.id)
        ctx.require_team_management()
        ctx.require_invoice_access()

    @pytest.mark.asyncio
    async def test_member_cannot_manage_team(self, factory) -> None:
        team = await factory.team()
        user = await factory.member(team, "MEMBER")
        ctx = await factory.context(user, team)
        ctx.require_at_least_team_role(TeamRole.VIEWER)
        with pytest.raises(ForbiddenError):
            ctx.require_team_management()
        with pytest.raises(ForbiddenError):
            ctx.require_invoice_access()


# ---------------------------------------------------------------------------
# Project scope
# ---------------------------------------------------------------------------


class TestProjectScope:
    @pytest.mark.asyncio
    async def test_member_effective_roles(self, factory) -> None:
        team = await factory.team()
        user = await factory.member(team, "MEMBER")
        assigned = await factory.project(team)
        unassigned = await factory.project(team)
        await factory.assign(assigned, user, "VIEWER")

        ctx = await factory.context(user, team)
        assert await ctx.get_effective_project_role(assigned.id) is ProjectRole.CONTRIBUTOR
        assert await ctx.get_effective_project_role(unassigned.id) is None
        with pytest.raises(ForbiddenError, match="Insufficient project permissions"):
            await ctx.require_project_role(unassigned.id, [ProjectRole.MANAGER])

    @pytest.mark.asyncio
    async def test_instance_admin_is_manager_everywhere(self, factory) -> None:
        team = await factory.team()
        project = await factory.project(team)
        admin = await factory.user(instance_role="ADMIN")
        ctx = await factory.context(admin, None)
        assert await ctx.get_effective_project_role(project.id) is ProjectRole.MANAGER

    @pytest.mark.asyncio
    async def test_role_lookups_are_batched(self, factory) -> None:
        team = await factory.team()
        user = await factory.member(team, "MEMBER")
        projects = [await factory.project(team) for _ in range(5)]
        for project in projects[:3]:
            await factory.assign(project, user, "CONTRIBUTOR")

        ctx = await factory.context(user, team)
        roles = await asyncio.gather(*(ctx.get_effective_project_role(p.id) for p in projects))
        assert roles == [ProjectRole.CONTRIBUTOR] * 3 + [None] * 2
        assert ctx.loaders.query_count == 1

    @pytest.mark.asyncio
    async def test_load_project_from_other_team(self, factory) -> None:
        team_a = await factory.team()
        team_b = await factory.team()
        user = await factory.member(team_a, "OWNER")
        foreign = await factory.project(team_b)
        ctx = await factory.context(user, team_a)
        with pytest.raises(NotFoundError):
            await ctx.load_project(foreign.id)
        with pytest.raises(NotFoundError, match="Project not found"):
            await ctx.load_project("missing")
