"""Team endpoints: the caller's teams, the active team, and its members.

The active team is the one named in the ``X-Team-ID`` header.  Settings
changes, member additions, role changes and removals require team OWNER
or ADMIN.  Creating a team only requires an authenticated caller.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, status

from ardine_api.dependencies import ContextDep
from ardine_api.schemas import (
    AddMemberRequest,
    MyTeamsResponse,
    TeamCreateRequest,
    TeamMemberResponse,
    TeamMembersResponse,
    TeamResponse,
    TeamUpdateRequest,
    UpdateRoleRequest,
)
from ardine_api.services.team_service import TeamService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/team", tags=["team"])
teams_router = APIRouter(prefix="/teams", tags=["team"])


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@teams_router.post("", response_model=TeamResponse, status_code=status.HTTP_201_CREATED)
async def create_team(body: TeamCreateRequest, ctx: ContextDep) -> dict[str, Any]:
    """Create a team; the caller becomes its OWNER."""
    return await TeamService(ctx).create_team(
        body.name,
        slug=body.slug,
        default_hourly_rate_cents=body.default_hourly_rate_cents,
        default_tax_rate_percent=body.default_tax_rate_percent,
    )


@teams_router.get("", response_model=MyTeamsResponse)
async def list_my_teams(ctx: ContextDep) -> dict[str, Any]:
    return await TeamService(ctx).list_my_teams()


@router.get("", response_model=TeamResponse)
async def get_team(ctx: ContextDep) -> dict[str, Any]:
    return await TeamService(ctx).get_team()


@router.patch("", response_model=TeamResponse)
async def update_team(body: TeamUpdateRequest, ctx: ContextDep) -> dict[str, Any]:
    return await TeamService(ctx).update_team(**body.model_dump(exclude_unset=True))


@router.get("/members", response_model=TeamMembersResponse)
async def list_members(ctx: ContextDep) -> dict[str, Any]:
    """List all members of the active team.  Available to any member."""
    return await TeamService(ctx).list_members()


@router.post("/members", response_model=TeamMemberResponse, status_code=status.HTTP_201_CREATED)
async def add_member(body: AddMemberRequest, ctx: ContextDep) -> dict[str, Any]:
    """Add an existing user to the active team by email."""
    return await TeamService(ctx).add_member(body.email, body.role)


@router.patch("/members/{user_id}/role", response_model=TeamMemberResponse)
async def update_role(user_id: str, body: UpdateRoleRequest, ctx: ContextDep) -> dict[str, Any]:
    """Change a member's team role.

    The last OWNER cannot be demoted, and ADMINs cannot modify OWNERs.
    """
    service = TeamService(ctx)
    await service.update_member_role(user_id, body.role)
    members = await service.list_members()
    return next(member for member in members["members"] if member["user_id"] == user_id)


@router.delete("/members/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_member(user_id: str, ctx: ContextDep) -> None:
    await TeamService(ctx).remove_member(user_id)
