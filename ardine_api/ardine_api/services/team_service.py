"""Teams, their settings, and membership management.

Creating a team makes the caller its first OWNER.  Settings changes,
member additions, role changes and removals are restricted to team
OWNERs and ADMINs.  ADMINs cannot touch OWNER memberships or promote
anyone to OWNER, and no operation may leave the team without an OWNER.
"""

from __future__ import annotations

import logging
import re
from decimal import Decimal
from typing import Any

from ardine_core.auth.context import RequestContext
from ardine_core.auth.roles import TeamRole, parse_team_role
from ardine_core.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError, error_mapping
from ardine_core.state.repository import TeamMembershipRepository, TeamRepository, UserRepository
from ardine_core.state.tables import TeamMembershipTable, as_dict

logger = logging.getLogger(__name__)

_SLUG_PATTERN = re.compile(r"^[a-z0-9-]{2,120}$")


def slug_from_name(name: str) -> str:
    """Derive a URL slug: lowercase, hyphen-separated, ``[a-z0-9-]`` only."""
    slug = re.sub(r"[\s_]+", "-", name.strip().lower())
    slug = re.sub(r"[^a-z0-9-]+", "", slug)
    slug = re.sub(r"-{2,}", "-", slug).strip("-")
    return slug[:120]


def _clean_name(name: str | None) -> str:
    cleaned = (name or "").strip()
    if not 2 <= len(cleaned) <= 120:
        raise ValidationError("Team name must be between 2 and 120 characters", field="name")
    return cleaned


def _clean_slug(slug: str) -> str:
    cleaned = slug.strip().lower()
    if not _SLUG_PATTERN.match(cleaned):
        raise ValidationError("Slug must be lowercase alphanumeric with hyphens only", field="slug")
    return cleaned


class TeamService:
    """Team creation, settings, and membership management.

    Parameters
    ----------
    ctx:
        Request context of the caller; the active team is the one
        being managed.
    """

    def __init__(self, ctx: RequestContext) -> None:
        self._ctx = ctx

    def _repo(self) -> TeamMembershipRepository:
        return TeamMembershipRepository(self._ctx.session, self._ctx.require_team())

    # -- teams ---------------------------------------------------------------

    async def create_team(
        self,
        name: str,
        *,
        slug: str | None = None,
        default_hourly_rate_cents: int | None = None,
        default_tax_rate_percent: Decimal = Decimal("0"),
    ) -> dict[str, Any]:
        """Create a team with the caller as its first OWNER.

        No active team is needed.  The slug is derived from the name
        when not given.

        Raises
        ------
        ValidationError
            If the name or slug is malformed.
        ConflictError
            If the slug is already taken.
        """
        ctx = self._ctx
        user_id = ctx.require_auth()
        cleaned_name = _clean_name(name)
        cleaned_slug = _clean_slug(slug if slug is not None else slug_from_name(cleaned_name))

        teams = TeamRepository(ctx.session)
        if await teams.get_by_slug(cleaned_slug) is not None:
            raise ConflictError("Team slug is already taken")

        async with error_mapping():
            team = await teams.create(
                cleaned_name,
                cleaned_slug,
                default_hourly_rate_cents=default_hourly_rate_cents,
                default_tax_rate_percent=Decimal(default_tax_rate_percent).quantize(Decimal("0.01")),
            )
            await TeamMembershipRepository(ctx.session, team.id).add(user_id, TeamRole.OWNER.value)
        logger.info("Created team=%s slug=%s", team.id, team.slug, extra={"team_id": team.id, "user_id": user_id})
        return as_dict(team)

    async def list_my_teams(self) -> dict[str, Any]:
        """Teams the caller belongs to, with the caller's role in each."""
        ctx = self._ctx
        user_id = ctx.require_auth()
        rows = await TeamRepository(ctx.session).list_for_user(user_id)
        return {"teams": [{**as_dict(team), "role": role} for team, role in rows]}

    async def get_team(self) -> dict[str, Any]:
        ctx = self._ctx
        team_id = ctx.require_team()
        if ctx.team_role is None and not ctx.is_instance_admin:
            raise NotFoundError("Team not found")
        team = await ctx.loaders.teams.load(team_id)
        if team is None:
            raise NotFoundError("Team not found")
        return as_dict(team)

    async def update_team(self, **fields: Any) -> dict[str, Any]:
        """Edit the active team's name, slug, billing address or defaults.

        The defaults feed rate resolution for new time entries and the
        tax rate of new invoices; existing records keep their values.
        """
        ctx = self._ctx
        ctx.require_team_management()
        team = await TeamRepository(ctx.session).get(ctx.require_team())
        if team is None:
            raise NotFoundError("Team not found")

        if "name" in fields:
            fields["name"] = _clean_name(fields["name"])
        if "slug" in fields:
            if fields["slug"] is None:
                raise ValidationError("Slug is required", field="slug")
            fields["slug"] = _clean_slug(fields["slug"])
            existing = await TeamRepository(ctx.session).get_by_slug(fields["slug"])
            if existing is not None and existing.id != team.id:
                raise ConflictError("Team slug is already taken")
        if "default_tax_rate_percent" in fields:
            if fields["default_tax_rate_percent"] is None:
                raise ValidationError("Default tax rate is required", field="defaultTaxRatePercent")
            fields["default_tax_rate_percent"] = Decimal(fields["default_tax_rate_percent"]).quantize(Decimal("0.01"))

        async with error_mapping():
            await TeamRepository(ctx.session).update(team, **fields)
        ctx.loaders.teams.clear(team.id)
        logger.info(
            "Updated team=%s fields=%s",
            team.id,
            sorted(fields),
            extra={"team_id": team.id, "user_id": ctx.user_id},
        )
        return as_dict(team)

    async def list_members(self) -> dict[str, Any]:
        """Return every member of the team with their role.

        Any team member may list the team; outsiders get ``NotFound``.
        """
        ctx = self._ctx
        ctx.require_team()
        if ctx.team_role is None and not ctx.is_instance_admin:
            raise NotFoundError("Team not found")

        rows = await self._repo().list_with_users()
        members = [
            {
                "user_id": user.id,
                "email": user.email,
                "name": user.name,
                "role": membership.role,
                "joined_at": membership.created_at,
            }
            for membership, user in rows
        ]
        return {"members": members}

    async def add_member(self, email: str, role: TeamRole | str = TeamRole.MEMBER) -> dict[str, Any]:
        """Add an existing user, found by email, to the active team.

        Raises
        ------
        NotFoundError
            If no user has that email.
        ForbiddenError
            If a non-OWNER tries to add an OWNER.
        ConflictError
            If the user is already a member.
        """
        ctx = self._ctx
        ctx.require_team_management()
        new_role = parse_team_role(role)
        if new_role is None:
            raise ValidationError("Role is required", field="role")
        if new_role is TeamRole.OWNER and ctx.team_role is not TeamRole.OWNER and not ctx.is_instance_admin:
            raise ForbiddenError("Only team owners can grant the owner role")

        user = await UserRepository(ctx.session).get_by_email(email)
        if user is None:
            raise NotFoundError("User not found with this email")

        repo = self._repo()
        if await repo.get(user.id) is not None:
            raise ConflictError("User is already a member of this team")
        async with error_mapping():
            membership = await repo.add(user.id, new_role.value)
        logger.info(
            "Team member added: team=%s user=%s role=%s",
            membership.team_id,
            user.id,
            new_role.value,
            extra={"team_id": membership.team_id, "user_id": ctx.user_id},
        )
        return {
            "user_id": user.id,
            "email": user.email,
            "name": user.name,
            "role": membership.role,
            "joined_at": membership.created_at,
        }

    async def _target(self, user_id: str) -> TeamMembershipTable:
        membership = await self._repo().get(user_id)
        if membership is None:
            raise NotFoundError("Team membership not found")
        return membership

    def _guard_owner_membership(self, membership: TeamMembershipTable, message: str) -> None:
        if (
            membership.role == TeamRole.OWNER.value
            and self._ctx.team_role is not TeamRole.OWNER
            and not self._ctx.is_instance_admin
        ):
            logger.info("Owner modification denied: user=%s target=%s", self._ctx.user_id, membership.user_id)
            raise ForbiddenError(message)

    async def update_member_role(self, user_id: str, role: TeamRole | str) -> dict[str, Any]:
        """Change a member's team role.

        Raises
        ------
        ForbiddenError
            If the caller cannot manage the team, or is an ADMIN acting
            on an OWNER or granting OWNER.
        ValidationError
            If the change would demote the last OWNER.
        """
        ctx = self._ctx
        ctx.require_team_management()
        new_role = parse_team_role(role)
        if new_role is None:
            raise ValidationError("Role is required", field="role")

        membership = await self._target(user_id)
        self._guard_owner_membership(membership, "Only team owners can modify owner roles")
        if new_role is TeamRole.OWNER and ctx.team_role is not TeamRole.OWNER and not ctx.is_instance_admin:
            raise ForbiddenError("Only team owners can grant the owner role")

        repo = self._repo()
        if membership.role == TeamRole.OWNER.value and new_role is not TeamRole.OWNER:
            if await repo.count_owners() <= 1:
                raise ValidationError("Cannot change the last owner role", field="role")

        async with error_mapping():
            await repo.set_role(membership, new_role.value)
        logger.info(
            "Team role changed: team=%s user=%s role=%s",
            membership.team_id,
            user_id,
            new_role.value,
            extra={"team_id": membership.team_id, "user_id": ctx.user_id},
        )
        return as_dict(membership)

    async def remove_member(self, user_id: str) -> None:
        ctx = self._ctx
        ctx.require_team_management()
        membership = await self._target(user_id)
        self._guard_owner_membership(membership, "Only team owners can remove other owners")

        repo = self._repo()
        if membership.role == TeamRole.OWNER.value and await repo.count_owners() <= 1:
            raise ValidationError("Cannot remove the last owner")

        async with error_mapping():
            await repo.remove(membership)
        logger.info(
            "Team member removed: team=%s user=%s",
            membership.team_id,
            user_id,
            extra={"team_id": membership.team_id, "user_id": ctx.user_id},
        )
