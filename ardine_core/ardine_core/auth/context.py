"""Request-scoped authorization context.

A :class:`RequestContext` is built once per inbound operation from the
authenticated identity and the active team, and carries a fresh
:class:`~ardine_core.loaders.Loaders` registry bound to the request's
session.  It is discarded when the operation ends; nothing here is
shared across requests, so role changes take effect on the next call.

Instance ``ADMIN`` users bypass team-scope checks and resolve to
``MANAGER`` on every project.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ardine_core.auth import permissions
from ardine_core.auth.roles import (
    InstanceRole,
    ProjectRole,
    TeamRole,
    parse_instance_role,
    parse_project_role,
    parse_team_role,
)
from ardine_core.errors import ForbiddenError, NotFoundError, UnauthorizedError
from ardine_core.loaders import Loaders
from ardine_core.state.tables import ProjectTable, TeamMembershipTable

logger = logging.getLogger(__name__)


@dataclass
class RequestContext:
    """Identity, active team, and per-request loaders for one operation."""

    session: AsyncSession
    user_id: str | None = None
    team_id: str | None = None
    instance_role: InstanceRole | None = None
    team_role: TeamRole | None = None
    loaders: Loaders = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self.loaders = Loaders(self.session)

    @classmethod
    async def build(
        cls,
        session: AsyncSession,
        *,
        user_id: str | None,
        team_id: str | None,
        instance_role: str | InstanceRole | None,
    ) -> RequestContext:
        """Create a context, looking up the caller's role in *team_id*.

        A caller who is not a member of the requested team keeps the
        team id but has no team role.
        """
        team_role: TeamRole | None = None
        if user_id and team_id:
            result = await session.execute(
                select(TeamMembershipTable.role).where(
                    TeamMembershipTable.user_id == user_id,
                    TeamMembershipTable.team_id == team_id,
                )
            )
            team_role = parse_team_role(result.scalar_one_or_none())
        return cls(
            session=session,
            user_id=user_id or None,
            team_id=team_id or None,
            instance_role=parse_instance_role(instance_role) if user_id else None,
            team_role=team_role,
        )

    @property
    def is_instance_admin(self) -> bool:
        return self.instance_role == InstanceRole.ADMIN

    # -- identity ------------------------------------------------------------

    def require_auth(self) -> str:
        """Return the caller's user id or raise :class:`UnauthorizedError`."""
        if not self.user_id:
            raise UnauthorizedError("Authentication required")
        return self.user_id

    def require_team(self) -> str:
        """Return the active team id; authentication is checked first."""
        self.require_auth()
        if not self.team_id:
            raise ForbiddenError("No active team selected")
        return self.team_id

    def require_team_access(self, entity_team_id: str | None) -> None:
        """Reject entities outside the active team as if they did not exist."""
        self.require_auth()
        if self.is_instance_admin:
            return
        if entity_team_id is None or entity_team_id != self.team_id:
            logger.info("Cross-team access denied: user=%s team=%s", self.user_id, self.team_id)
            raise NotFoundError("Resource not found")

    # -- team scope ----------------------------------------------------------

    def require_at_least_team_role(self, minimum: TeamRole) -> None:
        self.require_team()
        if not self.is_instance_admin:
            permissions.require_at_least_team_role(self.team_role, minimum)

    def require_team_management(self) -> None:
        self.require_team()
        if not self.is_instance_admin:
            permissions.require_team_management(self.team_role)

    def require_invoice_access(self) -> None:
        self.require_team()
        if not self.is_instance_admin:
            permissions.require_invoice_access(self.team_role)

    # -- project scope -------------------------------------------------------

    async def get_project_role(self, project_id: str) -> ProjectRole | None:
        """Return the caller's explicit project role, batched per request."""
        if not self.user_id:
            return None
        raw = await self.loaders.project_role.load((project_id, self.user_id))
        return parse_project_role(raw)

    async def get_effective_project_role(self, project_id: str) -> ProjectRole | None:
        if not self.user_id:
            return None
        if self.is_instance_admin:
            return ProjectRole.MANAGER
        project_role = await self.get_project_role(project_id)
        return permissions.resolve_effective_project_role(self.team_role, project_role)

    async def require_project_role(
        self,
        project_id: str,
        allowed: Iterable[ProjectRole],
    ) -> ProjectRole:
        """Return the effective role, raising unless it is in *allowed*."""
        self.require_auth()
        allowed_roles = frozenset(allowed)
        effective = await self.get_effective_project_role(project_id)
        if effective is None or effective not in allowed_roles:
            logger.info(
                "Project role check failed: user=%s project=%s effective=%s",
                self.user_id,
                project_id,
                effective.value if effective else None,
            )
            raise ForbiddenError("Insufficient project permissions")
        return effective

    async def load_project(self, project_id: str) -> ProjectTable:
        """Load a project in the active team or raise :class:`NotFoundError`."""
        self.require_auth()
        project = await self.loaders.projects.load(project_id)
        if project is None:
            raise NotFoundError("Project not found")
        self.require_team_access(project.team_id)
        return project
