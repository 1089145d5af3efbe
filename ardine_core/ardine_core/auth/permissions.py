"""Effective project-role resolution and team-scope guards.

Resolution is pure: it never raises and returns ``None`` for "no
access".  Callers decide how to treat "no access"; read paths filter
silently while write paths raise :class:`~ardine_core.errors.ForbiddenError`.

Resolution table (team role x project role)::

    OWNER / ADMIN    -> MANAGER (blanket project authority)
    MEMBER           -> none if unassigned, MANAGER if MANAGER,
                        otherwise CONTRIBUTOR (VIEWER is upgraded)
    VIEWER / BILLING -> project role if set, otherwise VIEWER
    no team role     -> project role as-is (may be none)
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from ardine_core.auth.roles import (
    BILLING_ROLES,
    TEAM_MANAGEMENT_ROLES,
    ProjectRole,
    TeamRole,
    is_at_least_team_role,
)
from ardine_core.errors import ForbiddenError

logger = logging.getLogger(__name__)

LOG_TIME_ROLES: frozenset[ProjectRole] = frozenset({ProjectRole.MANAGER, ProjectRole.CONTRIBUTOR})


def resolve_effective_project_role(
    team_role: TeamRole | None,
    project_role: ProjectRole | None,
) -> ProjectRole | None:
    """Combine a team role and a project role into one effective role."""
    if team_role in TEAM_MANAGEMENT_ROLES:
        return ProjectRole.MANAGER

    if team_role == TeamRole.MEMBER:
        if project_role is None:
            return None
        if project_role == ProjectRole.MANAGER:
            return ProjectRole.MANAGER
        return ProjectRole.CONTRIBUTOR

    if team_role in (TeamRole.VIEWER, TeamRole.BILLING):
        return project_role if project_role is not None else ProjectRole.VIEWER

    return project_role


def can_view_project(role: ProjectRole | None) -> bool:
    return role is not None


def can_log_time(role: ProjectRole | None) -> bool:
    return role in LOG_TIME_ROLES


def can_manage_project(role: ProjectRole | None) -> bool:
    return role == ProjectRole.MANAGER


# ---------------------------------------------------------------------------
# Team-scope guards
# ---------------------------------------------------------------------------


def require_at_least_team_role(actual: TeamRole | None, minimum: TeamRole) -> None:
    """Raise :class:`ForbiddenError` unless *actual* ranks at least *minimum*."""
    if actual is None or not is_at_least_team_role(actual, minimum):
        logger.info(
            "Team role check failed: actual=%s minimum=%s",
            actual.value if actual else None,
            minimum.value,
        )
        raise ForbiddenError("Insufficient permissions")


def require_team_management(team_role: TeamRole | None) -> None:
    """Require OWNER or ADMIN."""
    if team_role not in TEAM_MANAGEMENT_ROLES:
        logger.info("Team management denied for role=%s", team_role.value if team_role else None)
        raise ForbiddenError("Only team owners and admins can manage team resources")


def require_invoice_access(team_role: TeamRole | None) -> None:
    """Require OWNER, ADMIN, or BILLING.

    Invoice access is a separate axis from team management: BILLING
    users manage invoices without managing the team.
    """
    if team_role not in BILLING_ROLES:
        logger.info("Invoice access denied for role=%s", team_role.value if team_role else None)
        raise ForbiddenError("Only team owners, admins, and billing managers can access invoices")


def require_team_role(team_role: TeamRole | None, allowed: Iterable[TeamRole]) -> None:
    """Require membership in an explicit set of team roles."""
    if team_role not in set(allowed):
        logger.info("Team role %s not in allowed set", team_role.value if team_role else None)
        raise ForbiddenError("Insufficient permissions")


def require_effective_project_role(
    effective: ProjectRole | None,
    allowed: Iterable[ProjectRole],
) -> None:
    """Raise :class:`ForbiddenError` unless *effective* is in *allowed*."""
    if effective is None or effective not in set(allowed):
        raise ForbiddenError("Insufficient project permissions")
