"""Role hierarchy, permission resolution, and the request context."""

from ardine_core.auth.context import RequestContext
from ardine_core.auth.permissions import (
    can_log_time,
    can_manage_project,
    can_view_project,
    require_at_least_team_role,
    require_invoice_access,
    require_team_management,
    resolve_effective_project_role,
)
from ardine_core.auth.roles import InstanceRole, ProjectRole, TeamRole

__all__ = [
    "InstanceRole",
    "ProjectRole",
    "RequestContext",
    "TeamRole",
    "can_log_time",
    "can_manage_project",
    "can_view_project",
    "require_at_least_team_role",
    "require_invoice_access",
    "require_team_management",
    "resolve_effective_project_role",
]
