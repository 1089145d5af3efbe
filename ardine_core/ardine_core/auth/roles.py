"""Role enumerations and the team-role rank table.

Role values are the exact, case-sensitive strings stored in the
database and exchanged over the API; they must round-trip unchanged.

Team roles are ranked for "at least" comparisons::

    OWNER (5) > ADMIN (4) > MEMBER (3) > BILLING (2) > VIEWER (1) > none (0)

The rank table is a fixed tuple indexed by position rather than a
string-keyed mapping, so the total order is explicit and exhaustively
testable.
"""

from __future__ import annotations

from enum import Enum

from ardine_core.errors import ValidationError


class InstanceRole(str, Enum):
    """Instance-wide role of a user account."""

    USER = "USER"
    ADMIN = "ADMIN"


class TeamRole(str, Enum):
    """Role of a user within one team (tenant)."""

    OWNER = "OWNER"
    ADMIN = "ADMIN"
    MEMBER = "MEMBER"
    VIEWER = "VIEWER"
    BILLING = "BILLING"

    @property
    def rank(self) -> int:
        return _TEAM_RANK_ORDER.index(self) + 1


class ProjectRole(str, Enum):
    """Role of a user within one project, independent of the team role."""

    MANAGER = "MANAGER"
    CONTRIBUTOR = "CONTRIBUTOR"
    VIEWER = "VIEWER"


class ProjectStatus(str, Enum):
    ACTIVE = "active"
    ON_HOLD = "on_hold"
    COMPLETED = "completed"
    ARCHIVED = "archived"


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    PAID = "paid"
    CANCELLED = "cancelled"


# Lowest first; rank == position + 1, absent role == 0.
_TEAM_RANK_ORDER: tuple[TeamRole, ...] = (
    TeamRole.VIEWER,
    TeamRole.BILLING,
    TeamRole.MEMBER,
    TeamRole.ADMIN,
    TeamRole.OWNER,
)

TEAM_MANAGEMENT_ROLES: frozenset[TeamRole] = frozenset({TeamRole.OWNER, TeamRole.ADMIN})
BILLING_ROLES: frozenset[TeamRole] = frozenset({TeamRole.OWNER, TeamRole.ADMIN, TeamRole.BILLING})


# ---------------------------------------------------------------------------
# Comparison helpers
# ---------------------------------------------------------------------------


def team_role_rank(role: TeamRole | None) -> int:
    """Return the numeric rank of *role*; ``None`` ranks below every role."""
    if role is None:
        return 0
    return role.rank


def is_at_least_team_role(actual: TeamRole | None, minimum: TeamRole) -> bool:
    """Return ``True`` when *actual* ranks at or above *minimum*."""
    return team_role_rank(actual) >= team_role_rank(minimum)


def can_manage_team(role: TeamRole | None) -> bool:
    return role in TEAM_MANAGEMENT_ROLES


def can_manage_billing(role: TeamRole | None) -> bool:
    return role in BILLING_ROLES


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def parse_team_role(value: str | TeamRole | None) -> TeamRole | None:
    """Parse an exact team-role string.

    ``None`` and the empty string mean "no role".  Any other value that
    is not one of the exact enum values raises :class:`ValidationError`;
    no case folding is applied.
    """
    if value is None or value == "":
        return None
    if isinstance(value, TeamRole):
        return value
    try:
        return TeamRole(value)
    except ValueError:
        allowed = ", ".join(r.value for r in TeamRole)
        raise ValidationError(f"Invalid team role: {value}. Allowed roles: {allowed}", field="role") from None


def parse_project_role(value: str | ProjectRole | None) -> ProjectRole | None:
    """Parse an exact project-role string; see :func:`parse_team_role`."""
    if value is None or value == "":
        return None
    if isinstance(value, ProjectRole):
        return value
    try:
        return ProjectRole(value)
    except ValueError:
        allowed = ", ".join(r.value for r in ProjectRole)
        raise ValidationError(f"Invalid project role: {value}. Allowed roles: {allowed}", field="role") from None


def parse_instance_role(value: str | InstanceRole | None) -> InstanceRole | None:
    if value is None or value == "":
        return None
    if isinstance(value, InstanceRole):
        return value
    try:
        return InstanceRole(value)
    except ValueError:
        raise ValidationError(f"Invalid instance role: {value}", field="instanceRole") from None
