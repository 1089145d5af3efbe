"""State persistence layer (PostgreSQL in production, SQLite locally)."""

from ardine_core.state.database import get_engine, get_session, get_session_factory
from ardine_core.state.repository import (
    ClientRepository,
    InvoiceRepository,
    ProjectRepository,
    TeamMembershipRepository,
    TeamRepository,
    TimeEntryRepository,
    UserRepository,
)

__all__ = [
    "ClientRepository",
    "InvoiceRepository",
    "ProjectRepository",
    "TeamMembershipRepository",
    "TeamRepository",
    "TimeEntryRepository",
    "UserRepository",
    "get_engine",
    "get_session",
    "get_session_factory",
]
