"""API router modules for the Ardine service."""

from __future__ import annotations

from ardine_api.routers import clients, health, invoices, projects, team, time_entries

__all__ = [
    "clients",
    "health",
    "invoices",
    "projects",
    "team",
    "time_entries",
]
