"""Rate resolution and billing amounts for stopped time entries.

Rates resolve in priority order::

    task rate -> project default -> client default -> team default -> none

A stopped entry stores its duration once.  ``amount_cents`` is only set
for billable entries that resolved a rate.
"""

from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from ardine_core.errors import ValidationError
from ardine_core.invoicing.money import hours_from_seconds, round_half_up
from ardine_core.state.tables import TimeEntryTable


class RateSource(str, Enum):
    TASK = "task"
    PROJECT = "project"
    CLIENT = "client"
    TEAM_DEFAULT = "team_default"
    NONE = "none"


@dataclass(frozen=True)
class RateResolution:
    rate_cents: int | None
    source: RateSource


def effective_rate_cents(
    *,
    task_rate_cents: int | None = None,
    project_rate_cents: int | None = None,
    client_rate_cents: int | None = None,
    team_default_rate_cents: int | None = None,
) -> RateResolution:
    """Return the first rate that is set, walking the priority order."""
    candidates = (
        (task_rate_cents, RateSource.TASK),
        (project_rate_cents, RateSource.PROJECT),
        (client_rate_cents, RateSource.CLIENT),
        (team_default_rate_cents, RateSource.TEAM_DEFAULT),
    )
    for rate, source in candidates:
        if rate is not None:
            return RateResolution(rate, source)
    return RateResolution(None, RateSource.NONE)


def duration_seconds(started_at: datetime, stopped_at: datetime) -> int:
    """Whole seconds between start and stop.

    Raises
    ------
    ValidationError
        If *stopped_at* is not after *started_at*.
    """
    if stopped_at <= started_at:
        raise ValidationError("End time must be after start time", field="stoppedAt")
    return math.floor((stopped_at - started_at).total_seconds())


def entry_amount_cents(seconds: int, rate_cents: int | None, billable: bool) -> int | None:
    """``round(hours * rate)`` for billable entries with a rate, else ``None``."""
    if not billable or rate_cents is None:
        return None
    return round_half_up(hours_from_seconds(seconds) * rate_cents)


@dataclass(frozen=True)
class TimeSummary:
    """Aggregate of stopped entries.  Running timers are counted apart."""

    total_seconds: int = 0
    billable_seconds: int = 0
    billable_amount_cents: int = 0
    entry_count: int = 0
    running_count: int = 0


def summarize_time_entries(entries: Iterable[TimeEntryTable]) -> TimeSummary:
    total = billable = amount = count = running = 0
    for entry in entries:
        if entry.stopped_at is None or entry.duration_seconds is None:
            running += 1
            continue
        count += 1
        total += entry.duration_seconds
        if entry.billable:
            billable += entry.duration_seconds
            amount += entry.amount_cents or 0
    return TimeSummary(
        total_seconds=total,
        billable_seconds=billable,
        billable_amount_cents=amount,
        entry_count=count,
        running_count=running,
    )
