"""Declarative list queries compiled to parameterized SQL.

A call site describes *what* it wants (pre-authorized filter
fragments, an optional search term, a date range, a sort request and
a page window) and :func:`build_list_query` returns:

* the data query, with ``ORDER BY`` and ``LIMIT``/``OFFSET``;
* a matching ``COUNT(*)`` query over the same filtered set;
* one ordered parameter list shared by both, bound as ``:p1 .. :pN``.

Filter fragments are written with ``?`` markers and are renumbered
into named binds by a single accumulator, so parameter indices never
need to be computed by hand.  User-supplied values only ever travel as
bind parameters.  Sort columns are checked against a per-call
whitelist before any SQL text is assembled.

Example::

    options = ListQueryOptions(
        select="projects.*",
        source="projects",
        filters=[Fragment.of("team_id = ?", team_id)],
        search="acme",
        search_columns=("name", "code"),
        order_by="name",
        allowed_sort=("name", "created_at"),
        default_sort="created_at",
    )
    query = build_list_query(options)
    page = await execute_list_query(session, query)
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

from sqlalchemy import Table, bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession

from ardine_core.errors import ValidationError

DEFAULT_LIMIT = 25
MAX_LIMIT = 100

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")
_MARKER = "?"


# ---------------------------------------------------------------------------
# Fragments and parameter accumulation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Fragment:
    """A developer-authored SQL predicate with ``?`` value markers."""

    sql: str
    params: tuple[Any, ...] = ()

    def __post_init__(self) -> None:
        markers = self.sql.count(_MARKER)
        if markers != len(self.params):
            raise ValueError(f"Fragment {self.sql!r} has {markers} markers but {len(self.params)} params")

    @classmethod
    def of(cls, sql: str, *params: Any) -> Fragment:
        return cls(sql, tuple(params))


class _ParamAccumulator:
    """Hands out ascending ``:pN`` bind names and records their values."""

    def __init__(self) -> None:
        self.values: list[Any] = []

    def bind(self, value: Any) -> str:
        self.values.append(value)
        return f":p{len(self.values)}"

    def render(self, fragment: Fragment) -> str:
        pieces = fragment.sql.split(_MARKER)
        out = [pieces[0]]
        for value, piece in zip(fragment.params, pieces[1:], strict=True):
            out.append(self.bind(value))
            out.append(piece)
        return "".join(out)


def _check_identifier(name: str) -> str:
    if not _IDENTIFIER_RE.match(name):
        raise ValueError(f"Invalid SQL identifier: {name!r}")
    return name


def _escape_like(value: str) -> str:
    """Escape LIKE wildcards so they match literally."""
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def parse_offset_limit(
    offset: int | None,
    limit: int | None,
    default_limit: int = DEFAULT_LIMIT,
    max_limit: int = MAX_LIMIT,
) -> tuple[int, int]:
    """Clamp *offset* to ``>= 0`` and *limit* to ``[1, max_limit]``."""
    safe_offset = max(0, offset or 0)
    safe_limit = default_limit if limit is None else limit
    safe_limit = min(max(1, safe_limit), max_limit)
    return safe_offset, safe_limit


def sort_whitelist(order_by: str | None, allowed: Sequence[str], default: str) -> str:
    """Return the sort column, or raise if it is not whitelisted.

    An absent ``order_by`` falls back to *default*.  The rejected value
    appears in the error message only, never in SQL text.
    """
    if not order_by:
        return default
    if order_by in allowed:
        return order_by
    raise ValidationError(
        f"Invalid orderBy field: {order_by}. Allowed fields: {', '.join(allowed)}",
        field="orderBy",
    )


def validate_order(order: str | None) -> str:
    """Normalize *order* to ``ASC``/``DESC``; absent means ``DESC``."""
    if not order:
        return "DESC"
    normalized = order.upper()
    if normalized in ("ASC", "DESC"):
        return normalized
    raise ValidationError(f"Invalid order: {order}. Must be 'asc' or 'desc'", field="order")


# ---------------------------------------------------------------------------
# Options and results
# ---------------------------------------------------------------------------


@dataclass
class ListQueryOptions:
    """Declarative description of a filtered, sorted, paginated list."""

    select: str
    source: str
    default_sort: str
    allowed_sort: Sequence[str]
    filters: Sequence[Fragment] = field(default_factory=list)
    search: str | None = None
    search_columns: Sequence[str] = ()
    date_from: date | datetime | None = None
    date_to: date | datetime | None = None
    date_column: str | None = None
    order_by: str | None = None
    order: str | None = None
    offset: int | None = None
    limit: int | None = None
    default_limit: int = DEFAULT_LIMIT
    max_limit: int = MAX_LIMIT
    tiebreaker: str | None = "id"


@dataclass(frozen=True)
class ListQuery:
    """Compiled data/count statements sharing one parameter list.

    ``params`` holds every bind value in ``:pN`` order; the last two are
    the limit and offset, which the count query does not use.
    """

    data_sql: str
    count_sql: str
    params: list[Any]
    offset: int
    limit: int
    param_columns: dict[str, str] = field(default_factory=dict)

    @property
    def data_params(self) -> dict[str, Any]:
        return {f"p{i}": value for i, value in enumerate(self.params, start=1)}

    @property
    def count_params(self) -> dict[str, Any]:
        return {f"p{i}": value for i, value in enumerate(self.params[:-2], start=1)}


@dataclass(frozen=True)
class PageInfo:
    total: int
    has_next_page: bool
    next_offset: int | None


@dataclass(frozen=True)
class Page:
    rows: list[dict[str, Any]]
    page_info: PageInfo


def calculate_page_info(total: int, offset: int, limit: int) -> PageInfo:
    has_next_page = offset + limit < total
    return PageInfo(
        total=total,
        has_next_page=has_next_page,
        next_offset=offset + limit if has_next_page else None,
    )


# ---------------------------------------------------------------------------
# Assembly
# ---------------------------------------------------------------------------


def build_list_query(options: ListQueryOptions) -> ListQuery:
    """Compile *options* into a :class:`ListQuery`.

    Raises
    ------
    ValidationError
        If ``order_by`` is not whitelisted or ``order`` is not asc/desc.
    ValueError
        If a call site passes a malformed identifier or fragment.
    """
    # Caller input is validated before any SQL text exists.
    sort_column = sort_whitelist(options.order_by, options.allowed_sort, options.default_sort)
    direction = validate_order(options.order)
    offset, limit = parse_offset_limit(
        options.offset,
        options.limit,
        default_limit=options.default_limit,
        max_limit=options.max_limit,
    )
    _check_identifier(sort_column)
    for column in options.search_columns:
        _check_identifier(column)
    if options.date_column is not None:
        _check_identifier(options.date_column)
    if options.tiebreaker is not None:
        _check_identifier(options.tiebreaker)

    acc = _ParamAccumulator()
    conditions: list[str] = [acc.render(fragment) for fragment in options.filters]

    term = (options.search or "").strip()
    if term and options.search_columns:
        bind = acc.bind(f"%{_escape_like(term.lower())}%")
        ors = " OR ".join(f"LOWER({column}) LIKE {bind} ESCAPE '\\'" for column in options.search_columns)
        conditions.append(f"({ors})")

    # Date bounds are bound with the column's own type at execution.
    param_columns: dict[str, str] = {}
    if options.date_column is not None:
        for operator, value in ((">=", options.date_from), ("<=", options.date_to)):
            if value is None:
                continue
            bind = acc.bind(value)
            param_columns[bind[1:]] = options.date_column
            conditions.append(f"{options.date_column} {operator} {bind}")

    where = f" WHERE {' AND '.join(conditions)}" if conditions else ""

    order_clause = f"{sort_column} {direction}"
    if options.tiebreaker is not None and options.tiebreaker != sort_column:
        order_clause += f", {options.tiebreaker} {direction}"

    count_sql = f"SELECT COUNT(*) AS total FROM {options.source}{where}"
    limit_bind = acc.bind(limit)
    offset_bind = acc.bind(offset)
    data_sql = (
        f"SELECT {options.select} FROM {options.source}{where} "
        f"ORDER BY {order_clause} LIMIT {limit_bind} OFFSET {offset_bind}"
    )

    return ListQuery(
        data_sql=data_sql,
        count_sql=count_sql,
        params=list(acc.values),
        offset=offset,
        limit=limit,
        param_columns=param_columns,
    )


def _typed(stmt: Any, query: ListQuery, row_types: Table | None) -> Any:
    if row_types is None:
        return stmt
    binds = []
    for name, column in query.param_columns.items():
        key = column.rsplit(".", 1)[-1]
        if key in row_types.c:
            binds.append(bindparam(name, type_=row_types.c[key].type))
    return stmt.bindparams(*binds) if binds else stmt


async def execute_list_query(session: AsyncSession, query: ListQuery, row_types: Table | None = None) -> Page:
    """Run the data and count statements and assemble a :class:`Page`.

    When *row_types* is given, result columns are typed by name from that
    table, and date-range bounds are bound with the column's type, so
    JSON, timestamp and numeric values behave the same as ORM reads on
    every dialect.
    """
    stmt: Any = _typed(text(query.data_sql), query, row_types)
    if row_types is not None:
        stmt = stmt.columns(**{column.name: column.type for column in row_types.columns})
    result = await session.execute(stmt, query.data_params)
    rows = [dict(row) for row in result.mappings().all()]
    count_result = await session.execute(_typed(text(query.count_sql), query, row_types), query.count_params)
    total = int(count_result.scalar_one())
    return Page(rows=rows, page_info=calculate_page_info(total, query.offset, query.limit))
