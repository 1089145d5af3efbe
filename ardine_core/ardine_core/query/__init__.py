"""Injection-safe list query assembly."""

from ardine_core.query.builder import (
    Fragment,
    ListQuery,
    ListQueryOptions,
    Page,
    PageInfo,
    build_list_query,
    calculate_page_info,
    execute_list_query,
    parse_offset_limit,
    sort_whitelist,
    validate_order,
)

__all__ = [
    "Fragment",
    "ListQuery",
    "ListQueryOptions",
    "Page",
    "PageInfo",
    "build_list_query",
    "calculate_page_info",
    "execute_list_query",
    "parse_offset_limit",
    "sort_whitelist",
    "validate_order",
]
