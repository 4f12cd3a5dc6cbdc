"""
Client-side substring search shared by the reconciliation and linkage screens.
Search never changes which records are eligible; it only narrows a list.
"""

from typing import Any, Callable, Iterable, List, TypeVar

T = TypeVar("T")


def matches_query(values: Iterable[Any], query: str) -> bool:
    """True when any non-empty value contains the query (case-insensitive)."""
    needle = (query or "").strip().lower()
    if not needle:
        return True
    return any(needle in str(v).lower() for v in values if v)


def filter_by_query(
    items: Iterable[T],
    query: str,
    fields: Callable[[T], Iterable[Any]]
) -> List[T]:
    """Keep the items whose searchable fields match the query, in order."""
    return [item for item in items if matches_query(fields(item), query)]
