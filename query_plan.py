from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Optional, Union

from filters import FilterSpec, SignClass, SortDirection, SortKey


DEFAULT_LIMIT = 15


@dataclass(frozen=True)
class EqualsAccount:
    account_id: int


@dataclass(frozen=True)
class DateFrom:
    on: date


@dataclass(frozen=True)
class DateTo:
    on: date


@dataclass(frozen=True)
class SignMatch:
    sign: SignClass


@dataclass(frozen=True)
class TextMatch:
    # already case-folded; matched against note and category name
    needle: str


Clause = Union[EqualsAccount, DateFrom, DateTo, SignMatch, TextMatch]


@dataclass(frozen=True)
class OrderKey:
    key: SortKey
    direction: SortDirection


@dataclass(frozen=True)
class PageWindow:
    limit: int
    offset: int


@dataclass(frozen=True)
class QueryPlan:
    predicate: tuple[Clause, ...]
    ordering: tuple[OrderKey, ...]
    limit: int
    requested_offset: int

    def window(self, total: int) -> PageWindow:
        return PageWindow(
            limit=self.limit,
            offset=resolve_offset(self.requested_offset, total, self.limit),
        )


def build_predicate(spec: FilterSpec) -> tuple[Clause, ...]:
    clauses: list[Clause] = []
    if spec.account_id is not None:
        clauses.append(EqualsAccount(spec.account_id))
    if spec.date_from is not None:
        clauses.append(DateFrom(spec.date_from))
    if spec.date_to is not None:
        clauses.append(DateTo(spec.date_to))
    if spec.sign != SignClass.all:
        clauses.append(SignMatch(spec.sign))
    if spec.query:
        clauses.append(TextMatch(spec.query.casefold()))
    return tuple(clauses)


def build_ordering(spec: FilterSpec) -> tuple[OrderKey, ...]:
    primary = OrderKey(spec.sort_key, spec.sort_dir)
    if spec.sort_key == SortKey.id:
        return (primary,)
    return (primary, OrderKey(SortKey.id, spec.sort_dir))


def resolve_limit(requested: Optional[int], default: int = DEFAULT_LIMIT) -> int:
    if requested is None:
        return max(default, 0)
    return max(requested, 0)


def last_offset(total: int, limit: int) -> int:
    if total <= 0 or limit <= 0:
        return 0
    return ((total - 1) // limit) * limit


def resolve_offset(requested: int, total: int, limit: int) -> int:
    """Effective offset for a page request.

    A negative request asks for the last page; a request at or past the end
    (stale after deletes, or simply too large) is clamped to the last page.
    """
    if requested < 0 or requested >= total:
        return last_offset(total, limit)
    return requested


def plan_query(spec: FilterSpec, default_limit: int = DEFAULT_LIMIT) -> QueryPlan:
    return QueryPlan(
        predicate=build_predicate(spec),
        ordering=build_ordering(spec),
        limit=resolve_limit(spec.page.limit, default_limit),
        requested_offset=spec.page.offset,
    )
