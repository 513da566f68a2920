"""Normalized search criteria for the transaction ledger.

Every field is optional and malformed input degrades to a sensible default
instead of failing the query: unknown sign classes mean ``all``, unknown sort
keys mean ``date``, anything but ``desc`` means ascending, unparseable dates or
numbers mean "no constraint". Each enum goes through an explicit
unknown -> default step in its ``parse`` classmethod.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Optional

from periods import DateInput, parse_date, resolve_period


class SignClass(str, Enum):
    all = "all"
    income = "income"
    expense = "expense"

    @classmethod
    def parse(cls, value: object) -> "SignClass":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.all


class SortKey(str, Enum):
    date = "date"
    category = "category"
    description = "description"
    amount = "amount"
    account = "account"
    id = "id"

    @classmethod
    def parse(cls, value: object) -> "SortKey":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.date


class SortDirection(str, Enum):
    asc = "asc"
    desc = "desc"

    @classmethod
    def parse(cls, value: object) -> "SortDirection":
        if isinstance(value, cls):
            return value
        if value is not None and str(value).strip().lower() == "desc":
            return cls.desc
        return cls.asc


def lenient_int(value: object) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    try:
        return int(str(value).strip())
    except ValueError:
        return None


@dataclass(frozen=True)
class PageRequest:
    limit: Optional[int] = None
    # negative means "whatever page holds the end of the result set"
    offset: int = 0


@dataclass(frozen=True)
class FilterSpec:
    query: Optional[str] = None
    account_id: Optional[int] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    sign: SignClass = SignClass.all
    sort_key: SortKey = SortKey.date
    sort_dir: SortDirection = SortDirection.asc
    page: PageRequest = field(default_factory=PageRequest)


def clean_query(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    trimmed = str(value).strip()
    return trimmed or None


def build_filter_spec(
    *,
    query: Optional[str] = None,
    account_id: object = None,
    date_from: DateInput = None,
    date_to: DateInput = None,
    tx_type: object = None,
    sort_by: object = None,
    sort_dir: object = None,
    limit: object = None,
    offset: object = None,
    period: Optional[str] = None,
    today: Optional[date] = None,
) -> FilterSpec:
    start = parse_date(date_from)
    end = parse_date(date_to)
    if period and start is None and end is None:
        resolved = resolve_period(period, today=today)
        start, end = resolved.start, resolved.end

    parsed_offset = lenient_int(offset)
    return FilterSpec(
        query=clean_query(query),
        account_id=lenient_int(account_id),
        date_from=start,
        date_to=end,
        sign=SignClass.parse(tx_type),
        sort_key=SortKey.parse(sort_by),
        sort_dir=SortDirection.parse(sort_dir),
        page=PageRequest(
            limit=lenient_int(limit),
            offset=parsed_offset if parsed_offset is not None else 0,
        ),
    )
