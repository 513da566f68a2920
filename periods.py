from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional, Union


DateInput = Union[date, str, None]


@dataclass(frozen=True)
class Period:
    slug: str
    start: Optional[date]
    end: Optional[date]


def parse_date(value: DateInput) -> Optional[date]:
    """Accepts a date, 'YYYY-MM-DD' or 'dd.mm.yyyy'; anything else is None."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    clean = str(value).strip()
    if not clean:
        return None
    for fmt in ("%Y-%m-%d", "%d.%m.%Y"):
        try:
            return datetime.strptime(clean, fmt).date()
        except ValueError:
            continue
    return None


def _month_end(first: date) -> date:
    if first.month == 12:
        next_month = first.replace(year=first.year + 1, month=1)
    else:
        next_month = first.replace(month=first.month + 1)
    return next_month - date.resolution


def resolve_period(
    period: Optional[str],
    start: DateInput = None,
    end: DateInput = None,
    *,
    today: Optional[date] = None,
) -> Period:
    today = today or date.today()
    slug = (period or "").strip().lower()
    if slug == "this_month":
        first = today.replace(day=1)
        return Period("this_month", first, _month_end(first))
    if slug == "last_month":
        first_this = today.replace(day=1)
        last_month_end = first_this - date.resolution
        return Period("last_month", last_month_end.replace(day=1), last_month_end)
    if slug == "this_year":
        return Period("this_year", date(today.year, 1, 1), date(today.year, 12, 31))
    if slug == "custom":
        return Period("custom", parse_date(start), parse_date(end))

    # everything else, including unknown slugs, means no date bounds
    return Period("all", None, None)
