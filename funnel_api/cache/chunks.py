"""
Month chunking and cache key construction for date-range requests.
"""
import calendar
from datetime import date
from typing import Any, Dict, List, Optional, Union

from .core import MonthChunk

DateLike = Union[str, date]

EXACT_KEY_PREFIX = "range"
CHUNK_KEY_PREFIX = "chunk"


def parse_date(value: DateLike) -> date:
    """Accept a date or an ISO 'YYYY-MM-DD' string (time part ignored)."""
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def month_bounds(year: int, month: int) -> tuple:
    """First and last calendar day of a month."""
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, 1), date(year, month, last_day)


def get_month_chunks(range_start: DateLike, range_end: DateLike) -> List[MonthChunk]:
    """
    Split [range_start, range_end] (inclusive) into calendar-month chunks.

    Partial months at either edge are clipped via actual_start/actual_end, so
    the chunks are contiguous and exactly cover the requested range.

    Raises:
        ValueError: If range_start is after range_end
    """
    start = parse_date(range_start)
    end = parse_date(range_end)
    if start > end:
        raise ValueError(f"range_start {start} is after range_end {end}")

    chunks = []
    year, month = start.year, start.month
    while (year, month) <= (end.year, end.month):
        first, last = month_bounds(year, month)
        chunks.append(MonthChunk(
            year=year,
            month=month,
            chunk_start=first,
            chunk_end=last,
            actual_start=max(first, start),
            actual_end=min(last, end),
        ))
        if month == 12:
            year, month = year + 1, 1
        else:
            month += 1
    return chunks


def _sorted_params(params: Dict[str, Any]) -> str:
    return "|".join(f"{k}:{params[k]}" for k in sorted(params))


def build_exact_key(
    layer: str,
    endpoint: str,
    range_start: DateLike,
    range_end: DateLike,
    params: Optional[Dict[str, Any]] = None,
    prefix: str = "",
) -> str:
    """
    Key for the exact-range shortcut entry.

    Example: "range:metrics:total_bookings:fromDate:2025-01-15|toDate:2025-03-10"
    """
    merged = {
        "fromDate": parse_date(range_start).isoformat(),
        "toDate": parse_date(range_end).isoformat(),
        **(params or {}),
    }
    key = f"{EXACT_KEY_PREFIX}:{layer}:{endpoint}:{_sorted_params(merged)}"
    return f"{prefix}:{key}" if prefix else key


def build_chunk_key(
    layer: str,
    endpoint: str,
    year: int,
    month: int,
    params: Optional[Dict[str, Any]] = None,
    prefix: str = "",
) -> str:
    """
    Key for one month chunk.

    Example: "chunk:metrics:total_bookings:month:02|year:2025"
    """
    merged = {"year": year, "month": f"{month:02d}", **(params or {})}
    key = f"{CHUNK_KEY_PREFIX}:{layer}:{endpoint}:{_sorted_params(merged)}"
    return f"{prefix}:{key}" if prefix else key
