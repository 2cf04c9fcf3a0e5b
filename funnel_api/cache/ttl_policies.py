"""
TTL configuration by data recency and span.
"""
import math
from datetime import datetime, time, timezone
from typing import Any, Dict, Optional

from .chunks import DateLike, parse_date


# TTL Configuration by cache layer (in seconds)
TTL_CONFIG: Dict[str, Dict[str, Any]] = {
    "metrics": {
        "historical_days": 7,           # Ranges ending >7 days ago never change
        "historical_long_ttl": 86400,   # 24 hours for historical spans > 30 days
        "historical_short_ttl": 43200,  # 12 hours for shorter historical spans
        "daily_ttl": 300,               # 5 minutes for <=1 day spans
        "weekly_ttl": 900,              # 15 minutes for <=7 day spans
        "monthly_ttl": 1800,            # 30 minutes for <=30 day spans
        "default_ttl": 3600,            # 1 hour otherwise
    },
}
TTL_CONFIG["charts"] = dict(TTL_CONFIG["metrics"])

SECONDS_PER_DAY = 86400


def _midnight_utc(value: DateLike) -> datetime:
    return datetime.combine(parse_date(value), time.min, tzinfo=timezone.utc)


def calculate_ttl(
    range_start: DateLike,
    range_end: DateLike,
    layer: str = "metrics",
    now: Optional[datetime] = None,
) -> int:
    """
    Calculate TTL for a date range.

    Older ranges are immutable and cached long; ranges touching the recent past
    still receive new events and expire quickly.

    Args:
        range_start: First day of the range
        range_end: Last day of the range
        layer: Cache layer, selects the TTL_CONFIG table
        now: Reference time (UTC), defaults to the current time

    Returns:
        TTL in seconds
    """
    config = TTL_CONFIG.get(layer, TTL_CONFIG["metrics"])
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    start = _midnight_utc(range_start)
    end = _midnight_utc(range_end)
    day_span = math.ceil((end - start).total_seconds() / SECONDS_PER_DAY)
    days_from_now = math.ceil((now - end).total_seconds() / SECONDS_PER_DAY)

    if days_from_now > config["historical_days"]:
        if day_span > 30:
            return config["historical_long_ttl"]
        return config["historical_short_ttl"]

    if day_span <= 1:
        return config["daily_ttl"]
    if day_span <= 7:
        return config["weekly_ttl"]
    if day_span <= 30:
        return config["monthly_ttl"]
    return config["default_ttl"]
