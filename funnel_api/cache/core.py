"""
Core cache data structures.
"""
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, Optional
from enum import Enum

# Opaque data-source result: {"success": bool, ...payload, "error"?: str}
Result = Dict[str, Any]


class MetricKind(Enum):
    """Shape of a cached result, which decides how chunks are aggregated."""
    SCALAR = "scalar"   # Single numeric/monetary value
    SERIES = "series"   # Chart data points


class CacheAggregationFailure(Exception):
    """Chunk metadata could not be interpreted during aggregation."""


@dataclass(frozen=True)
class MonthChunk:
    """
    One calendar-month slice of a requested date range.

    chunk_start/chunk_end are the month's calendar bounds; actual_start/actual_end
    are their intersection with the requested range.
    """
    year: int
    month: int
    chunk_start: date
    chunk_end: date
    actual_start: date
    actual_end: date

    @property
    def span_days(self) -> int:
        """Number of requested days covered by this chunk."""
        return (self.actual_end - self.actual_start).days + 1


@dataclass
class ChunkInfo:
    """
    Metadata stored alongside each chunk payload under "chunk_info".
    """
    year: int
    month: int
    actual_start: str  # ISO date
    actual_end: str    # ISO date
    cached_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    @classmethod
    def for_chunk(cls, chunk: MonthChunk) -> "ChunkInfo":
        return cls(
            year=chunk.year,
            month=chunk.month,
            actual_start=chunk.actual_start.isoformat(),
            actual_end=chunk.actual_end.isoformat(),
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChunkInfo":
        """
        Parse stored chunk metadata.

        Raises:
            CacheAggregationFailure: If required fields are missing or malformed
        """
        try:
            info = cls(
                year=int(data["year"]),
                month=int(data["month"]),
                actual_start=str(data["actual_start"]),
                actual_end=str(data["actual_end"]),
                cached_at=str(data.get("cached_at") or ""),
            )
            # Parse the dates eagerly so callers get one failure type
            if info.start_date > info.end_date:
                raise ValueError("actual_start after actual_end")
        except (KeyError, TypeError, ValueError) as e:
            raise CacheAggregationFailure(f"Malformed chunk_info: {e}") from e
        return info

    @property
    def start_date(self) -> date:
        return date.fromisoformat(self.actual_start[:10])

    @property
    def end_date(self) -> date:
        return date.fromisoformat(self.actual_end[:10])

    @staticmethod
    def min_time() -> datetime:
        return datetime.min.replace(tzinfo=timezone.utc)

    @property
    def cached_at_time(self) -> datetime:
        """cached_at as a datetime; missing or invalid values sort first."""
        try:
            parsed = datetime.fromisoformat(self.cached_at)
        except ValueError:
            return self.min_time()
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed

    def overlaps(self, range_start: date, range_end: date) -> bool:
        return self.start_date <= range_end and self.end_date >= range_start

    def overlap_days(self, range_start: date, range_end: date) -> int:
        """Days shared with the requested range (0 if disjoint)."""
        start = max(self.start_date, range_start)
        end = min(self.end_date, range_end)
        if start > end:
            return 0
        return (end - start).days + 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "year": self.year,
            "month": self.month,
            "actual_start": self.actual_start,
            "actual_end": self.actual_end,
            "cached_at": self.cached_at,
        }


@dataclass
class CacheEntry:
    """
    A result as written to the key-value store.

    Entries are never mutated in place; a fresher snapshot overwrites the key.
    """
    key: str
    payload: Result
    ttl_seconds: int
    chunk_info: Optional[ChunkInfo] = None

    def to_payload(self) -> Result:
        """Payload as stored, with chunk metadata attached when present."""
        if self.chunk_info is None:
            return dict(self.payload)
        return {**self.payload, "chunk_info": self.chunk_info.to_dict()}


@dataclass
class CachedChunk:
    """A month chunk found in the store, with its decoded payload."""
    chunk: MonthChunk
    key: str
    data: Result

    @property
    def info(self) -> Optional[ChunkInfo]:
        raw = self.data.get("chunk_info")
        if raw is None:
            return None
        if not isinstance(raw, dict):
            raise CacheAggregationFailure(f"chunk_info is not a mapping in {self.key}")
        return ChunkInfo.from_dict(raw)
