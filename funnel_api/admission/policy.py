"""
Scaling levels, request priorities and the queuing decision.
"""
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Dict


class Priority(IntEnum):
    """Request priority; lower value is served first."""
    CRITICAL = 1  # Health checks, system operations
    HIGH = 2      # Single metric queries (fast)
    MEDIUM = 3    # Chart queries (several series each)
    LOW = 4       # Summary (every metric at once)


class ScalingLevel(Enum):
    """Coarse backend load classification."""
    GREEN = "GREEN"    # Normal operation
    YELLOW = "YELLOW"  # Queue heavy requests
    ORANGE = "ORANGE"  # Queue all non-critical reads except single metrics
    RED = "RED"        # Emergency: critical only


@dataclass(frozen=True)
class ScalingThresholds:
    """Upper bounds (inclusive) of active operations for each level."""
    green: int = 15
    yellow: int = 22
    orange: int = 27

    def validate(self, max_concurrent: int) -> None:
        if not (0 <= self.green < self.yellow < self.orange <= max_concurrent):
            raise ValueError(
                f"Thresholds must satisfy green < yellow < orange <= max_concurrent, "
                f"got {self.green}/{self.yellow}/{self.orange} with max {max_concurrent}"
            )


# Operation tag -> priority
PRIORITY_BY_TAG: Dict[str, Priority] = {
    "health": Priority.CRITICAL,
    "date_ranges": Priority.CRITICAL,
    "unique_visitors": Priority.HIGH,
    "total_bookings": Priority.HIGH,
    "room_nights": Priority.HIGH,
    "total_revenue": Priority.HIGH,
    "abv": Priority.HIGH,
    "awareness_engagement": Priority.MEDIUM,
    "conversions": Priority.MEDIUM,
    "stay_poststay": Priority.MEDIUM,
    "summary": Priority.LOW,
}


def normalize_tag(tag: str) -> str:
    """'/api/total-bookings' -> 'api_total_bookings'; 'Total-Bookings' -> 'total_bookings'."""
    return tag.strip().lower().replace("-", "_").replace("/", "_").strip("_")


def classify_priority(tag: str) -> Priority:
    """
    Map an operation tag to its priority.

    Route-style tags resolve on their last path segment. Unknown tags are MEDIUM.
    """
    normalized = normalize_tag(tag or "")
    if normalized in PRIORITY_BY_TAG:
        return PRIORITY_BY_TAG[normalized]
    last_segment = normalize_tag((tag or "").rstrip("/").rsplit("/", 1)[-1])
    return PRIORITY_BY_TAG.get(last_segment, Priority.MEDIUM)


def get_scaling_level(active_count: int, thresholds: ScalingThresholds) -> ScalingLevel:
    """Scaling level for the current number of active operations."""
    if active_count <= thresholds.green:
        return ScalingLevel.GREEN
    if active_count <= thresholds.yellow:
        return ScalingLevel.YELLOW
    if active_count <= thresholds.orange:
        return ScalingLevel.ORANGE
    return ScalingLevel.RED


def should_queue(priority: Priority, level: ScalingLevel) -> bool:
    """Decide whether a request must wait for a released slot."""
    if level is ScalingLevel.GREEN:
        return False
    if level is ScalingLevel.YELLOW:
        return priority == Priority.LOW
    if level is ScalingLevel.ORANGE:
        return priority >= Priority.MEDIUM
    return priority > Priority.CRITICAL
