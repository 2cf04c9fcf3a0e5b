"""
Admission control data structures and errors.
"""
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .policy import Priority, ScalingLevel


class QueueTimeout(TimeoutError):
    """A queued request was not admitted before its deadline."""

    def __init__(self, tag: str, priority: Priority, waited: float):
        self.tag = tag
        self.priority = priority
        self.waited = waited
        super().__init__(
            f"Request '{tag}' ({priority.name}) not admitted after {waited:.2f}s in queue"
        )


class PoolExhausted(TimeoutError):
    """No slot freed up within the deadline after release from the queue."""

    def __init__(self, tag: str, waited: float):
        self.tag = tag
        self.waited = waited
        super().__init__(f"Connection pool exhausted: '{tag}' waited {waited:.2f}s for a slot")


@dataclass
class QueuedRequest:
    """A request waiting for admission; released exactly once via its event."""
    tag: str
    priority: Priority
    enqueue_time: float = field(default_factory=time.monotonic)
    completion_signal: threading.Event = field(default_factory=threading.Event)

    @property
    def released(self) -> bool:
        return self.completion_signal.is_set()


@dataclass(frozen=True)
class OperationToken:
    """Handle returned by before_operation, passed back to after_operation."""
    operation_id: str
    tag: str
    priority: Priority
    start_time: float


@dataclass
class OperationRecord:
    """Recent-history entry for one admitted operation."""
    operation_id: str
    tag: str
    priority: Priority
    scaling_level: ScalingLevel
    was_queued: bool
    started_at: float  # wall clock, for pruning and reporting
    date_range: Optional[str] = None
    duration_ms: Optional[float] = None
    success: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation_id": self.operation_id,
            "tag": self.tag,
            "priority": self.priority.name,
            "scaling_level": self.scaling_level.value,
            "was_queued": self.was_queued,
            "started_at": self.started_at,
            "date_range": self.date_range,
            "duration_ms": self.duration_ms,
            "success": self.success,
        }


@dataclass
class OperationOutcome:
    """Yielded by AdmissionController.admit; mark_failed() records an error."""
    success: bool = True

    def mark_failed(self) -> None:
        self.success = False
