"""
Connection-pool admission control with priority queuing and scaling levels.
"""
from .policy import (
    Priority,
    ScalingLevel,
    ScalingThresholds,
    PRIORITY_BY_TAG,
    classify_priority,
    get_scaling_level,
    should_queue,
)
from .models import (
    OperationOutcome,
    OperationToken,
    PoolExhausted,
    QueuedRequest,
    QueueTimeout,
)
from .controller import AdmissionController

__all__ = [
    # Policy
    "Priority",
    "ScalingLevel",
    "ScalingThresholds",
    "PRIORITY_BY_TAG",
    "classify_priority",
    "get_scaling_level",
    "should_queue",
    # Models
    "OperationOutcome",
    "OperationToken",
    "PoolExhausted",
    "QueuedRequest",
    "QueueTimeout",
    # Controller
    "AdmissionController",
]
