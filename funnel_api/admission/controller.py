"""
Connection-pool admission control.

Bounds concurrent backend queries and, under load, delays lower-priority work
in per-priority FIFO queues instead of rejecting it. Queued callers block on a
threading.Event until a finishing operation releases them.
"""
import itertools
import logging
import threading
import time
from collections import deque
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Deque, Dict, Iterator, Optional

from .models import (
    OperationOutcome,
    OperationRecord,
    OperationToken,
    PoolExhausted,
    QueuedRequest,
    QueueTimeout,
)
from .policy import (
    Priority,
    ScalingLevel,
    ScalingThresholds,
    classify_priority,
    get_scaling_level,
    should_queue,
)

logger = logging.getLogger("admission.controller")


class AdmissionController:
    """
    Priority-aware gate in front of the database connection pool.

    All pool state (active operations, queues, statistics, history) is owned by
    the instance and guarded by a single lock.

    Usage:
        controller = AdmissionController(max_concurrent=30)
        with controller.admit("total_bookings", "2025-01-01", "2025-01-31"):
            run_query()
    """

    def __init__(
        self,
        max_concurrent: int = 30,
        thresholds: Optional[ScalingThresholds] = None,
        queue_timeout: Optional[float] = 30.0,
        poll_interval: float = 0.1,
        history_window: float = 300.0,
        history_prune_interval: float = 60.0,
        max_history: int = 10000,
    ):
        """
        Args:
            max_concurrent: Hard ceiling on admitted operations
            thresholds: Scaling level boundaries (defaults 15/22/27)
            queue_timeout: Max seconds a request may wait queued or polling; None waits forever
            poll_interval: Sleep between checks in the pool-exhaustion fallback
            history_window: Seconds of operation history kept for observability
            history_prune_interval: Min seconds between history prunes
            max_history: Cap on retained history records
        """
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.thresholds = thresholds or ScalingThresholds()
        self.thresholds.validate(max_concurrent)
        self.max_concurrent = max_concurrent
        self.queue_timeout = queue_timeout
        self.poll_interval = poll_interval
        self.history_window = history_window
        self.history_prune_interval = history_prune_interval
        self.max_history = max_history

        self._lock = threading.Lock()
        self._active: Dict[str, OperationToken] = {}
        self._queues: Dict[Priority, Deque[QueuedRequest]] = {p: deque() for p in Priority}
        self._history: Dict[str, OperationRecord] = {}
        self._last_prune = time.monotonic()
        self._ids = itertools.count(1)

        self._stats = {
            "total_operations": 0,
            "errors": 0,
            "pool_exhaustion_events": 0,
            "last_pool_exhaustion": None,
            "total_queued": 0,
            "queue_processed": 0,
            "queue_timeouts": 0,
            "average_wait_time": 0.0,  # seconds
        }

        self._monitor_thread: Optional[threading.Thread] = None
        self._monitor_stop = threading.Event()

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def before_operation(
        self,
        tag: str,
        range_start: Optional[str] = None,
        range_end: Optional[str] = None,
    ) -> OperationToken:
        """
        Block until the operation may use a backend slot, then claim it.

        Args:
            tag: Endpoint/operation tag used for priority classification
            range_start: Requested range start (history only)
            range_end: Requested range end (history only)

        Returns:
            Token to hand back to after_operation

        Raises:
            QueueTimeout: Queued longer than queue_timeout
            PoolExhausted: Released but no slot freed within queue_timeout
        """
        started = time.monotonic()
        priority = classify_priority(tag)
        request = None
        with self._lock:
            self._stats["total_operations"] += 1
            level = get_scaling_level(len(self._active), self.thresholds)
            if should_queue(priority, level):
                request = QueuedRequest(tag=tag, priority=priority)
                self._queues[priority].append(request)
                self._stats["total_queued"] += 1
                queue_depth = len(self._queues[priority])

        if request is not None:
            logger.info(
                f"QUEUED: {tag} [{priority.name}] at {level.value} "
                f"(position {queue_depth} in {priority.name} queue)"
            )
            self._wait_in_queue(request)

        date_range = f"{range_start} to {range_end}" if range_start or range_end else None
        return self._claim_slot(tag, priority, level, request is not None, date_range, started)

    def after_operation(self, token: OperationToken, success: bool = True) -> None:
        """
        Release the slot held by token and admit the next queued request.

        Unknown or already-released tokens are ignored.
        """
        with self._lock:
            if self._active.pop(token.operation_id, None) is None:
                logger.warning(f"Ignoring release of unknown operation {token.operation_id}")
                return
            if not success:
                self._stats["errors"] += 1

            record = self._history.get(token.operation_id)
            if record is not None:
                record.duration_ms = (time.monotonic() - token.start_time) * 1000
                record.success = success

            if time.monotonic() - self._last_prune >= self.history_prune_interval:
                self._prune_history_locked()

            released = self._release_next_locked()

        if released is not None:
            logger.debug(f"RELEASED: {released.tag} [{released.priority.name}]")

    @contextmanager
    def admit(
        self,
        tag: str,
        range_start: Optional[str] = None,
        range_end: Optional[str] = None,
    ) -> Iterator[OperationOutcome]:
        """
        Hold a backend slot for the duration of the block.

        The operation counts as failed if the block raises or calls
        outcome.mark_failed().
        """
        token = self.before_operation(tag, range_start, range_end)
        outcome = OperationOutcome()
        try:
            yield outcome
        except BaseException:
            self.after_operation(token, success=False)
            raise
        self.after_operation(token, success=outcome.success)

    def _wait_in_queue(self, request: QueuedRequest) -> None:
        if request.completion_signal.wait(timeout=self.queue_timeout):
            return

        with self._lock:
            # Release may have happened between the timeout and taking the lock
            if request.released:
                return
            try:
                self._queues[request.priority].remove(request)
            except ValueError:
                pass
            self._stats["queue_timeouts"] += 1

        waited = time.monotonic() - request.enqueue_time
        logger.warning(f"QUEUE TIMEOUT: {request.tag} [{request.priority.name}] after {waited:.2f}s")
        raise QueueTimeout(request.tag, request.priority, waited)

    def _claim_slot(
        self,
        tag: str,
        priority: Priority,
        level: ScalingLevel,
        was_queued: bool,
        date_range: Optional[str],
        started: float,
    ) -> OperationToken:
        exhaustion_recorded = False
        while True:
            with self._lock:
                if len(self._active) < self.max_concurrent:
                    operation_id = f"{tag}_{next(self._ids)}"
                    token = OperationToken(
                        operation_id=operation_id,
                        tag=tag,
                        priority=priority,
                        start_time=time.monotonic(),
                    )
                    self._active[operation_id] = token
                    self._record_history_locked(OperationRecord(
                        operation_id=operation_id,
                        tag=tag,
                        priority=priority,
                        scaling_level=level,
                        was_queued=was_queued,
                        started_at=time.time(),
                        date_range=date_range,
                    ))
                    return token

                if not exhaustion_recorded:
                    exhaustion_recorded = True
                    self._stats["pool_exhaustion_events"] += 1
                    self._stats["last_pool_exhaustion"] = datetime.now(timezone.utc).isoformat()
                    logger.warning(
                        f"EMERGENCY: Pool exhaustion ({len(self._active)}/{self.max_concurrent}) "
                        f"- {tag} waiting for a connection"
                    )

            waited = time.monotonic() - started
            if self.queue_timeout is not None and waited >= self.queue_timeout:
                if was_queued:
                    # Our release was not used; hand it to the next queued request
                    with self._lock:
                        passed_on = self._release_next_locked(force=True)
                    if passed_on is not None:
                        logger.debug(f"RELEASED: {passed_on.tag} [{passed_on.priority.name}] after {tag} gave up")
                raise PoolExhausted(tag, waited)
            time.sleep(self.poll_interval)

    def _release_next_locked(self, force: bool = False) -> Optional[QueuedRequest]:
        """
        Pop and signal the highest-priority queued request, if a slot is free.

        force releases even when the pool is full; the request then competes
        for a slot in the emergency poll.
        """
        if not force and len(self._active) >= self.max_concurrent:
            return None

        for priority in sorted(self._queues):
            queue = self._queues[priority]
            if not queue:
                continue
            request = queue.popleft()
            wait = time.monotonic() - request.enqueue_time

            self._stats["queue_processed"] += 1
            n = self._stats["queue_processed"]
            previous = self._stats["average_wait_time"]
            self._stats["average_wait_time"] = (previous * (n - 1) + wait) / n

            request.completion_signal.set()
            return request
        return None

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def _record_history_locked(self, record: OperationRecord) -> None:
        self._history[record.operation_id] = record
        while len(self._history) > self.max_history:
            del self._history[next(iter(self._history))]

    def _prune_history_locked(self) -> int:
        cutoff = time.time() - self.history_window
        stale = [op_id for op_id, r in self._history.items() if r.started_at <= cutoff]
        for op_id in stale:
            del self._history[op_id]
        self._last_prune = time.monotonic()
        return len(stale)

    def prune_history(self) -> int:
        """
        Drop history older than the window.

        Returns the number of records removed.
        """
        with self._lock:
            return self._prune_history_locked()

    def recent_history(self, limit: int = 50) -> list:
        with self._lock:
            records = list(self._history.values())[-limit:]
        return [r.to_dict() for r in records]

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._active)

    @property
    def queued_count(self) -> int:
        with self._lock:
            return sum(len(q) for q in self._queues.values())

    @property
    def scaling_level(self) -> ScalingLevel:
        with self._lock:
            return get_scaling_level(len(self._active), self.thresholds)

    def queue_breakdown(self) -> str:
        """Queued requests per priority, e.g. "HIGH:2, LOW:5"."""
        with self._lock:
            parts = [f"{p.name}:{len(q)}" for p, q in sorted(self._queues.items()) if q]
        return ", ".join(parts) or "None"

    def get_stats(self) -> Dict[str, Any]:
        """Snapshot of counters and active operations."""
        with self._lock:
            return {
                **self._stats,
                "active_count": len(self._active),
                "active_operations": list(self._active),
                "queued": {p.name: len(q) for p, q in sorted(self._queues.items())},
                "history_size": len(self._history),
            }

    def health(self) -> Dict[str, Any]:
        """Pool health summary for monitoring endpoints."""
        with self._lock:
            active = len(self._active)
            return {
                "healthy": active < self.max_concurrent,
                "active_connections": active,
                "max_connections": self.max_concurrent,
                "scaling_level": get_scaling_level(active, self.thresholds).value,
                "queued_requests": sum(len(q) for q in self._queues.values()),
                "connection_errors": self._stats["errors"],
                "pool_exhaustion_events": self._stats["pool_exhaustion_events"],
                "queue_stats": {
                    "total_queued": self._stats["total_queued"],
                    "total_processed": self._stats["queue_processed"],
                    "timeouts": self._stats["queue_timeouts"],
                    "average_wait_ms": round(self._stats["average_wait_time"] * 1000),
                },
            }

    def log_stats(self) -> None:
        with self._lock:
            if self._stats["total_operations"] == 0:
                return
            recent = [r.duration_ms for r in list(self._history.values())[-10:] if r.duration_ms is not None]
            active = len(self._active)
        avg_duration = sum(recent) / len(recent) if recent else 0.0
        logger.info(
            f"Pool: {active}/{self.max_concurrent} active, level {self.scaling_level.value}, "
            f"queued [{self.queue_breakdown()}], avg recent duration {avg_duration:.0f}ms"
        )

    def start_monitoring(self, interval: float = 30.0) -> None:
        """Log stats and prune history every interval seconds in a daemon thread."""
        if self._monitor_thread is not None and self._monitor_thread.is_alive():
            return
        self._monitor_stop.clear()

        def run():
            while not self._monitor_stop.wait(interval):
                self.log_stats()
                self.prune_history()

        self._monitor_thread = threading.Thread(
            target=run, name="admission-monitor", daemon=True
        )
        self._monitor_thread.start()

    def stop_monitoring(self) -> None:
        self._monitor_stop.set()
        if self._monitor_thread is not None:
            self._monitor_thread.join(timeout=1.0)
            self._monitor_thread = None
