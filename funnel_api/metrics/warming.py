"""
Pre-populates the range cache with commonly requested ranges.
"""
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from .facade import MetricsFacade

logger = logging.getLogger("cache.warming")

# Metrics/charts warmed for every common range
WARMED_METRICS = ["unique_visitors", "unique_visitors_by_channel", "logged_in_vs_out"]


@dataclass(frozen=True)
class WarmingQuery:
    name: str
    metric: str
    from_date: str
    to_date: str


def _month_start(day: date, months_back: int = 0) -> date:
    year, month = day.year, day.month - months_back
    while month < 1:
        month += 12
        year -= 1
    return date(year, month, 1)


def get_common_date_ranges(today: Optional[date] = None) -> Dict[str, tuple]:
    """Ranges users typically request, relative to today."""
    today = today or datetime.now(timezone.utc).date()
    current_month = _month_start(today)
    return {
        "last_7_days": (today - timedelta(days=7), today),
        "last_30_days": (today - timedelta(days=30), today),
        "current_month": (current_month, today),
        "previous_month": (_month_start(today, 1), current_month - timedelta(days=1)),
        "last_quarter": (_month_start(today, 3), today),
    }


class CacheWarmer:
    """
    Runs common queries through the facade so later requests hit the cache.

    Queries run in small batches to avoid crowding out live traffic.
    """

    def __init__(self, facade: MetricsFacade, batch_size: int = 2):
        self.facade = facade
        self.batch_size = max(1, batch_size)
        self._lock = threading.Lock()
        self._is_warming = False
        self._stats: Dict[str, Any] = {
            "total_queries": 0,
            "success_count": 0,
            "error_count": 0,
            "last_warm_time": None,
            "last_duration_seconds": None,
        }

    def get_warming_queries(self, today: Optional[date] = None) -> List[WarmingQuery]:
        queries = []
        for range_name, (start, end) in get_common_date_ranges(today).items():
            for metric in WARMED_METRICS:
                queries.append(WarmingQuery(
                    name=f"{metric}_{range_name}",
                    metric=metric,
                    from_date=start.isoformat(),
                    to_date=end.isoformat(),
                ))
        return queries

    @property
    def is_warming(self) -> bool:
        with self._lock:
            return self._is_warming

    def warm_cache(self, today: Optional[date] = None) -> Dict[str, Any]:
        """
        Warm all common queries.

        Returns:
            Warming statistics; unchanged if a warm is already running
        """
        with self._lock:
            if self._is_warming:
                logger.info("Cache warming already in progress")
                return dict(self._stats)
            self._is_warming = True

        started = time.monotonic()
        queries = self.get_warming_queries(today)
        success = errors = 0
        logger.info(f"Warming {len(queries)} common queries")

        try:
            with ThreadPoolExecutor(
                max_workers=self.batch_size,
                thread_name_prefix="cache-warm",
            ) as pool:
                for i in range(0, len(queries), self.batch_size):
                    batch = queries[i:i + self.batch_size]
                    futures = [(q, pool.submit(self._warm_one, q)) for q in batch]
                    for query, future in futures:
                        if future.result():
                            success += 1
                        else:
                            errors += 1
                            logger.warning(f"Failed to warm {query.name}")
        finally:
            duration = time.monotonic() - started
            with self._lock:
                self._is_warming = False
                self._stats.update({
                    "total_queries": len(queries),
                    "success_count": success,
                    "error_count": errors,
                    "last_warm_time": datetime.now(timezone.utc).isoformat(),
                    "last_duration_seconds": round(duration, 2),
                })

        logger.info(f"Cache warming done: {success}/{len(queries)} in {duration:.1f}s")
        return self.get_stats()

    def _warm_one(self, query: WarmingQuery) -> bool:
        try:
            result = self.facade.get_metric(query.metric, query.from_date, query.to_date)
        except TimeoutError as e:
            logger.warning(f"Warming {query.name} not admitted: {e}")
            return False
        return result.get("success") is not False

    def start_background(self) -> threading.Thread:
        """Warm once in a daemon thread."""
        thread = threading.Thread(target=self.warm_cache, name="cache-warmer", daemon=True)
        thread.start()
        return thread

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {**self._stats, "is_warming": self._is_warming}
