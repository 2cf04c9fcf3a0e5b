"""
Metric and chart entry points.

Each metric maps to one data-source call wrapped by the range cache. Derived
metrics (ABV) and grouped requests (summary, chart groups) combine the
results of other metrics and never query the data source themselves.
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from funnel_api.cache import ChunkedRangeCache, MetricKind, Result

logger = logging.getLogger("metrics.facade")

SCALAR_METRICS = ["unique_visitors", "total_bookings", "room_nights", "total_revenue"]
DERIVED_METRICS = ["abv"]

# Chart group (admission tag) -> charts returned together
CHART_GROUPS: Dict[str, List[str]] = {
    "awareness_engagement": ["unique_visitors_by_channel", "logged_in_vs_out"],
    "conversions": ["booking_funnel", "booking_revenue_trends"],
    "stay_poststay": ["rebooking_rates"],
}


@dataclass(frozen=True)
class MetricDefinition:
    """How one metric is computed and cached."""
    name: str
    layer: str
    kind: MetricKind
    tag: str
    compute: Callable[[str, str], Result]
    endpoint: Optional[str] = None  # cache key segment, defaults to name


class MetricsFacade:
    """
    Stable (name, range) -> Result contract for the route layer.

    Args:
        cache: Range cache wrapping every data-source call
        data_source: Object exposing one method per metric/chart name plus date_ranges()
        max_workers: Threads per fan-out pool (summary and chart groups each get one)
    """

    def __init__(self, cache: ChunkedRangeCache, data_source, max_workers: int = 5):
        self.cache = cache
        self.data_source = data_source
        self._metrics: Dict[str, MetricDefinition] = {}
        # Summary tasks can sit in the LOW queue holding their workers, so
        # chart groups never share their pool
        self._summary_pool = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="metrics-summary",
        )
        self._chart_pool = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="metrics-charts",
        )

        for name in SCALAR_METRICS:
            self.register(MetricDefinition(
                name=name,
                layer="metrics",
                kind=MetricKind.SCALAR,
                tag=name,
                compute=getattr(data_source, name),
            ))
        for group, charts in CHART_GROUPS.items():
            for chart in charts:
                self.register(MetricDefinition(
                    name=chart,
                    layer="charts",
                    kind=MetricKind.SERIES,
                    tag=group,
                    compute=getattr(data_source, chart),
                ))

    def register(self, definition: MetricDefinition) -> None:
        self._metrics[definition.name] = definition

    def list_metrics(self) -> List[str]:
        return sorted(list(self._metrics) + DERIVED_METRICS)

    def get_metric(
        self,
        name: str,
        range_start: str,
        range_end: str,
        tag: Optional[str] = None,
    ) -> Result:
        """
        Get one metric or chart for a date range.

        Args:
            name: Registered metric/chart name, or "abv"
            range_start: 'YYYY-MM-DD', validated by the caller
            range_end: 'YYYY-MM-DD', validated by the caller
            tag: Admission tag override (e.g. "summary" for batch requests)

        Raises:
            KeyError: Unknown metric name
        """
        if name == "abv":
            return self.get_abv(range_start, range_end, tag=tag)

        definition = self._metrics.get(name)
        if definition is None:
            raise KeyError(f"Unknown metric: {name}")

        return self.cache.get_or_compute(
            definition.layer,
            definition.endpoint or definition.name,
            range_start,
            range_end,
            definition.compute,
            kind=definition.kind,
            tag=tag or definition.tag,
        )

    def get_abv(self, range_start: str, range_end: str, tag: Optional[str] = None) -> Result:
        """Average booking value: total revenue / total bookings (0 without bookings)."""
        revenue = self.get_metric("total_revenue", range_start, range_end, tag=tag or "abv")
        bookings = self.get_metric("total_bookings", range_start, range_end, tag=tag or "abv")

        if revenue.get("success") is False or bookings.get("success") is False:
            logger.warning(f"ABV unavailable for {range_start} to {range_end}")
            return {
                "abv": 0,
                "success": False,
                "error": "Failed to get revenue or bookings data for ABV calculation",
            }

        total_revenue = revenue.get("total_revenue", 0) or 0
        total_bookings = bookings.get("total_bookings", 0) or 0
        abv = total_revenue / total_bookings if total_bookings > 0 else 0

        return {
            "abv": round(abv, 2),
            "success": True,
            "calculation_details": {
                "total_revenue": total_revenue,
                "total_bookings": total_bookings,
            },
        }

    def get_summary(self, range_start: str, range_end: str) -> Result:
        """All scalar metrics at once, admitted with the lowest priority."""
        names = SCALAR_METRICS + DERIVED_METRICS
        futures = {
            name: self._summary_pool.submit(self.get_metric, name, range_start, range_end, "summary")
            for name in names
        }
        results = {name: future.result() for name, future in futures.items()}

        failed = [name for name, r in results.items() if r.get("success") is False]
        if failed:
            return {
                "success": False,
                "error": "One or more metric queries failed",
                "details": [f"{name}: {results[name].get('error', 'unknown error')}" for name in failed],
            }

        return {
            "success": True,
            "result": {name: results[name].get(name) for name in names},
            "date_range": f"{range_start} to {range_end}",
        }

    def get_chart_group(self, group: str, range_start: str, range_end: str) -> Result:
        """
        Every chart of one group.

        Raises:
            KeyError: Unknown chart group
        """
        charts = CHART_GROUPS[group]
        futures = {
            chart: self._chart_pool.submit(self.get_metric, chart, range_start, range_end)
            for chart in charts
        }
        results = {chart: future.result() for chart, future in futures.items()}

        errors = [
            f"{chart}: {r.get('error', 'query failed')}"
            for chart, r in results.items()
            if r.get("success") is False
        ]
        if errors:
            return {
                "success": False,
                "error": "One or more chart queries failed",
                "details": errors,
            }

        return {
            "success": True,
            "result": {
                **{chart: results[chart].get("data") for chart in charts},
                "date_range": f"{range_start} to {range_end}",
                "charts_count": len(charts),
            },
        }

    def get_date_ranges(self) -> Result:
        """Available data range; admitted as a critical system operation."""
        with self.cache.admission.admit("date_ranges") as outcome:
            result = self.data_source.date_ranges()
            if result.get("success") is False:
                outcome.mark_failed()
            return result

    def close(self) -> None:
        self._summary_pool.shutdown(wait=False)
        self._chart_pool.shutdown(wait=False)
