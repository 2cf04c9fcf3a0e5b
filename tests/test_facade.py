"""
Tests for the metrics facade over the cached data source.
"""
import threading
import time

import pytest

from funnel_api.admission import AdmissionController, ScalingThresholds
from funnel_api.cache import ChunkedRangeCache, InMemoryStore
from funnel_api.metrics import CHART_GROUPS, MetricsFacade

Q1 = ("2025-01-01", "2025-03-31")


class FailingRevenueSource:
    """Wraps a data source so total_revenue fails."""

    def __init__(self, inner):
        self._inner = inner

    def __getattr__(self, name):
        return getattr(self._inner, name)

    def total_revenue(self, from_date, to_date):
        return {"total_revenue": 0, "success": False, "error": "revenue query failed"}


class ZeroBookingSource(FailingRevenueSource):
    def total_revenue(self, from_date, to_date):
        return {"total_revenue": 0.0, "success": True}

    def total_bookings(self, from_date, to_date):
        return {"total_bookings": 0, "success": True}


class TestMetrics:
    """Tests for single metrics and ABV."""

    def test_get_metric(self, facade):
        result = facade.get_metric("total_bookings", *Q1)
        assert result["success"] is True
        assert result["total_bookings"] == 3

    def test_get_metric_is_cached(self, facade):
        facade.get_metric("unique_visitors", *Q1)
        result = facade.get_metric("unique_visitors", *Q1)
        assert result["cached"] is True
        assert result["unique_visitors"] == 4

    def test_unknown_metric(self, facade):
        with pytest.raises(KeyError):
            facade.get_metric("bounce_rate", *Q1)

    def test_abv(self, facade):
        result = facade.get_metric("abv", *Q1)
        assert result["success"] is True
        assert result["abv"] == 120.0
        assert result["calculation_details"] == {"total_revenue": 360.0, "total_bookings": 3}

    def test_abv_without_bookings_is_zero(self, cache, data_source):
        facade = MetricsFacade(cache, ZeroBookingSource(data_source))
        try:
            result = facade.get_abv(*Q1)
        finally:
            facade.close()
        assert result["success"] is True
        assert result["abv"] == 0

    def test_abv_failure(self, cache, data_source):
        facade = MetricsFacade(cache, FailingRevenueSource(data_source))
        try:
            result = facade.get_abv(*Q1)
        finally:
            facade.close()
        assert result["success"] is False
        assert result["abv"] == 0

    def test_list_metrics(self, facade):
        names = facade.list_metrics()
        assert "abv" in names
        assert "booking_funnel" in names
        assert "total_revenue" in names


class TestGroups:
    """Tests for summary and chart groups."""

    def test_summary(self, facade):
        result = facade.get_summary(*Q1)
        assert result["success"] is True
        assert result["result"] == {
            "unique_visitors": 4,
            "total_bookings": 3,
            "room_nights": 6.0,
            "total_revenue": 360.0,
            "abv": 120.0,
        }
        assert result["date_range"] == "2025-01-01 to 2025-03-31"

    def test_summary_reports_failures(self, cache, data_source):
        facade = MetricsFacade(cache, FailingRevenueSource(data_source))
        try:
            result = facade.get_summary(*Q1)
        finally:
            facade.close()
        assert result["success"] is False
        assert any(detail.startswith("total_revenue:") for detail in result["details"])

    def test_chart_group(self, facade):
        result = facade.get_chart_group("conversions", *Q1)
        assert result["success"] is True
        charts = result["result"]
        assert charts["charts_count"] == 2
        assert [row["step"] for row in charts["booking_funnel"]][0] == "search"
        assert len(charts["booking_revenue_trends"]) == 3

    def test_all_chart_groups(self, facade):
        for group, charts in CHART_GROUPS.items():
            result = facade.get_chart_group(group, *Q1)
            assert result["success"] is True, group
            for chart in charts:
                assert isinstance(result["result"][chart], list)

    def test_unknown_chart_group(self, facade):
        with pytest.raises(KeyError):
            facade.get_chart_group("retention", *Q1)

    def test_date_ranges_are_admitted(self, facade, admission):
        result = facade.get_date_ranges()
        assert result["min_date"] == "2025-01-10"
        assert admission.recent_history()[-1]["tag"] == "date_ranges"


class TestFanOutIsolation:
    """Queued summary work must not delay chart groups."""

    def test_chart_group_not_blocked_by_queued_summary(self, data_source):
        admission = AdmissionController(
            max_concurrent=8,
            thresholds=ScalingThresholds(green=1, yellow=5, orange=7),
            queue_timeout=5.0,
            poll_interval=0.005,
        )
        facade = MetricsFacade(ChunkedRangeCache(InMemoryStore(), admission=admission), data_source)
        # Two active operations: YELLOW, so only LOW (summary) requests queue
        held = [admission.before_operation("health") for _ in range(2)]
        summary = {}
        thread = threading.Thread(target=lambda: summary.update(facade.get_summary(*Q1)))
        try:
            thread.start()
            deadline = time.monotonic() + 2.0
            while admission.queued_count < 5 and time.monotonic() < deadline:
                time.sleep(0.005)
            assert admission.queue_breakdown() == "LOW:5"

            started = time.monotonic()
            result = facade.get_chart_group("conversions", *Q1)
            elapsed = time.monotonic() - started

            assert result["success"] is True
            assert elapsed < 0.5
            assert admission.queued_count == 5
        finally:
            for token in held:
                admission.after_operation(token)
            thread.join(timeout=5.0)
            facade.close()

        assert summary["success"] is True
        assert summary["result"]["total_bookings"] == 3
