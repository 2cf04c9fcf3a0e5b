"""
Route tests: health, metrics, charts and error mapping.
"""
import time

import pytest
from fastapi.testclient import TestClient

from funnel_api.admission import Priority, QueueTimeout
from funnel_api.main import Services, create_app


@pytest.fixture
def services(engine, data_source, store, admission, cache, facade, warmer):
    return Services(
        engine=engine,
        data_source=data_source,
        store=store,
        admission=admission,
        cache=cache,
        facade=facade,
        warmer=warmer,
    )


@pytest.fixture
def client(services):
    with TestClient(create_app(services=services)) as client:
        yield client


def test_health_endpoint_returns_200(client):
    """Test that /health returns HTTP 200"""
    response = client.get("/health")
    assert response.status_code == 200


def test_health_endpoint_returns_ok_status(client):
    """Test that /health reports database, store and pool state"""
    data = client.get("/health").json()
    assert data["status"] == "ok"
    assert data["database"] is True
    assert data["cache"] == {"store": "memory", "connected": True}
    assert data["connection_pool"]["scaling_level"] == "GREEN"


def test_metric_endpoint(client):
    response = client.get("/api/metrics/total_bookings", params={"from": "2025-01-01", "to": "2025-03-31"})
    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["total_bookings"] == 3
    assert "X-Large-Query-Warning" not in response.headers


def test_metric_endpoint_accepts_hyphens(client):
    response = client.get("/api/metrics/total-revenue", params={"from": "2025-01-01", "to": "2025-03-31"})
    assert response.json()["total_revenue"] == 360.0


def test_abv_endpoint(client):
    response = client.get("/api/metrics/abv", params={"from": "2025-01-01", "to": "2025-01-31"})
    assert response.status_code == 200
    assert response.json()["abv"] == 155.0


def test_list_metrics(client):
    data = client.get("/api/metrics").json()
    assert "abv" in data["metrics"]
    assert data["chart_groups"] == ["awareness_engagement", "conversions", "stay_poststay"]


@pytest.mark.parametrize("params", [
    {"from": "2025-13-01", "to": "2025-03-31"},
    {"from": "01/01/2025", "to": "2025-03-31"},
    {"from": "2025-03-31", "to": "2025-01-01"},
])
def test_invalid_dates_return_400(client, params):
    response = client.get("/api/metrics/total_bookings", params=params)
    assert response.status_code == 400


def test_missing_dates_rejected(client):
    response = client.get("/api/metrics/total_bookings", params={"from": "2025-01-01"})
    assert response.status_code == 422


def test_unknown_metric_returns_404(client):
    response = client.get("/api/metrics/bounce_rate", params={"from": "2025-01-01", "to": "2025-01-31"})
    assert response.status_code == 404


def test_large_range_warning_header(client):
    response = client.get("/api/metrics/total_bookings", params={"from": "2020-01-01", "to": "2025-03-31"})
    assert response.status_code == 200
    assert "X-Large-Query-Warning" in response.headers


def test_summary_endpoint(client):
    response = client.get("/api/summary", params={"from": "2025-01-01", "to": "2025-03-31"})
    assert response.status_code == 200
    assert response.json()["result"]["abv"] == 120.0


def test_chart_group_endpoint(client):
    response = client.get("/api/charts/awareness-engagement", params={"from": "2025-01-01", "to": "2025-03-31"})
    assert response.status_code == 200
    result = response.json()["result"]
    assert result["charts_count"] == 2
    assert result["logged_in_vs_out"][0] == {"status": "Logged In", "visitors": 2}


def test_unknown_chart_group_returns_404(client):
    response = client.get("/api/charts/retention", params={"from": "2025-01-01", "to": "2025-03-31"})
    assert response.status_code == 404


def test_date_ranges_endpoint(client):
    data = client.get("/api/date-ranges").json()
    assert data["min_date"] == "2025-01-10"
    assert data["max_date"] == "2025-03-01"


def test_failed_result_returns_500_with_body(client, services, monkeypatch):
    failure = {"success": False, "error": "db down", "total_bookings": 0}
    monkeypatch.setattr(services.facade, "get_metric", lambda *args, **kwargs: failure)

    response = client.get("/api/metrics/total_bookings", params={"from": "2025-01-01", "to": "2025-01-31"})

    assert response.status_code == 500
    assert response.json() == failure


def test_queue_timeout_returns_503(client, services, monkeypatch):
    def overloaded(*args, **kwargs):
        raise QueueTimeout("total_bookings", Priority.HIGH, 30.0)

    monkeypatch.setattr(services.facade, "get_metric", overloaded)

    response = client.get("/api/metrics/total_bookings", params={"from": "2025-01-01", "to": "2025-01-31"})

    assert response.status_code == 503
    assert response.headers["Retry-After"] == "5"
    assert response.json()["success"] is False


def test_cache_stats_track_hits(client):
    params = {"from": "2025-01-01", "to": "2025-01-31"}
    client.get("/api/metrics/room_nights", params=params)
    client.get("/api/metrics/room_nights", params=params)

    stats = client.get("/cache/stats").json()
    assert stats["cache"]["hits"] == 1
    assert stats["cache"]["store"] == "memory"
    assert stats["warming"]["is_warming"] is False


def test_scaling_status(client):
    client.get("/api/metrics/total_bookings", params={"from": "2025-01-01", "to": "2025-01-31"})

    data = client.get("/scaling/status").json()
    assert data["queue_breakdown"] == "None"
    assert data["recent_operations"][-1]["tag"] == "total_bookings"


def test_warm_endpoint_starts_warming(client, services):
    response = client.post("/cache/warm")
    assert response.json()["started"] is True

    deadline = time.monotonic() + 10.0
    while services.warmer.get_stats()["last_warm_time"] is None and time.monotonic() < deadline:
        time.sleep(0.01)
    assert services.warmer.get_stats()["total_queries"] == 15
