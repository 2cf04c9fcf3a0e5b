"""
Booking Funnel API - Main FastAPI Application
Funnel metrics served through a month-chunked range cache and a
priority-aware database admission controller.
"""
import logging
import re
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine

from config.settings import Settings, settings
from funnel_api.admission import (
    AdmissionController,
    PoolExhausted,
    QueueTimeout,
    ScalingThresholds,
)
from funnel_api.cache import ChunkedRangeCache, KeyValueStore, create_store
from funnel_api.datasource import SqlDataSource
from funnel_api.db import create_db_engine, create_session_factory, init_db
from funnel_api.metrics import CHART_GROUPS, CacheWarmer, MetricsFacade

# Version tracking
APP_VERSION = "v0.3.0"
APP_NAME = "Booking Funnel API"

LARGE_QUERY_DAYS = 1000
RETRY_AFTER_SECONDS = 5
DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")

logger = logging.getLogger("api")


@dataclass
class Services:
    """Everything a request needs, built once per application."""
    engine: Engine
    data_source: SqlDataSource
    store: KeyValueStore
    admission: AdmissionController
    cache: ChunkedRangeCache
    facade: MetricsFacade
    warmer: CacheWarmer

    def close(self) -> None:
        self.admission.stop_monitoring()
        self.facade.close()
        self.engine.dispose()


def build_services(app_settings: Settings) -> Services:
    """Wire engine, store, admission controller, cache and facade from settings."""
    engine = create_db_engine(app_settings.database_url)
    init_db(engine)
    data_source = SqlDataSource(create_session_factory(engine))

    admission = AdmissionController(
        max_concurrent=app_settings.admission_max_concurrent,
        thresholds=ScalingThresholds(
            green=app_settings.admission_threshold_green,
            yellow=app_settings.admission_threshold_yellow,
            orange=app_settings.admission_threshold_orange,
        ),
        queue_timeout=app_settings.admission_queue_timeout_seconds,
        poll_interval=app_settings.admission_poll_interval_seconds,
        history_window=app_settings.admission_history_window_seconds,
    )
    store = create_store(app_settings.redis_url, app_settings.redis_socket_timeout)
    cache = ChunkedRangeCache(
        store,
        admission=admission,
        key_prefix=app_settings.cache_key_prefix,
        enabled=app_settings.cache_enabled,
    )
    facade = MetricsFacade(cache, data_source)
    warmer = CacheWarmer(facade, batch_size=app_settings.cache_warming_batch_size)

    return Services(
        engine=engine,
        data_source=data_source,
        store=store,
        admission=admission,
        cache=cache,
        facade=facade,
        warmer=warmer,
    )


def validate_date_range(from_date: str, to_date: str) -> int:
    """
    Check both dates are YYYY-MM-DD and from <= to.

    Returns:
        Number of days in the range (inclusive)
    """
    parsed = []
    for name, value in (("from", from_date), ("to", to_date)):
        if not DATE_PATTERN.match(value or ""):
            raise HTTPException(status_code=400, detail=f"Invalid '{name}' date, expected YYYY-MM-DD")
        try:
            parsed.append(date.fromisoformat(value))
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid '{name}' date: {value}")

    start, end = parsed
    if start > end:
        raise HTTPException(status_code=400, detail="'from' date must not be after 'to' date")
    return (end - start).days + 1


def result_response(result: Dict[str, Any], days: Optional[int] = None) -> JSONResponse:
    """Failed results go out as 500 with the result itself as the body."""
    status_code = 500 if result.get("success") is False else 200
    headers = {}
    if days is not None and days > LARGE_QUERY_DAYS:
        headers["X-Large-Query-Warning"] = f"Query spans {days} days and may be slow"
    return JSONResponse(status_code=status_code, content=result, headers=headers)


def create_app(services: Optional[Services] = None, app_settings: Settings = settings) -> FastAPI:
    """
    Build the application.

    Args:
        services: Prebuilt services (tests); built from app_settings at startup if omitted
        app_settings: Configuration used when services are built here
    """
    logging.basicConfig(
        level=getattr(logging, app_settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = services is None
        app.state.services = services or build_services(app_settings)
        app.state.services.admission.start_monitoring()
        if app_settings.cache_warming_enabled:
            app.state.services.warmer.start_background()
        logger.info(f"{APP_NAME} {APP_VERSION} started")
        try:
            yield
        finally:
            if owned:
                app.state.services.close()
            else:
                app.state.services.admission.stop_monitoring()

    app = FastAPI(
        title=APP_NAME,
        description="Booking funnel metrics with chunked caching and admission control",
        version=APP_VERSION,
        lifespan=lifespan,
    )

    @app.exception_handler(QueueTimeout)
    @app.exception_handler(PoolExhausted)
    async def overloaded_handler(request: Request, exc: TimeoutError):
        logger.warning(f"Rejected {request.url.path}: {exc}")
        return JSONResponse(
            status_code=503,
            content={"success": False, "error": str(exc)},
            headers={"Retry-After": str(RETRY_AFTER_SECONDS)},
        )

    def get_services(request: Request) -> Services:
        return request.app.state.services

    @app.get("/health")
    def health_check(svc: Services = Depends(get_services)):
        """Health check endpoint."""
        pool = svc.admission.health()
        database = svc.data_source.ping()
        store_connected = svc.store.ping()
        status = "ok" if database and store_connected and pool["healthy"] else "degraded"
        return {
            "status": status,
            "version": APP_VERSION,
            "database": database,
            "cache": {"store": svc.store.name, "connected": store_connected},
            "connection_pool": pool,
        }

    @app.get("/cache/stats")
    def cache_stats(svc: Services = Depends(get_services)):
        return {
            "cache": svc.cache.get_stats(),
            "warming": svc.warmer.get_stats(),
        }

    @app.get("/scaling/status")
    def scaling_status(svc: Services = Depends(get_services)):
        """Admission controller state: level, queues and recent operations."""
        return {
            **svc.admission.get_stats(),
            "queue_breakdown": svc.admission.queue_breakdown(),
            "recent_operations": svc.admission.recent_history(limit=20),
        }

    @app.post("/cache/warm")
    def warm_cache(svc: Services = Depends(get_services)):
        if svc.warmer.is_warming:
            return {"started": False, "warming": svc.warmer.get_stats()}
        svc.warmer.start_background()
        return {"started": True}

    @app.get("/api/date-ranges")
    def date_ranges(svc: Services = Depends(get_services)):
        return result_response(svc.facade.get_date_ranges())

    @app.get("/api/metrics")
    def list_metrics(svc: Services = Depends(get_services)):
        return {"metrics": svc.facade.list_metrics(), "chart_groups": sorted(CHART_GROUPS)}

    @app.get("/api/metrics/{name}")
    def get_metric(
        name: str,
        from_date: str = Query(..., alias="from"),
        to_date: str = Query(..., alias="to"),
        svc: Services = Depends(get_services),
    ):
        days = validate_date_range(from_date, to_date)
        try:
            result = svc.facade.get_metric(name.replace("-", "_"), from_date, to_date)
        except KeyError:
            raise HTTPException(status_code=404, detail=f"Unknown metric: {name}")
        return result_response(result, days)

    @app.get("/api/summary")
    def get_summary(
        from_date: str = Query(..., alias="from"),
        to_date: str = Query(..., alias="to"),
        svc: Services = Depends(get_services),
    ):
        days = validate_date_range(from_date, to_date)
        return result_response(svc.facade.get_summary(from_date, to_date), days)

    @app.get("/api/charts/{group}")
    def get_chart_group(
        group: str,
        from_date: str = Query(..., alias="from"),
        to_date: str = Query(..., alias="to"),
        svc: Services = Depends(get_services),
    ):
        days = validate_date_range(from_date, to_date)
        group_key = group.replace("-", "_")
        if group_key not in CHART_GROUPS:
            raise HTTPException(status_code=404, detail=f"Unknown chart group: {group}")
        return result_response(svc.facade.get_chart_group(group_key, from_date, to_date), days)

    return app


app = create_app()
