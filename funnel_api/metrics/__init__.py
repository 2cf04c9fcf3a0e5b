"""
Funnel metrics facade and cache warming.
"""
from .facade import (
    CHART_GROUPS,
    DERIVED_METRICS,
    SCALAR_METRICS,
    MetricDefinition,
    MetricsFacade,
)
from .warming import CacheWarmer, get_common_date_ranges

__all__ = [
    "CHART_GROUPS",
    "DERIVED_METRICS",
    "SCALAR_METRICS",
    "MetricDefinition",
    "MetricsFacade",
    "CacheWarmer",
    "get_common_date_ranges",
]
