"""
Date-range caching with monthly chunks, recency-based TTL and pluggable stores.
"""
from .core import (
    CacheAggregationFailure,
    CacheEntry,
    CachedChunk,
    ChunkInfo,
    MetricKind,
    MonthChunk,
    Result,
)
from .chunks import (
    build_chunk_key,
    build_exact_key,
    get_month_chunks,
    parse_date,
)
from .ttl_policies import TTL_CONFIG, calculate_ttl
from .store import (
    InMemoryStore,
    KeyValueStore,
    RedisStore,
    StoreUnavailable,
    create_store,
)
from .manager import ChunkedRangeCache

__all__ = [
    # Core types
    "CacheAggregationFailure",
    "CacheEntry",
    "CachedChunk",
    "ChunkInfo",
    "MetricKind",
    "MonthChunk",
    "Result",
    # Chunking
    "build_chunk_key",
    "build_exact_key",
    "get_month_chunks",
    "parse_date",
    # TTL policies
    "TTL_CONFIG",
    "calculate_ttl",
    # Stores
    "InMemoryStore",
    "KeyValueStore",
    "RedisStore",
    "StoreUnavailable",
    "create_store",
    # Manager
    "ChunkedRangeCache",
]
