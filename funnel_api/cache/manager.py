"""
Date-range cache with monthly chunks and an exact-range shortcut.
"""
import json
import threading
import logging
from datetime import date
from typing import Any, Callable, Dict, List, Optional, Tuple

from funnel_api.admission import AdmissionController

from .chunks import (
    CHUNK_KEY_PREFIX,
    EXACT_KEY_PREFIX,
    DateLike,
    build_chunk_key,
    build_exact_key,
    get_month_chunks,
    parse_date,
)
from .core import (
    CacheAggregationFailure,
    CacheEntry,
    CachedChunk,
    ChunkInfo,
    MetricKind,
    MonthChunk,
    Result,
)
from .store import KeyValueStore, StoreUnavailable
from .ttl_policies import calculate_ttl

logger = logging.getLogger("cache.manager")

ComputeFn = Callable[[str, str], Result]


def is_success(result: Any) -> bool:
    """Results count as successful unless they say success: false."""
    return isinstance(result, dict) and result.get("success") is not False


class ChunkedRangeCache:
    """
    Caches data-source results per calendar month plus per exact range.

    Lookup order:
    - Exact-range entry (one store read)
    - Every month chunk of the range; if all are present they are aggregated
    - Otherwise the full range is computed once through the admission
      controller and written back as chunks plus the exact-range entry

    Failed results are never cached. If the store is unreachable the call
    computes directly and skips all writes.
    """

    def __init__(
        self,
        store: KeyValueStore,
        admission: Optional[AdmissionController] = None,
        key_prefix: str = "",
        enabled: bool = True,
    ):
        """
        Args:
            store: Backing key-value store
            admission: Gate for data-source calls (a default controller if omitted)
            key_prefix: Namespace prepended to every key
            enabled: False computes every request directly
        """
        self.store = store
        self.admission = admission or AdmissionController()
        self.key_prefix = key_prefix
        self.enabled = enabled

        self._stats_lock = threading.Lock()
        self._stats = {
            "total_requests": 0,
            "hits": 0,
            "aggregations": 0,
            "partial_hits": 0,
            "misses": 0,
            "bypasses": 0,
            "store_errors": 0,
            "compute_errors": 0,
            "aggregation_errors": 0,
        }

    def get_or_compute(
        self,
        layer: str,
        endpoint: str,
        range_start: DateLike,
        range_end: DateLike,
        compute_fn: ComputeFn,
        params: Optional[Dict[str, Any]] = None,
        kind: MetricKind = MetricKind.SCALAR,
        tag: Optional[str] = None,
    ) -> Result:
        """
        Return the result for [range_start, range_end], computing it on a miss.

        Args:
            layer: Cache layer ("metrics" or "charts")
            endpoint: Metric/chart name, part of every key
            range_start: First day (date or 'YYYY-MM-DD')
            range_end: Last day (date or 'YYYY-MM-DD')
            compute_fn: Data-source call taking ('YYYY-MM-DD', 'YYYY-MM-DD')
            params: Extra parameters that distinguish results
            kind: Decides how multiple cached chunks are combined
            tag: Admission tag, defaults to endpoint

        Returns:
            Result dict; success: false results come straight from the data source

        Raises:
            ValueError: If range_start is after range_end
            QueueTimeout: If the backend call could not be admitted in time
        """
        start, end = parse_date(range_start), parse_date(range_end)
        chunks = get_month_chunks(start, end)
        self._bump("total_requests")

        if not self.enabled:
            return self._compute(compute_fn, endpoint, start, end, tag)

        exact_key = build_exact_key(layer, endpoint, start, end, params, self.key_prefix)
        try:
            exact = self._read(exact_key)
            if exact is not None:
                self._bump("hits")
                logger.debug(f"CACHE HIT (exact): {exact_key}")
                return {**exact, "cached": True}

            cached, missing = self._lookup_chunks(layer, endpoint, chunks, params)
        except StoreUnavailable as e:
            self._bump("store_errors")
            self._bump("bypasses")
            logger.warning(f"Cache store unavailable, computing {endpoint} directly: {e}")
            return self._compute(compute_fn, endpoint, start, end, tag)

        if cached and not missing:
            logger.info(f"CACHE HIT (chunks): aggregating {len(cached)} chunks for {endpoint}")
            self._bump("aggregations")
            return self.aggregate_chunks(cached, start, end, kind)

        if cached:
            # Partial coverage is recomputed over the whole range
            logger.info(
                f"CACHE PARTIAL: {endpoint} {len(cached)} cached, {len(missing)} missing"
            )
            self._bump("partial_hits")
        else:
            logger.info(f"CACHE MISS: {exact_key}")
            self._bump("misses")

        result = self._compute(compute_fn, endpoint, start, end, tag)
        if is_success(result):
            self._store_result(layer, endpoint, start, end, chunks, result, params, exact_key)
        return result

    def _lookup_chunks(
        self,
        layer: str,
        endpoint: str,
        chunks: List[MonthChunk],
        params: Optional[Dict[str, Any]],
    ) -> Tuple[List[CachedChunk], List[MonthChunk]]:
        cached, missing = [], []
        for chunk in chunks:
            key = build_chunk_key(layer, endpoint, chunk.year, chunk.month, params, self.key_prefix)
            data = self._read(key)
            if data is None:
                logger.debug(f"CHUNK MISS: {key}")
                missing.append(chunk)
            else:
                logger.debug(f"CHUNK HIT: {key}")
                cached.append(CachedChunk(chunk=chunk, key=key, data=data))
        return cached, missing

    def _compute(
        self,
        compute_fn: ComputeFn,
        endpoint: str,
        start: date,
        end: date,
        tag: Optional[str],
    ) -> Result:
        from_date, to_date = start.isoformat(), end.isoformat()
        with self.admission.admit(tag or endpoint, from_date, to_date) as outcome:
            try:
                result = compute_fn(from_date, to_date)
            except Exception as e:
                logger.error(f"Compute failed for {endpoint} ({from_date} to {to_date}): {e}")
                outcome.mark_failed()
                self._bump("compute_errors")
                return {"success": False, "error": str(e), "cached": False}

            if not isinstance(result, dict):
                outcome.mark_failed()
                self._bump("compute_errors")
                return {
                    "success": False,
                    "error": f"Data source returned no result for {endpoint}",
                    "cached": False,
                }
            if not is_success(result):
                outcome.mark_failed()
            return result

    def _store_result(
        self,
        layer: str,
        endpoint: str,
        start: date,
        end: date,
        chunks: List[MonthChunk],
        result: Result,
        params: Optional[Dict[str, Any]],
        exact_key: str,
    ) -> None:
        """Write one entry per month chunk plus the exact-range entry."""
        entries = []
        for chunk in chunks:
            entries.append(CacheEntry(
                key=build_chunk_key(layer, endpoint, chunk.year, chunk.month, params, self.key_prefix),
                payload=result,
                ttl_seconds=calculate_ttl(chunk.actual_start, chunk.actual_end, layer),
                chunk_info=ChunkInfo.for_chunk(chunk),
            ))
        entries.append(CacheEntry(
            key=exact_key,
            payload=result,
            ttl_seconds=calculate_ttl(start, end, layer),
        ))

        try:
            for entry in entries:
                self._write(entry)
                logger.debug(f"STORED: {entry.key} [ttl={entry.ttl_seconds}s]")
        except StoreUnavailable as e:
            self._bump("store_errors")
            logger.warning(f"Cache store unavailable, result for {endpoint} not cached: {e}")
            return
        logger.info(f"Cached {endpoint} in {len(chunks)} chunks + exact range")

    def aggregate_chunks(
        self,
        cached_chunks: List[CachedChunk],
        range_start: DateLike,
        range_end: DateLike,
        kind: MetricKind = MetricKind.SCALAR,
    ) -> Result:
        """
        Combine cached chunks into one result for the requested range.

        Every chunk holds a snapshot of a full-range result, not a partial
        sum, so values are selected rather than added:
        - scalar metrics use the most recently cached chunk
        - series use the chunk overlapping the request the most

        Never returns None; an empty or unreadable set yields success: false.
        """
        start, end = parse_date(range_start), parse_date(range_end)
        date_range = f"{start.isoformat()} to {end.isoformat()}"

        try:
            relevant: List[Tuple[CachedChunk, Optional[ChunkInfo]]] = []
            for cached in cached_chunks:
                info = cached.info
                if info is None or info.overlaps(start, end):
                    relevant.append((cached, info))

            if not relevant:
                logger.warning(f"No relevant cached chunks for {date_range}")
                return {
                    "success": False,
                    "error": "No cached data available for this date range",
                    "data": None,
                    "cached": False,
                    "chunks_used": 0,
                    "date_range": date_range,
                    "note": "Cache miss - no relevant chunks found",
                }

            if len(relevant) == 1:
                return {
                    **relevant[0][0].data,
                    "aggregated": True,
                    "chunks_used": 1,
                    "cached": True,
                    "date_range": date_range,
                }

            if kind is MetricKind.SCALAR:
                latest, _ = max(
                    relevant,
                    key=lambda item: item[1].cached_at_time if item[1] else ChunkInfo.min_time(),
                )
                return {
                    **latest.data,
                    "aggregated": False,
                    "chunks_used": 1,
                    "cached": True,
                    "date_range": date_range,
                    "note": "Using most recent cached data as fallback",
                }

            best, _ = max(
                relevant,
                key=lambda item: item[1].overlap_days(start, end) if item[1] else 0,
            )
            return {
                **best.data,
                "aggregated": True,
                "chunks_used": len(relevant),
                "cached": True,
                "date_range": date_range,
                "note": f"Aggregated from {len(relevant)} relevant cached chunks",
            }

        except CacheAggregationFailure as e:
            self._bump("aggregation_errors")
            logger.error(f"Chunk aggregation failed for {date_range}: {e}")
            return {
                "success": False,
                "error": "Cache aggregation failed",
                "data": None,
                "cached": False,
                "chunks_used": 0,
                "date_range": date_range,
                "note": f"Error: {e}",
            }

    def _read(self, key: str) -> Optional[Result]:
        raw = self.store.get(key)
        if raw is None:
            return None
        try:
            data = json.loads(raw)
        except (ValueError, UnicodeDecodeError) as e:
            logger.warning(f"Discarding undecodable cache entry {key}: {e}")
            return None
        if not isinstance(data, dict):
            logger.warning(f"Discarding non-object cache entry {key}")
            return None
        return data

    def _write(self, entry: CacheEntry) -> bool:
        value = json.dumps(entry.to_payload(), default=str).encode("utf-8")
        return self.store.set_with_ttl(entry.key, value, entry.ttl_seconds)

    def _bump(self, name: str) -> None:
        with self._stats_lock:
            self._stats[name] += 1

    def _pattern(self, key_type: str, layer: str, endpoint: str) -> str:
        pattern = f"{key_type}:{layer}:{endpoint}:*"
        return f"{self.key_prefix}:{pattern}" if self.key_prefix else pattern

    def invalidate(self, key: str) -> bool:
        """
        Invalidate a specific cache entry.

        Returns:
            True if entry was found and removed
        """
        try:
            removed = self.store.delete(key)
        except StoreUnavailable as e:
            logger.warning(f"Cannot invalidate {key}, store unavailable: {e}")
            return False
        if removed:
            logger.info(f"Invalidated cache: {key}")
        return removed

    def invalidate_pattern(self, pattern: str) -> int:
        """
        Invalidate all cache entries matching a glob pattern.

        Returns:
            Number of entries invalidated
        """
        try:
            count = self.store.delete_pattern(pattern)
        except StoreUnavailable as e:
            logger.warning(f"Cannot invalidate '{pattern}', store unavailable: {e}")
            return 0
        if count:
            logger.info(f"Invalidated {count} entries matching '{pattern}'")
        return count

    def invalidate_endpoint(self, layer: str, endpoint: str) -> int:
        """Drop every exact-range and chunk entry of one endpoint."""
        return (
            self.invalidate_pattern(self._pattern(EXACT_KEY_PREFIX, layer, endpoint))
            + self.invalidate_pattern(self._pattern(CHUNK_KEY_PREFIX, layer, endpoint))
        )

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        with self._stats_lock:
            stats = dict(self._stats)
        total = stats["total_requests"]
        served = stats["hits"] + stats["aggregations"]
        hit_rate = (served / total * 100) if total > 0 else 0
        return {
            **stats,
            "hit_rate_percent": round(hit_rate, 1),
            "enabled": self.enabled,
            "store": self.store.name,
            "connected": self.store.ping(),
        }
