from __future__ import annotations

import base64
import gzip
import hashlib
import logging
import zlib
from dataclasses import dataclass
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from ..core.domain.enums import Severity
from ..core.ports.blob_store_port import BlobStorePort
from ..core.ports.cache_port import VulnerabilityCachePort
from ..core.ports.clock_port import ClockPort, SystemClock

logger = logging.getLogger(__name__)

COMPRESSION_THRESHOLD_BYTES = 10 * 1024
DEFAULT_TTL_MINUTES = 60
_SEVERE = {Severity.CRITICAL.value, Severity.HIGH.value}


def build_key(source: str, package: str, version: str) -> str:
    return f"{source}:{package}:{version}"


def namespace_of(key: str) -> str:
    namespace, sep, _ = key.partition(":")
    return namespace if sep and namespace else "default"


def blob_path(key: str) -> str:
    digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
    return f"{namespace_of(key)}/{digest}.json"


class PlainCacheEntry(BaseModel):
    model_config = ConfigDict(extra="forbid")

    timestamp: int  # epoch milliseconds
    compressed: Literal[False] = False
    data: Any = None


class CompressedCacheEntry(BaseModel):
    """Gzip + base64 of a serialised PlainCacheEntry."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    timestamp: int
    compressed: Literal[True] = True
    compressed_data: str = Field(alias="compressedData")


CacheEntry = Union[PlainCacheEntry, CompressedCacheEntry]
_ENTRY_ADAPTER: TypeAdapter[CacheEntry] = TypeAdapter(CacheEntry)


@dataclass
class CacheStats:
    requests: int = 0
    hits: int = 0

    @property
    def hit_rate(self) -> float:
        return self.hits / self.requests if self.requests else 0.0


@dataclass
class CompressionStats:
    writes: int = 0
    compressed_writes: int = 0
    bytes_before: int = 0
    bytes_after: int = 0

    @property
    def bytes_saved(self) -> int:
        return self.bytes_before - self.bytes_after


def _contains_severe(data: Any) -> bool:
    if not isinstance(data, list):
        return False
    return any(
        isinstance(item, dict) and str(item.get("severity", "")).lower() in _SEVERE
        for item in data
    )


class PersistentCache(VulnerabilityCachePort):
    """TTL-bound JSON cache on a blob store, one file per key.

    Entries larger than 10 KiB are stored gzip-compressed and base64-encoded.
    When ``bypass_for_critical`` is on, cached lists containing a critical or
    high item are reported as misses so they are always refreshed. Any read or
    decode problem is a miss; write problems are logged and dropped.
    """

    def __init__(
        self,
        store: BlobStorePort,
        *,
        ttl_minutes: int = DEFAULT_TTL_MINUTES,
        bypass_for_critical: bool = True,
        clock: Optional[ClockPort] = None,
    ) -> None:
        self._store = store
        self._ttl_minutes = ttl_minutes
        self._bypass_for_critical = bypass_for_critical
        self._clock = clock or SystemClock()
        self.stats = CacheStats()
        self.compression_stats = CompressionStats()

    @property
    def ttl_minutes(self) -> int:
        return self._ttl_minutes

    @property
    def bypass_for_critical(self) -> bool:
        return self._bypass_for_critical

    def update_config(self, *, ttl_minutes: Optional[int] = None, bypass_for_critical: Optional[bool] = None) -> None:
        if ttl_minutes is not None:
            self._ttl_minutes = ttl_minutes
        if bypass_for_critical is not None:
            self._bypass_for_critical = bypass_for_critical
        logger.debug(f"Cache config: ttl={self._ttl_minutes}m bypass_for_critical={self._bypass_for_critical}")

    def reset_stats(self) -> None:
        self.stats = CacheStats()
        self.compression_stats = CompressionStats()

    def _now_ms(self) -> int:
        return int(self._clock.now().timestamp() * 1000)

    async def get(self, key: str, ttl_minutes: Optional[int] = None) -> Any | None:
        self.stats.requests += 1
        path = blob_path(key)
        try:
            raw = await self._store.read_file(path)
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning(f"Cache read failed for {key}: {e}")
            return None

        try:
            entry = self._decode(raw)
        except (ValueError, OSError, EOFError, zlib.error) as e:
            logger.warning(f"Discarding unreadable cache entry {key}: {e}")
            return None
        if entry is None:
            logger.warning(f"Discarding corrupt cache entry {key}")
            return None

        ttl = ttl_minutes if ttl_minutes is not None else self._ttl_minutes
        age_ms = self._now_ms() - entry.timestamp
        if age_ms > ttl * 60_000:
            logger.debug(f"Cache entry expired for {key} (age {age_ms // 1000}s)")
            try:
                await self._store.delete(path)
            except OSError as e:
                logger.debug(f"Could not delete expired entry {key}: {e}")
            return None

        if self._bypass_for_critical and _contains_severe(entry.data):
            logger.debug(f"Bypassing cache for {key}: contains critical/high findings")
            return None

        self.stats.hits += 1
        return entry.data

    def _decode(self, raw: bytes) -> Optional[PlainCacheEntry]:
        entry = _ENTRY_ADAPTER.validate_json(raw)
        if isinstance(entry, PlainCacheEntry):
            return entry
        inner_raw = gzip.decompress(base64.b64decode(entry.compressed_data, validate=True))
        inner = _ENTRY_ADAPTER.validate_json(inner_raw)
        if not isinstance(inner, PlainCacheEntry):
            return None
        return inner

    async def put(self, key: str, value: Any) -> None:
        entry = PlainCacheEntry(timestamp=self._now_ms(), data=value)
        payload = entry.model_dump_json().encode("utf-8")
        self.compression_stats.writes += 1

        if len(payload) > COMPRESSION_THRESHOLD_BYTES:
            try:
                encoded = base64.b64encode(gzip.compress(payload)).decode("ascii")
                wrapped = CompressedCacheEntry(timestamp=entry.timestamp, compressed_data=encoded)
                compressed = wrapped.model_dump_json(by_alias=True).encode("utf-8")
            except (OSError, ValueError) as e:
                logger.warning(f"Compression failed for {key}, storing uncompressed: {e}")
            else:
                self.compression_stats.compressed_writes += 1
                self.compression_stats.bytes_before += len(payload)
                self.compression_stats.bytes_after += len(compressed)
                logger.debug(f"Compressed {key}: {len(payload)} -> {len(compressed)} bytes")
                payload = compressed

        try:
            await self._store.create_dir(namespace_of(key))
            await self._store.write_file(blob_path(key), payload)
        except OSError as e:
            logger.warning(f"Cache write failed for {key}: {e}")

    async def clear(self, namespace: Optional[str] = None) -> int:
        if namespace is None:
            removed = 0
            for name in await self._store.list_dir(""):
                removed += await self._clear_namespace(name)
            logger.info(f"Cleared {removed} cache entries")
            return removed
        removed = await self._clear_namespace(namespace)
        logger.info(f"Cleared {removed} cache entries from '{namespace}'")
        return removed

    async def _clear_namespace(self, namespace: str) -> int:
        try:
            names = await self._store.list_dir(namespace)
        except OSError as e:
            logger.debug(f"Cannot list cache namespace {namespace}: {e}")
            return 0
        removed = 0
        for name in names:
            if not name.endswith(".json"):
                continue
            try:
                await self._store.delete(f"{namespace}/{name}")
                removed += 1
            except OSError as e:
                logger.warning(f"Cannot delete cache file {namespace}/{name}: {e}")
        return removed
