"""
Size-bounded template cache and the template service in front of it.

Templates are keyed by immutable content ids, so entries never expire; they are
only evicted (least recently accessed first) when the byte budget would be
exceeded. The TemplateService performs cache-then-download and makes sure that
concurrent misses for the same id trigger a single download.
"""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from threading import Lock
from typing import Dict, Optional, Protocol

from .errors import ContentNotFoundError, TemplateNotFoundError
from .models import CacheStats
from .observability import TEMPLATE_CACHE_HIT, TEMPLATE_CACHE_MISS, TelemetrySink

logger = logging.getLogger(__name__)

DEFAULT_MAX_SIZE_BYTES = 500 * 1024 * 1024


@dataclass(frozen=True)
class CacheEntry:
    key: str
    data: bytes
    size_bytes: int
    cached_at: float
    last_accessed_at: float


class TemplateCache:
    """
    In-memory LRU cache of template bytes.

    Entries are immutable; an access replaces the entry with a copy carrying the
    new ``last_accessed_at`` and moves it to the most-recently-used end.

    Thread Safety:
        get/peek/set/has/clear/reset and stats all run under one lock, so size and
        entry accounting stay consistent under concurrent access.
    """

    def __init__(self, max_size_bytes: int = DEFAULT_MAX_SIZE_BYTES) -> None:
        self.max_size_bytes = max_size_bytes
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = Lock()
        self._current_size = 0
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                logger.debug(f"Template cache miss for {key} (misses={self._misses})")
                return None

            self._entries[key] = replace(entry, last_accessed_at=time.time())
            self._entries.move_to_end(key)
            self._hits += 1
            logger.debug(f"Template cache hit for {key} (hits={self._hits})")
            return entry.data

    def has(self, key: str) -> bool:
        """Membership test that does not count as an access."""
        with self._lock:
            return key in self._entries

    def peek(self, key: str) -> Optional[bytes]:
        """Read an entry without counting a hit or miss; refreshes its recency."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            self._entries[key] = replace(entry, last_accessed_at=time.time())
            self._entries.move_to_end(key)
            return entry.data

    def set(self, key: str, data: bytes) -> None:
        """
        Insert template bytes, evicting least recently accessed entries first.

        An entry larger than the whole budget is still inserted once everything
        else has been evicted.
        """
        size = len(data)
        now = time.time()
        with self._lock:
            existing = self._entries.pop(key, None)
            if existing is not None:
                logger.warning(f"Template {key} already cached, replacing entry")
                self._current_size -= existing.size_bytes

            self._evict_for(size)

            self._entries[key] = CacheEntry(
                key=key, data=data, size_bytes=size, cached_at=now, last_accessed_at=now
            )
            self._current_size += size
            logger.info(
                f"Template {key} cached ({size} bytes, total={self._current_size}, "
                f"entries={len(self._entries)})"
            )

    def _evict_for(self, required: int) -> None:
        # Caller holds the lock
        available = self.max_size_bytes - self._current_size
        if available >= required:
            return

        logger.info(
            f"Template cache limit reached, evicting (needed={required - available}, "
            f"current={self._current_size}, max={self.max_size_bytes})"
        )
        while self._entries and self.max_size_bytes - self._current_size < required:
            key, entry = self._entries.popitem(last=False)
            self._current_size -= entry.size_bytes
            self._evictions += 1
            logger.debug(f"Evicted template {key} ({entry.size_bytes} bytes)")

        if required > self.max_size_bytes:
            logger.warning(
                f"Template of {required} bytes exceeds cache budget of {self.max_size_bytes} bytes"
            )

    def clear(self) -> None:
        """Drop all entries; hit/miss/eviction counters are kept."""
        with self._lock:
            self._entries.clear()
            self._current_size = 0
        logger.info("Template cache cleared")

    def reset(self) -> None:
        """Drop all entries and zero the counters."""
        with self._lock:
            self._entries.clear()
            self._current_size = 0
            self._hits = 0
            self._misses = 0
            self._evictions = 0

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                hits=self._hits,
                misses=self._misses,
                evictions=self._evictions,
                current_size_bytes=self._current_size,
                entry_count=len(self._entries),
            )


class ContentDownloader(Protocol):
    def download_content(self, content_id: str) -> bytes:
        ...


@dataclass
class _KeyLock:
    lock: Lock = field(default_factory=Lock)
    users: int = 0


class TemplateService:
    """
    Resolves template ids to bytes through the cache.

    Each call counts as exactly one hit or one miss. A caller that waits for
    another thread's download of the same template counts as a miss and reuses
    that download.

    Args:
        cache: Template cache shared by the whole process
        store: Anything with ``download_content(content_id) -> bytes``
        sink: Telemetry sink for hit/miss counters
    """

    def __init__(
        self,
        cache: TemplateCache,
        store: ContentDownloader,
        sink: Optional[TelemetrySink] = None,
    ) -> None:
        self.cache = cache
        self.store = store
        self.sink = sink or TelemetrySink()
        self._key_locks: Dict[str, _KeyLock] = {}
        self._key_locks_guard = Lock()

    def _acquire_key(self, template_id: str) -> Lock:
        with self._key_locks_guard:
            key_lock = self._key_locks.setdefault(template_id, _KeyLock())
            key_lock.users += 1
            return key_lock.lock

    def _release_key(self, template_id: str) -> None:
        with self._key_locks_guard:
            key_lock = self._key_locks[template_id]
            key_lock.users -= 1
            if key_lock.users == 0:
                del self._key_locks[template_id]

    def get_template(self, template_id: str, correlation_id: Optional[str] = None) -> bytes:
        """
        Return template bytes, downloading them on a cache miss.

        Raises:
            TemplateNotFoundError: If the store has no content for ``template_id``
            StoreError: If the download fails for another reason
        """
        cached = self.cache.get(template_id)
        if cached is not None:
            self.sink.increment(TEMPLATE_CACHE_HIT)
            return cached
        self.sink.increment(TEMPLATE_CACHE_MISS)

        lock = self._acquire_key(template_id)
        try:
            with lock:
                # Another thread may have filled the entry while we waited
                cached = self.cache.peek(template_id)
                if cached is not None:
                    return cached

                logger.info(f"Downloading template {template_id} (correlation_id={correlation_id})")
                try:
                    data = self.store.download_content(template_id)
                except ContentNotFoundError as exc:
                    raise TemplateNotFoundError(template_id, {"correlation_id": correlation_id}) from exc

                self.cache.set(template_id, data)
                return data
        finally:
            self._release_key(template_id)
