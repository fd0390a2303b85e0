"""
Tests for the template cache and template service.

Tests cover:
- Hit/miss accounting and single origin fetch per template
- LRU eviction against the byte budget
- Oversized entries and replacement
- Concurrent access
"""

import threading
import time

import pytest

from docgen_backend.errors import ContentNotFoundError, TemplateNotFoundError
from docgen_backend.observability import TEMPLATE_CACHE_HIT, TEMPLATE_CACHE_MISS, TelemetrySink
from docgen_backend.template_cache import TemplateCache, TemplateService


class CountingStore:
    """Content store double that counts downloads."""

    def __init__(self, contents, delay=0.0):
        self.contents = contents
        self.delay = delay
        self.downloads = 0
        self._lock = threading.Lock()

    def download_content(self, content_id):
        with self._lock:
            self.downloads += 1
        if self.delay:
            time.sleep(self.delay)
        if content_id not in self.contents:
            raise ContentNotFoundError(content_id)
        return self.contents[content_id]


class TestTemplateCache:
    """Tests for TemplateCache."""

    def test_miss_then_hit(self):
        """A get before set is a miss, after set a hit."""
        cache = TemplateCache(max_size_bytes=1000)
        assert cache.get("tpl") is None
        cache.set("tpl", b"abc")
        assert cache.get("tpl") == b"abc"

        stats = cache.stats()
        assert stats.hits == 1
        assert stats.misses == 1
        assert stats.entry_count == 1
        assert stats.current_size_bytes == 3

    def test_evicts_least_recently_accessed(self):
        """Re-accessed entries survive; the two stale ones are evicted."""
        cache = TemplateCache(max_size_bytes=100)
        for key in "ABCD":
            cache.set(key, b"x" * 24)
        cache.get("A")
        cache.get("B")

        cache.set("E", b"y" * 40)

        assert cache.has("A")
        assert cache.has("B")
        assert not cache.has("C")
        assert not cache.has("D")
        assert cache.has("E")
        stats = cache.stats()
        assert stats.evictions == 2
        assert stats.current_size_bytes == 88
        assert stats.current_size_bytes <= cache.max_size_bytes

    def test_oversized_entry_is_still_inserted(self):
        """An entry larger than the budget evicts everything else and is kept."""
        cache = TemplateCache(max_size_bytes=100)
        cache.set("small", b"s" * 50)
        cache.set("huge", b"h" * 150)

        assert cache.get("huge") == b"h" * 150
        assert not cache.has("small")
        stats = cache.stats()
        assert stats.entry_count == 1
        assert stats.current_size_bytes == 150

    def test_replacing_a_key_logs_warning(self, caplog):
        """Setting an existing key replaces its bytes and size."""
        cache = TemplateCache(max_size_bytes=100)
        cache.set("tpl", b"old")
        with caplog.at_level("WARNING"):
            cache.set("tpl", b"newer")

        assert cache.get("tpl") == b"newer"
        assert cache.stats().current_size_bytes == 5
        assert cache.stats().entry_count == 1
        assert "already cached" in caplog.text

    def test_has_does_not_count_as_access(self):
        """has() affects neither counters nor LRU order."""
        cache = TemplateCache(max_size_bytes=10)
        cache.set("A", b"aaaa")
        cache.set("B", b"bbbb")
        assert cache.has("A")
        cache.set("C", b"cccc")

        assert not cache.has("A")
        assert cache.stats().hits == 0
        assert cache.stats().misses == 0

    def test_peek_does_not_count(self):
        """peek returns bytes without changing hit/miss counters."""
        cache = TemplateCache(max_size_bytes=100)
        assert cache.peek("A") is None
        cache.set("A", b"aaa")
        assert cache.peek("A") == b"aaa"
        assert cache.stats().hits == 0
        assert cache.stats().misses == 0

    def test_clear_keeps_counters_reset_zeroes_them(self):
        """clear drops entries only; reset drops entries and counters."""
        cache = TemplateCache(max_size_bytes=100)
        cache.set("A", b"a")
        cache.get("A")
        cache.get("missing")

        cache.clear()
        stats = cache.stats()
        assert stats.entry_count == 0
        assert stats.current_size_bytes == 0
        assert stats.hits == 1
        assert stats.misses == 1

        cache.reset()
        stats = cache.stats()
        assert stats.hits == 0
        assert stats.misses == 0
        assert stats.evictions == 0

    def test_concurrent_access_keeps_accounting_consistent(self):
        """Parallel writers and readers never corrupt size accounting."""
        cache = TemplateCache(max_size_bytes=500)

        def work(worker_id):
            for i in range(200):
                key = f"k{(worker_id * 7 + i) % 40}"
                if cache.get(key) is None:
                    cache.set(key, b"z" * (10 + (i % 5)))

        threads = [threading.Thread(target=work, args=(n,)) for n in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        stats = cache.stats()
        assert stats.current_size_bytes <= 500
        total = sum(len(cache.get(f"k{i}") or b"") for i in range(40))
        assert total == cache.stats().current_size_bytes


class TestTemplateService:
    """Tests for TemplateService."""

    def test_single_origin_fetch(self):
        """One miss followed by N gets yields one download and N-1 hits."""
        store = CountingStore({"tpl-1": b"template"})
        sink = TelemetrySink()
        cache = TemplateCache(max_size_bytes=1000)
        service = TemplateService(cache, store, sink)

        for _ in range(5):
            assert service.get_template("tpl-1", "corr-1") == b"template"

        assert store.downloads == 1
        assert cache.stats().hits == 4
        assert cache.stats().misses == 1
        assert sink.counter(TEMPLATE_CACHE_MISS) == 1
        assert sink.counter(TEMPLATE_CACHE_HIT) == 4

    def test_missing_template_raises_not_found(self):
        """A missing content id becomes TemplateNotFoundError."""
        service = TemplateService(TemplateCache(), CountingStore({}))
        with pytest.raises(TemplateNotFoundError) as excinfo:
            service.get_template("nope")
        assert excinfo.value.code == "TEMPLATE_NOT_FOUND"

    def test_concurrent_misses_download_once(self):
        """Simultaneous requests for an uncached template share one download."""
        store = CountingStore({"tpl": b"bytes"}, delay=0.2)
        service = TemplateService(TemplateCache(), store)
        results = []

        def fetch():
            results.append(service.get_template("tpl"))

        threads = [threading.Thread(target=fetch) for _ in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert results == [b"bytes"] * 5
        assert store.downloads == 1

    def test_waiting_callers_are_counted_once(self):
        """Each call is one hit or one miss, including callers that waited on a download."""
        store = CountingStore({"tpl": b"bytes"}, delay=0.2)
        sink = TelemetrySink()
        cache = TemplateCache()
        service = TemplateService(cache, store, sink)

        threads = [threading.Thread(target=service.get_template, args=("tpl",)) for _ in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        stats = cache.stats()
        assert stats.hits + stats.misses == 5
        assert sink.counter(TEMPLATE_CACHE_HIT) + sink.counter(TEMPLATE_CACHE_MISS) == 5
        assert sink.counter(TEMPLATE_CACHE_MISS) == stats.misses

    def test_per_template_locks_are_released(self):
        """Download locks do not accumulate per distinct template id."""
        contents = {f"tpl-{n}": b"x" for n in range(50)}
        service = TemplateService(TemplateCache(), CountingStore(contents))

        for template_id in contents:
            service.get_template(template_id)
        with pytest.raises(TemplateNotFoundError):
            service.get_template("missing")

        assert service._key_locks == {}
