"""
Work item polling, claiming, processing and retry scheduling.

This module manages the lifecycle of queued work items:
- Periodic polling for claimable items on a background thread
- Claiming each item with a time-bounded lease (one conditional update)
- Concurrent processing of a batch on a thread pool
- Classifying failures and either re-queueing with backoff or failing for good

The PollerService is the only place that decides whether an error is retryable.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from threading import Event, Lock, Thread
from typing import Callable, Dict, List, Optional

from .configuration import PollerConfig
from .database import utcnow
from .errors import DocgenError, ErrorKind, LockLostError, wrap_error
from .generator import DocumentGenerator, parse_request
from .models import (
    DocgenRequest,
    OutputFormat,
    PollerStats,
    ProcessingResult,
    WorkItem,
    WorkItemStatus,
)
from .observability import (
    DOCGEN_DURATION_MS,
    DOCGEN_FAILURES_TOTAL,
    QUEUE_DEPTH,
    RETRIES_TOTAL,
    TelemetrySink,
)
from .store import RecordStoreClient
from .utils import merged_docx_name, new_correlation_id

logger = logging.getLogger(__name__)

# Retry delay in seconds by attempt number (attempt counted after the failure)
BACKOFF_SECONDS: Dict[int, int] = {1: 60, 2: 300, 3: 900}

# Attempts beyond the backoff table are never retried
MAX_RETRY_ATTEMPTS = max(BACKOFF_SECONDS)

MAX_ERROR_LENGTH = 30_000

RETRYABLE_KINDS = frozenset(
    {
        ErrorKind.CONVERSION_TIMEOUT,
        ErrorKind.CONVERSION_NON_ZERO_EXIT,
        ErrorKind.CONVERSION_EXECUTION_ERROR,
        ErrorKind.UPLOAD_FAILED,
        ErrorKind.STORE_TRANSIENT,
    }
)


def compute_backoff(attempt: int) -> Optional[int]:
    """
    Retry delay for the given attempt number.

    Returns:
        Delay in seconds, or None when no further retry is scheduled

    Example:
        >>> compute_backoff(2)
        300
        >>> compute_backoff(4) is None
        True
    """
    return BACKOFF_SECONDS.get(attempt)


def is_retryable(error: DocgenError) -> bool:
    return error.kind in RETRYABLE_KINDS


def _iso(dt: datetime) -> str:
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def append_error(previous: Optional[str], line: str) -> str:
    """Append one attempt line, keeping the most recent MAX_ERROR_LENGTH characters."""
    text = f"{previous}\n{line}" if previous else line
    return text[-MAX_ERROR_LENGTH:]


class PollerService:
    """
    Background worker that drains the work item queue.

    Args:
        store: Record store client (work items plus content)
        generator: Merge/convert pipeline
        settings: Polling interval, batch size, lease TTL and attempt limit
        sink: Telemetry sink
        clock: Returns the current UTC time; injectable for tests

    Thread Safety:
        Counters are guarded by a lock; items of one batch run concurrently.
    """

    def __init__(
        self,
        store: RecordStoreClient,
        generator: DocumentGenerator,
        settings: Optional[PollerConfig] = None,
        sink: Optional[TelemetrySink] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.generator = generator
        self.settings = settings or PollerConfig()
        self.max_attempts = min(self.settings.max_attempts, MAX_RETRY_ATTEMPTS)
        if self.max_attempts < self.settings.max_attempts:
            logger.warning(
                f"max_attempts={self.settings.max_attempts} exceeds the backoff schedule, "
                f"using {self.max_attempts}"
            )
        self.sink = sink or TelemetrySink()
        self.clock = clock or utcnow

        self._lock = Lock()
        self._stop_event = Event()
        self._thread: Optional[Thread] = None
        self._running = False
        self._started_at: Optional[float] = None
        self._last_poll_time: Optional[datetime] = None
        self._last_fetch_count: Optional[int] = None
        self._queue_depth = 0
        self._total_processed = 0
        self._total_succeeded = 0
        self._total_failed = 0
        self._total_retries = 0

    # -- lifecycle -------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._running

    def start(self) -> None:
        """
        Start polling on a background thread.

        Raises:
            RuntimeError: If the poller is already running
        """
        with self._lock:
            if self._running:
                raise RuntimeError("Poller is already running")
            self._running = True
            self._started_at = time.monotonic()
            self._last_fetch_count = None
            self._stop_event.clear()
            self._thread = Thread(target=self._run, name="docgen-poller", daemon=True)
            self._thread.start()
        logger.info(
            f"Poller started (interval={self.settings.interval_ms}ms, "
            f"idle_interval={self.settings.idle_interval_ms}ms, batch_size={self.settings.batch_size})"
        )

    def stop(self) -> None:
        """
        Stop polling and wait for the current batch to finish.

        Calling stop on a stopped poller does nothing.
        """
        with self._lock:
            if not self._running:
                return
            self._running = False
            self._stop_event.set()
            thread = self._thread
            self._thread = None

        if thread is not None:
            thread.join()
        logger.info("Poller stopped")

    def polling_interval(self) -> float:
        """Seconds until the next cycle: short while work was found, long while idle."""
        if self._last_fetch_count == 0:
            return self.settings.idle_interval_ms / 1000
        return self.settings.interval_ms / 1000

    def _run(self) -> None:
        while not self._stop_event.wait(self.polling_interval()):
            try:
                self.process_batch()
            except Exception:
                logger.exception("Poll cycle failed")

    # -- batch -----------------------------------------------------------------

    def process_batch(self) -> List[ProcessingResult]:
        """
        Run one poll cycle: fetch, claim and process candidates.

        Returns:
            One result per item this worker claimed and processed
        """
        self._last_poll_time = self.clock()
        try:
            candidates = self.store.fetch_candidates(self.settings.batch_size)
        except DocgenError as exc:
            logger.error(f"Fetching work items failed: {exc.summary()}")
            self._last_fetch_count = 0
            return []

        self._last_fetch_count = len(candidates)
        with self._lock:
            self._queue_depth = len(candidates)
        self.sink.track_gauge(QUEUE_DEPTH, len(candidates))

        if not candidates:
            logger.debug("No work items to process")
            return []

        logger.info(f"Processing batch of {len(candidates)} work items")
        results: List[ProcessingResult] = []
        with ThreadPoolExecutor(max_workers=len(candidates), thread_name_prefix="docgen-item") as executor:
            futures = [executor.submit(self._lock_and_process, item) for item in candidates]
            for item, future in zip(candidates, futures):
                try:
                    result = future.result()
                except Exception:
                    logger.exception(f"Unexpected error processing work item {item.id}")
                    continue
                if result is not None:
                    results.append(result)
        return results

    def _claim(self, item: WorkItem) -> WorkItem:
        correlation_id = new_correlation_id()
        lease_until = self.clock() + timedelta(milliseconds=self.settings.lock_ttl_ms)
        if not self.store.try_lock(item.id, lease_until, correlation_id):
            raise LockLostError(item.id)
        return item.model_copy(
            update={
                "status": WorkItemStatus.PROCESSING,
                "lock_expiry": lease_until,
                "correlation_id": correlation_id,
            }
        )

    def _lock_and_process(self, item: WorkItem) -> Optional[ProcessingResult]:
        try:
            claimed = self._claim(item)
        except LockLostError:
            logger.info(f"Work item {item.id} claimed by another worker, skipping")
            return None
        except DocgenError as exc:
            logger.warning(f"Could not claim work item {item.id}: {exc.summary()}")
            return None
        return self.process_item(claimed)

    # -- per item --------------------------------------------------------------

    def process_item(self, item: WorkItem) -> ProcessingResult:
        """
        Generate, upload and record the outcome of one claimed work item.

        Never raises; failures are recorded on the work item.
        """
        correlation_id = item.correlation_id
        started = time.monotonic()
        request: Optional[DocgenRequest] = None
        logger.info(f"Processing work item {item.id} (correlation_id={correlation_id})")

        try:
            request = parse_request(item.request_json)
            document = self.generator.generate(request, correlation_id)
            output_file_id = self.store.upload_content(document.output, document.output_file_name)
            merged_docx_file_id = None
            if request.options.store_merged_docx and request.output_format == OutputFormat.PDF:
                merged_docx_file_id = self.store.upload_content(
                    document.merged_docx, merged_docx_name(request.output_file_name)
                )
        except Exception as exc:
            error = wrap_error(
                exc,
                {
                    "correlation_id": correlation_id,
                    "work_item_id": item.id,
                    "template_id": request.template_id if request else None,
                },
            )
            logger.error(f"Work item {item.id} failed (correlation_id={correlation_id}): {error.summary()}")
            self.sink.increment(
                DOCGEN_FAILURES_TOTAL,
                reason=error.code,
                document_type=self._document_type(request),
            )
            return self.handle_failure(item, error)

        self.handle_success(item.id, output_file_id, merged_docx_file_id)
        duration_ms = (time.monotonic() - started) * 1000
        self.sink.track_gauge(DOCGEN_DURATION_MS, duration_ms, mode="batch", document_type=self._document_type(request))
        with self._lock:
            self._total_processed += 1
            self._total_succeeded += 1
        logger.info(f"Work item {item.id} succeeded (output={output_file_id}, duration_ms={duration_ms:.0f})")
        return ProcessingResult(
            work_item_id=item.id,
            success=True,
            output_file_id=output_file_id,
            merged_docx_file_id=merged_docx_file_id,
        )

    @staticmethod
    def _document_type(request: Optional[DocgenRequest]) -> str:
        if request is None:
            return "unknown"
        return "composite" if request.is_composite else "single"

    def handle_success(
        self,
        work_item_id: str,
        output_file_id: str,
        merged_docx_file_id: Optional[str] = None,
    ) -> None:
        fields = {
            "status": WorkItemStatus.SUCCEEDED,
            "output_file_id": output_file_id,
            "merged_docx_file_id": merged_docx_file_id,
            "lock_expiry": None,
            "scheduled_retry_at": None,
        }
        try:
            self.store.update_status(work_item_id, fields)
        except Exception:
            # The document exists; once the lease expires the item is picked up again.
            logger.exception(f"Failed to mark work item {work_item_id} as SUCCEEDED")

    def handle_failure(self, item: WorkItem, error: DocgenError) -> ProcessingResult:
        """
        Record a failed attempt: re-queue with backoff or mark FAILED.

        Returns:
            Result describing the failure and whether a retry was scheduled
        """
        attempt = item.attempts + 1
        retryable = is_retryable(error)
        max_attempts = self.max_attempts
        backoff = compute_backoff(attempt) if retryable and attempt <= max_attempts else None

        if backoff is not None:
            retry_at = self.clock() + timedelta(seconds=backoff)
            line = f"[attempt {attempt}] {error.summary()} | retry scheduled at {_iso(retry_at)}"
            fields = {
                "status": WorkItemStatus.QUEUED,
                "attempts": attempt,
                "error": append_error(item.error, line),
                "scheduled_retry_at": retry_at,
                "lock_expiry": None,
            }
        else:
            tag = f"max attempts exceeded {attempt}/{max_attempts}" if retryable else "non-retryable error"
            line = f"[attempt {attempt}] {error.summary()} | FAILED ({tag})"
            fields = {
                "status": WorkItemStatus.FAILED,
                "attempts": attempt,
                "error": append_error(item.error, line),
                "lock_expiry": None,
            }

        try:
            self.store.update_status(item.id, fields)
        except Exception:
            logger.exception(f"Failed to record failure for work item {item.id}")

        with self._lock:
            self._total_processed += 1
            if backoff is not None:
                self._total_retries += 1
            else:
                self._total_failed += 1

        if backoff is not None:
            self.sink.increment(RETRIES_TOTAL, attempt=attempt, reason=error.code)
            logger.info(f"Work item {item.id} re-queued (attempt={attempt}, backoff={backoff}s)")
        else:
            logger.warning(f"Work item {item.id} marked FAILED (attempt={attempt}, retryable={retryable})")

        return ProcessingResult(
            work_item_id=item.id,
            success=False,
            error=error.message,
            error_code=error.code,
            retryable=retryable,
            retried=backoff is not None,
        )

    # -- stats -----------------------------------------------------------------

    def get_stats(self) -> PollerStats:
        with self._lock:
            uptime = int(time.monotonic() - self._started_at) if self._running and self._started_at else 0
            return PollerStats(
                is_running=self._running,
                current_queue_depth=self._queue_depth,
                total_processed=self._total_processed,
                total_succeeded=self._total_succeeded,
                total_failed=self._total_failed,
                total_retries=self._total_retries,
                last_poll_time=self._last_poll_time,
                uptime_seconds=uptime,
            )
