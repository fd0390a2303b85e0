"""
Bounded pool of headless office-suite conversions.

Each submitted job gets its own scratch directory and its own converter user
profile, runs ``soffice --headless --convert-to`` in a separate process group and
is killed (with the whole group) if it exceeds its timeout. At most
``max_concurrent`` conversions run at once; further submissions wait in FIFO order
and a finishing job hands its slot straight to the oldest waiter.
"""

from __future__ import annotations

import logging
import os
import shutil
import signal
import subprocess
import tempfile
import time
from collections import deque
from pathlib import Path
from threading import Event, Lock
from typing import Deque, Optional, Sequence

from .errors import (
    ConversionExecutionError,
    ConversionNonZeroExitError,
    ConversionTimeoutError,
    DocgenError,
)
from .models import ConversionPoolStats
from .observability import CONVERSION_POOL_ACTIVE, CONVERSION_POOL_QUEUED, TelemetrySink
from .utils import ensure_directory, sanitize_label

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 60.0
DEFAULT_WORKDIR = "/tmp"
DEFAULT_MAX_CONCURRENT = 8
INPUT_FILENAME = "input.docx"


class ConversionPool:
    """
    Runs converter processes with bounded concurrency.

    Args:
        max_concurrent: Maximum number of simultaneous converter processes
        workdir: Parent directory for per-job scratch directories
        command: Converter executable and any leading arguments
        default_timeout: Timeout in seconds used when ``submit`` gets none
        sink: Telemetry sink for dependency records and pool gauges

    Thread Safety:
        ``submit`` may be called from any number of threads.
    """

    def __init__(
        self,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
        workdir: str | Path = DEFAULT_WORKDIR,
        command: Sequence[str] = ("soffice",),
        default_timeout: float = DEFAULT_TIMEOUT_SECONDS,
        sink: Optional[TelemetrySink] = None,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.max_concurrent = max_concurrent
        self.workdir = Path(workdir)
        self.command = list(command)
        self.default_timeout = default_timeout
        self.sink = sink or TelemetrySink()

        self._lock = Lock()
        self._waiters: Deque[Event] = deque()
        self._active = 0
        self._completed = 0
        self._failed = 0
        self._total = 0

    # -- admission -----------------------------------------------------------

    def _acquire(self, correlation_id: str) -> None:
        with self._lock:
            if self._active < self.max_concurrent:
                self._active += 1
                self._publish_gauges()
                return
            waiter = Event()
            self._waiters.append(waiter)
            self._publish_gauges()
            logger.debug(f"Conversion pool full, queued (correlation_id={correlation_id}, queued={len(self._waiters)})")

        # The releasing thread keeps the slot counted and hands it to us.
        waiter.wait()

    def _release(self) -> None:
        with self._lock:
            if self._waiters:
                self._waiters.popleft().set()
            else:
                self._active -= 1
            self._publish_gauges()

    def _publish_gauges(self) -> None:
        # Caller holds the lock
        self.sink.track_gauge(CONVERSION_POOL_ACTIVE, self._active)
        self.sink.track_gauge(CONVERSION_POOL_QUEUED, len(self._waiters))

    # -- public API ----------------------------------------------------------

    def submit(
        self,
        input_bytes: bytes,
        timeout: Optional[float] = None,
        correlation_id: Optional[str] = None,
        target_format: str = "pdf",
    ) -> bytes:
        """
        Convert a document and return the converted bytes.

        Blocks while the pool is full.

        Args:
            input_bytes: Source document (DOCX)
            timeout: Seconds before the converter is killed; pool default if None
            correlation_id: Used in the scratch directory name and in logs
            target_format: Converter filter, e.g. ``"pdf"``

        Raises:
            ConversionTimeoutError: If the converter ran longer than ``timeout``
            ConversionNonZeroExitError: If the converter exited with a non-zero code
            ConversionExecutionError: If the converter could not start or wrote no output
        """
        correlation_id = correlation_id or "conversion"
        timeout = timeout if timeout is not None else self.default_timeout

        self._acquire(correlation_id)
        with self._lock:
            self._total += 1
        started = time.monotonic()
        try:
            result = self._run_conversion(input_bytes, timeout, correlation_id, target_format)
        except Exception as exc:
            duration_ms = (time.monotonic() - started) * 1000
            with self._lock:
                self._failed += 1
            message = exc.summary() if isinstance(exc, DocgenError) else str(exc)
            self.sink.track_dependency(
                "conversion", f"soffice:{target_format}", duration_ms, False, correlation_id, message
            )
            logger.error(f"Conversion failed (correlation_id={correlation_id}): {message}")
            raise
        finally:
            self._release()

        duration_ms = (time.monotonic() - started) * 1000
        with self._lock:
            self._completed += 1
        self.sink.track_dependency("conversion", f"soffice:{target_format}", duration_ms, True, correlation_id)
        logger.info(
            f"Conversion completed (correlation_id={correlation_id}, bytes={len(result)}, "
            f"duration_ms={duration_ms:.0f})"
        )
        return result

    def stats(self) -> ConversionPoolStats:
        with self._lock:
            return ConversionPoolStats(
                active_jobs=self._active,
                queued_jobs=len(self._waiters),
                completed_jobs=self._completed,
                failed_jobs=self._failed,
                total_conversions=self._total,
            )

    # -- execution -----------------------------------------------------------

    def build_command(self, scratch: Path, input_path: Path, target_format: str) -> list[str]:
        profile = (scratch / ".profile").resolve()
        return [
            *self.command,
            "--headless",
            "--norestore",
            "--convert-to",
            target_format,
            "--outdir",
            str(scratch),
            f"-env:UserInstallation={profile.as_uri()}",
            str(input_path),
        ]

    def _run_conversion(
        self,
        input_bytes: bytes,
        timeout: float,
        correlation_id: str,
        target_format: str,
    ) -> bytes:
        ensure_directory(self.workdir)
        prefix = f"docgen-{sanitize_label(correlation_id, 'job')[:64]}-"
        scratch = Path(tempfile.mkdtemp(prefix=prefix, dir=self.workdir))
        try:
            input_path = scratch / INPUT_FILENAME
            input_path.write_bytes(input_bytes)
            args = self.build_command(scratch, input_path, target_format)
            logger.debug(f"Running converter (correlation_id={correlation_id}): {args}")

            try:
                process = subprocess.Popen(
                    args,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    cwd=scratch,
                    start_new_session=True,
                )
            except OSError as exc:
                raise ConversionExecutionError(str(exc), {"correlation_id": correlation_id}) from exc

            try:
                stdout, stderr = process.communicate(timeout=timeout)
            except subprocess.TimeoutExpired:
                self._kill_group(process)
                process.communicate()
                raise ConversionTimeoutError(timeout, {"correlation_id": correlation_id})

            if process.returncode != 0:
                raise ConversionNonZeroExitError(
                    process.returncode,
                    stderr.decode("utf-8", errors="replace"),
                    stdout.decode("utf-8", errors="replace"),
                    {"correlation_id": correlation_id},
                )

            extension = target_format.split(":", 1)[0]
            output_path = scratch / f"{input_path.stem}.{extension}"
            if not output_path.exists():
                raise ConversionExecutionError(
                    f"converter produced no {output_path.name}", {"correlation_id": correlation_id}
                )
            return output_path.read_bytes()
        finally:
            try:
                shutil.rmtree(scratch)
            except OSError as exc:
                logger.warning(f"Failed to remove scratch directory {scratch}: {exc}")

    @staticmethod
    def _kill_group(process: subprocess.Popen) -> None:
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        except OSError as exc:
            logger.warning(f"Could not kill converter process group {process.pid}: {exc}")
            process.kill()
