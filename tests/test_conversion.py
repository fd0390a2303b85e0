"""
Tests for the conversion pool.

The converter is a small Python script (tests/fake_soffice.py) run with the
current interpreter; its behaviour is chosen by the first bytes of the input.
"""

import threading
import time

import pytest

from conftest import converter_command
from docgen_backend.conversion import ConversionPool
from docgen_backend.errors import (
    ConversionExecutionError,
    ConversionNonZeroExitError,
    ConversionTimeoutError,
)
from docgen_backend.observability import CONVERSION_POOL_ACTIVE, TelemetrySink


@pytest.fixture
def workdir(tmp_path):
    path = tmp_path / "work"
    path.mkdir()
    return path


@pytest.fixture
def pool(workdir):
    return ConversionPool(max_concurrent=2, workdir=workdir, command=converter_command(), default_timeout=20)


class TestConversion:
    """Tests for running the converter process."""

    def test_successful_conversion(self, pool, workdir):
        """Output bytes come from <stem>.pdf and the scratch directory is removed."""
        assert pool.submit(b"hello", correlation_id="corr-1") == b"%PDF-FAKE hello"
        assert list(workdir.iterdir()) == []
        stats = pool.stats()
        assert stats.completed_jobs == 1
        assert stats.failed_jobs == 0
        assert stats.total_conversions == 1

    def test_non_zero_exit_captures_stderr(self, pool, workdir):
        with pytest.raises(ConversionNonZeroExitError) as excinfo:
            pool.submit(b"FAIL please")
        assert excinfo.value.exit_code == 3
        assert "simulated converter failure" in excinfo.value.stderr
        assert list(workdir.iterdir()) == []
        assert pool.stats().failed_jobs == 1

    def test_missing_output_is_execution_error(self, pool):
        with pytest.raises(ConversionExecutionError):
            pool.submit(b"NOOUT")

    def test_missing_executable_is_execution_error(self, workdir):
        pool = ConversionPool(workdir=workdir, command=["/nonexistent/soffice-binary"])
        with pytest.raises(ConversionExecutionError):
            pool.submit(b"hello")
        assert list(workdir.iterdir()) == []

    def test_timeout_kills_converter_and_cleans_up(self, pool, workdir):
        """A hung converter fails with a timeout shortly after the deadline."""
        started = time.monotonic()
        with pytest.raises(ConversionTimeoutError) as excinfo:
            pool.submit(b"SLEEP", timeout=1)
        elapsed = time.monotonic() - started

        assert excinfo.value.timeout_seconds == 1
        assert elapsed < 10
        assert list(workdir.iterdir()) == []

    def test_command_uses_isolated_profile(self, pool, workdir):
        scratch = workdir / "job"
        args = pool.build_command(scratch, scratch / "input.docx", "pdf")
        assert args[-1] == str(scratch / "input.docx")
        assert "--headless" in args
        assert args[args.index("--convert-to") + 1] == "pdf"
        assert args[args.index("--outdir") + 1] == str(scratch)
        profile_args = [arg for arg in args if arg.startswith("-env:UserInstallation=file://")]
        assert len(profile_args) == 1
        assert profile_args[0].endswith("/job/.profile")


class SlowPool(ConversionPool):
    """Pool whose conversion step sleeps and records concurrency."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.running = 0
        self.peak = 0
        self.order = []
        self._track = threading.Lock()

    def _run_conversion(self, input_bytes, timeout, correlation_id, target_format):
        with self._track:
            self.running += 1
            self.peak = max(self.peak, self.running)
            self.order.append(correlation_id)
        time.sleep(0.05)
        with self._track:
            self.running -= 1
        return input_bytes


class TestAdmission:
    """Tests for the bounded admission queue."""

    def test_never_exceeds_max_concurrent(self, workdir):
        """K > max jobs all complete with at most max running at once."""
        sink = TelemetrySink()
        pool = SlowPool(max_concurrent=3, workdir=workdir, sink=sink)
        results = []

        def submit(n):
            results.append(pool.submit(f"job-{n}".encode(), correlation_id=f"c{n}"))

        threads = [threading.Thread(target=submit, args=(n,)) for n in range(10)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(results) == 10
        assert pool.peak <= 3
        stats = pool.stats()
        assert stats.completed_jobs == 10
        assert stats.active_jobs == 0
        assert stats.queued_jobs == 0
        assert sink.gauge(CONVERSION_POOL_ACTIVE) == 0

    def test_waiters_are_admitted_in_arrival_order(self, workdir):
        """A freed slot goes to the oldest waiter."""
        gate = threading.Event()

        class GatedPool(SlowPool):
            def _run_conversion(self, input_bytes, timeout, correlation_id, target_format):
                if correlation_id == "holder":
                    with self._track:
                        self.order.append(correlation_id)
                    gate.wait(timeout=10)
                    return input_bytes
                return super()._run_conversion(input_bytes, timeout, correlation_id, target_format)

        pool = GatedPool(max_concurrent=1, workdir=workdir)
        threads = [threading.Thread(target=pool.submit, args=(b"x",), kwargs={"correlation_id": "holder"})]
        threads[0].start()
        deadline = time.monotonic() + 10
        while pool.order != ["holder"] and time.monotonic() < deadline:
            time.sleep(0.01)

        expected = [f"w{n}" for n in range(4)]
        for n, name in enumerate(expected, start=1):
            thread = threading.Thread(target=pool.submit, args=(b"x",), kwargs={"correlation_id": name})
            thread.start()
            threads.append(thread)
            while pool.stats().queued_jobs < n and time.monotonic() < deadline:
                time.sleep(0.01)

        assert pool.stats().queued_jobs == 4
        gate.set()
        for thread in threads:
            thread.join()

        assert pool.order == ["holder", *expected]
        assert pool.peak <= 1
        assert pool.stats().completed_jobs == 5

    def test_failed_job_releases_its_slot(self, workdir):
        """A failing conversion does not leak a slot."""

        class FailingPool(ConversionPool):
            def _run_conversion(self, input_bytes, timeout, correlation_id, target_format):
                raise ConversionExecutionError("boom")

        pool = FailingPool(max_concurrent=1, workdir=workdir)
        for _ in range(3):
            with pytest.raises(ConversionExecutionError):
                pool.submit(b"x")
        stats = pool.stats()
        assert stats.active_jobs == 0
        assert stats.failed_jobs == 3
