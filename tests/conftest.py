"""
Pytest configuration and fixtures for Docgen Backend tests.
"""

import base64
import os
import shutil
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from io import BytesIO
from pathlib import Path

import pytest
from docx import Document
from fastapi.testclient import TestClient

FAKE_CONVERTER = Path(__file__).parent / "fake_soffice.py"
TEST_ROOT = Path(tempfile.mkdtemp(prefix="docgen_test_"))

# Set test environment variables before importing the app
os.environ["DOCGEN_DATABASE_PATH"] = str(TEST_ROOT / "docgen.db")
os.environ["DOCGEN_CONTENT_DIR"] = str(TEST_ROOT / "content")
os.environ["DOCGEN_CONVERSION_WORKDIR"] = str(TEST_ROOT / "work")
os.environ["DOCGEN_CONVERSION_COMMAND"] = f"{sys.executable} {FAKE_CONVERTER}"
os.environ["DOCGEN_POLLER_ENABLED"] = "false"
os.environ["DOCGEN_S3_BUCKET"] = ""

from docgen_backend.configuration import load_config  # noqa: E402
from docgen_backend.main import app, build_worker_context  # noqa: E402


def converter_command():
    return [sys.executable, str(FAKE_CONVERTER)]


class MutableClock:
    """UTC clock that only moves when a test advances it."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


def make_docx(paragraphs, header=None, image=None) -> bytes:
    """Build a DOCX with one paragraph per entry, optionally a header and a picture."""
    document = Document()
    for text in paragraphs:
        document.add_paragraph(text)
    if image is not None:
        document.add_picture(BytesIO(image))
    if header is not None:
        document.sections[0].header.paragraphs[0].text = header
    buffer = BytesIO()
    document.save(buffer)
    return buffer.getvalue()


def docx_text(data: bytes) -> list:
    return [paragraph.text for paragraph in Document(BytesIO(data)).paragraphs if paragraph.text]


# 1x1 PNG
PNG_PIXEL = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNkYPhfDwAChwGA60e6kgAAAABJRU5ErkJggg=="
)


@pytest.fixture(scope="session", autouse=True)
def test_dirs():
    """Cleanup the environment-configured directories after all tests."""
    yield TEST_ROOT
    shutil.rmtree(TEST_ROOT, ignore_errors=True)


@pytest.fixture
def client():
    """Create a test client for the FastAPI app."""
    return TestClient(app)


@pytest.fixture
def clock():
    return MutableClock(datetime(2026, 1, 5, 9, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def worker_config(tmp_path):
    return load_config(
        overrides={
            "storage": {
                "database_path": str(tmp_path / "docgen.db"),
                "content_dir": str(tmp_path / "content"),
                "s3_bucket": "",
            },
            "conversion": {
                "workdir": str(tmp_path / "work"),
                "command": converter_command(),
                "timeout_seconds": 20,
                "max_concurrent": 4,
            },
            "poller": {"enabled": False, "batch_size": 10},
            "merge": {"image_allowlist": None},
        },
        environ={},
    )


@pytest.fixture
def worker(worker_config, clock):
    """A fully wired worker on a temporary database and content directory."""
    context = build_worker_context(worker_config, clock=clock)
    yield context
    context.poller.stop()


@pytest.fixture
def invoice_template():
    return make_docx(["Invoice for {{ Account.Name }}", "Total: {{ Opportunity.Amount }}"])
