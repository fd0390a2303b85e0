"""
Tests for S3 and local content storage.
"""

from io import BytesIO

import boto3
import pytest
from botocore.response import StreamingBody
from botocore.stub import ANY, Stubber

from docgen_backend.content_store import LocalContentStore, S3ContentStore
from docgen_backend.errors import ContentNotFoundError, ErrorKind, StoreError, UploadFailedError


@pytest.fixture
def s3_client():
    return boto3.client(
        "s3",
        region_name="us-east-1",
        aws_access_key_id="testing",
        aws_secret_access_key="testing",
    )


class TestS3ContentStore:
    """Tests for S3ContentStore using botocore's Stubber."""

    def test_download(self, s3_client):
        payload = b"template bytes"
        with Stubber(s3_client) as stubber:
            stubber.add_response(
                "get_object",
                {"Body": StreamingBody(BytesIO(payload), len(payload))},
                {"Bucket": "docs", "Key": "templates/t1.docx"},
            )
            store = S3ContentStore("docs", client=s3_client)
            assert store.download_content("templates/t1.docx") == payload

    def test_missing_key_raises_not_found(self, s3_client):
        with Stubber(s3_client) as stubber:
            stubber.add_client_error("get_object", service_error_code="NoSuchKey", http_status_code=404)
            store = S3ContentStore("docs", client=s3_client)
            with pytest.raises(ContentNotFoundError):
                store.download_content("missing")

    def test_server_error_is_transient(self, s3_client):
        with Stubber(s3_client) as stubber:
            stubber.add_client_error("get_object", service_error_code="SlowDown", http_status_code=503)
            store = S3ContentStore("docs", client=s3_client)
            with pytest.raises(StoreError) as excinfo:
                store.download_content("busy")
            assert excinfo.value.kind == ErrorKind.STORE_TRANSIENT

    def test_access_denied_is_rejected(self, s3_client):
        with Stubber(s3_client) as stubber:
            stubber.add_client_error("get_object", service_error_code="AccessDenied", http_status_code=403)
            store = S3ContentStore("docs", client=s3_client)
            with pytest.raises(StoreError) as excinfo:
                store.download_content("secret")
            assert excinfo.value.kind == ErrorKind.STORE_REJECTED

    def test_upload_returns_new_key(self, s3_client):
        with Stubber(s3_client) as stubber:
            stubber.add_response("put_object", {}, {"Bucket": "docs", "Key": ANY, "Body": b"%PDF"})
            store = S3ContentStore("docs", client=s3_client, prefix="out/")
            key = store.upload_content(b"%PDF", "Quarterly Report.pdf")

        assert key.startswith("out/")
        assert key.endswith("/Quarterly-Report.pdf")

    def test_upload_failure_raises_upload_failed(self, s3_client):
        with Stubber(s3_client) as stubber:
            stubber.add_client_error("put_object", service_error_code="InternalError", http_status_code=500)
            store = S3ContentStore("docs", client=s3_client)
            with pytest.raises(UploadFailedError):
                store.upload_content(b"data", "file.pdf")


class TestLocalContentStore:
    """Tests for LocalContentStore."""

    def test_upload_then_download(self, tmp_path):
        store = LocalContentStore(tmp_path / "content")
        first = store.upload_content(b"one", "doc.pdf")
        second = store.upload_content(b"two", "doc.pdf")

        assert first != second
        assert store.download_content(first) == b"one"
        assert store.download_content(second) == b"two"

    def test_missing_content(self, tmp_path):
        store = LocalContentStore(tmp_path)
        with pytest.raises(ContentNotFoundError):
            store.download_content("nothing-here")

    def test_paths_cannot_escape_root(self, tmp_path):
        (tmp_path / "outside.txt").write_bytes(b"secret")
        store = LocalContentStore(tmp_path / "content")
        with pytest.raises(ContentNotFoundError):
            store.download_content("../outside.txt")
