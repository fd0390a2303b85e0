"""
Content storage for templates and generated documents.

Two backends share one interface (``download_content`` / ``upload_content``):

- S3ContentStore keeps objects in an S3 bucket (boto3)
- LocalContentStore keeps files under a local directory, for development and tests

Content ids are opaque to callers; both backends use the object key / relative
path as the id.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional
from uuid import uuid4

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .errors import ContentNotFoundError, StoreError, UploadFailedError
from .utils import ensure_directory, sanitize_filename

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = {"NoSuchKey", "404", "NotFound"}


def _new_key(prefix: str, name: str) -> str:
    return f"{prefix}{uuid4().hex}/{sanitize_filename(name)}"


def _status_of(error: ClientError) -> Optional[int]:
    return error.response.get("ResponseMetadata", {}).get("HTTPStatusCode")


class S3ContentStore:
    """
    S3-backed content storage.

    Args:
        bucket: Bucket holding templates and outputs
        client: Preconfigured boto3 S3 client (created lazily when omitted)
        prefix: Key prefix for uploaded outputs
    """

    def __init__(self, bucket: str, client: Any = None, prefix: str = "docgen/") -> None:
        if not bucket:
            raise ValueError("bucket is required")
        self.bucket = bucket
        self.prefix = prefix
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = boto3.client("s3")
        return self._client

    def download_content(self, content_id: str) -> bytes:
        """
        Fetch an object's bytes.

        Raises:
            ContentNotFoundError: If the key does not exist
            StoreError: For any other S3 or transport failure
        """
        logger.debug(f"Downloading s3://{self.bucket}/{content_id}")
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=content_id)
            return response["Body"].read()
        except ClientError as e:
            code = str(e.response.get("Error", {}).get("Code", ""))
            if code in _NOT_FOUND_CODES:
                raise ContentNotFoundError(content_id) from e
            logger.error(f"S3 download failed for {content_id}: {e}")
            raise StoreError(f"S3 download failed: {e}", _status_of(e)) from e
        except BotoCoreError as e:
            logger.error(f"S3 download failed for {content_id}: {e}")
            raise StoreError(f"S3 download failed: {e}") from e

    def upload_content(self, data: bytes, name: str) -> str:
        """
        Store bytes under a fresh key derived from ``name``.

        Every call creates a new object, so re-processing an item yields a new id.

        Returns:
            The object key, used as the content id

        Raises:
            UploadFailedError: If S3 does not accept the object
        """
        key = _new_key(self.prefix, name)
        try:
            logger.info(f"Uploading {len(data)} bytes to s3://{self.bucket}/{key}")
            self.client.put_object(Bucket=self.bucket, Key=key, Body=data)
        except (ClientError, BotoCoreError) as e:
            logger.error(f"S3 upload failed: {e}")
            raise UploadFailedError(str(e), {"key": key}) from e
        logger.info(f"Upload successful: s3://{self.bucket}/{key}")
        return key

    def ping(self) -> bool:
        try:
            self.client.head_bucket(Bucket=self.bucket)
        except (ClientError, BotoCoreError) as e:
            logger.warning(f"S3 bucket {self.bucket} not reachable: {e}")
            return False
        return True


class LocalContentStore:
    """Directory-backed content storage; content ids are paths relative to ``root``."""

    def __init__(self, root: Path | str, prefix: str = "") -> None:
        self.root = ensure_directory(Path(root)).resolve()
        self.prefix = prefix

    def _path_for(self, content_id: str) -> Path:
        path = (self.root / content_id).resolve()
        if not path.is_relative_to(self.root):
            raise ContentNotFoundError(content_id)
        return path

    def download_content(self, content_id: str) -> bytes:
        path = self._path_for(content_id)
        if not path.is_file():
            raise ContentNotFoundError(content_id)
        try:
            return path.read_bytes()
        except OSError as e:
            raise StoreError(f"Cannot read {content_id}: {e}") from e

    def upload_content(self, data: bytes, name: str) -> str:
        key = _new_key(self.prefix, name)
        path = self.root / key
        try:
            ensure_directory(path.parent)
            path.write_bytes(data)
        except OSError as e:
            raise UploadFailedError(str(e), {"key": key}) from e
        logger.info(f"Stored {len(data)} bytes at {path}")
        return key

    def put(self, content_id: str, data: bytes) -> str:
        """Store bytes under an explicit id (used to seed templates)."""
        path = self._path_for(content_id)
        ensure_directory(path.parent)
        path.write_bytes(data)
        return content_id

    def ping(self) -> bool:
        return self.root.is_dir()
