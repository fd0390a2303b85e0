"""
Typed errors raised by the document generation pipeline.

Every error carries an ``ErrorKind`` so that callers can classify failures on a
structured value rather than on message text. Lower layers (cache, composer,
conversion pool, store clients) only raise these types; the poller is the one
place that decides whether a kind is retryable.
"""

from __future__ import annotations

import traceback
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    TEMPLATE_NOT_FOUND = "TEMPLATE_NOT_FOUND"
    TEMPLATE_INVALID_FORMAT = "TEMPLATE_INVALID_FORMAT"
    MERGE_FIELD_ERROR = "MERGE_FIELD_ERROR"
    MERGE_ERROR = "MERGE_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    MISSING_NAMESPACE = "MISSING_NAMESPACE"
    CONVERSION_TIMEOUT = "CONVERSION_TIMEOUT"
    CONVERSION_NON_ZERO_EXIT = "CONVERSION_NON_ZERO_EXIT"
    CONVERSION_EXECUTION_ERROR = "CONVERSION_EXECUTION_ERROR"
    UPLOAD_FAILED = "UPLOAD_FAILED"
    RESOURCE_NOT_FOUND = "RESOURCE_NOT_FOUND"
    STORE_TRANSIENT = "STORE_TRANSIENT"
    STORE_REJECTED = "STORE_REJECTED"
    LOCK_LOST = "LOCK_LOST"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class DocgenError(Exception):
    """
    Base class for all document generation errors.

    Attributes:
        kind: Structured error kind used for classification
        message: Human-readable message
        context: Extra fields for logging (template id, correlation id, ...)
        timestamp: UTC time the error was created
    """

    kind: ErrorKind = ErrorKind.INTERNAL_ERROR

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = dict(context or {})
        self.timestamp = datetime.now(timezone.utc)

    @property
    def code(self) -> str:
        return self.kind.value

    def summary(self) -> str:
        """One-line summary suitable for a work item's error field."""
        return f"{self.code}: {self.message}"


class TemplateNotFoundError(DocgenError):
    kind = ErrorKind.TEMPLATE_NOT_FOUND

    def __init__(self, template_id: str, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(f"Template not found: {template_id}", {**(context or {}), "template_id": template_id})
        self.template_id = template_id


class TemplateInvalidFormatError(DocgenError):
    kind = ErrorKind.TEMPLATE_INVALID_FORMAT

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(f"Invalid template format: {message}", context)


class MergeFieldError(DocgenError):
    kind = ErrorKind.MERGE_FIELD_ERROR

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(f"Merge field error: {message}", context)


class MergeError(DocgenError):
    kind = ErrorKind.MERGE_ERROR

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(f"Template merge failed: {message}", context)


class ValidationError(DocgenError):
    kind = ErrorKind.VALIDATION_ERROR


class MissingNamespaceError(ValidationError):
    kind = ErrorKind.MISSING_NAMESPACE

    def __init__(self, namespace: str, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(f"Missing namespace data: {namespace}", {**(context or {}), "namespace": namespace})
        self.namespace = namespace


class ConversionTimeoutError(DocgenError):
    kind = ErrorKind.CONVERSION_TIMEOUT

    def __init__(self, timeout_seconds: float, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(
            f"Conversion timed out after {timeout_seconds:g}s",
            {**(context or {}), "timeout_seconds": timeout_seconds},
        )
        self.timeout_seconds = timeout_seconds


class ConversionNonZeroExitError(DocgenError):
    kind = ErrorKind.CONVERSION_NON_ZERO_EXIT

    def __init__(
        self,
        exit_code: int,
        stderr: str = "",
        stdout: str = "",
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        details = []
        if stderr.strip():
            details.append(f"stderr: {stderr.strip()}")
        if stdout.strip():
            details.append(f"stdout: {stdout.strip()}")
        suffix = f" | {' | '.join(details)}" if details else ""
        super().__init__(
            f"Conversion failed with exit code {exit_code}{suffix}",
            {**(context or {}), "exit_code": exit_code},
        )
        self.exit_code = exit_code
        self.stderr = stderr
        self.stdout = stdout


class ConversionExecutionError(DocgenError):
    kind = ErrorKind.CONVERSION_EXECUTION_ERROR

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(f"Conversion could not run: {message}", context)


class StoreError(DocgenError):
    """
    Error reported by the record store or content storage.

    ``status_code`` is the HTTP-like status of the failed call when one is known.
    Missing statuses (network failures), 429 and 5xx are transient; other statuses
    mean the store rejected the call.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, {**(context or {}), "status_code": status_code})
        self.status_code = status_code

    @property
    def kind(self) -> ErrorKind:  # type: ignore[override]
        if self.status_code is None or self.status_code == 429 or self.status_code >= 500:
            return ErrorKind.STORE_TRANSIENT
        return ErrorKind.STORE_REJECTED


class ContentNotFoundError(DocgenError):
    kind = ErrorKind.RESOURCE_NOT_FOUND

    def __init__(self, content_id: str, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(f"Content not found: {content_id}", {**(context or {}), "content_id": content_id})
        self.content_id = content_id


class UploadFailedError(DocgenError):
    kind = ErrorKind.UPLOAD_FAILED

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(f"File upload failed: {message}", context)


class LockLostError(DocgenError):
    kind = ErrorKind.LOCK_LOST

    def __init__(self, work_item_id: str, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(f"Lock not acquired for work item {work_item_id}", {**(context or {}), "work_item_id": work_item_id})


class ConfigurationError(DocgenError):
    kind = ErrorKind.CONFIGURATION_ERROR


class InternalError(DocgenError):
    kind = ErrorKind.INTERNAL_ERROR

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(f"Internal error: {message}", context)


def wrap_error(error: BaseException, context: Optional[Dict[str, Any]] = None) -> DocgenError:
    """
    Convert any exception into a DocgenError.

    DocgenErrors get the extra context merged in. Plain timeouts and connection
    failures become transient store errors; everything else is an internal error.
    """
    if isinstance(error, DocgenError):
        if context:
            for key, value in context.items():
                error.context.setdefault(key, value)
        return error

    if isinstance(error, (TimeoutError, ConnectionError)):
        wrapped: DocgenError = StoreError(str(error) or error.__class__.__name__, None, context)
    else:
        wrapped = InternalError(f"{error.__class__.__name__}: {error}", context)
    wrapped.context["stack"] = "".join(traceback.format_exception(type(error), error, error.__traceback__, limit=15))
    return wrapped
