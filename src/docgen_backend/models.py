from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator


class WorkItemStatus(str, Enum):
    QUEUED = "QUEUED"
    PROCESSING = "PROCESSING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELED = "CANCELED"


class OutputFormat(str, Enum):
    PDF = "PDF"
    DOCX = "DOCX"


class TemplateStrategy(str, Enum):
    OWN_TEMPLATE = "OWN_TEMPLATE"
    CONCATENATE_TEMPLATES = "CONCATENATE_TEMPLATES"


class TemplateReference(BaseModel):
    template_id: str = Field(min_length=1)
    namespace: str = Field(min_length=1)
    sequence: int


class DocgenOptions(BaseModel):
    store_merged_docx: bool = False
    # Interactive callers only; accepted so stored payloads validate, unused by the worker
    return_docx_to_browser: bool = False


class DocgenRequest(BaseModel):
    """
    Request payload persisted on each work item.

    Either ``template_id`` alone (single template), or ``composite_document_id`` with a
    ``template_strategy``: ``OWN_TEMPLATE`` merges ``template_id`` against the whole
    dataset, ``CONCATENATE_TEMPLATES`` merges each entry of ``templates`` against
    ``data[namespace]``.
    """

    template_id: Optional[str] = None
    output_file_name: str = Field(min_length=1)
    output_format: OutputFormat
    locale: str = "en-US"
    timezone: str = "UTC"
    options: DocgenOptions = Field(default_factory=DocgenOptions)
    data: Dict[str, Any] = Field(default_factory=dict)
    parents: Optional[Dict[str, Optional[str]]] = None
    composite_document_id: Optional[str] = None
    template_strategy: Optional[TemplateStrategy] = None
    templates: Optional[List[TemplateReference]] = None
    request_hash: Optional[str] = None

    @property
    def is_composite(self) -> bool:
        return bool(self.composite_document_id)

    @model_validator(mode="after")
    def _check_template_source(self) -> "DocgenRequest":
        if not self.is_composite:
            if not self.template_id:
                raise ValueError("template_id is required for single-template documents")
            return self
        if self.template_strategy is None:
            raise ValueError("template_strategy is required for composite documents")
        if self.template_strategy == TemplateStrategy.OWN_TEMPLATE and not self.template_id:
            raise ValueError("template_id is required for the OWN_TEMPLATE strategy")
        if self.template_strategy == TemplateStrategy.CONCATENATE_TEMPLATES and not self.templates:
            raise ValueError("templates must list at least one template for the CONCATENATE_TEMPLATES strategy")
        return self


class WorkItem(BaseModel):
    id: str
    status: WorkItemStatus
    request_json: str
    attempts: int = 0
    correlation_id: Optional[str] = None
    lock_expiry: Optional[datetime] = None
    priority: int = 0
    created_at: datetime
    updated_at: Optional[datetime] = None
    scheduled_retry_at: Optional[datetime] = None
    error: Optional[str] = None
    output_file_id: Optional[str] = None
    merged_docx_file_id: Optional[str] = None


class ProcessingResult(BaseModel):
    work_item_id: str
    success: bool
    output_file_id: Optional[str] = None
    merged_docx_file_id: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    retryable: bool = False
    retried: bool = False


class PollerStats(BaseModel):
    is_running: bool = False
    current_queue_depth: int = 0
    total_processed: int = 0
    total_succeeded: int = 0
    total_failed: int = 0
    total_retries: int = 0
    last_poll_time: Optional[datetime] = None
    uptime_seconds: int = 0


class CacheStats(BaseModel):
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    current_size_bytes: int = 0
    entry_count: int = 0


class ConversionPoolStats(BaseModel):
    active_jobs: int = 0
    queued_jobs: int = 0
    completed_jobs: int = 0
    failed_jobs: int = 0
    total_conversions: int = 0


class WorkerStats(BaseModel):
    poller: PollerStats
    cache: CacheStats
    conversion_pool: ConversionPoolStats
    telemetry: Dict[str, Any] = Field(default_factory=dict)
