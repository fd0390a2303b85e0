"""
Document generation pipeline shared by the batch worker and direct callers.

Given a validated request, the generator resolves the template(s), merges the
data, concatenates sections for composite documents and converts to PDF when
requested. Uploading and status bookkeeping stay with the caller.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, List, Optional, Protocol

from pydantic import ValidationError as PydanticValidationError

from .composer import MergeOptions, Section, concatenate_documents, merge_template
from .errors import MissingNamespaceError, ValidationError
from .models import DocgenRequest, OutputFormat, TemplateStrategy
from .template_cache import TemplateService

logger = logging.getLogger(__name__)


class Converter(Protocol):
    def submit(
        self,
        input_bytes: bytes,
        timeout: Optional[float] = None,
        correlation_id: Optional[str] = None,
        target_format: str = "pdf",
    ) -> bytes:
        ...


@dataclass
class GeneratedDocument:
    output: bytes
    merged_docx: bytes
    output_file_name: str
    output_format: OutputFormat


def parse_request(request_json: str) -> DocgenRequest:
    """
    Parse and validate a stored request payload.

    Raises:
        ValidationError: If the payload is not JSON or does not match the request schema
    """
    try:
        payload = json.loads(request_json)
    except (TypeError, json.JSONDecodeError) as exc:
        raise ValidationError(f"Request payload is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise ValidationError("Request payload must be a JSON object")
    try:
        return DocgenRequest.model_validate(payload)
    except PydanticValidationError as exc:
        details = "; ".join(
            f"{'.'.join(str(part) for part in error['loc']) or 'request'}: {error['msg']}"
            for error in exc.errors()
        )
        raise ValidationError(f"Invalid request: {details}") from exc


class DocumentGenerator:
    """
    Runs the merge pipeline for one request.

    Args:
        templates: Template service (cache in front of content storage)
        converter: Conversion pool used for PDF output
        image_allowlist: Allowed image hosts; None disables the check
        conversion_timeout: Timeout passed to the converter, pool default if None
    """

    def __init__(
        self,
        templates: TemplateService,
        converter: Converter,
        image_allowlist: Optional[List[str]] = None,
        conversion_timeout: Optional[float] = None,
    ) -> None:
        self.templates = templates
        self.converter = converter
        self.image_allowlist = image_allowlist
        self.conversion_timeout = conversion_timeout

    def _merge_options(self, request: DocgenRequest) -> MergeOptions:
        return MergeOptions(
            locale=request.locale,
            timezone=request.timezone,
            image_allowlist=self.image_allowlist,
        )

    def merge(self, request: DocgenRequest, correlation_id: Optional[str] = None) -> bytes:
        """Produce the merged DOCX for a request."""
        options = self._merge_options(request)

        if request.is_composite and request.template_strategy == TemplateStrategy.CONCATENATE_TEMPLATES:
            sections: List[Section] = []
            for reference in request.templates or []:
                template = self.templates.get_template(reference.template_id, correlation_id)
                if reference.namespace not in request.data:
                    raise MissingNamespaceError(reference.namespace, {"correlation_id": correlation_id})
                namespace_data: Any = request.data[reference.namespace]
                if not isinstance(namespace_data, dict):
                    raise ValidationError(
                        f"Namespace data must be an object: {reference.namespace}",
                        {"correlation_id": correlation_id},
                    )
                logger.debug(
                    f"Merging section {reference.namespace} (sequence={reference.sequence}, "
                    f"correlation_id={correlation_id})"
                )
                sections.append(
                    Section(
                        data=merge_template(template, namespace_data, options),
                        namespace=reference.namespace,
                        sequence=reference.sequence,
                    )
                )
            return concatenate_documents(sections, correlation_id)

        # Single template, or a composite document using one template for all data
        assert request.template_id is not None
        template = self.templates.get_template(request.template_id, correlation_id)
        return merge_template(template, request.data, options)

    def generate(self, request: DocgenRequest, correlation_id: Optional[str] = None) -> GeneratedDocument:
        """
        Merge and, for PDF output, convert a request.

        Raises:
            DocgenError: Any typed error from template lookup, merge, concatenation or conversion
        """
        logger.info(
            f"Generating {request.output_format.value} {request.output_file_name} "
            f"(composite={request.is_composite}, correlation_id={correlation_id})"
        )
        merged = self.merge(request, correlation_id)

        if request.output_format == OutputFormat.PDF:
            output = self.converter.submit(
                merged,
                timeout=self.conversion_timeout,
                correlation_id=correlation_id,
                target_format="pdf",
            )
        else:
            output = merged

        return GeneratedDocument(
            output=output,
            merged_docx=merged,
            output_file_name=request.output_file_name,
            output_format=request.output_format,
        )
