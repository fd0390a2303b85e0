"""
DOCX merging and concatenation.

Merging renders a DOCX template with docxtpl (Jinja markup inside the Word
document). Concatenation joins several merged documents into one, separating them
with "next page" section breaks; it works directly on the WordprocessingML parts
with lxml.
"""

from __future__ import annotations

import logging
import posixpath
import zipfile
from copy import deepcopy
from dataclasses import dataclass, field
from io import BytesIO
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
from urllib.parse import urlparse

from docxtpl import DocxTemplate
from jinja2 import Environment, StrictUndefined
from jinja2.exceptions import TemplateSyntaxError, UndefinedError
from lxml import etree

from .errors import (
    DocgenError,
    MergeError,
    MergeFieldError,
    TemplateInvalidFormatError,
    ValidationError,
)

logger = logging.getLogger(__name__)

W_NS = "http://schemas.openxmlformats.org/wordprocessingml/2006/main"
R_NS = "http://schemas.openxmlformats.org/officeDocument/2006/relationships"
PKG_REL_NS = "http://schemas.openxmlformats.org/package/2006/relationships"
CT_NS = "http://schemas.openxmlformats.org/package/2006/content-types"

DOCUMENT_PART = "word/document.xml"
DOCUMENT_RELS_PART = "word/_rels/document.xml.rels"
CONTENT_TYPES_PART = "[Content_Types].xml"

IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".gif", ".bmp", ".svg", ".webp")

# Children of w:sectPr that must precede w:type
_SECTPR_LEADING = {"headerReference", "footerReference", "footnotePr", "endnotePr"}
_HEADER_FOOTER_REFS = {"headerReference", "footerReference"}


def w(tag: str) -> str:
    return f"{{{W_NS}}}{tag}"


def _local(element: etree._Element) -> str:
    return etree.QName(element).localname if isinstance(element.tag, str) else ""


# ---------------------------------------------------------------------------
# Merge
# ---------------------------------------------------------------------------


class ImageAllowlist:
    """
    Host allowlist for externally referenced images.

    A URL is allowed when its host equals an allowlisted domain or is a subdomain
    of one. An empty allowlist rejects every URL.
    """

    def __init__(self, domains: Iterable[str] = ()) -> None:
        self.domains = {domain.strip().lower() for domain in domains if domain.strip()}

    def is_allowed(self, url: str) -> bool:
        if not self.domains:
            return False
        host = (urlparse(url).hostname or "").lower()
        if not host:
            return False
        return host in self.domains or any(host.endswith("." + domain) for domain in self.domains)

    def rejected(self, urls: Iterable[str]) -> List[str]:
        return [url for url in urls if not self.is_allowed(url)]


def extract_image_urls(data: Any) -> List[str]:
    """
    Find string values in ``data`` that look like external image URLs.

    Example:
        >>> extract_image_urls({"logo": "https://cdn.example.com/logo.png", "n": 3})
        ['https://cdn.example.com/logo.png']
    """
    urls: List[str] = []

    def visit(value: Any) -> None:
        if isinstance(value, str):
            if value.startswith(("http://", "https://")):
                path = urlparse(value).path.lower()
                if path.endswith(IMAGE_EXTENSIONS) or "/image/" in value:
                    urls.append(value)
        elif isinstance(value, dict):
            for item in value.values():
                visit(item)
        elif isinstance(value, (list, tuple)):
            for item in value:
                visit(item)

    visit(data)
    return urls


@dataclass
class MergeOptions:
    locale: str = "en-US"
    timezone: str = "UTC"
    # None disables URL checks
    image_allowlist: Optional[List[str]] = None


def _jinja_env() -> Environment:
    return Environment(undefined=StrictUndefined, autoescape=True)


def merge_template(template: bytes, data: Dict[str, Any], options: Optional[MergeOptions] = None) -> bytes:
    """
    Render a DOCX template against a data object.

    Field values are inserted as given; locale and timezone are only logged, since
    callers send values that are already formatted.

    Args:
        template: DOCX template bytes
        data: Merge data; nested objects are reachable with dotted paths
        options: Locale/timezone and the optional image URL allowlist

    Returns:
        Merged DOCX bytes

    Raises:
        TemplateInvalidFormatError: If ``template`` is not a readable DOCX package
        MergeFieldError: If the template references an undefined field or has invalid markup
        MergeError: For a rejected image URL or any other rendering failure
    """
    options = options or MergeOptions()
    logger.debug(
        f"Merging template ({len(template)} bytes, locale={options.locale}, "
        f"timezone={options.timezone}, keys={sorted(data)})"
    )

    if options.image_allowlist is not None:
        rejected = ImageAllowlist(options.image_allowlist).rejected(extract_image_urls(data))
        if rejected:
            raise MergeError(f"Image URL not on allowlist: {', '.join(rejected)}")

    try:
        tpl = DocxTemplate(BytesIO(template))
        tpl.init_docx()
    except Exception as exc:  # python-docx raises several types for a broken package
        raise TemplateInvalidFormatError(f"{exc.__class__.__name__}: {exc}") from exc

    try:
        tpl.render(data, jinja_env=_jinja_env(), autoescape=True)
        output = BytesIO()
        tpl.save(output)
    except (UndefinedError, TemplateSyntaxError) as exc:
        raise MergeFieldError(str(exc)) from exc
    except DocgenError:
        raise
    except Exception as exc:
        raise MergeError(f"{exc.__class__.__name__}: {exc}") from exc

    merged = output.getvalue()
    logger.info(f"Template merge complete ({len(template)} -> {len(merged)} bytes)")
    return merged


# ---------------------------------------------------------------------------
# Concatenation
# ---------------------------------------------------------------------------


@dataclass
class Section:
    data: bytes
    namespace: str
    sequence: int


@dataclass
class _ParsedSection:
    index: int
    namespace: str
    package: zipfile.ZipFile
    document: etree._Element
    body: etree._Element
    body_sectpr: Optional[etree._Element]
    rels: Dict[str, etree._Element] = field(default_factory=dict)
    content_types: Optional[etree._Element] = None


def _read_xml(package: zipfile.ZipFile, name: str) -> Optional[etree._Element]:
    try:
        raw = package.read(name)
    except KeyError:
        return None
    return etree.fromstring(raw)


def _parse_section(section: Section, index: int) -> _ParsedSection:
    try:
        package = zipfile.ZipFile(BytesIO(section.data))
        document = _read_xml(package, DOCUMENT_PART)
        if document is None:
            raise TemplateInvalidFormatError(
                f"section {section.namespace} has no {DOCUMENT_PART}"
            )
        rels_root = _read_xml(package, DOCUMENT_RELS_PART)
        content_types = _read_xml(package, CONTENT_TYPES_PART)
    except (zipfile.BadZipFile, etree.XMLSyntaxError) as exc:
        raise TemplateInvalidFormatError(f"section {section.namespace}: {exc}") from exc

    body = document.find(w("body"))
    if body is None:
        raise TemplateInvalidFormatError(f"section {section.namespace} has no document body")

    body_sectpr = None
    if len(body) and body[-1].tag == w("sectPr"):
        body_sectpr = body[-1]
        body.remove(body_sectpr)

    rels: Dict[str, etree._Element] = {}
    if rels_root is not None:
        for rel in rels_root:
            rel_id = rel.get("Id")
            if rel_id:
                rels[rel_id] = rel

    return _ParsedSection(
        index=index,
        namespace=section.namespace,
        package=package,
        document=document,
        body=body,
        body_sectpr=body_sectpr,
        rels=rels,
        content_types=content_types,
    )


def _strip_header_footer_refs(sectpr: etree._Element) -> None:
    for child in list(sectpr):
        if _local(child) in _HEADER_FOOTER_REFS:
            sectpr.remove(child)


def _set_next_page(sectpr: etree._Element) -> None:
    type_el = sectpr.find(w("type"))
    if type_el is None:
        type_el = etree.Element(w("type"))
        position = 0
        for i, child in enumerate(sectpr):
            if _local(child) in _SECTPR_LEADING:
                position = i + 1
        sectpr.insert(position, type_el)
    type_el.set(w("val"), "nextPage")


def _add_section_break(parsed: _ParsedSection, keep_headers: bool) -> None:
    """Make the section's last block a paragraph whose properties end the section."""
    blocks = list(parsed.body)
    paragraph = blocks[-1] if blocks and blocks[-1].tag == w("p") else None
    if paragraph is None:
        paragraph = etree.SubElement(parsed.body, w("p"))

    ppr = paragraph.find(w("pPr"))
    if ppr is None:
        ppr = etree.Element(w("pPr"))
        paragraph.insert(0, ppr)

    if ppr.find(w("sectPr")) is not None:
        return

    sectpr = deepcopy(parsed.body_sectpr) if parsed.body_sectpr is not None else etree.Element(w("sectPr"))
    if not keep_headers:
        _strip_header_footer_refs(sectpr)
    _set_next_page(sectpr)

    change = ppr.find(w("pPrChange"))
    if change is not None:
        change.addprevious(sectpr)
    else:
        ppr.append(sectpr)


class _PackageBuilder:
    """Accumulates relationship and part changes against the base package."""

    def __init__(self, base: _ParsedSection) -> None:
        self.base = base
        self.rels_root = _read_xml(base.package, DOCUMENT_RELS_PART)
        if self.rels_root is None:
            self.rels_root = etree.Element(f"{{{PKG_REL_NS}}}Relationships", nsmap={None: PKG_REL_NS})
        self.content_types = base.content_types
        self.existing_ids = {rel.get("Id") for rel in self.rels_root}
        self.new_parts: Dict[str, bytes] = {}
        self._counter = 0

    def _next_id(self) -> str:
        while True:
            self._counter += 1
            candidate = f"rIdDocgen{self._counter}"
            if candidate not in self.existing_ids:
                self.existing_ids.add(candidate)
                return candidate

    def _add_relationship(self, rel_type: str, target: str, external: bool) -> str:
        rel_id = self._next_id()
        rel = etree.SubElement(self.rels_root, f"{{{PKG_REL_NS}}}Relationship")
        rel.set("Id", rel_id)
        rel.set("Type", rel_type)
        rel.set("Target", target)
        if external:
            rel.set("TargetMode", "External")
        return rel_id

    def _content_type_for(self, section: _ParsedSection, part_name: str) -> Tuple[str, Optional[str]]:
        """Return (kind, content_type) where kind is "Default" or "Override"."""
        if section.content_types is None:
            return "Default", None
        for override in section.content_types.findall(f"{{{CT_NS}}}Override"):
            if override.get("PartName") == "/" + part_name:
                return "Override", override.get("ContentType")
        extension = posixpath.splitext(part_name)[1].lstrip(".").lower()
        for default in section.content_types.findall(f"{{{CT_NS}}}Default"):
            if (default.get("Extension") or "").lower() == extension:
                return "Default", default.get("ContentType")
        return "Default", None

    def _register_content_type(self, section: _ParsedSection, source_part: str, new_part: str) -> None:
        if self.content_types is None:
            return
        kind, content_type = self._content_type_for(section, source_part)
        if content_type is None:
            return
        if kind == "Override":
            override = etree.SubElement(self.content_types, f"{{{CT_NS}}}Override")
            override.set("PartName", "/" + new_part)
            override.set("ContentType", content_type)
            return
        extension = posixpath.splitext(new_part)[1].lstrip(".").lower()
        known = {
            (default.get("Extension") or "").lower()
            for default in self.content_types.findall(f"{{{CT_NS}}}Default")
        }
        if extension and extension not in known:
            default = etree.Element(f"{{{CT_NS}}}Default")
            default.set("Extension", extension)
            default.set("ContentType", content_type)
            self.content_types.insert(0, default)

    def import_relationship(self, section: _ParsedSection, rel_id: str) -> Optional[str]:
        rel = section.rels.get(rel_id)
        if rel is None:
            return None
        rel_type = rel.get("Type", "")
        target = rel.get("Target", "")
        if rel.get("TargetMode") == "External":
            return self._add_relationship(rel_type, target, external=True)

        source_part = target.lstrip("/") if target.startswith("/") else posixpath.normpath(posixpath.join("word", target))
        try:
            payload = section.package.read(source_part)
        except KeyError:
            logger.warning(f"Section {section.namespace} references missing part {source_part}")
            return None

        new_part = f"word/media/docgen-s{section.index}-{posixpath.basename(source_part)}"
        self.new_parts[new_part] = payload
        self._register_content_type(section, source_part, new_part)
        return self._add_relationship(rel_type, posixpath.relpath(new_part, "word"), external=False)

    def remap(self, section: _ParsedSection, elements: Iterable[etree._Element]) -> None:
        """Point r:* attributes of a later section at relationships in the base package."""
        mapping: Dict[str, Optional[str]] = {}
        prefix = f"{{{R_NS}}}"
        for element in elements:
            for node in element.iter(etree.Element):
                for attr, value in list(node.attrib.items()):
                    if not attr.startswith(prefix):
                        continue
                    if value not in mapping:
                        mapping[value] = self.import_relationship(section, value)
                    new_id = mapping[value]
                    if new_id is None:
                        del node.attrib[attr]
                    else:
                        node.set(attr, new_id)

    def build(self, document: etree._Element) -> bytes:
        replaced = {
            DOCUMENT_PART: _serialize(document),
            DOCUMENT_RELS_PART: _serialize(self.rels_root),
        }
        if self.content_types is not None:
            replaced[CONTENT_TYPES_PART] = _serialize(self.content_types)

        output = BytesIO()
        with zipfile.ZipFile(output, "w", zipfile.ZIP_DEFLATED) as target:
            written = set()
            for info in self.base.package.infolist():
                data = replaced.get(info.filename)
                target.writestr(info.filename, data if data is not None else self.base.package.read(info.filename))
                written.add(info.filename)
            for name, data in list(replaced.items()) + list(self.new_parts.items()):
                if name not in written:
                    target.writestr(name, data)
                    written.add(name)
        return output.getvalue()


def _serialize(element: etree._Element) -> bytes:
    return etree.tostring(element, xml_declaration=True, encoding="UTF-8", standalone=True)


def concatenate_documents(sections: Sequence[Section], correlation_id: Optional[str] = None) -> bytes:
    """
    Join merged sections into one DOCX, ordered by ``sequence``.

    Every section but the last ends with a "next page" section break. Headers and
    footers come from the first section only. Images and hyperlinks used by later
    sections are copied into the combined package.

    Args:
        sections: Merged sections; list order is ignored
        correlation_id: Used for log messages only

    Returns:
        Combined DOCX bytes; a single section is returned unchanged

    Raises:
        ValidationError: If ``sections`` is empty
        TemplateInvalidFormatError: If a section is not a readable DOCX package
    """
    if not sections:
        raise ValidationError("No sections provided for concatenation")

    logger.info(
        f"Concatenating {len(sections)} sections (correlation_id={correlation_id}, "
        f"namespaces={[s.namespace for s in sections]})"
    )
    if len(sections) == 1:
        return sections[0].data

    ordered = sorted(sections, key=lambda s: s.sequence)
    parsed = [_parse_section(section, index) for index, section in enumerate(ordered)]
    first, last = parsed[0], parsed[-1]
    builder = _PackageBuilder(first)

    for item in parsed[:-1]:
        _add_section_break(item, keep_headers=item is first)

    for item in parsed[1:]:
        blocks = list(item.body)
        builder.remap(item, blocks)
        for block in blocks:
            first.body.append(block)

    final_sectpr = deepcopy(last.body_sectpr if last.body_sectpr is not None else first.body_sectpr)
    if final_sectpr is not None:
        _strip_header_footer_refs(final_sectpr)
        if last is not first:
            builder.remap(last, [final_sectpr])
        if first.body_sectpr is not None:
            refs = [deepcopy(child) for child in first.body_sectpr if _local(child) in _HEADER_FOOTER_REFS]
            for position, ref in enumerate(refs):
                final_sectpr.insert(position, ref)
        first.body.append(final_sectpr)

    combined = builder.build(first.document)
    logger.info(
        f"Concatenation complete (correlation_id={correlation_id}, sections={len(parsed)}, "
        f"bytes={len(combined)})"
    )
    return combined
