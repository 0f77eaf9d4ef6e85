# =============================================================================
# Document Parser — Docling PDF → Text + Structured Paragraphs
# =============================================================================
#
# The reading pane needs a document as an ordered list of typed blocks
# (h1/h2/h3/body); the agents need its full text. This module is the only
# place that knows how either is obtained.
#
# HEADING MAPPING:
#   Docling TITLE                     → h1
#   Docling SECTION_HEADER, level ≤ 1 → h2
#   Docling SECTION_HEADER, level ≥ 2 → h3
#   text / paragraphs / list items    → body
#   tables                            → body (markdown)
#
# DESIGN DECISION: We iterate items (not export_to_markdown()) because
# block types and heading depth come straight from Docling's labels, and
# page headers/footers are dropped by label rather than by regex.
#
# DESIGN DECISION: Our own ParsedDocument dataclass rather than Docling
# types downstream. Switching parsers only changes this module.
#
# Plain-text submissions skip Docling entirely: segment_into_paragraphs()
# splits on blank lines.
# =============================================================================

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

from docling.datamodel.base_models import InputFormat
from docling.datamodel.pipeline_options import PdfPipelineOptions
from docling.document_converter import DocumentConverter, PdfFormatOption
from docling_core.types.doc.labels import DocItemLabel

from marginalia.models.domain import StructuredParagraph

logger = logging.getLogger(__name__)

_BODY_LABELS = (
    DocItemLabel.TEXT,
    DocItemLabel.PARAGRAPH,
    DocItemLabel.LIST_ITEM,
)
_BLANK_LINES = re.compile(r"\n\s*\n")
_WHITESPACE = re.compile(r"\s+")


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class ParsedDocument:
    """
    Result of parsing one document.

    `text` is the paragraphs joined by blank lines; it is what the agents
    receive as the paper's full text.
    """

    text: str = ""
    title: str | None = None
    paragraphs: list[StructuredParagraph] = field(default_factory=list)
    page_count: int = 0
    filename: str = ""


# ---------------------------------------------------------------------------
# Docling Converter — Lazy Singleton
# ---------------------------------------------------------------------------
# Initialization loads layout models into memory (a few seconds on first
# use). One converter per worker process.
# ---------------------------------------------------------------------------

_converter: DocumentConverter | None = None


def _get_converter() -> DocumentConverter:
    """Lazily initialize and cache the Docling DocumentConverter."""
    global _converter
    if _converter is None:
        logger.info(
            "Initializing Docling DocumentConverter "
            "(first use, may take a few seconds)..."
        )

        # Papers are mostly born-digital prose. OCR stays on for scanned
        # chapters; table structure is off.
        pipeline_options = PdfPipelineOptions()
        pipeline_options.do_table_structure = False
        pipeline_options.do_ocr = True

        _converter = DocumentConverter(
            format_options={
                InputFormat.PDF: PdfFormatOption(
                    pipeline_options=pipeline_options,
                ),
            }
        )
        logger.info("Docling DocumentConverter initialized")
    return _converter


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def parse_pdf(file_path: str) -> ParsedDocument:
    """
    Parse a PDF into typed paragraphs in reading order.

    Args:
        file_path: Path to the PDF file on disk.

    Returns:
        ParsedDocument with full text, detected title and paragraphs.

    Raises:
        FileNotFoundError: If the file does not exist.
        RuntimeError: If Docling fails to convert the document.
    """
    path = Path(file_path)
    if not path.exists():
        raise FileNotFoundError(f"PDF not found: {file_path}")

    logger.info("Parsing PDF: %s", path.name)
    converter = _get_converter()

    try:
        result = converter.convert(str(path))
    except Exception as exc:
        raise RuntimeError(
            f"Docling failed to parse '{path.name}': {exc}"
        ) from exc

    document = result.document
    paragraphs: list[StructuredParagraph] = []
    title: str | None = None
    page_numbers_seen: set[int] = set()

    for item, _depth in document.iterate_items():
        if getattr(item, "prov", None):
            page_numbers_seen.add(item.prov[0].page_no)

        label = getattr(item, "label", None)
        text = _clean(getattr(item, "text", "") or "")

        if label == DocItemLabel.TITLE:
            if text:
                title = title or text
                paragraphs.append(StructuredParagraph(type="h1", content=text))

        elif label == DocItemLabel.SECTION_HEADER:
            if text:
                level = getattr(item, "level", 1) or 1
                block_type = "h2" if level <= 1 else "h3"
                paragraphs.append(StructuredParagraph(type=block_type, content=text))

        elif label == DocItemLabel.TABLE:
            table_md = item.export_to_markdown(doc=document).strip()
            if table_md:
                paragraphs.append(StructuredParagraph(type="body", content=table_md))

        elif label in _BODY_LABELS:
            if text:
                paragraphs.append(StructuredParagraph(type="body", content=text))

    parsed = ParsedDocument(
        text="\n\n".join(p.content for p in paragraphs),
        title=title,
        paragraphs=paragraphs,
        page_count=max(page_numbers_seen, default=0),
        filename=path.name,
    )

    logger.info(
        "Parsed '%s': %d paragraphs (%d headings), %d pages, title=%s",
        path.name,
        len(paragraphs),
        sum(1 for p in paragraphs if p.is_heading),
        parsed.page_count,
        title or "(none)",
    )
    return parsed


def segment_into_paragraphs(text: str) -> list[StructuredParagraph]:
    """Split plain text on blank lines into body paragraphs."""
    blocks = (_clean(block) for block in _BLANK_LINES.split(text))
    return [StructuredParagraph(type="body", content=block) for block in blocks if block]


def _clean(text: str) -> str:
    return _WHITESPACE.sub(" ", text).strip()
