# =============================================================================
# Identity Extractor — Paper Text → Structured Identity Layer
# =============================================================================
#
# One non-streaming LLM call per paper. The response is asked for as a JSON
# object holding document metadata (title, author, year) plus the six
# identity fields that seed every later agent call for that paper.
#
# PARSING:
# LLM output is untrusted text. The first-to-last brace span is taken
# greedily and handed to json.loads. Any parse failure, a missing object,
# or a non-object value is a failure; an identity layer is never partially
# filled from malformed output. Fields absent from a valid object default
# to "" / [] (a response with only a title is a success).
#
# `raw` is always rebuilt from the parsed fields by IdentityLayer itself;
# a raw-like key in the response is ignored.
#
# DESIGN DECISION: Explicit success/failure variant.
# parse_identity_response() never raises. It returns IdentityExtraction
# or ExtractionFailure so callers branch on the result. extract_identity()
# is the raising wrapper for callers that want a typed exception.
# =============================================================================

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any

from marginalia.models.domain import IdentityLayer
from marginalia.services.llm import LLMProvider, user_message

logger = logging.getLogger(__name__)


IDENTITY_EXTRACTION_PROMPT = """Analyze this text and extract the following. Be thorough but concise.

FIRST, extract the document metadata by looking at the title, header, byline, or citation information:
- title: The full title of this work
- author: The author(s) of this work
- year: Publication year if identifiable (null if not found)

THEN, analyze the content:

1. CORE COMMITMENTS (2-3 paragraphs)
What does this text fundamentally believe? What is it trying to prove or establish? What are its central arguments?

2. ANTAGONISTS (1-2 paragraphs)
What positions, assumptions, or arguments does this text oppose? What would it push back against? What does it criticize?

3. CHARACTERISTIC MOVES (1 paragraph)
How does this text argue? Does it use case studies, theoretical frameworks, historical analysis, empirical data? What's distinctive about its approach?

4. VOCABULARY (list of 10-20 terms)
What words or phrases are central to this text's argument? Include how the text uses them distinctively.

5. TRIGGERS (1 paragraph)
What topics or claims would provoke a strong response from this text? What does it care most about?

6. CHARACTERISTIC PASSAGES (3-5 short quotes)
Select quotes that capture the text's tone, style, and typical phrasing.

Format your response as JSON with these keys:
{
  "title": "...",
  "author": "...",
  "year": "..." or null,
  "coreCommitments": "...",
  "antagonists": "...",
  "characteristicMoves": "...",
  "vocabulary": ["term1", "term2", ...],
  "triggers": "...",
  "voiceSamples": ["quote1", "quote2", ...]
}"""

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


# ---------------------------------------------------------------------------
# Result Types
# ---------------------------------------------------------------------------


@dataclass
class ExtractedMetadata:
    """Metadata the model read off the document. None when not found."""

    title: str | None = None
    author: str | None = None
    year: str | None = None

    def to_wire(self) -> dict[str, str | None]:
        return {"title": self.title, "author": self.author, "year": self.year}


@dataclass
class IdentityExtraction:
    identity_layer: IdentityLayer
    metadata: ExtractedMetadata


@dataclass
class ExtractionFailure:
    reason: str


class IdentityExtractionError(Exception):
    """Identity extraction produced no usable identity layer."""


# ---------------------------------------------------------------------------
# Prompt + Parse
# ---------------------------------------------------------------------------


def build_extraction_prompt(text: str, title: str | None, author: str | None) -> str:
    return (
        f"{IDENTITY_EXTRACTION_PROMPT}\n\n---\n\n"
        f"TEXT TO ANALYZE:\n"
        f"Title: {title or 'Unknown'}\n"
        f"Author: {author or 'Unknown'}\n\n"
        f"{text}"
    )


def parse_identity_response(response: str) -> IdentityExtraction | ExtractionFailure:
    """
    Parse an extraction response into an identity layer plus metadata.

    Never raises; malformed input yields ExtractionFailure.
    """
    match = _JSON_OBJECT.search(response)
    if not match:
        return ExtractionFailure("No JSON object in extraction response")

    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        return ExtractionFailure(f"Malformed JSON in extraction response: {exc.msg}")

    if not isinstance(parsed, dict):
        return ExtractionFailure("Extraction response is not a JSON object")

    metadata = ExtractedMetadata(
        title=_optional_text(parsed.get("title")),
        author=_optional_text(parsed.get("author")),
        year=_optional_text(parsed.get("year")),
    )
    identity_layer = IdentityLayer(
        core_commitments=_text(parsed.get("coreCommitments")),
        antagonists=_text(parsed.get("antagonists")),
        characteristic_moves=_text(parsed.get("characteristicMoves")),
        vocabulary=_text_list(parsed.get("vocabulary")),
        triggers=_text(parsed.get("triggers")),
        voice_samples=_text_list(parsed.get("voiceSamples")),
    )
    return IdentityExtraction(identity_layer=identity_layer, metadata=metadata)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


async def extract_identity(
    llm: LLMProvider,
    text: str,
    title: str | None = None,
    author: str | None = None,
) -> IdentityExtraction:
    """
    Run the extraction call for one paper.

    Raises:
        IdentityExtractionError: The response held no usable JSON object.
        LLMError: The provider call itself failed.
    """
    logger.info(
        "Extracting identity: title='%s', %d chars",
        (title or "Unknown")[:80], len(text),
    )

    response = await llm.complete(
        messages=user_message(build_extraction_prompt(text, title, author)),
    )

    result = parse_identity_response(response.content)
    if isinstance(result, ExtractionFailure):
        logger.warning("Identity extraction failed: %s", result.reason)
        raise IdentityExtractionError(result.reason)

    logger.info(
        "Identity extracted: model=%s, vocabulary=%d terms, voice samples=%d",
        response.model,
        len(result.identity_layer.vocabulary),
        len(result.identity_layer.voice_samples),
    )
    return result


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _text(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def _optional_text(value: Any) -> str | None:
    text = _text(value).strip()
    return text or None


def _text_list(value: Any) -> list[str]:
    """Lists of scalars become lists of strings; anything else is []."""
    if not isinstance(value, list):
        return []
    return [_text(item) for item in value if item is not None]
