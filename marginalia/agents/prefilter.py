# =============================================================================
# Relevance Prefilter — Which Papers Engage With a Passage, and How
# =============================================================================
#
# One fast, non-streaming LLM call per paragraph. Each candidate paper is
# summarised in one compact line (id, title, truncated triggers, top
# vocabulary terms) and the model returns which papers would engage and
# how:
#
#   [{"sourceId": "...", "type": "challenges", "angle": "..."}, ...]
#
# PARSING (LLM output is untrusted):
#   1. Scan for the first '[' that starts a decodable JSON array.
#   2. Entries whose `type` is not one of the seven engagement types are
#      DROPPED. Strict whitelist, no normalisation: "Challenges" or
#      "disagrees" never becomes "challenges".
#   3. Bare string items (the older array-of-IDs shape) become
#      `contextualizes` entries with the configured default angle.
#   4. Source IDs outside the candidate set are dropped; duplicates keep
#      their first entry.
#   Any parse failure yields [] ("no agent engages"), never an error.
#
# The call is idempotent and has no side effects. Caching per paragraph
# lives in services/engagements.py.
# =============================================================================

from __future__ import annotations

import json
import logging
import re
from typing import Any

from marginalia.config import settings
from marginalia.models.domain import (
    ENGAGEMENT_TYPES,
    EngagementEntry,
    EngagementType,
    Paper,
)
from marginalia.services.llm import LLMProvider, user_message

logger = logging.getLogger(__name__)

_ARRAY_START = re.compile(r"\[")
_decoder = json.JSONDecoder()


# ---------------------------------------------------------------------------
# Prompt
# ---------------------------------------------------------------------------


def summarize_candidate(paper: Paper) -> str:
    """One prompt line describing a candidate's concerns."""
    identity = paper.identity_layer
    if identity is None:
        return f'- {paper.id}: "{paper.title}" by {paper.author}'

    triggers = identity.triggers[: settings.prefilter_trigger_chars]
    vocabulary = ", ".join(identity.vocabulary[: settings.prefilter_vocabulary_terms])
    return (
        f'- {paper.id}: "{paper.title}" - Key concerns: {triggers}. '
        f"Vocabulary: {vocabulary}"
    )


def build_prefilter_prompt(passage: str, candidates: list[Paper]) -> str:
    summaries = "\n".join(summarize_candidate(paper) for paper in candidates)
    types = ", ".join(t.value for t in EngagementType)
    return f"""Given this passage being discussed in a seminar:

"{passage}"

And these sources with their key concerns:
{summaries}

Which sources would have something substantive to contribute to this discussion? Only include sources whose core commitments or concerns genuinely relate to the passage content.

For each source that would engage, say how it engages. The type MUST be one of: {types}.
The angle is one short line naming what the source would bring.

Return ONLY a JSON array. Example:
[{{"sourceId": "source-1", "type": "challenges", "angle": "disputes the neutrality of consistent criteria"}}]
If none would have something substantive to add, return: []"""


# ---------------------------------------------------------------------------
# Parse
# ---------------------------------------------------------------------------


def parse_prefilter_response(
    response: str,
    candidate_ids: set[str] | None = None,
    default_angle: str | None = None,
) -> list[EngagementEntry]:
    """
    Parse a prefilter response into engagement entries. Never raises.

    Args:
        response: Raw model output.
        candidate_ids: Source IDs allowed in the output. None allows any.
        default_angle: Angle for entries that arrive without one.
    """
    angle_fallback = default_angle or settings.prefilter_default_angle

    items = _first_json_array(response)
    if items is None:
        logger.warning("Prefilter response held no JSON array; treating as no engagement")
        return []

    entries: list[EngagementEntry] = []
    seen: set[str] = set()
    for item in items:
        entry = _to_entry(item, angle_fallback)
        if entry is None:
            continue
        if candidate_ids is not None and entry.source_id not in candidate_ids:
            continue
        if entry.source_id in seen:
            continue
        seen.add(entry.source_id)
        entries.append(entry)
    return entries


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


async def prefilter(
    llm: LLMProvider,
    passage: str,
    candidates: list[Paper],
) -> list[EngagementEntry]:
    """
    Decide which candidate papers engage with a passage.

    Returns [] without calling the model when there are no candidates.

    Raises:
        LLMError: The provider call failed. A malformed response is not
            an error; it yields [].
    """
    if not candidates:
        return []

    prompt = build_prefilter_prompt(passage, candidates)
    logger.debug("Prefilter prompt:\n%s", prompt)

    response = await llm.complete(messages=user_message(prompt))

    entries = parse_prefilter_response(
        response.content,
        candidate_ids={paper.id for paper in candidates},
    )
    logger.info(
        "Prefilter: %d/%d candidates engage (%s)",
        len(entries), len(candidates),
        ", ".join(f"{e.source_id}:{e.type.value}" for e in entries) or "none",
    )
    return entries


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _first_json_array(text: str) -> list[Any] | None:
    """
    The first '['-anchored span that decodes to a JSON array of strings
    or objects. Arrays of anything else (a citation like `[1]` in prose
    before the payload) are skipped.
    """
    for match in _ARRAY_START.finditer(text):
        try:
            value, _ = _decoder.raw_decode(text, match.start())
        except json.JSONDecodeError:
            continue
        if isinstance(value, list) and all(isinstance(item, (str, dict)) for item in value):
            return value
    return None


def _to_entry(item: Any, default_angle: str) -> EngagementEntry | None:
    if isinstance(item, str):
        if not item:
            return None
        return EngagementEntry(
            source_id=item,
            type=EngagementType.CONTEXTUALIZES,
            angle=default_angle,
        )

    if not isinstance(item, dict):
        return None

    source_id = item.get("sourceId")
    engagement_type = item.get("type")
    if not isinstance(source_id, str) or not source_id:
        return None
    if not isinstance(engagement_type, str) or engagement_type not in ENGAGEMENT_TYPES:
        return None

    angle = item.get("angle")
    if not isinstance(angle, str) or not angle.strip():
        angle = default_angle

    return EngagementEntry(
        source_id=source_id,
        type=EngagementType(engagement_type),
        angle=angle,
    )
