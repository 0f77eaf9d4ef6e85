# =============================================================================
# API Request Models — Pydantic V2 Schemas
# =============================================================================
#
# Shapes of data coming INTO the API. JSON keys are camelCase
# (`candidatePapers`, `replyToContent`); snake_case is accepted too.
#
# DESIGN DECISION: Candidate and target papers travel in the request body.
# The client holds the papers it is reading with, so the agent endpoints
# stay usable without any server-side library. Papers stored through
# /papers can be fetched and passed back in the same shape.
#
# DESIGN DECISION: `passage` and the paper lists default to empty instead
# of being required. A missing passage or empty target set is a 400 with
# a clear message from the route, not a generic 422.
# =============================================================================

from __future__ import annotations

from typing import Literal

from pydantic import Field

from marginalia.models.domain import (
    CamelModel,
    HistoryEntry,
    Paper,
    PaperType,
    StructuredParagraph,
)


class ConversationRef(CamelModel):
    """
    Where a respond() call lives in the reader. When present, the call
    runs through the reading session: stored history is used and
    completed responses are persisted.
    """

    workspace_id: str = Field(..., min_length=1)
    active_paper_id: str = Field(..., min_length=1)
    paragraph_index: int = Field(..., ge=0)


class PrefilterRequest(CamelModel):
    """
    Request body for POST /agents/prefilter.

    With a `conversation` reference the result is cached per paragraph;
    `refresh` bypasses and overwrites that cache.

    Example:
        {
            "passage": "Algorithmic systems reduce bias by applying consistent criteria.",
            "candidatePapers": [{"id": "noble", "title": "Algorithms of Oppression", ...}]
        }
    """

    passage: str = ""
    candidate_papers: list[Paper] = Field(default_factory=list)
    conversation: ConversationRef | None = None
    refresh: bool = False


class RespondRequest(CamelModel):
    """
    Request body for POST /agents/respond.

    `paperIds` narrows `targetPapers` to a subset (e.g. one agent's retry);
    every listed id must be present in `targetPapers`.
    `conversationHistory` applies to every target and is ignored when a
    `conversation` reference supplies stored history instead.
    """

    passage: str = ""
    target_papers: list[Paper] = Field(default_factory=list)
    paper_ids: list[str] | None = None
    question: str | None = None
    reply_to_content: str | None = None
    conversation_history: list[HistoryEntry] | None = None
    mode: Literal["brief", "normal"] | None = None
    conversation: ConversationRef | None = None


class ExtractIdentityRequest(CamelModel):
    """Request body for POST /identity/extract."""

    text: str = ""
    title: str | None = None
    author: str | None = None


class CreateTextPaperRequest(CamelModel):
    """
    Request body for POST /papers/text. The text is split into paragraphs
    on blank lines and identity extraction starts in the background.
    """

    text: str = Field(..., min_length=1)
    title: str = "Untitled"
    author: str = "Unknown"
    type: PaperType = "other"


class ScanRequest(CamelModel):
    """
    Request body for POST /workspaces/{ws}/papers/{paper}/scan.

    `paragraphs` is the active paper's document in reading order; the
    index of each entry is its paragraph index.
    """

    paragraphs: list[StructuredParagraph] = Field(default_factory=list)
    candidate_papers: list[Paper] = Field(default_factory=list)


class RefreshParagraphRequest(CamelModel):
    """Request body for POST .../paragraphs/{idx}/refresh ("clear & refresh")."""

    passage: str = ""
    candidate_papers: list[Paper] = Field(default_factory=list)
