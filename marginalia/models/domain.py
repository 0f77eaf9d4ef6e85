# =============================================================================
# Domain Models — Papers, Identity Layers, Workspaces, Conversations
# =============================================================================
#
# The shared vocabulary of the service. These models travel through every
# layer: the API accepts them in request bodies, the agents read them to
# build prompts, and the persistence port stores their JSON form.
#
# WIRE FORMAT:
# Python attributes are snake_case; JSON is camelCase (`fullText`,
# `identityLayer`, `sourceId`) via an alias generator. Both spellings are
# accepted on input. Always dump with `by_alias=True, mode="json"` when the
# result leaves the process.
#
# LIFECYCLE:
#   Paper:      processing ──▶ ready  (identity layer attached)
#                          └─▶ error  (full text retained for retry)
#   Exchange:   append-only inside a ParagraphConversation
# =============================================================================

from __future__ import annotations

import enum
import uuid
from datetime import UTC, datetime
from typing import Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    computed_field,
    model_validator,
)
from pydantic.alias_generators import to_camel


def new_id() -> str:
    """Opaque unique identifier for papers, workspaces and exchanges."""
    return uuid.uuid4().hex


def utc_now() -> datetime:
    return datetime.now(UTC)


class CamelModel(BaseModel):
    """Base model serialised with camelCase keys."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    def to_wire(self) -> dict:
        """JSON-compatible dict with camelCase keys."""
        return self.model_dump(mode="json", by_alias=True)


# ---------------------------------------------------------------------------
# Identity Layer
# ---------------------------------------------------------------------------

# Section labels of the rendered identity text, in their fixed order.
IDENTITY_SECTIONS: tuple[str, ...] = (
    "CORE COMMITMENTS",
    "ANTAGONISTS",
    "CHARACTERISTIC MOVES",
    "KEY VOCABULARY",
    "TRIGGERS",
    "CHARACTERISTIC PASSAGES",
)


class IdentityLayer(CamelModel):
    """
    Structured summary of a text's argumentative stance and voice.

    Immutable once built. Re-extraction produces a new layer that replaces
    the old one wholesale. `raw` is derived from the structured fields on
    every access and is never read from input: a `raw` key in incoming
    JSON is ignored.
    """

    model_config = ConfigDict(frozen=True)

    core_commitments: str = ""
    antagonists: str = ""
    characteristic_moves: str = ""
    vocabulary: list[str] = Field(default_factory=list)  # salience order
    triggers: str = ""
    voice_samples: list[str] = Field(default_factory=list)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def raw(self) -> str:
        """The text embedded verbatim in every agent system prompt."""
        bodies = (
            self.core_commitments,
            self.antagonists,
            self.characteristic_moves,
            ", ".join(self.vocabulary),
            self.triggers,
            "\n".join(f'"{quote}"' for quote in self.voice_samples),
        )
        return "\n\n".join(
            f"{label}:\n{body}"
            for label, body in zip(IDENTITY_SECTIONS, bodies, strict=True)
        )


# ---------------------------------------------------------------------------
# Papers
# ---------------------------------------------------------------------------


class PaperStatus(str, enum.Enum):
    """
    Identity extraction state of a paper.

    State machine:
        PROCESSING → READY
                   → ERROR  (retryable while full_text is non-empty)
    """

    PROCESSING = "processing"
    READY = "ready"
    ERROR = "error"


PaperType = Literal["article", "book", "chapter", "other"]
BlockType = Literal["h1", "h2", "h3", "body"]


class StructuredParagraph(CamelModel):
    """One typed block of a paper, in document order."""

    type: BlockType = "body"
    content: str

    @property
    def is_heading(self) -> bool:
        return self.type != "body"


class Paper(CamelModel):
    """
    A loaded document. Serves either as the reading target or as a
    commentating agent, depending on its role in a workspace.
    """

    id: str = Field(default_factory=new_id)
    title: str
    author: str = "Unknown"
    type: PaperType = "other"
    full_text: str = ""
    paragraphs: list[StructuredParagraph] = Field(default_factory=list)
    identity_layer: IdentityLayer | None = None
    status: PaperStatus = PaperStatus.PROCESSING
    error_message: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def can_retry(self) -> bool:
        """Extraction can only be retried when source text was obtained."""
        return bool(self.full_text.strip())

    def touch(self) -> None:
        self.updated_at = utc_now()


# ---------------------------------------------------------------------------
# Workspaces
# ---------------------------------------------------------------------------


class Workspace(CamelModel):
    """
    A named grouping of papers. One member is the reading target (the
    active paper); every other member comments on it.

    Invariant: `active_paper_id`, when set, is an element of `paper_ids`.
    """

    id: str = Field(default_factory=new_id)
    name: str
    paper_ids: list[str] = Field(default_factory=list)
    active_paper_id: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @model_validator(mode="after")
    def _active_paper_is_member(self) -> Workspace:
        if self.active_paper_id is not None and self.active_paper_id not in self.paper_ids:
            raise ValueError(
                f"active paper '{self.active_paper_id}' is not in the workspace"
            )
        return self

    @property
    def commenting_paper_ids(self) -> list[str]:
        return [pid for pid in self.paper_ids if pid != self.active_paper_id]

    def add_paper(self, paper_id: str) -> None:
        if paper_id not in self.paper_ids:
            self.paper_ids.append(paper_id)
            self.updated_at = utc_now()

    def remove_paper(self, paper_id: str) -> None:
        """Remove a member; the active paper falls back to the first one left."""
        if paper_id not in self.paper_ids:
            return
        self.paper_ids = [pid for pid in self.paper_ids if pid != paper_id]
        if self.active_paper_id == paper_id:
            self.active_paper_id = self.paper_ids[0] if self.paper_ids else None
        self.updated_at = utc_now()

    def set_active_paper(self, paper_id: str | None) -> None:
        if paper_id is not None and paper_id not in self.paper_ids:
            raise ValueError(f"paper '{paper_id}' is not in the workspace")
        self.active_paper_id = paper_id
        self.updated_at = utc_now()


# ---------------------------------------------------------------------------
# Paragraph Conversations
# ---------------------------------------------------------------------------


class SourceResponse(CamelModel):
    """One paper's completed response inside an exchange."""

    paper_id: str
    content: str
    timestamp: datetime = Field(default_factory=utc_now)


class Exchange(CamelModel):
    """One user action (flag click or question) and the responses it produced."""

    id: str = Field(default_factory=new_id)
    timestamp: datetime = Field(default_factory=utc_now)
    question: str | None = None
    responses: list[SourceResponse] = Field(default_factory=list)

    def response_from(self, paper_id: str) -> SourceResponse | None:
        for response in self.responses:
            if response.paper_id == paper_id:
                return response
        return None


class ParagraphConversation(CamelModel):
    """Full audit trail of everything asked and answered about one paragraph."""

    paragraph_index: int
    paragraph_text: str = ""
    exchanges: list[Exchange] = Field(default_factory=list)


class HistoryEntry(CamelModel):
    """A prior (question, response) pair for one paper on one paragraph."""

    question: str | None = None
    response: str


# ---------------------------------------------------------------------------
# Engagements
# ---------------------------------------------------------------------------


class EngagementType(str, enum.Enum):
    """Closed taxonomy of how a paper relates to a passage."""

    AFFIRMS = "affirms"
    EXTENDS = "extends"
    CHALLENGES = "challenges"
    COMPLICATES = "complicates"
    EVIDENCE = "evidence"
    REFRAMES = "reframes"
    CONTEXTUALIZES = "contextualizes"


ENGAGEMENT_TYPES: frozenset[str] = frozenset(t.value for t in EngagementType)


class EngagementEntry(CamelModel):
    """The prefilter's verdict for one (paragraph, paper) pair."""

    source_id: str
    type: EngagementType
    angle: str


# ---------------------------------------------------------------------------
# Agent Events
# ---------------------------------------------------------------------------


class AgentEventType(str, enum.Enum):
    START = "start"
    CHUNK = "chunk"
    DONE = "done"
    ERROR = "error"


class AgentEvent(CamelModel):
    """
    One event on the orchestrator's multiplexed output, tagged by paper.

    `content` carries the text delta for CHUNK and the failure reason for
    ERROR; it is None otherwise.
    """

    type: AgentEventType
    source_id: str
    content: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.type in (AgentEventType.DONE, AgentEventType.ERROR)
