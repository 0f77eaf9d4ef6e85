# =============================================================================
# API Response Models — Pydantic V2 Schemas
# =============================================================================
#
# Shapes of data going OUT of the API. Domain models (Paper,
# ParagraphConversation, EngagementEntry) are returned as-is; these wrap
# them where an endpoint needs an envelope.
# =============================================================================

from __future__ import annotations

from pydantic import BaseModel, Field

from marginalia.models.domain import (
    CamelModel,
    EngagementEntry,
    IdentityLayer,
    ParagraphConversation,
)


class HealthResponse(BaseModel):
    """Response for GET /health — confirms the API is running."""

    status: str = "ok"
    version: str
    service: str
    store: str


class PrefilterResponse(CamelModel):
    engagements: list[EngagementEntry] = Field(default_factory=list)


class MetadataResponse(CamelModel):
    """Document metadata read off the text. Null when not found."""

    title: str | None = None
    author: str | None = None
    year: str | None = None


class ExtractIdentityResponse(CamelModel):
    identity_layer: IdentityLayer
    metadata: MetadataResponse


class ConversationsResponse(CamelModel):
    """
    Response for GET /workspaces/{ws}/papers/{paper}/conversations.

    `engagements` is keyed by paragraph index and includes papers that
    responded without being flagged by the prefilter.
    """

    conversations: list[ParagraphConversation] = Field(default_factory=list)
    engagements: dict[int, list[EngagementEntry]] = Field(default_factory=dict)


class ScanResponse(CamelModel):
    """Cached engagements for every scanned paragraph, keyed by index."""

    engagements: dict[int, list[EngagementEntry]] = Field(default_factory=dict)
