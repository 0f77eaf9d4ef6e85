# =============================================================================
# Conversations API — Stored Paragraph Exchanges and Document Scans
# =============================================================================
#
# ENDPOINTS (scoped to one workspace + active paper):
#   GET    /workspaces/{ws}/papers/{paper}/conversations
#          → every paragraph conversation + engagements (reload state)
#   POST   .../scan                            → prefilter every body
#          paragraph not yet cached (the document heatmap)
#   GET    .../paragraphs/{idx}/conversation   → one paragraph's exchanges
#   DELETE .../paragraphs/{idx}/conversation   → clear it and its cached
#          engagements
#   POST   .../paragraphs/{idx}/refresh        → "clear & refresh": clear,
#          then recompute the paragraph's engagements
#
# Exchanges are written by POST /agents/respond with a `conversation`
# reference; these endpoints read, clear and (re)compute engagements.
# =============================================================================

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Path, Response

from marginalia.agents.session import ReadingSession
from marginalia.api.deps import get_kv_store, get_prefilter_llm
from marginalia.models.domain import ParagraphConversation
from marginalia.models.requests import RefreshParagraphRequest, ScanRequest
from marginalia.models.responses import (
    ConversationsResponse,
    PrefilterResponse,
    ScanResponse,
)
from marginalia.services.llm import LLMError, LLMProvider
from marginalia.services.store import KeyValueStore

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/workspaces/{workspace_id}/papers/{paper_id}",
    tags=["Conversations"],
)


@router.get(
    "/conversations",
    response_model=ConversationsResponse,
    summary="All stored paragraph conversations for the active paper",
)
async def list_conversations_endpoint(
    workspace_id: str,
    paper_id: str,
    store: KeyValueStore = Depends(get_kv_store),
) -> ConversationsResponse:
    state = await ReadingSession(store, workspace_id, paper_id).restore()
    return ConversationsResponse(
        conversations=state.conversations,
        engagements=state.engagements,
    )


@router.post(
    "/scan",
    response_model=ScanResponse,
    summary="Prefilter every body paragraph of the active paper",
)
async def scan_endpoint(
    workspace_id: str,
    paper_id: str,
    request: ScanRequest,
    llm: LLMProvider = Depends(get_prefilter_llm),
    store: KeyValueStore = Depends(get_kv_store),
) -> ScanResponse:
    """
    Runs the prefilter over uncached body paragraphs in small concurrent
    batches. A paragraph whose prefilter call fails is left out of the
    result and retried by the next scan.
    """
    if not request.paragraphs:
        raise HTTPException(status_code=400, detail="Missing paragraphs")

    session = ReadingSession(store, workspace_id, paper_id, llm)
    engagements = await session.scan(request.paragraphs, request.candidate_papers)
    return ScanResponse(engagements=engagements)


@router.get(
    "/paragraphs/{paragraph_index}/conversation",
    response_model=ParagraphConversation,
    summary="One paragraph's exchanges",
)
async def get_conversation_endpoint(
    workspace_id: str,
    paper_id: str,
    paragraph_index: int = Path(..., ge=0),
    store: KeyValueStore = Depends(get_kv_store),
) -> ParagraphConversation:
    session = ReadingSession(store, workspace_id, paper_id)
    conversation = await session.conversations.get(paragraph_index)
    if conversation is None:
        raise HTTPException(
            status_code=404,
            detail=f"No conversation for paragraph {paragraph_index}",
        )
    return conversation


@router.delete(
    "/paragraphs/{paragraph_index}/conversation",
    status_code=204,
    summary="Clear a paragraph's conversation and cached engagements",
)
async def clear_conversation_endpoint(
    workspace_id: str,
    paper_id: str,
    paragraph_index: int = Path(..., ge=0),
    store: KeyValueStore = Depends(get_kv_store),
) -> Response:
    await ReadingSession(store, workspace_id, paper_id).clear(paragraph_index)
    logger.info(
        "Cleared paragraph %d (workspace=%s, paper=%s)",
        paragraph_index, workspace_id, paper_id,
    )
    return Response(status_code=204)


@router.post(
    "/paragraphs/{paragraph_index}/refresh",
    response_model=PrefilterResponse,
    summary="Clear a paragraph and recompute its engagements",
)
async def refresh_paragraph_endpoint(
    workspace_id: str,
    paper_id: str,
    request: RefreshParagraphRequest,
    paragraph_index: int = Path(..., ge=0),
    llm: LLMProvider = Depends(get_prefilter_llm),
    store: KeyValueStore = Depends(get_kv_store),
) -> PrefilterResponse:
    if not request.passage.strip():
        raise HTTPException(status_code=400, detail="Missing passage")

    session = ReadingSession(store, workspace_id, paper_id, llm)
    try:
        entries = await session.clear_and_refresh(
            paragraph_index, request.passage, request.candidate_papers,
        )
    except LLMError as exc:
        logger.exception("Refresh failed for paragraph %d: %s", paragraph_index, exc)
        raise HTTPException(status_code=500, detail="Failed to prefilter papers") from exc

    return PrefilterResponse(engagements=entries)
