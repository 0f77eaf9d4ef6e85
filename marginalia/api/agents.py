# =============================================================================
# Agents API — Relevance Prefilter and Streamed Agent Responses
# =============================================================================
#
# ENDPOINTS:
#   POST /agents/prefilter — which papers engage with a passage, and how
#   POST /agents/respond   — server-sent events from every target agent
#
# SSE WIRE FORMAT (one JSON object per `data:` line):
#   data: {"type": "start", "sourceId": "p1"}
#   data: {"type": "chunk", "sourceId": "p1", "content": "This text..."}
#   data: {"type": "done",  "sourceId": "p1"}
#   data: {"type": "error", "sourceId": "p2", "content": "Failed to generate response"}
#   data: {"type": "complete"}
#
# ERRORS (before the stream starts):
#   400 — missing passage or empty target set
#   404 — a `paperIds` entry is not among `targetPapers`
#   500 — prefilter LLM call failed
#   503 — no LLM credential configured
# Once streaming has begun, failures are per-agent `error` events.
#
# DESIGN DECISION: Endpoints stay thin. Validation and HTTP mapping live
# here; fan-out, prompting and persistence live in the agents package.
# =============================================================================

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse

from marginalia.agents.orchestrator import InvalidRequestError, RespondOptions, respond
from marginalia.agents.prefilter import prefilter
from marginalia.agents.session import ReadingSession
from marginalia.api.deps import get_kv_store, get_llm, get_prefilter_llm
from marginalia.models.domain import AgentEvent, Paper
from marginalia.models.requests import PrefilterRequest, RespondRequest
from marginalia.models.responses import PrefilterResponse
from marginalia.services.llm import LLMError, LLMProvider
from marginalia.services.store import KeyValueStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/agents", tags=["Agents"])

_SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}


# ---------------------------------------------------------------------------
# POST /agents/prefilter
# ---------------------------------------------------------------------------


@router.post(
    "/prefilter",
    response_model=PrefilterResponse,
    summary="Select which papers engage with a passage",
)
async def prefilter_endpoint(
    request: PrefilterRequest,
    llm: LLMProvider = Depends(get_prefilter_llm),
    store: KeyValueStore = Depends(get_kv_store),
) -> PrefilterResponse:
    """
    One fast LLM call over compact summaries of every candidate.

    A malformed model response is an empty result, not an error.
    """
    if not request.passage.strip() or not request.candidate_papers:
        raise HTTPException(status_code=400, detail="Missing passage or candidate papers")

    try:
        if request.conversation is not None:
            ref = request.conversation
            session = ReadingSession(store, ref.workspace_id, ref.active_paper_id, llm)
            entries = await session.engagements(
                ref.paragraph_index,
                request.passage,
                request.candidate_papers,
                refresh=request.refresh,
            )
        else:
            entries = await prefilter(llm, request.passage, request.candidate_papers)
    except LLMError as exc:
        logger.exception("Prefilter failed: %s", exc)
        raise HTTPException(status_code=500, detail="Failed to prefilter papers") from exc

    return PrefilterResponse(engagements=entries)


# ---------------------------------------------------------------------------
# POST /agents/respond
# ---------------------------------------------------------------------------


@router.post(
    "/respond",
    summary="Stream in-character commentary from every target paper",
    response_class=StreamingResponse,
)
async def respond_endpoint(
    request: RespondRequest,
    llm: LLMProvider = Depends(get_llm),
    store: KeyValueStore = Depends(get_kv_store),
) -> StreamingResponse:
    """
    Fan out one agent per target paper and stream their events as SSE.

    With a `conversation` reference the call opens a new exchange on that
    paragraph, uses its stored history, and persists each completed
    response.
    """
    if not request.passage.strip() or not request.target_papers:
        raise HTTPException(status_code=400, detail="Missing passage or target papers")

    targets = _select_targets(request.target_papers, request.paper_ids)

    logger.info(
        "Respond request: %d targets, question=%s, reply=%s, conversation=%s",
        len(targets),
        (request.question or "(none)")[:80],
        "yes" if request.reply_to_content else "no",
        "yes" if request.conversation else "no",
    )

    try:
        if request.conversation is not None:
            ref = request.conversation
            session = ReadingSession(store, ref.workspace_id, ref.active_paper_id, llm)
            events = await session.discuss(
                ref.paragraph_index,
                request.passage,
                targets,
                question=request.question,
                reply_to_content=request.reply_to_content,
                mode=request.mode,
            )
        else:
            history = request.conversation_history or []
            events = respond(
                llm,
                request.passage,
                targets,
                RespondOptions(
                    question=request.question,
                    reply_to_content=request.reply_to_content,
                    history={paper.id: history for paper in targets} if history else {},
                    mode=request.mode,
                ),
            )
    except InvalidRequestError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    return StreamingResponse(
        _sse(events),
        media_type="text/event-stream",
        headers=_SSE_HEADERS,
    )


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _select_targets(papers: list[Paper], paper_ids: list[str] | None) -> list[Paper]:
    """Narrow targets to `paper_ids`; 404 when any id is absent."""
    if paper_ids is None:
        return papers

    by_id = {paper.id: paper for paper in papers}
    missing = [pid for pid in paper_ids if pid not in by_id]
    if missing:
        raise HTTPException(
            status_code=404,
            detail=f"Paper not found: {', '.join(missing)}",
        )
    if not paper_ids:
        raise HTTPException(status_code=400, detail="Missing passage or target papers")
    return [by_id[pid] for pid in dict.fromkeys(paper_ids)]


def _sse_line(payload: dict) -> str:
    return f"data: {json.dumps(payload)}\n\n"


async def _sse(events: AsyncIterator[AgentEvent]) -> AsyncIterator[str]:
    async for event in events:
        yield _sse_line(event.model_dump(mode="json", by_alias=True, exclude_none=True))
    yield _sse_line({"type": "complete"})
