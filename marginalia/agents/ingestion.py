# =============================================================================
# Identity Ingestion Pipeline — LangGraph Graph + Background Tasks
# =============================================================================
#
# Turns a paper with text into a paper with an identity layer:
#
# GRAPH TOPOLOGY:
#   START ──▶ extract ──▶ finalize ──▶ END
#
#   extract   — one identity-extraction LLM call; failures are captured
#               in state as `error`, never raised
#   finalize  — re-reads the paper, then either attaches the identity
#               layer (status=ready, placeholder metadata corrected) or
#               marks it status=error. `full_text` is always kept so a
#               failed paper can be retried.
#
# DESIGN DECISION: Plain TypedDict state, graph compiled once at module
# level, collaborators (store, llm) carried in state. Not serialisable;
# safe because no checkpointer is configured.
#
# BACKGROUND EXECUTION:
# IdentityIngestor schedules the pipeline as one asyncio.Task per paper
# and keeps a handle to it until it finishes, so callers can `await wait(id)`
# deterministically instead of polling. Re-submitting a paper cancels the
# previous task; the new extraction replaces the identity layer wholesale.
# PDF uploads run the same pipeline from a Celery worker
# (workers/tasks.py).
# =============================================================================

from __future__ import annotations

import asyncio
import functools
import logging

from langgraph.graph import END, START, StateGraph
from typing_extensions import TypedDict

from marginalia.agents.identity import (
    ExtractedMetadata,
    IdentityExtraction,
    IdentityExtractionError,
    extract_identity,
)
from marginalia.models.domain import Paper, PaperStatus
from marginalia.services.llm import LLMError, LLMProvider
from marginalia.services.papers import PaperRepository
from marginalia.services.store import KeyValueStore

logger = logging.getLogger(__name__)

# Metadata values that count as "left unknown" and may be corrected.
_PLACEHOLDERS = {"", "unknown", "untitled"}

NO_TEXT_MESSAGE = "No text available to analyze"


# ---------------------------------------------------------------------------
# Pipeline State
# ---------------------------------------------------------------------------


class IngestionState(TypedDict, total=False):
    # --- Input ---
    paper: Paper
    store: KeyValueStore
    llm: LLMProvider

    # --- Set by extract ---
    extraction: IdentityExtraction | None
    error: str | None


# ---------------------------------------------------------------------------
# Node Functions
# ---------------------------------------------------------------------------


async def extract_node(state: IngestionState) -> dict:
    """Run identity extraction; capture any failure as `error`."""
    paper = state["paper"]
    if not paper.can_retry:
        return {"extraction": None, "error": NO_TEXT_MESSAGE}

    try:
        extraction = await extract_identity(
            state["llm"], paper.full_text, title=paper.title, author=paper.author,
        )
    except IdentityExtractionError as exc:
        return {"extraction": None, "error": f"Failed to parse identity layer: {exc}"}
    except LLMError as exc:
        return {"extraction": None, "error": f"Failed to extract identity: {exc}"}

    return {"extraction": extraction, "error": None}


async def finalize_node(state: IngestionState) -> dict:
    """Apply the extraction result to the stored paper."""
    repo = PaperRepository(state["store"])
    paper = await repo.get(state["paper"].id) or state["paper"]

    extraction = state.get("extraction")
    if extraction is None:
        paper.status = PaperStatus.ERROR
        paper.error_message = state.get("error") or "Identity extraction failed"
        logger.warning("Paper %s marked error: %s", paper.id, paper.error_message)
    else:
        paper.identity_layer = extraction.identity_layer
        paper.status = PaperStatus.READY
        paper.error_message = None
        _correct_metadata(paper, extraction.metadata)
        logger.info("Paper %s ready: '%s' by %s", paper.id, paper.title, paper.author)

    await repo.save(paper)
    return {"paper": paper}


# ---------------------------------------------------------------------------
# Graph Assembly
# ---------------------------------------------------------------------------

_builder = StateGraph(IngestionState)
_builder.add_node("extract", extract_node)
_builder.add_node("finalize", finalize_node)

_builder.add_edge(START, "extract")
_builder.add_edge("extract", "finalize")
_builder.add_edge("finalize", END)

graph = _builder.compile()


async def run_ingestion(
    paper: Paper,
    store: KeyValueStore,
    llm: LLMProvider,
) -> Paper:
    """
    Run extract → finalize for one paper and return the stored result.

    Extraction failures end in a paper with status=error; only store
    failures raise.
    """
    logger.info("Ingesting identity for paper %s ('%s')", paper.id, paper.title[:80])
    result = await graph.ainvoke({"paper": paper, "store": store, "llm": llm})
    return result["paper"]


# ---------------------------------------------------------------------------
# Background Scheduling
# ---------------------------------------------------------------------------


class IdentityIngestor:
    """
    Runs ingestion for papers as observable background tasks.

    Usage:
        ingestor.submit(paper_id)       # returns immediately
        paper = await ingestor.wait(paper_id)
    """

    def __init__(self, store: KeyValueStore, llm: LLMProvider) -> None:
        self._store = store
        self._llm = llm
        self._tasks: dict[str, asyncio.Task[Paper | None]] = {}

    async def _ingest(self, paper_id: str) -> Paper | None:
        repo = PaperRepository(self._store)
        paper = await repo.get(paper_id)
        if paper is None:
            logger.warning("Ingestion skipped: paper %s not found", paper_id)
            return None

        paper.status = PaperStatus.PROCESSING
        paper.error_message = None
        await repo.save(paper)
        return await run_ingestion(paper, self._store, self._llm)

    def submit(self, paper_id: str) -> asyncio.Task[Paper | None]:
        """Schedule (or restart) ingestion. Must be called inside a running loop."""
        previous = self._tasks.get(paper_id)
        if previous is not None and not previous.done():
            previous.cancel()

        task = asyncio.create_task(self._ingest(paper_id), name=f"ingest:{paper_id}")
        task.add_done_callback(_log_task_failure)
        task.add_done_callback(functools.partial(self._forget, paper_id))
        self._tasks[paper_id] = task
        return task

    def _forget(self, paper_id: str, task: asyncio.Task) -> None:
        # A superseded task must not drop its replacement.
        if self._tasks.get(paper_id) is task:
            del self._tasks[paper_id]

    def is_running(self, paper_id: str) -> bool:
        task = self._tasks.get(paper_id)
        return task is not None and not task.done()

    async def wait(self, paper_id: str) -> Paper | None:
        """
        Await the latest ingestion for a paper and return the stored paper.

        Follows re-submissions made while waiting. Task failures are
        logged by the task itself and not re-raised here.
        """
        task = self._tasks.get(paper_id)
        while task is not None:
            await asyncio.wait([task])
            latest = self._tasks.get(paper_id)
            task = None if latest is task else latest
        return await PaperRepository(self._store).get(paper_id)


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def is_placeholder(value: str | None) -> bool:
    return value is None or value.strip().lower() in _PLACEHOLDERS


def _correct_metadata(paper: Paper, metadata: ExtractedMetadata) -> None:
    """Fill title/author from the document when the user left them unknown."""
    if metadata.title and is_placeholder(paper.title):
        paper.title = metadata.title
    if metadata.author and is_placeholder(paper.author):
        paper.author = metadata.author


def _log_task_failure(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Ingestion task %s failed", task.get_name(), exc_info=exc)
