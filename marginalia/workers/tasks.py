# =============================================================================
# Celery Task Definitions — PDF Paper Ingestion
# =============================================================================
#
# INGESTION PIPELINE (ingest_paper):
#   1. Parse the PDF with Docling → full text, title, typed paragraphs
#   2. Store text + paragraphs on the paper (title filled if left unknown)
#   3. Run the identity pipeline (agents/ingestion.py) → ready | error
#
# If Docling cannot read the file, or reads no text, the paper is marked
# `error` with EMPTY text. Retry stays disabled for it: there is nothing
# to re-analyze until the file is uploaded again.
#
# IMPORTANT: Celery workers are SYNCHRONOUS.
# Parsing runs synchronously; the store and LLM work is async and runs
# under asyncio.run() with its own SQLAlchemy engine, disposed before the
# task returns. The API's engine is bound to the API's event loop and
# cannot be shared.
#
# No automatic retries: parse failures are deterministic, and LLM
# failures are recorded on the paper where the user can retry them.
# =============================================================================

from __future__ import annotations

import asyncio
import logging

from marginalia.agents.ingestion import is_placeholder, run_ingestion
from marginalia.config import settings
from marginalia.db.engine import create_engine_for, make_session_factory
from marginalia.models.domain import Paper, PaperStatus
from marginalia.services.llm import LLMProvider, create_provider
from marginalia.services.papers import PaperRepository
from marginalia.services.parser import ParsedDocument, parse_pdf
from marginalia.services.store import KeyValueStore, SqlKeyValueStore
from marginalia.workers.celery_app import celery_app

logger = logging.getLogger(__name__)

NO_PDF_TEXT_MESSAGE = "No text could be extracted from the PDF"


# ---------------------------------------------------------------------------
# Async Core
# ---------------------------------------------------------------------------


async def ingest_parsed_document(
    store: KeyValueStore,
    paper_id: str,
    parsed: ParsedDocument | None,
    llm: LLMProvider | None,
    parse_error: str | None = None,
) -> Paper | None:
    """
    Store a parsed document on its paper and extract its identity.

    Args:
        store: Persistence port holding the paper.
        paper_id: The paper created at upload time.
        parsed: Parser output, or None when parsing failed.
        llm: Provider for extraction, or None when none is configured.
        parse_error: Why parsing failed, recorded on the paper.

    Returns:
        The final stored paper, or None if it no longer exists.
    """
    repo = PaperRepository(store)
    paper = await repo.get(paper_id)
    if paper is None:
        logger.warning("Paper %s vanished before ingestion", paper_id)
        return None

    if parsed is None or not parsed.text.strip():
        paper.full_text = ""
        paper.paragraphs = []
        paper.status = PaperStatus.ERROR
        paper.error_message = parse_error or NO_PDF_TEXT_MESSAGE
        await repo.save(paper)
        logger.warning("Paper %s has no text: %s", paper_id, paper.error_message)
        return paper

    paper.full_text = parsed.text
    paper.paragraphs = parsed.paragraphs
    if parsed.title and is_placeholder(paper.title):
        paper.title = parsed.title
    await repo.save(paper)

    if llm is None:
        paper.status = PaperStatus.ERROR
        paper.error_message = "No LLM provider configured"
        await repo.save(paper)
        return paper

    return await run_ingestion(paper, store, llm)


async def _ingest_with_sql_store(
    paper_id: str,
    parsed: ParsedDocument | None,
    parse_error: str | None,
) -> Paper | None:
    try:
        llm: LLMProvider | None = create_provider()
    except ValueError as exc:
        logger.error("Configuration error: %s", exc)
        llm = None

    engine = create_engine_for(settings.database_url)
    try:
        store = SqlKeyValueStore(make_session_factory(engine))
        return await ingest_parsed_document(store, paper_id, parsed, llm, parse_error)
    finally:
        await engine.dispose()


# ---------------------------------------------------------------------------
# Ingestion Task
# ---------------------------------------------------------------------------


@celery_app.task(bind=True, name="ingest_paper")
def ingest_paper(self, paper_id: str, file_path: str) -> dict:
    """
    Parse an uploaded PDF and extract the paper's identity.

    Args:
        self: Celery task instance (bound task, provides self.request.id).
        paper_id: Id of the paper created at upload time.
        file_path: Path to the uploaded PDF on disk.

    Returns:
        dict summarising the outcome (status, paragraph count, error).
    """
    task_id = self.request.id
    logger.info("[%s] Ingesting paper %s from %s", task_id, paper_id, file_path)

    parsed: ParsedDocument | None = None
    parse_error: str | None = None
    try:
        parsed = parse_pdf(file_path)
    except Exception as exc:
        logger.exception("[%s] PDF parsing failed for paper %s", task_id, paper_id)
        parse_error = f"Could not read PDF: {exc}"[:1000]

    paper = asyncio.run(_ingest_with_sql_store(paper_id, parsed, parse_error))

    summary = {
        "paper_id": paper_id,
        "status": paper.status.value if paper else "missing",
        "paragraph_count": len(paper.paragraphs) if paper else 0,
        "error_message": paper.error_message if paper else None,
    }
    logger.info("[%s] Ingestion finished: %s", task_id, summary)
    return summary
