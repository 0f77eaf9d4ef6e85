# =============================================================================
# Papers API — Upload, Status and Retry
# =============================================================================
#
# ENDPOINTS:
#   POST /papers              — upload a PDF; parsed + extracted in Celery
#   POST /papers/text         — submit plain text; extracted in-process
#   GET  /papers/{id}         — poll a paper (status: processing/ready/error)
#   POST /papers/{id}/retry   — re-run identity extraction on kept text
#
# DESIGN DECISION: 202 Accepted for creation and retry. The paper exists
# immediately with status=processing; its identity layer arrives later.
# Clients poll GET /papers/{id}.
#
# Retry is refused with 409 when no source text was ever obtained (for
# example, a PDF Docling could not read): re-running extraction on an
# empty text cannot succeed.
# =============================================================================

from __future__ import annotations

import logging
from pathlib import Path

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile

from marginalia.agents.ingestion import IdentityIngestor
from marginalia.api.deps import get_ingestor, get_kv_store
from marginalia.config import settings
from marginalia.models.domain import Paper, PaperStatus, PaperType
from marginalia.models.requests import CreateTextPaperRequest
from marginalia.services.papers import PaperRepository
from marginalia.services.parser import segment_into_paragraphs
from marginalia.services.store import KeyValueStore
from marginalia.workers.tasks import ingest_paper

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/papers", tags=["Papers"])


# ---------------------------------------------------------------------------
# POST /papers — Upload a PDF
# ---------------------------------------------------------------------------


@router.post(
    "",
    response_model=Paper,
    status_code=202,
    summary="Upload a PDF paper for parsing and identity extraction",
)
async def upload_paper_endpoint(
    file: UploadFile = File(..., description="PDF file of the paper"),
    title: str | None = Form(default=None),
    author: str | None = Form(default=None),
    type: PaperType = Form(default="other"),
    store: KeyValueStore = Depends(get_kv_store),
) -> Paper:
    if not file.filename or not file.filename.lower().endswith(".pdf"):
        raise HTTPException(
            status_code=400,
            detail="Only PDF files are accepted. Please upload a .pdf file.",
        )

    content = await file.read()
    if not content:
        raise HTTPException(status_code=400, detail="Uploaded file is empty.")

    paper = Paper(
        title=title or "Untitled",
        author=author or "Unknown",
        type=type,
    )
    await PaperRepository(store).save(paper)

    # Prefix with the paper id to avoid filename collisions.
    upload_dir = Path(settings.upload_dir)
    upload_dir.mkdir(parents=True, exist_ok=True)
    file_path = upload_dir / f"{paper.id}_{Path(file.filename).name}"
    file_path.write_bytes(content)

    task = ingest_paper.delay(paper_id=paper.id, file_path=str(file_path))
    logger.info(
        "Saved upload %s (%d bytes) as paper %s, task_id=%s",
        file.filename, len(content), paper.id, task.id,
    )
    return paper


# ---------------------------------------------------------------------------
# POST /papers/text — Submit plain text
# ---------------------------------------------------------------------------


@router.post(
    "/text",
    response_model=Paper,
    status_code=202,
    summary="Submit a paper as plain text",
)
async def create_text_paper_endpoint(
    request: CreateTextPaperRequest,
    store: KeyValueStore = Depends(get_kv_store),
    ingestor: IdentityIngestor = Depends(get_ingestor),
) -> Paper:
    if not request.text.strip():
        raise HTTPException(status_code=400, detail="No text provided")

    paper = Paper(
        title=request.title,
        author=request.author,
        type=request.type,
        full_text=request.text.strip(),
        paragraphs=segment_into_paragraphs(request.text),
    )
    await PaperRepository(store).save(paper)
    ingestor.submit(paper.id)

    logger.info("Created text paper %s (%d chars)", paper.id, len(paper.full_text))
    return paper


# ---------------------------------------------------------------------------
# GET /papers/{paper_id}
# ---------------------------------------------------------------------------


@router.get("/{paper_id}", response_model=Paper, summary="Get a paper and its status")
async def get_paper_endpoint(
    paper_id: str,
    store: KeyValueStore = Depends(get_kv_store),
) -> Paper:
    paper = await PaperRepository(store).get(paper_id)
    if paper is None:
        raise HTTPException(status_code=404, detail=f"Paper '{paper_id}' not found")
    return paper


# ---------------------------------------------------------------------------
# POST /papers/{paper_id}/retry
# ---------------------------------------------------------------------------


@router.post(
    "/{paper_id}/retry",
    response_model=Paper,
    status_code=202,
    summary="Re-run identity extraction on a paper's retained text",
)
async def retry_paper_endpoint(
    paper_id: str,
    store: KeyValueStore = Depends(get_kv_store),
    ingestor: IdentityIngestor = Depends(get_ingestor),
) -> Paper:
    repo = PaperRepository(store)
    paper = await repo.get(paper_id)
    if paper is None:
        raise HTTPException(status_code=404, detail=f"Paper '{paper_id}' not found")
    if not paper.can_retry:
        raise HTTPException(
            status_code=409,
            detail="Paper has no source text to analyze; upload it again.",
        )

    paper.status = PaperStatus.PROCESSING
    paper.error_message = None
    await repo.save(paper)
    ingestor.submit(paper.id)

    logger.info("Retrying identity extraction for paper %s", paper.id)
    return paper
