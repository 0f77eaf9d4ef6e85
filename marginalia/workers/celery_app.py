# =============================================================================
# Celery Application Configuration
# =============================================================================
#
# Celery runs PDF ingestion outside the API process:
#   PDF Upload → Parse (Docling) → Store text + paragraphs → Extract identity
#
# ARCHITECTURE:
# ┌──────────┐     ┌───────┐     ┌──────────────┐     ┌───────┐
# │ FastAPI  │────▶│ Redis │────▶│ Celery Worker│────▶│ Redis │
# │(producer)│     │(broker)│    │  (consumer)  │     │(result)│
# └──────────┘     └───────┘     └──────────────┘     └───────┘
#    db 0 ──────────┘                                    └── db 1
#
# The worker writes results through the SQL store, so the API must run
# with STORE_BACKEND=sql for uploaded papers to become visible.
# =============================================================================

from celery import Celery

from marginalia.config import settings

celery_app = Celery(
    "marginalia.workers",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

celery_app.conf.update(
    # JSON only; pickle can execute arbitrary code on deserialization.
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",

    # Re-queue a task if the worker dies mid-parse.
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    # Parsing is long and CPU-bound; one task per worker slot at a time.
    worker_prefetch_multiplier=1,

    # Docling on a long book plus one extraction call.
    task_soft_time_limit=300,
    task_time_limit=600,

    result_expires=3600,

    include=["marginalia.workers.tasks"],
)
