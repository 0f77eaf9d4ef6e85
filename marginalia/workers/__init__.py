# =============================================================================
# Workers Package — Celery Background Tasks
# =============================================================================
#   - celery_app.py: Celery application configuration
#   - tasks.py: PDF ingestion (parse with Docling → store text → extract
#     identity)
#
# PDF parsing is CPU-bound and slow; running it in the API process would
# stall every open agent stream.
# =============================================================================
