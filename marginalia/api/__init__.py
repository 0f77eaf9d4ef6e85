# =============================================================================
# API Package — FastAPI Route Handlers
# =============================================================================
# Each module defines a FastAPI APIRouter for a specific feature:
#   - agents.py: relevance prefilter + SSE stream of agent responses
#   - identity.py: one-shot identity extraction
#   - papers.py: PDF / text upload, status polling, extraction retry
#   - conversations.py: stored paragraph exchanges (read + clear)
#   - deps.py: injectable collaborators (LLM providers, store, ingestor)
# =============================================================================
