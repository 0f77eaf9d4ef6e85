# =============================================================================
# Marginalia — Papers That Talk Back
# =============================================================================
# A reading service where every loaded paper becomes an agent. While the
# reader works through one paper, the others comment on the selected
# paragraph, each in its own voice, streamed side by side.
#
# Package structure:
#   marginalia/
#   ├── api/          → FastAPI routers (agents, identity, papers, conversations)
#   ├── agents/       → Prefilter, prompt assembly, concurrent orchestration,
#   │                    identity extraction (LangGraph), reading session
#   ├── db/           → Async SQLAlchemy engine and the key-value table
#   ├── models/       → Domain models and Pydantic V2 request/response schemas
#   ├── services/     → LLM providers, persistence port, context budget,
#   │                    conversation store, PDF parsing
#   └── workers/      → Celery tasks for PDF ingestion
# =============================================================================
