# =============================================================================
# Services Package — Collaborators Behind the Agents
# =============================================================================
#   - llm.py: multi-provider LLM abstraction (Anthropic, OpenAI-compatible)
#   - budget.py: word-count context budget for full-text inclusion
#   - store.py: key-value persistence port (in-memory, SQLAlchemy)
#   - papers.py: paper repository over the port
#   - conversations.py: append-only paragraph exchanges
#   - engagements.py: per-paragraph prefilter cache
#   - parser.py: PDF parsing with Docling, plain-text segmentation
# =============================================================================
