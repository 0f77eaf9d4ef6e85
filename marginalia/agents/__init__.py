# =============================================================================
# Agents Package — Multi-Agent Commentary
# =============================================================================
#   - identity.py: paper text → identity layer (one LLM call, strict parse)
#   - prompts.py: system + user prompt assembly for one agent call
#   - prefilter.py: which papers engage with a passage, and how
#   - orchestrator.py: concurrent fan-out, multiplexed event stream
#   - ingestion.py: LangGraph extract → finalize pipeline + background tasks
#   - session.py: prefilter cache, exchanges and persistence for one reader
# =============================================================================
