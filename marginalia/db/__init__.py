# =============================================================================
# Database Package
# =============================================================================
# Async SQLAlchemy engine and the single `kv_entries` table behind the SQL
# implementation of the persistence port (services/store.py).
# =============================================================================
