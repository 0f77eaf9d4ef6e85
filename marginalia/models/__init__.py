# =============================================================================
# Models Package — Domain Models and Pydantic V2 Schemas
# =============================================================================
#   - domain.py: papers, identity layers, workspaces, exchanges, events
#   - requests.py / responses.py: API envelopes around the domain models
#
# Everything serialises with camelCase keys on the wire.
# =============================================================================
