# =============================================================================
# Models Package — Pydantic V2 Schemas
# =============================================================================
#   - requests.py:  API request bodies
#   - responses.py: SearchResult (engine output + cache payload) and API
#                   response wrappers
# =============================================================================
