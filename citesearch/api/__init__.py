# =============================================================================
# API Package — FastAPI Route Handlers
# =============================================================================
#   - ask.py:    POST /ask and POST /ask/stream (Server-Sent Events)
#   - health.py: GET /health, GET /info, GET /config/author-translations
#   - deps.py:   engine and settings dependencies
# =============================================================================
