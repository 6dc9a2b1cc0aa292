# =============================================================================
# Citation Search Engine
# =============================================================================
# Answers questions from a document corpus hosted in OpenAI vector stores,
# through the Assistants API, and returns each answer with numbered
# source citations and localized author names.
#
# Package structure:
#   citesearch/
#   ├── api/          → FastAPI route handlers (ask, ask/stream, health)
#   ├── models/       → Pydantic V2 request/response schemas
#   ├── services/     → Engine: assistant lifecycle, store resolution,
#   │                    run polling, streaming, citations, localization,
#   │                    caching and request coalescing
#   ├── config.py     → Pydantic Settings
#   ├── errors.py     → Error taxonomy and friendly messages
#   └── main.py       → FastAPI app and lifespan
# =============================================================================
