# =============================================================================
# Services Package — Search Engine
# =============================================================================
#   - llm.py:         AssistantBackend protocol + OpenAI Assistants backend
#   - assistant.py:   AssistantManager (lazy, validated, single-flight)
#   - vectorstore.py: VectorStoreResolver (topic name → store id)
#   - runs.py:        RunCoordinator (poll a run to completion)
#   - streaming.py:   StreamRelay (deltas, then the authoritative answer)
#   - citations.py:   CitationResolver (annotations → [n] + sources)
#   - authors.py:     AuthorLocalizer (author names → localized form)
#   - cache.py:       TTL cache + answer cache backends (memory, Redis)
#   - search.py:      RequestCoordinator (cache, coalesce, execute)
# =============================================================================
