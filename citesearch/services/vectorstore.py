# =============================================================================
# Vector Store Resolution — Topic Name → Retrieval Store
# =============================================================================
#
# Topics (e.g. "Bible-Genesis", "Song of Solomon") are served by separate
# retrieval stores on the assistant service. The resolver maps a
# human-entered topic name to a store id by scanning the store listing.
#
# MATCH ORDER (first hit wins):
#   1. exact        — case-insensitive, surrounding whitespace ignored
#   2. normalized   — only [a-z0-9] kept: "Bible - Genesis" == "biblegenesis"
#   3. synonym      — normalized, with near-duplicate topic names folded
#                     ("songofsolomon" → "songofsongs")
#   4. substring    — normalized containment in either direction
#
# Rules 1-3 are checked page by page and stop the listing early. A
# substring candidate is only used once the listing is exhausted.
#
# Resolved refs are cached under the normalized topic for
# vector_store_cache_ttl_seconds. Entries are replaced, never mutated.
# Stores with zero files are returned but not cached, so content added
# later is picked up on the next lookup.
# =============================================================================

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass

from citesearch.errors import ResolutionError
from citesearch.services.cache import TTLCache
from citesearch.services.llm import AssistantBackend, VectorStoreInfo

logger = logging.getLogger(__name__)

_NON_ALNUM = re.compile(r"[^a-z0-9]")

# Folded onto the canonical spelling after normalization.
SYNONYMS: dict[str, str] = {
    "songofsolomon": "songofsongs",
    "canticleofcanticles": "songofsongs",
    "canticles": "songofsongs",
    "psalm": "psalms",
    "revelations": "revelation",
    "apocalypse": "revelation",
    "qoheleth": "ecclesiastes",
    "proverb": "proverbs",
}

_PAGE_SIZE = 100


@dataclass(frozen=True)
class VectorStoreRef:
    logical_name: str
    resolved_id: str
    file_count: int
    store_name: str = ""
    matched_by: str = "exact"

    @property
    def is_empty(self) -> bool:
        return self.file_count <= 0


def normalize_name(name: str) -> str:
    return _NON_ALNUM.sub("", (name or "").lower())


# Canonical spellings map to themselves so "psalms" is not re-folded by the
# shorter "psalm". Longest alternative first.
_FOLD_TABLE = {**{c: c for c in SYNONYMS.values()}, **SYNONYMS}
_FOLD = re.compile("|".join(sorted(_FOLD_TABLE, key=len, reverse=True)))


def fold_synonyms(normalized: str) -> str:
    return _FOLD.sub(lambda m: _FOLD_TABLE[m.group(0)], normalized)


def _match_strict(logical: str, stores: list[VectorStoreInfo]) -> tuple[VectorStoreInfo, str] | None:
    exact = logical.strip().lower()
    for store in stores:
        if store.name.strip().lower() == exact:
            return store, "exact"

    normalized = normalize_name(logical)
    if not normalized:
        return None
    for store in stores:
        if normalize_name(store.name) == normalized:
            return store, "normalized"

    folded = fold_synonyms(normalized)
    for store in stores:
        if fold_synonyms(normalize_name(store.name)) == folded:
            return store, "synonym"
    return None


def _match_substring(logical: str, stores: list[VectorStoreInfo]) -> VectorStoreInfo | None:
    folded = fold_synonyms(normalize_name(logical))
    if not folded:
        return None
    for store in stores:
        candidate = fold_synonyms(normalize_name(store.name))
        if candidate and (folded in candidate or candidate in folded):
            return store
    return None


class VectorStoreResolver:
    """Resolves topic names to retrieval stores, with a TTL cache."""

    def __init__(
        self,
        backend: AssistantBackend,
        ttl_seconds: float = 6 * 60 * 60,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._backend = backend
        self._cache: TTLCache[VectorStoreRef] = TTLCache(ttl_seconds, clock=clock)

    async def resolve(self, logical_name: str) -> VectorStoreRef | None:
        """Return the matching store, or None when nothing matches."""
        key = normalize_name(logical_name)
        if not key:
            return None

        cached = self._cache.get(key)
        if cached is not None:
            logger.debug("Vector store cache hit: %s → %s", logical_name, cached.resolved_id)
            return cached

        ref = await self._search(logical_name)
        if ref is None:
            logger.info("No vector store matches topic '%s'", logical_name)
            return None

        logger.info(
            "Resolved topic '%s' → %s ('%s', %d files, by %s)",
            logical_name, ref.resolved_id, ref.store_name,
            ref.file_count, ref.matched_by,
        )
        if not ref.is_empty:
            self._cache.set(key, ref)
        return ref

    async def require(self, logical_name: str) -> VectorStoreRef:
        """Like resolve(), but raise ResolutionError for missing or empty topics."""
        ref = await self.resolve(logical_name)
        if ref is None:
            raise ResolutionError(logical_name, reason="not_found")
        if ref.is_empty:
            raise ResolutionError(logical_name, reason="empty")
        return ref

    def invalidate(self, logical_name: str) -> None:
        self._cache.delete(normalize_name(logical_name))

    async def _search(self, logical_name: str) -> VectorStoreRef | None:
        after: str | None = None
        fallback: VectorStoreInfo | None = None
        pages = 0

        while True:
            page = await self._backend.list_vector_stores(after=after, limit=_PAGE_SIZE)
            pages += 1

            strict = _match_strict(logical_name, page.stores)
            if strict is not None:
                store, rule = strict
                return self._ref(logical_name, store, rule)

            if fallback is None:
                fallback = _match_substring(logical_name, page.stores)

            if not page.has_more or not page.last_id:
                break
            after = page.last_id

        logger.debug("Scanned %d vector store page(s) for '%s'", pages, logical_name)
        if fallback is not None:
            return self._ref(logical_name, fallback, "substring")
        return None

    @staticmethod
    def _ref(logical_name: str, store: VectorStoreInfo, rule: str) -> VectorStoreRef:
        return VectorStoreRef(
            logical_name=logical_name,
            resolved_id=store.id,
            file_count=store.file_count,
            store_name=store.name,
            matched_by=rule,
        )
