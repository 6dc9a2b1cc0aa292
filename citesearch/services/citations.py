# =============================================================================
# Citation Resolution — Annotations → Numbered Sources
# =============================================================================
#
# Turns a finished assistant message (raw text + file_citation annotations)
# into display text with [n] markers and an ordered, de-duplicated source
# list.
#
# FLOW:
#   1. Locate every annotation span in the text
#   2. Resolve each unique file id to a display name (concurrently, once)
#   3. Number sources 1..n by first appearance in the text
#   4. Append [n] after each annotated span
#   5. normalize_text(): strip 【…】/† markup, collapse repeated markers,
#      tidy whitespace, break numbered lists into paragraphs
#   6. Localize author names in the text
#   7. Only when no annotation resolved to a real file name: scan the raw
#      text for "Author (years)" patterns and merge any sources not
#      already covered
#
# Any failure in this module degrades to the normalized, unannotated text
# with no sources. A citation problem never fails a request.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import re
from collections import defaultdict
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass, field

from citesearch.errors import template
from citesearch.models.responses import SourceItem
from citesearch.services.authors import AuthorLocalizer
from citesearch.services.llm import Annotation

logger = logging.getLogger(__name__)

NameLookup = Callable[[str], Awaitable[str]]

_FILE_EXTENSION = re.compile(r"\.(txt|pdf|docx?|rtf|md)$", re.IGNORECASE)


@dataclass
class ResolvedAnswer:
    text: str
    sources: list[SourceItem] = field(default_factory=list)

    def display_text(self, language: str | None) -> str:
        """The answer text, or the "no relevant information" template if blank."""
        return self.text if self.text.strip() else template("no_answer", language)


@dataclass(frozen=True)
class _Span:
    start: int
    end: int
    annotation: Annotation


# ---------------------------------------------------------------------------
# Text normalization
# ---------------------------------------------------------------------------

_MARKUP_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"【[^】]*】"), ""),
    (re.compile(r"†[^†\s]*†?"), ""),
    (re.compile(r",[ \t]*\n"), "\n"),
    (re.compile(r"\n[ \t]*,"), "\n"),
    (re.compile(r",\s*$"), ""),
    (re.compile(r"[ \t]+(?=\[\d+\])"), ""),
)

_MARKER_RUN = re.compile(r"(?:\[\d+\])+")
_MARKER = re.compile(r"\[\d+\]")

# A numbered item ("2. ", "3、") after a sentence end starts a new paragraph.
# CJK punctuation may touch the number; ASCII punctuation needs whitespace
# so "v1.2.3" is left alone.
_LIST_BREAK = re.compile(
    r"(?:(?<=[。！？：])[ \t]*\n?[ \t]*|(?<=[.!?:])(?:[ \t]+\n?|[ \t]*\n)[ \t]*)"
    r"(?=\d{1,2}[.、][ \t]*\S)"
)

_WHITESPACE_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"[ \t]+"), " "),
    (re.compile(r" ?\n ?"), "\n"),
    (re.compile(r"\n{3,}"), "\n\n"),
)


def _dedupe_markers(match: re.Match[str]) -> str:
    seen: list[str] = []
    for marker in _MARKER.findall(match.group(0)):
        if marker not in seen:
            seen.append(marker)
    return "".join(seen)


def _normalize_once(text: str) -> str:
    for pattern, replacement in _MARKUP_RULES:
        text = pattern.sub(replacement, text)
    text = _MARKER_RUN.sub(_dedupe_markers, text)
    text = _LIST_BREAK.sub("\n\n", text)
    for pattern, replacement in _WHITESPACE_RULES:
        text = pattern.sub(replacement, text)
    return text.strip()


def normalize_text(text: str) -> str:
    """
    Clean citation artifacts and tidy layout.

    Idempotent: normalize_text(normalize_text(t)) == normalize_text(t).
    The pass is repeated until the text stops changing.
    """
    for _ in range(5):
        cleaned = _normalize_once(text)
        if cleaned == text:
            break
        text = cleaned
    return text


# ---------------------------------------------------------------------------
# Author-signature scanning (fallback sources)
# ---------------------------------------------------------------------------

_NAME_WORD = r"[A-Z][A-Za-z.'\-]*"
_PARTICLE = r"(?:of|de|da|di|van|von|der|den|la|le|du|the)"
_NAME = rf"{_NAME_WORD}(?:\s+(?:{_PARTICLE}\s+)?{_NAME_WORD}){{1,4}}"
_YEARS = r"\d{3,4}\s*[-–]\s*\d{3,4}"


@dataclass(frozen=True)
class ScanRule:
    """
    A declarative author-signature pattern with `name` and `years` groups.

    `free_standing` rules match a name in running prose, where the
    capitalized word run can include the first word of a sentence.
    """

    label: str
    pattern: re.Pattern[str]
    free_standing: bool = False


# Evaluated in this order; a span claimed by an earlier rule is skipped by
# later ones.
SCAN_RULES: tuple[ScanRule, ...] = (
    ScanRule(
        "bracketed",
        re.compile(rf"\[(?P<name>{_NAME})\s*\((?P<years>{_YEARS})\)\]"),
    ),
    ScanRule(
        "parenthesized",
        re.compile(rf"\((?P<name>{_NAME}),?\s+(?P<years>{_YEARS})\)"),
    ),
    ScanRule(
        "inline",
        re.compile(rf"(?<![A-Za-z])(?P<name>{_NAME})\s*\((?P<years>{_YEARS})\)"),
        free_standing=True,
    ),
)

_SENTENCE_END = frozenset(".!?:;\n。！？：；")

# A word closing a sentence, as opposed to an initial such as "J."
_SENTENCE_WORD = re.compile(r"[A-Za-z'\-]{2,}[.!?;:]$")


def _at_sentence_start(text: str, position: int) -> bool:
    before = text[:position].rstrip(" \t")
    return not before or before[-1] in _SENTENCE_END


def trim_name(name: str, sentence_start: bool, known_names: Iterable[str] = ()) -> str:
    """
    Drop leading words a free-standing match picked up.

    Words up to a sentence-ending one ("Luther.") are dropped first. Then
    the longest trailing run of words that is a known author name wins.
    Otherwise a sentence-initial first word is dropped from names of
    three or more words ("Compare John Calvin" → "John Calvin").
    """
    words = name.split()
    for i in range(len(words) - 2, -1, -1):
        if _SENTENCE_WORD.match(words[i]):
            words = words[i + 1:]
            sentence_start = True
            break

    known = {k.lower() for k in known_names}
    for i in range(len(words) - 1):
        candidate = " ".join(words[i:])
        if candidate.lower() in known:
            return candidate
    if sentence_start and len(words) > 2:
        return " ".join(words[1:])
    return " ".join(words)


def scan_author_signatures(text: str, known_names: Iterable[str] = ()) -> list[str]:
    """
    Find "Name (years)" signatures in text, in order of appearance.

    Returns display strings like "Herman Bavinck (1854-1921)", without
    near-duplicates.
    """
    known_names = tuple(known_names)
    claimed: list[tuple[int, int]] = []
    found: list[tuple[int, str]] = []

    for rule in SCAN_RULES:
        for match in rule.pattern.finditer(text):
            start, end = match.span()
            if any(start < c_end and c_start < end for c_start, c_end in claimed):
                continue
            claimed.append((start, end))
            name = match.group("name").strip()
            if rule.free_standing:
                name = trim_name(
                    name, _at_sentence_start(text, match.start("name")), known_names,
                )
            years = re.sub(r"\s*[-–]\s*", "-", match.group("years"))
            found.append((start, f"{name} ({years})"))

    found.sort(key=lambda item: item[0])
    signatures: list[str] = []
    for _, signature in found:
        if not any(is_near_duplicate(signature, s) for s in signatures):
            signatures.append(signature)
    return signatures


def is_near_duplicate(a: str, b: str) -> bool:
    """Case-insensitive containment in either direction."""
    a_lower, b_lower = a.strip().lower(), b.strip().lower()
    if not a_lower or not b_lower:
        return False
    return a_lower in b_lower or b_lower in a_lower


def merge_sources(
    base: list[SourceItem], extra_names: Sequence[str],
) -> list[SourceItem]:
    """Append scanned names to `base` unless they duplicate an entry."""
    merged = list(base)
    for name in extra_names:
        if any(is_near_duplicate(name, s.display_name) for s in merged):
            continue
        merged.append(SourceItem(index=len(merged) + 1, display_name=name))
    return merged


# ---------------------------------------------------------------------------
# Annotation placement
# ---------------------------------------------------------------------------


def _find_unclaimed(text: str, needle: str, claimed: set[int]) -> int:
    start = text.find(needle)
    while start >= 0 and start in claimed:
        start = text.find(needle, start + 1)
    return start


def locate_annotations(
    text: str, annotations: Sequence[Annotation],
) -> tuple[list[_Span], list[Annotation]]:
    """
    Place annotations in the text.

    Service-provided indices are used when they agree with the text;
    otherwise the next unclaimed occurrence of the annotated substring
    is used. Returns (spans sorted by position, annotations that could
    not be placed).
    """
    spans: list[_Span] = []
    unplaced: list[Annotation] = []
    claimed: set[int] = set()

    for annotation in annotations:
        if not annotation.text:
            unplaced.append(annotation)
            continue

        start = annotation.start_index
        end = annotation.end_index
        if start is None or end is None or text[start:end] != annotation.text:
            start = _find_unclaimed(text, annotation.text, claimed)
            if start < 0:
                unplaced.append(annotation)
                continue
            end = start + len(annotation.text)

        claimed.add(start)
        spans.append(_Span(start, end, annotation))

    spans.sort(key=lambda span: (span.start, span.end))
    return spans, unplaced


def insert_markers(text: str, spans: Sequence[_Span], index_of: dict[str, int]) -> str:
    """Append [n] after each span; spans ending together share one run."""
    markers_at: dict[int, list[int]] = defaultdict(list)
    for span in spans:
        markers_at[span.end].append(index_of[span.annotation.file_id])

    pieces: list[str] = []
    cursor = 0
    for end in sorted(markers_at):
        pieces.append(text[cursor:end])
        pieces.append("".join(f"[{i}]" for i in markers_at[end]))
        cursor = end
    pieces.append(text[cursor:])
    return "".join(pieces)


def _fallback_name(file_id: str) -> str:
    return f"File-{file_id[:8]}"


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------


class CitationResolver:
    """Resolves annotations for one answer at a time. Stateless between calls."""

    def __init__(
        self,
        name_lookup: NameLookup,
        localizer: AuthorLocalizer,
        excerpt_max_chars: int = 120,
    ) -> None:
        self._name_lookup = name_lookup
        self._localizer = localizer
        self._excerpt_max_chars = excerpt_max_chars

    async def resolve(
        self,
        text: str,
        annotations: Sequence[Annotation],
        language: str | None,
    ) -> ResolvedAnswer:
        try:
            return await self._resolve(text, annotations, language)
        except Exception as e:
            logger.warning(
                "Citation resolution failed, returning plain text: %s", e,
            )
            return ResolvedAnswer(text=self._plain_text(text, language))

    def _plain_text(self, text: str, language: str | None) -> str:
        plain = normalize_text(text)
        try:
            return self._localizer.localize(plain, language)
        except Exception as e:
            logger.warning("Author localization failed: %s", e)
            return plain

    async def _resolve(
        self,
        text: str,
        annotations: Sequence[Annotation],
        language: str | None,
    ) -> ResolvedAnswer:
        spans, unplaced = locate_annotations(text, annotations)
        ordered = [span.annotation for span in spans] + [
            a for a in unplaced if a.file_id
        ]

        handles = list(dict.fromkeys(a.file_id for a in ordered))
        names = await self._display_names(handles, language)

        index_of: dict[str, int] = {}
        sources: list[SourceItem] = []
        for annotation in ordered:
            handle = annotation.file_id
            if handle in index_of:
                existing = sources[index_of[handle] - 1]
                if not existing.excerpt and annotation.quote:
                    existing.excerpt = self._excerpt(annotation.quote)
                continue
            index_of[handle] = len(sources) + 1
            sources.append(SourceItem(
                index=index_of[handle],
                display_name=names[handle],
                excerpt=self._excerpt(annotation.quote),
                document_handle=handle,
            ))

        display = self._plain_text(insert_markers(text, spans, index_of), language)

        # Fallback only: no annotation resolved to a real document name
        if any(s.display_name != _fallback_name(s.document_handle) for s in sources):
            return ResolvedAnswer(text=display, sources=sources)

        scanned = [
            self._localizer.localize(signature, language)
            for signature in scan_author_signatures(text, self._localizer.names)
        ]
        merged = merge_sources(sources, scanned)
        if len(merged) > len(sources):
            logger.info(
                "Added %d source(s) from author signatures in the text",
                len(merged) - len(sources),
            )

        return ResolvedAnswer(text=display, sources=merged)

    async def _display_names(
        self, handles: list[str], language: str | None,
    ) -> dict[str, str]:
        names = await asyncio.gather(
            *(self._display_name(handle, language) for handle in handles)
        )
        return dict(zip(handles, names))

    async def _display_name(self, file_id: str, language: str | None) -> str:
        fallback = _fallback_name(file_id)
        try:
            raw = await self._name_lookup(file_id)
        except Exception as e:
            logger.warning("Could not resolve file name for %s: %s", file_id, e)
            return fallback

        name = _FILE_EXTENSION.sub("", (raw or "").strip())
        if not name:
            return fallback
        return self._localizer.localize(name, language)

    def _excerpt(self, quote: str) -> str:
        quote = (quote or "").strip()
        if len(quote) > self._excerpt_max_chars:
            return quote[: self._excerpt_max_chars] + "..."
        return quote
