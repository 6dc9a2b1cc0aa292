# =============================================================================
# Author Localization — Rewrite Author Names into the Reader's Language
# =============================================================================
#
# The corpus is English; answers may be requested in Chinese. Author names
# that appear in answers and in cited file names are rewritten using a
# static lookup table loaded once at startup:
#
#   {"Herman Bavinck (1854-1921)": "赫爾曼·巴文克", ...}
#
# Each table entry compiles to one rule with three alternatives, tried at
# every occurrence in precedence order (most specific first):
#
#   1. [Herman Bavinck (1854-1921)]  →  [赫爾曼·巴文克 (1854-1921)]
#   2. Herman Bavinck (1854-1921)    →  赫爾曼·巴文克 (1854-1921)
#   3. Herman Bavinck                →  赫爾曼·巴文克
#
# Only one alternative applies to a given occurrence, so the bracket and
# year are never substituted twice. Rules run longest name first. Names
# never consist of digits, so [n] citation markers are left alone.
# =============================================================================

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

_YEAR_SPAN = re.compile(r"^(?P<name>.+?)\s*\((?P<year>[^()]+)\)\s*$")

# Latin-letter boundaries. \b would also treat CJK characters as word
# characters and miss names written directly against Chinese text.
_LEFT = r"(?<![A-Za-z])"
_RIGHT = r"(?![A-Za-z])"
_ANY_YEAR = r"[^()\[\]\n]+"


def split_year(canonical: str) -> tuple[str, str | None]:
    """Split "Name (1854-1921)" into ("Name", "1854-1921")."""
    match = _YEAR_SPAN.match(canonical.strip())
    if match is None:
        return canonical.strip(), None
    return match.group("name").strip(), match.group("year").strip()


@dataclass(frozen=True)
class AuthorRule:
    """Compiled substitution for one table entry."""

    name: str
    year: str | None
    localized: str
    pattern: re.Pattern[str]

    @classmethod
    def build(cls, canonical: str, localized: str) -> AuthorRule:
        name, year = split_year(canonical)
        escaped = r"\s+".join(re.escape(part) for part in name.split())
        year_pattern = re.escape(year) if year else _ANY_YEAR
        pattern = re.compile(
            rf"\[{escaped}\s*\((?P<bracket_year>{year_pattern})\)\]"
            rf"|{_LEFT}{escaped}\s*\((?P<bare_year>{year_pattern})\)"
            rf"|{_LEFT}{escaped}{_RIGHT}",
            re.IGNORECASE,
        )
        return cls(name=name, year=year, localized=localized, pattern=pattern)

    def _replace(self, match: re.Match[str]) -> str:
        if match.group("bracket_year") is not None:
            return f"[{self.localized} ({match.group('bracket_year')})]"
        if match.group("bare_year") is not None:
            return f"{self.localized} ({match.group('bare_year')})"
        return self.localized

    def apply(self, text: str) -> tuple[str, int]:
        return self.pattern.subn(self._replace, text)


class AuthorLocalizer:
    """
    Localizes author names for the languages in `languages`.

    For any other language localize() returns the text unchanged.
    """

    def __init__(
        self,
        table: Mapping[str, str] | None = None,
        languages: Iterable[str] = ("zh",),
    ) -> None:
        self._languages = frozenset(languages)
        self._table = dict(table or {})
        entries = [
            (canonical, localized)
            for canonical, localized in self._table.items()
            if canonical.strip() and localized
        ]
        # Longest first so "Charles Haddon Spurgeon" wins over "Spurgeon",
        # and "Name (years)" over "Name".
        entries.sort(key=lambda item: len(item[0]), reverse=True)
        self._rules = [AuthorRule.build(c, loc) for c, loc in entries]

    @property
    def table(self) -> dict[str, str]:
        return dict(self._table)

    @property
    def names(self) -> frozenset[str]:
        """Canonical author names in the table, without year spans."""
        return frozenset(rule.name for rule in self._rules)

    def enabled_for(self, language: str | None) -> bool:
        return bool(language) and language in self._languages and bool(self._rules)

    def localize(self, text: str, language: str | None) -> str:
        if not text or not self.enabled_for(language):
            return text

        total = 0
        for rule in self._rules:
            text, count = rule.apply(text)
            total += count
        if total:
            logger.debug("Localized %d author name occurrence(s)", total)
        return text

    def lookup(self, name: str, language: str | None) -> str:
        """Localized display form of a single name, or the name itself."""
        if not self.enabled_for(language):
            return name
        localized = self._table.get(name)
        if localized:
            return localized
        bare, _ = split_year(name)
        return self._table.get(bare, name)


def load_author_table(path: str | Path) -> dict[str, str]:
    """
    Read the author table from a JSON file.

    Accepts either a flat {name: localized} object or {"authors": {...}}.
    A missing or unreadable file yields an empty table (localization
    becomes a no-op) rather than failing startup.
    """
    file_path = Path(path)
    if not file_path.exists():
        logger.warning("Author table not found at %s; localization disabled", file_path)
        return {}

    try:
        data = json.loads(file_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.error("Failed to load author table %s: %s", file_path, e)
        return {}

    if isinstance(data, dict) and isinstance(data.get("authors"), dict):
        data = data["authors"]
    if not isinstance(data, dict):
        logger.error("Author table %s is not a JSON object", file_path)
        return {}

    table = {str(k): str(v) for k, v in data.items() if isinstance(v, str)}
    logger.info("Loaded author table (%d authors)", len(table))
    return table
