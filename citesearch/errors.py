# =============================================================================
# Error Taxonomy — Search Engine Failures
# =============================================================================
#
#   SearchError
#   ├── CreationError    — assistant could not be created after retries
#   ├── RunFailedError   — upstream reported the run as failed
#   ├── RunTimeoutError  — polling budget exhausted (also a TimeoutError)
#   ├── ResolutionError  — topic store not found, or found but empty
#   └── TransportError   — network / stream fault, rate limit, or upstream
#                          HTTP error status
#
# Callers never see raw upstream text: friendly_message() maps every error
# to a fixed template. The raw detail stays on the exception (`detail`)
# and is only exposed when settings.debug is on.
# =============================================================================

from __future__ import annotations

# ---------------------------------------------------------------------------
# Friendly message templates
# ---------------------------------------------------------------------------

MESSAGES: dict[str, dict[str, str]] = {
    "generic": {
        "zh": "很抱歉，處理您的問題時發生錯誤，請稍後再試。",
        "en": "Sorry, something went wrong while processing your question. Please try again later.",
    },
    "timeout": {
        "zh": "查詢時間過長，請嘗試簡化您的問題或稍後再試。",
        "en": "The query took too long. Please try a simpler question or try again later.",
    },
    "run_failed": {
        "zh": "系統處理問題，請稍後再試或聯繫管理員。",
        "en": "The system could not process your question. Please try again later or contact an administrator.",
    },
    "network": {
        "zh": "網路連線不穩定，請檢查網路後重試。",
        "en": "The network connection is unstable. Please check your connection and retry.",
    },
    "rate_limited": {
        "zh": "目前請求過多，請稍後再試。",
        "en": "Too many requests right now. Please try again shortly.",
    },
    "creation": {
        "zh": "搜尋服務暫時無法使用，請稍後再試。",
        "en": "The search service is temporarily unavailable. Please try again later.",
    },
    "topic_not_found": {
        "zh": "找不到指定的主題資料庫，請確認名稱或選擇其他主題。",
        "en": "The requested topic could not be found. Check the name or choose another topic.",
    },
    "topic_empty": {
        "zh": "此主題目前尚無內容，請選擇其他主題。",
        "en": "This topic has no content yet. Please choose another topic.",
    },
    "no_answer": {
        "zh": "很抱歉，我在資料庫中找不到相關資訊來回答這個問題。",
        "en": "Sorry, I could not find relevant information in the corpus to answer this question.",
    },
}


def template(key: str, language: str | None) -> str:
    """Look up a message template, falling back to English."""
    entry = MESSAGES.get(key, MESSAGES["generic"])
    return entry.get(language or "en") or entry["en"]


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class SearchError(Exception):
    """Base class for every failure the engine reports to callers."""

    message_key = "generic"

    def __init__(self, detail: str = "") -> None:
        self.detail = detail
        super().__init__(detail or self.message_key)


class CreationError(SearchError):
    """The assistant resource could not be created or validated."""

    message_key = "creation"


class RunFailedError(SearchError):
    """The upstream service reported the run as failed."""

    message_key = "run_failed"


class RunTimeoutError(SearchError, TimeoutError):
    """The run did not finish within the polling budget."""

    message_key = "timeout"


class ResolutionError(SearchError):
    """
    A topic could not be mapped to a usable retrieval store.

    `reason` is "not_found" when no store matched, "empty" when the
    matched store has no files yet.
    """

    def __init__(self, topic: str, reason: str = "not_found") -> None:
        self.topic = topic
        self.reason = reason
        super().__init__(f"topic '{topic}': {reason}")

    @property
    def message_key(self) -> str:  # type: ignore[override]
        return "topic_empty" if self.reason == "empty" else "topic_not_found"


_TRANSPORT_MESSAGES = {"network": "network", "rate_limited": "rate_limited"}


class TransportError(SearchError):
    """Network or stream-level failure talking to the upstream service."""

    def __init__(self, detail: str = "", reason: str = "network") -> None:
        self.reason = reason
        super().__init__(detail)

    @property
    def message_key(self) -> str:  # type: ignore[override]
        return _TRANSPORT_MESSAGES.get(self.reason, "generic")


def friendly_message(error: BaseException, language: str | None = None) -> str:
    """Return the user-facing message for any exception."""
    if isinstance(error, SearchError):
        return template(error.message_key, language)
    return template("generic", language)
