# =============================================================================
# Assistant Lifecycle — Process-Wide Singleton Resource
# =============================================================================
#
# Every question runs against one long-lived assistant (model +
# instructions + file_search binding). This module owns it:
#
#   ensure_assistant()
#     ├── held?      → validate (retrieve by id) → return
#     │                  └── validation failed → discard, recreate once
#     └── not held?  → create (up to N attempts, backoff 1s, 2s, 3s)
#
# Creation is single-flight: the first caller starts a creation task and
# every concurrent caller awaits that same task. A failed creation is not
# remembered; the next call starts a fresh attempt.
#
# The configuration is chosen per attempt: with a default vector store
# configured, the assistant is bound to it through file_search; without
# one it is created tool-free.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from citesearch.errors import CreationError
from citesearch.services.llm import AssistantBackend, AssistantHandle

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]

RAG_INSTRUCTIONS = """你是一個專業的神學助手，只能根據提供的知識庫資料來回答問題。

重要規則：
1. 只使用檢索到的資料來回答問題
2. 如果資料庫中沒有相關資訊，請明確說明「很抱歉，我在資料庫中找不到相關資訊來回答這個問題，因為資料庫都為英文，建議將專有名詞替換成英文或許會有幫助」
3. 回答要準確、簡潔且有幫助
4. 使用繁體中文回答
5. 專注於提供基於資料庫內容的準確資訊
6. 盡可能引用具體的資料片段

格式要求：
- 直接回答問題內容
- 引用相關的資料片段（如果有的話）
- 不需要在回答中手動添加資料來源，系統會自動處理"""

PLAIN_INSTRUCTIONS = """你是一個專業的神學助手。

重要規則：
1. 回答要準確、簡潔且有幫助
2. 使用繁體中文回答
3. 專注於提供基於神學知識的準確資訊
4. 如果沒有相關資訊，請明確說明

格式要求：
- 直接回答問題內容
- 不需要在回答中手動添加資料來源"""


class AssistantManager:
    """Lazily creates, validates and recreates the shared assistant."""

    def __init__(
        self,
        backend: AssistantBackend,
        model: str,
        name: str,
        vector_store_id: str | None = None,
        attempts: int = 3,
        retry_delay: float = 1.0,
        max_retry_delay: float = 3.0,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._backend = backend
        self._model = model
        self._name = name
        self._vector_store_id = vector_store_id
        self._attempts = max(1, attempts)
        self._retry_delay = retry_delay
        self._max_retry_delay = max_retry_delay
        self._sleep = sleep

        self._assistant: AssistantHandle | None = None
        self._creation: asyncio.Task[AssistantHandle] | None = None
        self._lock = asyncio.Lock()

    @property
    def current(self) -> AssistantHandle | None:
        return self._assistant

    async def ensure_assistant(self) -> AssistantHandle:
        """
        Return a validated assistant, creating it if needed.

        Raises:
            CreationError: creation failed on every attempt, or a freshly
                recreated assistant also failed validation.
        """
        assistant = await self._get_or_create()
        if await self._is_valid(assistant):
            return assistant

        logger.warning("Assistant %s failed validation, recreating", assistant.id)
        await self.invalidate(assistant)

        assistant = await self._get_or_create()
        if await self._is_valid(assistant):
            return assistant
        raise CreationError(f"assistant {assistant.id} failed validation after recreation")

    async def invalidate(self, stale: AssistantHandle | None = None) -> None:
        """
        Drop the held assistant.

        With `stale` given, only drop it if it is still the one held, so a
        replacement created by another caller survives.
        """
        async with self._lock:
            if stale is None or self._assistant is stale:
                self._assistant = None

    async def keep_warm(self, interval: float) -> None:
        """Ping the assistant every `interval` seconds until cancelled."""
        while True:
            await self._sleep(interval)
            try:
                assistant = await self.ensure_assistant()
                logger.info("Keep-warm ping OK (assistant %s)", assistant.id)
            except Exception as e:
                logger.warning("Keep-warm ping failed: %s", e)

    # ------------------------------------------------------------------

    async def _is_valid(self, assistant: AssistantHandle) -> bool:
        try:
            await self._backend.retrieve_assistant(assistant.id)
        except Exception as e:
            logger.warning("Assistant %s validation error: %s", assistant.id, e)
            return False
        return True

    async def _get_or_create(self) -> AssistantHandle:
        async with self._lock:
            if self._assistant is not None:
                return self._assistant
            if self._creation is None or self._creation.done():
                self._creation = asyncio.ensure_future(self._create_with_retry())
            creation = self._creation

        # Shielded: a cancelled caller must not cancel the creation other
        # callers are waiting on.
        return await asyncio.shield(creation)

    async def _create_with_retry(self) -> AssistantHandle:
        last_error: Exception | None = None

        for attempt in range(1, self._attempts + 1):
            try:
                assistant = await self._create_once()
            except Exception as e:
                last_error = e
                logger.warning(
                    "Assistant creation failed (attempt %d/%d): %s",
                    attempt, self._attempts, e,
                )
                if attempt < self._attempts:
                    delay = min(self._retry_delay * attempt, self._max_retry_delay)
                    await self._sleep(delay)
                continue

            logger.info(
                "Created assistant %s (attempt %d/%d, file_search=%s)",
                assistant.id, attempt, self._attempts,
                bool(assistant.vector_store_ids),
            )
            async with self._lock:
                self._assistant = assistant
            return assistant

        raise CreationError(str(last_error) if last_error else "assistant creation failed")

    async def _create_once(self) -> AssistantHandle:
        if self._vector_store_id:
            return await self._backend.create_assistant(
                model=self._model,
                name=self._name,
                instructions=RAG_INSTRUCTIONS,
                vector_store_ids=[self._vector_store_id],
            )
        logger.warning("No default vector store configured; creating assistant without file_search")
        return await self._backend.create_assistant(
            model=self._model,
            name=f"{self._name} (No File Search)",
            instructions=PLAIN_INSTRUCTIONS,
        )
