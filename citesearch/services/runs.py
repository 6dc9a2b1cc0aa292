# =============================================================================
# Run Coordination — Drive One Assistant Run to Completion
# =============================================================================
#
# One question = one fresh thread + one run. After submitting the run we
# poll its status until it reaches a terminal state:
#
#   queued → in_progress → completed            → fetch latest message
#                        → failed / cancelled   → RunFailedError
#                        → requires_action      → acknowledge tool calls,
#                                                 re-check immediately
#   (attempt budget exhausted)                  → RunTimeoutError
#
# The decision for each observed status lives in next_step(), a pure
# function of (status, attempts, schedule). RunCoordinator.execute() is
# the loop that performs the I/O that next_step() asks for.
#
# POLL SCHEDULE (defaults):
#   initial delay 3s, then attempts 0-2: 0.2s
#   attempts 3-9:  0.2 * 1.1^(n-3), capped at 1s
#   attempts 10+:  0.2 * 1.2^n,     capped at 2s
#   at most 60 attempts
#
# The latest thread message is the only authoritative output. Nothing the
# run reported along the way is used as the answer.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum

from citesearch.errors import RunFailedError, RunTimeoutError
from citesearch.services.llm import (
    Annotation,
    AssistantBackend,
    AssistantHandle,
    RunSnapshot,
)

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]

TOOL_ACKNOWLEDGEMENT = "File search completed."

_FAILED_STATUSES = frozenset({"failed", "cancelled", "cancelling", "expired", "incomplete"})


# ---------------------------------------------------------------------------
# Poll schedule
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PollSchedule:
    initial_delay: float = 3.0
    fast_interval: float = 0.2
    fast_checks: int = 3
    mid_checks: int = 10
    mid_growth: float = 1.1
    mid_ceiling: float = 1.0
    late_growth: float = 1.2
    max_interval: float = 2.0
    max_attempts: int = 60

    def interval(self, attempt: int) -> float:
        """Delay before status check number `attempt` (0-based)."""
        if attempt < self.fast_checks:
            return self.fast_interval
        if attempt < self.mid_checks:
            grown = self.fast_interval * self.mid_growth ** (attempt - self.fast_checks)
            return min(grown, self.mid_ceiling)
        return min(self.fast_interval * self.late_growth ** attempt, self.max_interval)


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


class Action(str, Enum):
    POLL = "poll"
    ACKNOWLEDGE = "acknowledge"
    FINISH = "finish"
    FAIL = "fail"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class Step:
    action: Action
    delay: float = 0.0


def next_step(status: str, attempts: int, schedule: PollSchedule) -> Step:
    """Decide what to do after observing `status` with `attempts` used."""
    if status == "completed":
        return Step(Action.FINISH)
    if status in _FAILED_STATUSES:
        return Step(Action.FAIL)
    if attempts >= schedule.max_attempts:
        return Step(Action.TIMEOUT)
    if status == "requires_action":
        return Step(Action.ACKNOWLEDGE)
    return Step(Action.POLL, schedule.interval(attempts))


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------


@dataclass
class FinishedAnswer:
    """The authoritative answer of a completed run."""

    thread_id: str
    text: str
    annotations: list[Annotation] = field(default_factory=list)
    run_id: str | None = None


class RunCoordinator:
    """Creates threads and runs, and polls runs to completion."""

    def __init__(
        self,
        backend: AssistantBackend,
        schedule: PollSchedule | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._backend = backend
        self._schedule = schedule or PollSchedule()
        self._sleep = sleep

    @property
    def backend(self) -> AssistantBackend:
        return self._backend

    async def new_thread(self) -> str:
        """Create a fresh single-use thread."""
        return await self._backend.create_thread()

    async def execute(
        self,
        thread_id: str,
        assistant: AssistantHandle,
        question: str,
        vector_store_ids: list[str] | None = None,
    ) -> FinishedAnswer:
        """
        Post `question`, run the assistant and wait for the answer.

        Raises:
            RunFailedError: the run failed, was cancelled or expired, or
                produced no assistant message.
            RunTimeoutError: the attempt budget ran out.
        """
        await self._backend.add_message(thread_id, question)
        run = await self._backend.create_run(
            thread_id, assistant.id, vector_store_ids=vector_store_ids,
        )
        logger.info("Run %s created on thread %s", run.id, thread_id)

        await self._sleep(self._schedule.initial_delay)
        run = await self._backend.retrieve_run(thread_id, run.id)
        run = await self._drive(thread_id, run)

        return await self.fetch_answer(thread_id, run_id=run.id)

    async def _drive(self, thread_id: str, run: RunSnapshot) -> RunSnapshot:
        attempts = 0
        last_status = run.status

        while True:
            step = next_step(run.status, attempts, self._schedule)

            if step.action is Action.FINISH:
                logger.info("Run %s completed after %d attempt(s)", run.id, attempts)
                return run

            if step.action is Action.FAIL:
                reason = run.last_error or "Unknown error"
                logger.warning("Run %s ended as %s: %s", run.id, run.status, reason)
                raise RunFailedError(f"Assistant run {run.status}: {reason}")

            if step.action is Action.TIMEOUT:
                logger.warning(
                    "Run %s still %s after %d attempts, giving up",
                    run.id, run.status, attempts,
                )
                raise RunTimeoutError(
                    "The query took too long; try a simpler question or retry later"
                )

            if step.action is Action.ACKNOWLEDGE:
                run = await self._acknowledge_tools(thread_id, run)
            else:
                await self._sleep(step.delay)
                run = await self._backend.retrieve_run(thread_id, run.id)
            attempts += 1

            if run.status != last_status or attempts % 8 == 0 or attempts <= 3:
                logger.info(
                    "Run %s: attempt %d, status %s", run.id, attempts, run.status,
                )
                last_status = run.status

    async def _acknowledge_tools(self, thread_id: str, run: RunSnapshot) -> RunSnapshot:
        outputs = [
            {"tool_call_id": call.id, "output": TOOL_ACKNOWLEDGEMENT}
            for call in run.tool_calls
        ]
        logger.info("Run %s requires action: acknowledging %d tool call(s)", run.id, len(outputs))
        return await self._backend.submit_tool_outputs(thread_id, run.id, outputs)

    async def fetch_answer(self, thread_id: str, run_id: str | None = None) -> FinishedAnswer:
        """Read the latest message of a finished thread."""
        message = await self._backend.latest_message(thread_id)
        if message is None or message.role != "assistant":
            raise RunFailedError("No assistant reply found in thread")

        return FinishedAnswer(
            thread_id=thread_id,
            text=message.text,
            annotations=list(message.annotations),
            run_id=run_id,
        )
