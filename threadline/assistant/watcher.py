"""Run submission and completion watching with token-budget escalation."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from loguru import logger

from threadline.assistant.errors import PollingError, RunSubmissionError
from threadline.assistant.extractor import extract_latest
from threadline.providers.base import AssistantBackend

# Statuses that end a call without a reply. The bridge never submits tool
# outputs, so a run waiting on them is as dead as a failed one.
TERMINAL_FAILURES = frozenset({"failed", "cancelled", "expired", "requires_action"})


@dataclass
class RunOutcome:
    """Result of one watched call (possibly spanning several runs)."""

    status: str  # completed | failed | cancelled | expired | requires_action | timeout | poll_error | escalation_error
    reply: str | None = None
    run_id: str = ""
    attempts: int = 1
    budget: int = 0
    status_checks: int = 0
    elapsed_s: float = 0.0

    @property
    def escalations(self) -> int:
        return max(0, self.attempts - 1)


def _normalize_status(raw: object) -> str:
    status = str(raw or "").strip().lower()
    return "cancelled" if status == "canceled" else status


class RunWatcher:
    """
    Submit a run and poll it until it yields a reply, fails, or times out.

    An ``incomplete`` run means the output budget ran out: a new run is
    created on the same thread with ``budget_increment`` more tokens. The
    number of escalations is unbounded; the deadline is cumulative from the
    first submission, so total wall-clock time never exceeds ``timeout_s``.
    """

    def __init__(
        self,
        backend: AssistantBackend,
        assistant_id: str,
        budget_increment: int = 50,
        message_page_size: int = 20,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.backend = backend
        self.assistant_id = assistant_id
        self.budget_increment = budget_increment
        self.message_page_size = message_page_size
        self._clock = clock
        self._sleep = sleep

    async def submit(self, thread_id: str, budget: int) -> str:
        """Create a run with ``budget`` completion tokens and return its id."""
        try:
            run_id = await self.backend.create_run(
                thread_id,
                assistant_id=self.assistant_id,
                max_completion_tokens=budget,
            )
        except Exception as e:
            raise RunSubmissionError(
                f"could not start run (budget={budget}): {e}", thread_id=thread_id
            ) from e
        logger.debug(f"Started run {run_id} on {thread_id} with budget {budget}")
        return run_id

    async def run_to_completion(
        self,
        thread_id: str,
        initial_budget: int = 50,
        timeout_s: float = 30.0,
        poll_interval_s: float = 1.0,
    ) -> str | None:
        """Reply text once a run completes, or None if no usable result in time."""
        outcome = await self.watch(thread_id, initial_budget, timeout_s, poll_interval_s)
        return outcome.reply

    async def watch(
        self,
        thread_id: str,
        initial_budget: int = 50,
        timeout_s: float = 30.0,
        poll_interval_s: float = 1.0,
    ) -> RunOutcome:
        """
        Same as ``run_to_completion`` but returns the full outcome.

        Raises:
            RunSubmissionError: the first run could not be created. Failures to
                create escalated runs end the call with ``escalation_error``.
        """
        started = self._clock()
        budget = initial_budget
        run_id = await self.submit(thread_id, budget)
        attempt_started = started
        outcome = RunOutcome(status="timeout", run_id=run_id, budget=budget)

        def finish(status: str, reply: str | None = None) -> RunOutcome:
            outcome.status = status
            outcome.reply = reply
            outcome.run_id = run_id
            outcome.budget = budget
            outcome.elapsed_s = round(self._clock() - started, 3)
            return outcome

        while True:
            elapsed = self._clock() - started
            if elapsed >= timeout_s:
                logger.warning(
                    f"Run {run_id} on {thread_id} not finished after {elapsed:.1f}s "
                    f"({outcome.attempts} attempt(s)); giving up"
                )
                return finish("timeout")

            try:
                run = await self.backend.get_run(thread_id, run_id)
            except Exception as e:
                error = PollingError(f"status check for run {run_id} failed: {e}", thread_id=thread_id)
                logger.error(str(error))
                return finish("poll_error")

            outcome.status_checks += 1
            status = _normalize_status(run.get("status"))
            logger.debug(
                f"Run {run_id} status: {status} at {self._clock() - attempt_started:.1f}s"
            )

            if status == "completed":
                return finish("completed", await self._fetch_reply(thread_id))

            if status == "incomplete":
                details = run.get("incomplete_details") or {}
                reason = details.get("reason", "") if isinstance(details, dict) else ""
                budget += self.budget_increment
                logger.info(
                    f"Run {run_id} incomplete ({reason or 'no reason'}); "
                    f"retrying with budget {budget}"
                )
                try:
                    run_id = await self.submit(thread_id, budget)
                except RunSubmissionError as e:
                    logger.error(f"Budget escalation failed: {e}")
                    return finish("escalation_error")
                outcome.attempts += 1
                attempt_started = self._clock()

            elif status in TERMINAL_FAILURES:
                logger.warning(f"Run {run_id} ended with status {status}")
                return finish(status)

            remaining = timeout_s - (self._clock() - started)
            if remaining > 0:
                await self._sleep(min(poll_interval_s, remaining))

    async def _fetch_reply(self, thread_id: str) -> str | None:
        try:
            messages = await self.backend.list_messages(
                thread_id, order="desc", limit=self.message_page_size
            )
        except Exception as e:
            logger.error(f"Listing messages for {thread_id} failed: {e}")
            return None
        reply = extract_latest(messages)
        if reply is None:
            logger.warning(f"No assistant reply found in {thread_id}")
        return reply
