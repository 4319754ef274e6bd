"""Sequential runner — every step in one invocation, progress streamed as events.

Two variants share this runner:

* ``sequential``  — steps run back to back under the execution budget
  (``SEQUENTIAL_MAX_DURATION``).  Exhausting it ends the stream with a
  ``timeout`` event and fails the run.
* ``race``        — additionally races the whole run against
  ``RACE_TIMEOUT_SECONDS``.  That limit sits below the budget, so the run
  stops on our terms with a ``race_timeout`` event naming the failed step.

A kill is observed between steps (the guarded store transitions refuse to
move a failed run) and during a step (``watch_run`` sets the job's abort
signal), and ends the stream with ``manual_stop``.

Events are plain dicts; the router encodes one JSON object per line.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncGenerator
from typing import Any

from steprelay.config import Settings, settings
from steprelay.db.models import JobScenario, JobStatus
from steprelay.runtime.jobs import JobAbortedError
from steprelay.runtime.race import StepTimeoutError, race_job
from steprelay.schemas.runs import SCENARIO_LABELS
from steprelay.services.run_store import RunRecord, RunStore
from steprelay.utils import run_cancel
from steprelay.utils.logger import bind_invocation
from steprelay.utils.metrics import record_run_finished, record_step_outcome

logger = logging.getLogger("steprelay.runtime.sequential")

Event = dict[str, Any]

STREAM_CLOSED_MESSAGE = "Stream closed before the run finished."


class SequentialRunner:
    def __init__(
        self,
        store: RunStore,
        *,
        scenario: JobScenario = JobScenario.SEQUENTIAL,
        job_duration_seconds: float,
        max_duration_seconds: float,
        race_timeout_seconds: float | None = None,
        total_steps: int | None = None,
    ):
        self.store = store
        self.scenario = scenario
        self.job_duration_seconds = job_duration_seconds
        self.max_duration_seconds = max_duration_seconds
        self.race_timeout_seconds = race_timeout_seconds
        self.total_steps = total_steps if total_steps is not None else store.total_steps
        self.label = SCENARIO_LABELS[scenario]

    @classmethod
    def plain(cls, store: RunStore, s: Settings = settings) -> "SequentialRunner":
        return cls(
            store,
            scenario=JobScenario.SEQUENTIAL,
            job_duration_seconds=s.SEQUENTIAL_JOB_DURATION_SECONDS,
            max_duration_seconds=s.SEQUENTIAL_MAX_DURATION,
        )

    @classmethod
    def with_race(cls, store: RunStore, s: Settings = settings) -> "SequentialRunner":
        return cls(
            store,
            scenario=JobScenario.RACE,
            job_duration_seconds=s.SEQUENTIAL_JOB_DURATION_SECONDS,
            max_duration_seconds=s.SEQUENTIAL_MAX_DURATION,
            race_timeout_seconds=s.RACE_TIMEOUT_SECONDS,
        )

    async def start(self) -> RunRecord:
        """Create the run this runner will drive."""
        return await self.store.create_run(self.scenario)

    async def stream(self, run_id: str) -> AsyncGenerator[Event, None]:
        bind_invocation(run_id, None, self.label)
        loop = asyncio.get_running_loop()
        started = loop.time()

        def elapsed() -> float:
            return loop.time() - started

        def elapsed_ms() -> int:
            return round(elapsed() * 1000)

        completed: list[int] = []
        current_step: int | None = None

        logger.info(
            "Run %s: %s run started (%d steps x %gs, budget=%gs, race=%s)",
            run_id, self.label, self.total_steps, self.job_duration_seconds,
            self.max_duration_seconds, self.race_timeout_seconds,
        )
        try:
            yield {"type": "run_started", "runId": run_id, "timestamp": 0}
            for step in range(1, self.total_steps + 1):
                current_step = step
                if not await self.store.mark_step_ongoing(run_id, step):
                    yield await self._manual_stop(run_id, step, completed, elapsed_ms())
                    return
                yield {
                    "type": "start",
                    "runId": run_id,
                    "step": step,
                    "durationSeconds": self.job_duration_seconds,
                    "timestamp": elapsed_ms(),
                }

                budget_left = self.max_duration_seconds - elapsed()
                race_left = None if self.race_timeout_seconds is None else self.race_timeout_seconds - elapsed()
                graceful = race_left is not None and race_left <= budget_left
                limit = race_left if graceful else budget_left

                abort = run_cancel.register(run_id)
                try:
                    async with run_cancel.watch_run(self.store, run_id, abort):
                        result = await race_job(step, self.job_duration_seconds, limit, abort)
                except JobAbortedError:
                    yield await self._manual_stop(run_id, step, completed, elapsed_ms())
                    return
                except StepTimeoutError:
                    yield await self._timed_out(run_id, step, completed, elapsed_ms(), graceful)
                    return
                finally:
                    run_cancel.deregister(run_id, abort)

                if not await self.store.mark_step_complete(run_id, step, result.duration_ms):
                    yield await self._manual_stop(run_id, step, completed, elapsed_ms())
                    return
                completed.append(step)
                record_step_outcome(self.label, "complete", result.duration_ms)
                logger.info("Run %s: step %d complete (%dms)", run_id, step, result.duration_ms)
                yield {
                    "type": "complete",
                    "runId": run_id,
                    "step": step,
                    "durationMs": result.duration_ms,
                    "timestamp": elapsed_ms(),
                }

            if not await self.store.mark_run_complete(run_id):
                yield await self._manual_stop(run_id, current_step, completed, elapsed_ms())
                return
            record_run_finished(self.label, "completed")
            logger.info("Run %s: all %d steps complete in %dms", run_id, self.total_steps, elapsed_ms())
            yield {"type": "done", "runId": run_id, "completedSteps": list(completed), "timestamp": elapsed_ms()}
        except (asyncio.CancelledError, GeneratorExit):
            # The client is gone and nothing redelivers these steps.
            await asyncio.shield(self._abandon(run_id, current_step))
            raise
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            logger.exception("Run %s: %s run failed", run_id, self.label)
            await self._fail_quietly(run_id, message, current_step)
            yield {
                "type": "error",
                "runId": run_id,
                "step": current_step,
                "completedSteps": list(completed),
                "message": message,
                "elapsed": elapsed_ms(),
            }

    async def _timed_out(self, run_id: str, step: int, completed: list[int], elapsed_ms: int, graceful: bool) -> Event:
        if graceful:
            message = (
                f"Race timeout after {self.race_timeout_seconds:g}s, aborting gracefully "
                f"before the {self.max_duration_seconds:g}s execution budget kills the process"
            )
            event_type = "race_timeout"
        else:
            message = f"Execution budget of {self.max_duration_seconds:g}s exhausted during step {step}"
            event_type = "timeout"
        logger.warning("Run %s: %s", run_id, message)
        await self._fail_quietly(run_id, message, step)
        record_step_outcome(self.label, event_type)
        return {
            "type": event_type,
            "runId": run_id,
            "failedStep": step,
            "completedSteps": list(completed),
            "message": message,
            "elapsed": elapsed_ms,
        }

    async def _manual_stop(self, run_id: str, step: int | None, completed: list[int], elapsed_ms: int) -> Event:
        run = await self.store.get_run(run_id)
        message = run.error if run is not None and run.error else "Run stopped."
        logger.info("Run %s: stopped before step %s finished: %s", run_id, step, message)
        record_step_outcome(self.label, "aborted")
        return {
            "type": "manual_stop",
            "runId": run_id,
            "step": step,
            "completedSteps": list(completed),
            "message": message,
            "elapsed": elapsed_ms,
        }

    async def _fail_quietly(self, run_id: str, message: str, step: int | None) -> None:
        try:
            await self.store.mark_run_failed(run_id, message, step)
            record_run_finished(self.label, "failed")
        except Exception:
            logger.exception("Run %s: failed to persist error", run_id)

    async def _abandon(self, run_id: str, step: int | None) -> None:
        try:
            run = await self.store.get_run(run_id)
        except Exception:
            logger.exception("Run %s: could not read run after the stream closed", run_id)
            return
        if run is None or run.is_terminal:
            return
        current = run.get_step(step) if step is not None else None
        if current is None or current.status != JobStatus.ONGOING:
            step = None
        logger.warning("Run %s: stream closed before the run finished (step=%s)", run_id, step)
        await self._fail_quietly(run_id, STREAM_CLOSED_MESSAGE, step)
        record_step_outcome(self.label, "aborted")
