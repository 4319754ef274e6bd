"""Chained step controller — one step per invocation.

Per invocation:

  validate → load-run → precondition-check → mark-ongoing → execute
           → persist-outcome → schedule-continuation → respond

Steps listed in ``CHAINED_SYNC_STEPS`` execute inline and answer with their
result.  Every other step is marked ongoing, answered with 202, and executed
as a deferred action once the response is out.  Either way the next step is
never awaited: it is triggered over HTTP by a deferred action registered only
after this step's completion has been persisted.

The controller never trusts the snapshot it loaded at the start.  It re-reads
the run after the work finishes and again after persisting, so a kill that
lands mid-step discards the result and stops the chain.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from functools import partial

import httpx

from steprelay.config import Settings, settings
from steprelay.connectors.relay_client import RelayClient, RelayTriggerError
from steprelay.db.models import JobScenario, JobStatus
from steprelay.errors import InvalidStepError, ScenarioMismatchError, StepNotFoundError
from steprelay.runtime.deferred import DeferredActions
from steprelay.runtime.jobs import JobAbortedError, simulate_job
from steprelay.runtime.race import StepTimeoutError, race_job
from steprelay.services.run_store import RunRecord, RunStore, new_run_id
from steprelay.utils import run_cancel
from steprelay.utils.logger import bind_invocation
from steprelay.utils.metrics import record_run_finished, record_step_outcome, record_trigger_failure

logger = logging.getLogger("steprelay.runtime.chained")

_SCENARIO_LABEL = "chained"


class OutcomeKind(str, enum.Enum):
    COMPLETE = "complete"
    ALREADY_COMPLETED = "already_completed"
    ABORTED = "aborted"
    RACE_TIMEOUT = "race_timeout"
    ACCEPTED = "accepted"
    FAILED = "failed"


@dataclass(frozen=True)
class StepOutcome:
    kind: OutcomeKind
    run_id: str
    step: int
    duration_ms: int | None = None
    message: str | None = None
    run: RunRecord | None = None


@dataclass(frozen=True)
class ChainPlan:
    """How each chained step is executed."""

    total_steps: int
    job_duration_seconds: float
    final_job_duration_seconds: float
    final_race_timeout_seconds: float | None
    max_duration_seconds: float
    sync_steps: frozenset[int]
    ping_enabled: bool

    @classmethod
    def from_settings(cls, s: Settings = settings) -> "ChainPlan":
        return cls(
            total_steps=s.TOTAL_STEPS,
            job_duration_seconds=s.CHAINED_JOB_DURATION_SECONDS,
            final_job_duration_seconds=s.CHAINED_FINAL_JOB_DURATION_SECONDS,
            final_race_timeout_seconds=s.CHAINED_FINAL_RACE_TIMEOUT_SECONDS,
            max_duration_seconds=s.CHAINED_MAX_DURATION,
            sync_steps=frozenset(s.CHAINED_SYNC_STEPS),
            ping_enabled=s.CHAINED_PING_ENABLED,
        )

    def is_last(self, step: int) -> bool:
        return step == self.total_steps

    def duration_for(self, step: int) -> float:
        return self.final_job_duration_seconds if self.is_last(step) else self.job_duration_seconds

    def race_timeout_for(self, step: int) -> float | None:
        return self.final_race_timeout_seconds if self.is_last(step) else None

    def is_sync(self, step: int) -> bool:
        return step in self.sync_steps


class StepController:
    scenario = JobScenario.CHAINED

    def __init__(self, store: RunStore, relay: RelayClient, plan: ChainPlan | None = None):
        self.store = store
        self.relay = relay
        self.plan = plan or ChainPlan.from_settings()

    # ── validate ────────────────────────────────────────────────

    def validate_step(self, raw_step: object) -> int:
        try:
            step = int(str(raw_step).strip())
        except ValueError:
            raise InvalidStepError(raw_step, self.plan.total_steps) from None
        if not 1 <= step <= self.plan.total_steps:
            raise InvalidStepError(raw_step, self.plan.total_steps)
        return step

    # ── entry point ─────────────────────────────────────────────

    async def invoke(self, raw_step: object, run_id: str | None, deferred: DeferredActions) -> StepOutcome:
        """Run one chained step.  Input errors raise before the store is touched."""
        step = self.validate_step(raw_step)
        requested_run_id = run_id
        run_id = run_id or new_run_id()
        bind_invocation(run_id, step, _SCENARIO_LABEL)

        if requested_run_id is None:
            run = await self.store.create_run(self.scenario, run_id)
        else:
            # The trigger for a later step may arrive before anything else
            # has created the run.
            run = await self.store.get_or_create_run(run_id, self.scenario)

        if run.scenario != self.scenario:
            raise ScenarioMismatchError(run_id)
        current = run.get_step(step)
        if current is None:
            raise StepNotFoundError(run_id, step)

        if current.status == JobStatus.COMPLETED:
            logger.info("Run %s: step %d already completed, nothing to do", run_id, step)
            record_step_outcome(_SCENARIO_LABEL, OutcomeKind.ALREADY_COMPLETED.value)
            return StepOutcome(OutcomeKind.ALREADY_COMPLETED, run_id, step, duration_ms=current.duration_ms, run=run)

        if run.is_terminal:
            logger.info("Run %s: already %s, step %d not started", run_id, run.status.value, step)
            return self._aborted(run, run_id, step)

        if not await self.store.mark_step_ongoing(run_id, step):
            live = await self.store.get_run(run_id)
            if live is not None and not live.is_terminal:
                logger.info("Run %s: step %d blocked by the state of its other steps", run_id, step)
                message = f"Step {step} cannot start while another step of run {run_id} is running or has moved past it."
                return self._aborted(live, run_id, step, message)
            return self._aborted(live, run_id, step)

        if self.plan.is_sync(step):
            logger.info("Run %s: step %d starting (%gs)", run_id, step, self.plan.duration_for(step))
            return await self._execute(run_id, step, deferred)

        logger.info("Run %s: step %d accepted, work deferred until after the response", run_id, step)
        deferred.defer(f"step:{run_id}:{step}", partial(self._execute_deferred, run_id, step))
        return StepOutcome(OutcomeKind.ACCEPTED, run_id, step)

    # ── execute + persist + schedule ────────────────────────────

    async def _execute_deferred(self, run_id: str, step: int) -> None:
        bind_invocation(run_id, step, _SCENARIO_LABEL)
        follow_up = DeferredActions()
        outcome = await self._execute(run_id, step, follow_up)
        logger.info("Run %s: deferred step %d finished: %s", run_id, step, outcome.kind.value)
        await follow_up.launch()

    async def _execute(self, run_id: str, step: int, deferred: DeferredActions) -> StepOutcome:
        duration = self.plan.duration_for(step)
        race_timeout = self.plan.race_timeout_for(step)
        abort = run_cancel.register(run_id)
        try:
            async with run_cancel.watch_run(self.store, run_id, abort):
                if race_timeout is not None:
                    logger.info(
                        "Run %s: step %d racing job=%gs against timeout=%gs (budget=%gs)",
                        run_id, step, duration, race_timeout, self.plan.max_duration_seconds,
                    )
                    result = await race_job(step, duration, race_timeout, abort)
                else:
                    result = await simulate_job(step, duration, abort)
        except JobAbortedError:
            logger.info("Run %s: step %d interrupted, run was terminated", run_id, step)
            return self._aborted(await self.store.get_run(run_id), run_id, step)
        except StepTimeoutError as exc:
            message = (
                f"Step {step} race timeout after {exc.timeout_seconds:g}s, aborted gracefully "
                f"before maxDuration ({self.plan.max_duration_seconds:g}s)"
            )
            logger.warning("Run %s: %s", run_id, message)
            await self._fail_quietly(run_id, message, step)
            record_step_outcome(_SCENARIO_LABEL, OutcomeKind.RACE_TIMEOUT.value)
            return StepOutcome(
                OutcomeKind.RACE_TIMEOUT, run_id, step, message=message, run=await self.store.get_run(run_id)
            )
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            logger.exception("Run %s: step %d failed", run_id, step)
            await self._fail_quietly(run_id, message, step)
            record_step_outcome(_SCENARIO_LABEL, OutcomeKind.FAILED.value)
            return StepOutcome(OutcomeKind.FAILED, run_id, step, message=message)
        finally:
            run_cancel.deregister(run_id, abort)

        live = await self.store.get_run(run_id)
        if live is None or live.is_terminal:
            logger.info("Run %s: terminated while step %d ran, discarding result", run_id, step)
            return self._aborted(live, run_id, step)
        if not await self.store.mark_step_complete(run_id, step, result.duration_ms):
            return self._aborted(await self.store.get_run(run_id), run_id, step)

        logger.info("Run %s: step %d complete (%dms)", run_id, step, result.duration_ms)
        record_step_outcome(_SCENARIO_LABEL, OutcomeKind.COMPLETE.value, result.duration_ms)

        if self.plan.is_last(step):
            if not await self.store.mark_run_complete(run_id):
                return self._aborted(await self.store.get_run(run_id), run_id, step)
            record_run_finished(_SCENARIO_LABEL, "completed")
            deferred.defer(f"audit:{run_id}", partial(self._audit_completion, run_id))
        else:
            live = await self.store.get_run(run_id)
            if live is None or live.is_terminal:
                logger.info("Run %s: terminated after step %d persisted, chain stops here", run_id, step)
                return self._aborted(live, run_id, step)
            deferred.defer(f"continue:{run_id}:{step + 1}", partial(self._continue, run_id, step + 1))

        if self.plan.ping_enabled:
            deferred.defer(f"ping:{run_id}:{step}", partial(self._ping, f"step-{step} (run {run_id})"))

        return StepOutcome(
            OutcomeKind.COMPLETE,
            run_id,
            step,
            duration_ms=result.duration_ms,
            run=await self.store.get_run(run_id),
        )

    # ── deferred actions ────────────────────────────────────────

    async def _continue(self, run_id: str, next_step: int) -> None:
        bind_invocation(run_id, next_step, _SCENARIO_LABEL)
        try:
            await self.relay.trigger_step(run_id, next_step)
        except RelayTriggerError as exc:
            record_trigger_failure(next_step)
            if exc.status_code is not None:
                message = f"Step {next_step} failed to start (HTTP {exc.status_code})."
            else:
                message = f"Step {next_step} failed to start after previous completion."
            logger.error("Run %s: failed to trigger step %d: %s", run_id, next_step, exc)
            await self._fail_quietly(run_id, message, next_step)

    async def _ping(self, source: str) -> None:
        try:
            data = await self.relay.ping(source)
            logger.info("Ping response for %r: %s", source, data)
        except httpx.HTTPError as exc:
            logger.warning("Ping from %r failed: %s", source, exc)

    async def _audit_completion(self, run_id: str) -> None:
        run = await self.store.get_run(run_id)
        if run is None or run.completed_at is None:
            return
        elapsed = (run.completed_at - run.started_at).total_seconds()
        durations = ", ".join(f"{s.step}={s.duration_ms}ms" for s in run.steps)
        logger.info("Audit: run %s completed %d steps in %.2fs [%s]", run_id, len(run.steps), elapsed, durations)

    # ── helpers ─────────────────────────────────────────────────

    def _aborted(self, run: RunRecord | None, run_id: str, step: int, message: str | None = None) -> StepOutcome:
        if message is None:
            message = run.error if run is not None and run.error else f"Run {run_id} is no longer active."
        record_step_outcome(_SCENARIO_LABEL, OutcomeKind.ABORTED.value)
        return StepOutcome(OutcomeKind.ABORTED, run_id, step, message=message, run=run)

    async def _fail_quietly(self, run_id: str, message: str, step: int | None) -> None:
        try:
            await self.store.mark_run_failed(run_id, message, step)
            record_run_finished(_SCENARIO_LABEL, "failed")
        except Exception:
            logger.exception("Run %s: failed to persist error", run_id)
