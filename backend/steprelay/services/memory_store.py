"""In-memory run store for tests and single-process demos.

Implements the same guarded transitions as :class:`SqlRunStore` behind one
``asyncio.Lock``.  Nothing here survives a restart or is visible to another
process, so it is never the system of record in a real deployment.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timezone

from steprelay.config import settings
from steprelay.db.models import ACTIVE_STATUSES, JobScenario, JobStatus
from steprelay.errors import DuplicateRunError
from steprelay.services.run_store import RunRecord, StepRecord, clamp_limit, new_run_id

logger = logging.getLogger("steprelay.memory_store")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryRunStore:
    def __init__(self, total_steps: int | None = None, create_policy: str | None = None):
        self.total_steps = total_steps or settings.TOTAL_STEPS
        self.create_policy = create_policy or settings.RUN_CREATE_POLICY
        self._runs: dict[str, RunRecord] = {}
        self._lock = asyncio.Lock()

    def _new_run(self, scenario: JobScenario, run_id: str) -> RunRecord:
        return RunRecord(
            id=run_id,
            scenario=scenario,
            status=JobStatus.PENDING,
            started_at=_utcnow(),
            steps=tuple(StepRecord(step=n, status=JobStatus.PENDING) for n in range(1, self.total_steps + 1)),
        )

    def _replace_step(self, run: RunRecord, step: int, **changes) -> RunRecord:  # type: ignore[no-untyped-def]
        steps = tuple(replace(s, **changes) if s.step == step else s for s in run.steps)
        return replace(run, steps=steps)

    async def create_run(self, scenario: JobScenario, run_id: str | None = None) -> RunRecord:
        run_id = run_id or new_run_id()
        async with self._lock:
            existing = self._runs.get(run_id)
            if existing is not None:
                if self.create_policy == "strict":
                    raise DuplicateRunError(run_id)
                return existing
            run = self._runs[run_id] = self._new_run(scenario, run_id)
        logger.info("Created run %s (scenario=%s, steps=%d)", run_id, scenario.value, self.total_steps)
        return run

    async def get_run(self, run_id: str) -> RunRecord | None:
        return self._runs.get(run_id)

    async def get_or_create_run(self, run_id: str, scenario: JobScenario) -> RunRecord:
        async with self._lock:
            run = self._runs.get(run_id)
            if run is None:
                run = self._runs[run_id] = self._new_run(scenario, run_id)
                logger.info("Created run %s on first step arrival (scenario=%s)", run_id, scenario.value)
            return run

    async def list_runs(self, limit: int | None = None, scenario: JobScenario | None = None) -> list[RunRecord]:
        runs = [r for r in self._runs.values() if scenario is None or r.scenario == scenario]
        runs.sort(key=lambda r: (r.started_at, r.id), reverse=True)
        return runs[: clamp_limit(limit)]

    async def mark_step_ongoing(self, run_id: str, step: int) -> bool:
        async with self._lock:
            run = self._runs.get(run_id)
            current = run.get_step(step) if run else None
            blocked = run is not None and any(
                s.step != step
                and (s.status == JobStatus.ONGOING or (s.step > step and s.status == JobStatus.COMPLETED))
                for s in run.steps
            )
            if (
                run is None
                or current is None
                or run.status not in ACTIVE_STATUSES
                or current.status not in ACTIVE_STATUSES
                or blocked
            ):
                logger.info("Run %s step %d not started — run, step or sibling step blocks it", run_id, step)
                return False
            run = self._replace_step(
                run,
                step,
                status=JobStatus.ONGOING,
                started_at=_utcnow(),
                completed_at=None,
                duration_ms=None,
                error=None,
            )
            self._runs[run_id] = replace(run, status=JobStatus.ONGOING)
            return True

    async def mark_step_complete(self, run_id: str, step: int, duration_ms: int) -> bool:
        async with self._lock:
            run = self._runs.get(run_id)
            current = run.get_step(step) if run else None
            if run is None or current is None or run.status not in ACTIVE_STATUSES or current.status != JobStatus.ONGOING:
                logger.info("Run %s step %d completion discarded — transitioned away while running", run_id, step)
                return False
            self._runs[run_id] = self._replace_step(
                run,
                step,
                status=JobStatus.COMPLETED,
                duration_ms=duration_ms,
                completed_at=_utcnow(),
                error=None,
            )
            return True

    async def mark_run_complete(self, run_id: str) -> bool:
        async with self._lock:
            run = self._runs.get(run_id)
            if run is None or run.status not in ACTIVE_STATUSES:
                return False
            self._runs[run_id] = replace(run, status=JobStatus.COMPLETED, completed_at=_utcnow(), error=None)
        logger.info("Run %s completed", run_id)
        return True

    async def mark_run_failed(self, run_id: str, message: str, step: int | None = None) -> None:
        async with self._lock:
            run = self._runs.get(run_id)
            if run is None:
                return
            now = _utcnow()
            if step is not None:
                run = self._replace_step(run, step, status=JobStatus.FAILED, completed_at=now, error=message)
            self._runs[run_id] = replace(run, status=JobStatus.FAILED, error=message, completed_at=now)
        logger.warning("Run %s failed (step=%s): %s", run_id, step, message)

    async def kill_run(self, run_id: str, message: str) -> RunRecord | None:
        async with self._lock:
            run = self._runs.get(run_id)
            if run is None or run.is_terminal:
                return run
            now = _utcnow()
            steps = tuple(
                replace(s, status=JobStatus.FAILED, error=message, completed_at=now)
                if s.status in ACTIVE_STATUSES
                else s
                for s in run.steps
            )
            run = self._runs[run_id] = replace(
                run, status=JobStatus.FAILED, error=message, completed_at=now, steps=steps
            )
        logger.info("Run %s killed: %s", run_id, message)
        return run
