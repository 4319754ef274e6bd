"""Run store — the system of record for runs and their steps.

Every state transition is conditioned on the current status so that duplicate,
out-of-order or concurrently-killed invocations cannot corrupt a run:

  mark_step_ongoing   run PENDING|ONGOING  and step PENDING|ONGOING
                      and no other step ONGOING and no later step COMPLETED
  mark_step_complete  run PENDING|ONGOING  and step ONGOING
  mark_run_complete   run PENDING|ONGOING
  kill_run            run PENDING|ONGOING  (no-op when already terminal)
  mark_run_failed     unconditional

A guard that does not match makes the call return ``False`` instead of
overwriting; callers treat that as "somebody else already finished this run".

Callers only ever see :class:`RunRecord` snapshots.  They are detached values
and must be re-read before any decision that depends on live state.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased

from steprelay.config import settings
from steprelay.db.models import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    JobRun,
    JobRunStep,
    JobScenario,
    JobStatus,
)
from steprelay.errors import DuplicateRunError

logger = logging.getLogger("steprelay.run_store")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes even for timezone=True columns.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def new_run_id() -> str:
    return str(uuid.uuid4())


def clamp_limit(limit: int | None) -> int:
    """Clamp a listing limit into ``[1, RUNS_LIST_MAX_LIMIT]``."""
    if limit is None:
        return settings.RUNS_LIST_DEFAULT_LIMIT
    return min(max(int(limit), 1), settings.RUNS_LIST_MAX_LIMIT)


# ── Records ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class StepRecord:
    step: int
    status: JobStatus
    duration_ms: int | None = None
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass(frozen=True)
class RunRecord:
    id: str
    scenario: JobScenario
    status: JobStatus
    started_at: datetime
    error: str | None = None
    completed_at: datetime | None = None
    steps: tuple[StepRecord, ...] = ()

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def get_step(self, step: int) -> StepRecord | None:
        for record in self.steps:
            if record.step == step:
                return record
        return None


def _to_record(run: JobRun) -> RunRecord:
    return RunRecord(
        id=run.id,
        scenario=run.scenario,
        status=run.status,
        error=run.error,
        started_at=_aware(run.started_at),
        completed_at=_aware(run.completed_at),
        steps=tuple(
            StepRecord(
                step=s.step,
                status=s.status,
                duration_ms=s.duration_ms,
                error=s.error,
                started_at=_aware(s.started_at),
                completed_at=_aware(s.completed_at),
            )
            for s in sorted(run.steps, key=lambda s: s.step)
        ),
    )


# ── Interface ───────────────────────────────────────────────────


class RunStore(Protocol):
    """Operations the controllers and the lifecycle API rely on."""

    total_steps: int

    async def create_run(self, scenario: JobScenario, run_id: str | None = None) -> RunRecord: ...

    async def get_run(self, run_id: str) -> RunRecord | None: ...

    async def get_or_create_run(self, run_id: str, scenario: JobScenario) -> RunRecord: ...

    async def list_runs(self, limit: int | None = None, scenario: JobScenario | None = None) -> list[RunRecord]: ...

    async def mark_step_ongoing(self, run_id: str, step: int) -> bool: ...

    async def mark_step_complete(self, run_id: str, step: int, duration_ms: int) -> bool: ...

    async def mark_run_complete(self, run_id: str) -> bool: ...

    async def mark_run_failed(self, run_id: str, message: str, step: int | None = None) -> None: ...

    async def kill_run(self, run_id: str, message: str) -> RunRecord | None: ...


# ── SQL implementation ──────────────────────────────────────────


class _TransitionRejected(Exception):
    """A status guard matched no row; the surrounding transaction rolls back."""


def _step_blocked(run_id: str, step: int):  # type: ignore[no-untyped-def]
    # Another step is running, or the run is already past this step.
    other = aliased(JobRunStep)
    return (
        select(other.id)
        .where(
            other.run_id == run_id,
            other.step != step,
            or_(
                other.status == JobStatus.ONGOING,
                and_(other.step > step, other.status == JobStatus.COMPLETED),
            ),
        )
        .exists()
    )


class SqlRunStore:
    """:class:`RunStore` backed by SQLAlchemy.

    Each operation opens its own session and transaction.  Guarded transitions
    use ``UPDATE … WHERE status IN (…)`` and inspect ``rowcount``, the same
    optimistic pattern the worker used for claiming jobs.  Write statements
    come first in every transaction so SQLite never has to upgrade a read lock.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        total_steps: int | None = None,
        create_policy: str | None = None,
    ):
        self._session_factory = session_factory
        self.total_steps = total_steps or settings.TOTAL_STEPS
        self.create_policy = create_policy or settings.RUN_CREATE_POLICY

    # ── Reads ───────────────────────────────────────────────────

    async def get_run(self, run_id: str) -> RunRecord | None:
        async with self._session_factory() as db:
            run = await db.get(JobRun, run_id)
            return _to_record(run) if run else None

    async def list_runs(self, limit: int | None = None, scenario: JobScenario | None = None) -> list[RunRecord]:
        stmt = select(JobRun)
        if scenario:
            stmt = stmt.where(JobRun.scenario == scenario)
        stmt = stmt.order_by(JobRun.started_at.desc(), JobRun.id.desc()).limit(clamp_limit(limit))
        async with self._session_factory() as db:
            result = await db.execute(stmt)
            return [_to_record(run) for run in result.scalars().all()]

    # ── Creation ────────────────────────────────────────────────

    def _new_run(self, scenario: JobScenario, run_id: str) -> JobRun:
        now = _utcnow()
        run = JobRun(id=run_id, scenario=scenario, status=JobStatus.PENDING, started_at=now, updated_at=now)
        run.steps = [JobRunStep(step=n, status=JobStatus.PENDING) for n in range(1, self.total_steps + 1)]
        return run

    async def create_run(self, scenario: JobScenario, run_id: str | None = None) -> RunRecord:
        run_id = run_id or new_run_id()
        try:
            async with self._session_factory() as db:
                async with db.begin():
                    db.add(self._new_run(scenario, run_id))
        except IntegrityError:
            if self.create_policy == "strict":
                raise DuplicateRunError(run_id) from None
            existing = await self.get_run(run_id)
            if existing is None:
                raise
            logger.debug("Run %s already exists — returning existing run", run_id)
            return existing

        logger.info("Created run %s (scenario=%s, steps=%d)", run_id, scenario.value, self.total_steps)
        created = await self.get_run(run_id)
        assert created is not None
        return created

    async def get_or_create_run(self, run_id: str, scenario: JobScenario) -> RunRecord:
        existing = await self.get_run(run_id)
        if existing is not None:
            return existing
        try:
            async with self._session_factory() as db:
                async with db.begin():
                    db.add(self._new_run(scenario, run_id))
            logger.info("Created run %s on first step arrival (scenario=%s)", run_id, scenario.value)
        except IntegrityError:
            # Lost a creation race with another invocation for the same id.
            logger.debug("Run %s was created concurrently", run_id)
        run = await self.get_run(run_id)
        assert run is not None
        return run

    # ── Guarded transitions ─────────────────────────────────────

    @staticmethod
    async def _guarded(db: AsyncSession, stmt) -> None:  # type: ignore[no-untyped-def]
        result = await db.execute(stmt.execution_options(synchronize_session=False))
        if result.rowcount != 1:
            raise _TransitionRejected

    async def mark_step_ongoing(self, run_id: str, step: int) -> bool:
        now = _utcnow()
        try:
            async with self._session_factory() as db:
                async with db.begin():
                    await self._guarded(
                        db,
                        update(JobRun)
                        .where(JobRun.id == run_id, JobRun.status.in_(ACTIVE_STATUSES))
                        .values(status=JobStatus.ONGOING, updated_at=now),
                    )
                    await self._guarded(
                        db,
                        update(JobRunStep)
                        .where(
                            JobRunStep.run_id == run_id,
                            JobRunStep.step == step,
                            JobRunStep.status.in_(ACTIVE_STATUSES),
                            ~_step_blocked(run_id, step),
                        )
                        .values(
                            status=JobStatus.ONGOING,
                            started_at=now,
                            completed_at=None,
                            duration_ms=None,
                            error=None,
                        ),
                    )
        except _TransitionRejected:
            logger.info("Run %s step %d not started — run, step or sibling step blocks it", run_id, step)
            return False
        return True

    async def mark_step_complete(self, run_id: str, step: int, duration_ms: int) -> bool:
        now = _utcnow()
        try:
            async with self._session_factory() as db:
                async with db.begin():
                    # Touch the run row first: it must still be active, and the
                    # write lock serialises us against a concurrent kill.
                    await self._guarded(
                        db,
                        update(JobRun)
                        .where(JobRun.id == run_id, JobRun.status.in_(ACTIVE_STATUSES))
                        .values(updated_at=now),
                    )
                    await self._guarded(
                        db,
                        update(JobRunStep)
                        .where(
                            JobRunStep.run_id == run_id,
                            JobRunStep.step == step,
                            JobRunStep.status == JobStatus.ONGOING,
                        )
                        .values(
                            status=JobStatus.COMPLETED,
                            duration_ms=duration_ms,
                            completed_at=now,
                            error=None,
                        ),
                    )
        except _TransitionRejected:
            logger.info("Run %s step %d completion discarded — transitioned away while running", run_id, step)
            return False
        return True

    async def mark_run_complete(self, run_id: str) -> bool:
        async with self._session_factory() as db:
            async with db.begin():
                result = await db.execute(
                    update(JobRun)
                    .where(JobRun.id == run_id, JobRun.status.in_(ACTIVE_STATUSES))
                    .values(status=JobStatus.COMPLETED, completed_at=_utcnow(), error=None)
                    .execution_options(synchronize_session=False)
                )
        completed = result.rowcount == 1
        if completed:
            logger.info("Run %s completed", run_id)
        else:
            logger.info("Run %s not completed — already terminal", run_id)
        return completed

    async def mark_run_failed(self, run_id: str, message: str, step: int | None = None) -> None:
        now = _utcnow()
        async with self._session_factory() as db:
            async with db.begin():
                if step is not None:
                    await db.execute(
                        update(JobRunStep)
                        .where(JobRunStep.run_id == run_id, JobRunStep.step == step)
                        .values(status=JobStatus.FAILED, completed_at=now, error=message)
                        .execution_options(synchronize_session=False)
                    )
                await db.execute(
                    update(JobRun)
                    .where(JobRun.id == run_id)
                    .values(status=JobStatus.FAILED, error=message, completed_at=now)
                    .execution_options(synchronize_session=False)
                )
        logger.warning("Run %s failed (step=%s): %s", run_id, step, message)

    async def kill_run(self, run_id: str, message: str) -> RunRecord | None:
        now = _utcnow()
        async with self._session_factory() as db:
            async with db.begin():
                result = await db.execute(
                    update(JobRun)
                    .where(JobRun.id == run_id, JobRun.status.in_(ACTIVE_STATUSES))
                    .values(status=JobStatus.FAILED, error=message, completed_at=now)
                    .execution_options(synchronize_session=False)
                )
                killed = result.rowcount == 1
                if killed:
                    await db.execute(
                        update(JobRunStep)
                        .where(JobRunStep.run_id == run_id, JobRunStep.status.in_(ACTIVE_STATUSES))
                        .values(status=JobStatus.FAILED, error=message, completed_at=now)
                        .execution_options(synchronize_session=False)
                    )
        if killed:
            logger.info("Run %s killed: %s", run_id, message)
        return await self.get_run(run_id)


# ── Wiring ──────────────────────────────────────────────────────

_store: RunStore | None = None


def build_run_store(backend: str | None = None) -> RunStore:
    """Build the store selected by ``RUN_STORE_BACKEND``."""
    backend = backend or settings.RUN_STORE_BACKEND
    if backend == "memory":
        from steprelay.services.memory_store import InMemoryRunStore

        logger.warning("Using the in-memory run store — state is not shared across processes")
        return InMemoryRunStore()
    from steprelay.db.engine import async_session

    return SqlRunStore(async_session)


def get_run_store() -> RunStore:
    """FastAPI dependency — the process-wide run store."""
    global _store
    if _store is None:
        _store = build_run_store()
    return _store
