"""ORM models — run and step tables."""

from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid.uuid4())


class JobStatus(str, enum.Enum):
    """Status shared by runs and steps.  Wire labels live in schemas.runs."""

    PENDING = "PENDING"
    ONGOING = "ONGOING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class JobScenario(str, enum.Enum):
    """Orchestration variant that owns a run."""

    CHAINED = "CHAINED"
    SEQUENTIAL = "SEQUENTIAL"
    RACE = "RACE"


ACTIVE_STATUSES = (JobStatus.PENDING, JobStatus.ONGOING)
TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)


class Base(DeclarativeBase):
    pass


_status_type = Enum(JobStatus, name="job_status", native_enum=False, length=16)
_scenario_type = Enum(JobScenario, name="job_scenario", native_enum=False, length=16)


# ── Runs ────────────────────────────────────────────────────────


class JobRun(Base):
    __tablename__ = "job_runs"
    __table_args__ = (
        Index("ix_job_runs_started_at", "started_at"),
        Index("ix_job_runs_scenario_started_at", "scenario", "started_at"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_uuid)
    scenario: Mapped[JobScenario] = mapped_column(_scenario_type, nullable=False)
    status: Mapped[JobStatus] = mapped_column(_status_type, default=JobStatus.PENDING, nullable=False)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    steps: Mapped[list[JobRunStep]] = relationship(
        back_populates="run",
        lazy="selectin",
        order_by="JobRunStep.step",
        cascade="all, delete-orphan",
    )


# ── Steps (fixed 1..N per run) ──────────────────────────────────


class JobRunStep(Base):
    __tablename__ = "job_run_steps"
    __table_args__ = (UniqueConstraint("run_id", "step"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(String(64), ForeignKey("job_runs.id"), nullable=False, index=True)
    step: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[JobStatus] = mapped_column(_status_type, default=JobStatus.PENDING, nullable=False)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    run: Mapped[JobRun] = relationship(back_populates="steps")
