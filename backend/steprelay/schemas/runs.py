"""Pydantic models for runs.

This module is the only place internal status/scenario values are turned into
wire strings and back.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from steprelay.db.models import JobScenario, JobStatus
from steprelay.errors import UnknownScenarioError
from steprelay.services.run_store import RunRecord

WireStatus = Literal["pending", "ongoing", "completed", "failed"]
WireScenario = Literal["chained", "sequential", "race"]

STATUS_LABELS: dict[JobStatus, WireStatus] = {
    JobStatus.PENDING: "pending",
    JobStatus.ONGOING: "ongoing",
    JobStatus.COMPLETED: "completed",
    JobStatus.FAILED: "failed",
}

SCENARIO_LABELS: dict[JobScenario, WireScenario] = {
    JobScenario.CHAINED: "chained",
    JobScenario.SEQUENTIAL: "sequential",
    JobScenario.RACE: "race",
}

_SCENARIO_BY_LABEL = {label: scenario for scenario, label in SCENARIO_LABELS.items()}


def parse_scenario(value: str) -> JobScenario:
    """Map a wire scenario label (case-insensitive) to :class:`JobScenario`."""
    scenario = _SCENARIO_BY_LABEL.get(value.strip().lower())
    if scenario is None:
        raise UnknownScenarioError(value, list(_SCENARIO_BY_LABEL))
    return scenario


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StepOut(_CamelModel):
    step: int
    status: WireStatus
    duration_ms: int | None = None
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


class RunOut(_CamelModel):
    id: str
    scenario: WireScenario
    status: WireStatus
    error: str | None = None
    started_at: datetime
    completed_at: datetime | None = None
    steps: list[StepOut]

    @classmethod
    def from_record(cls, run: RunRecord) -> "RunOut":
        return cls(
            id=run.id,
            scenario=SCENARIO_LABELS[run.scenario],
            status=STATUS_LABELS[run.status],
            error=run.error,
            started_at=run.started_at,
            completed_at=run.completed_at,
            steps=[
                StepOut(
                    step=s.step,
                    status=STATUS_LABELS[s.status],
                    duration_ms=s.duration_ms,
                    error=s.error,
                    started_at=s.started_at,
                    completed_at=s.completed_at,
                )
                for s in run.steps
            ],
        )


def snapshot(run: RunRecord | None) -> dict | None:
    """JSON-ready run snapshot (camelCase keys, ISO-8601 timestamps)."""
    if run is None:
        return None
    return RunOut.from_record(run).model_dump(mode="json", by_alias=True)


class RunListOut(BaseModel):
    runs: list[RunOut]


class RunEnvelope(BaseModel):
    run: RunOut


# ── Request bodies ──────────────────────────────────────────────


class StepInvocation(BaseModel):
    run_id: str | None = Field(default=None, alias="runId")

    @field_validator("run_id", mode="before")
    @classmethod
    def _ignore_non_string(cls, value: object) -> str | None:
        # Anything but a non-blank string starts a fresh run.
        if isinstance(value, str) and value.strip():
            return value
        return None


class RunCreate(BaseModel):
    scenario: str = "chained"
    run_id: str | None = Field(default=None, alias="runId")


class KillRequest(BaseModel):
    message: str | None = None


class PingRequest(BaseModel):
    source: str | None = None
