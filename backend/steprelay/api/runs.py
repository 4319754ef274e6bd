"""Runs API router — lifecycle operations shared by every scenario."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Body, Depends, HTTPException

from steprelay.config import settings
from steprelay.errors import RelayInputError, ScenarioMismatchError
from steprelay.schemas.runs import (
    SCENARIO_LABELS,
    KillRequest,
    RunCreate,
    RunEnvelope,
    RunListOut,
    RunOut,
    parse_scenario,
)
from steprelay.services.run_store import RunStore, clamp_limit, get_run_store
from steprelay.utils.metrics import get_metrics_summary, record_run_finished
from steprelay.utils.run_cancel import mark_cancelled as _mark_run_cancelled

logger = logging.getLogger("steprelay.api.runs")

router = APIRouter()


def _parse_limit(raw: str | None) -> int | None:
    if raw is None or not raw.strip():
        return None
    try:
        return int(raw)
    except ValueError:
        return None


@router.get("", response_model=RunListOut)
async def list_runs(
    limit: str | None = None,
    scenario: str | None = None,
    store: RunStore = Depends(get_run_store),
):
    try:
        scenario_filter = parse_scenario(scenario) if scenario else None
    except RelayInputError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc))
    runs = await store.list_runs(clamp_limit(_parse_limit(limit)), scenario_filter)
    return RunListOut(runs=[RunOut.from_record(r) for r in runs])


@router.post("", response_model=RunEnvelope, status_code=201)
async def create_run(body: RunCreate | None = Body(default=None), store: RunStore = Depends(get_run_store)):
    """Pre-create a run so every step can be triggered by id."""
    body = body or RunCreate()
    try:
        scenario = parse_scenario(body.scenario)
        run = await store.create_run(scenario, body.run_id)
        if run.scenario != scenario:
            raise ScenarioMismatchError(run.id)
    except RelayInputError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc))
    logger.info("Run %s created (%s)", run.id, SCENARIO_LABELS[run.scenario])
    return RunEnvelope(run=RunOut.from_record(run))


@router.get("/metrics/summary")
async def metrics_summary():
    """Return in-memory counters and histograms as JSON."""
    return get_metrics_summary()


@router.get("/{run_id}", response_model=RunEnvelope)
async def get_run(run_id: str, store: RunStore = Depends(get_run_store)):
    run = await store.get_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail="Run not found")
    return RunEnvelope(run=RunOut.from_record(run))


@router.post("/{run_id}/kill", response_model=RunEnvelope)
async def kill_run(
    run_id: str,
    body: KillRequest | None = Body(default=None),
    store: RunStore = Depends(get_run_store),
):
    """Stop a run.  In-flight and future steps observe the kill and abort."""
    message = (body.message or "").strip() if body else ""
    message = message or settings.KILL_DEFAULT_MESSAGE

    before = await store.get_run(run_id)
    if before is None:
        raise HTTPException(status_code=404, detail="Run not found")
    run = await store.kill_run(run_id, message)
    if run is None:
        raise HTTPException(status_code=404, detail="Run not found")

    if not before.is_terminal:
        logger.info("Run %s killed: %s", run_id, message)
        record_run_finished(SCENARIO_LABELS[run.scenario], "failed")
    # Jobs of this run in this process abort immediately.
    _mark_run_cancelled(run_id)
    return RunEnvelope(run=RunOut.from_record(run))
