"""Chained scenario router — one step per request, continuation over HTTP."""

from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Body, Depends, HTTPException
from fastapi.responses import JSONResponse

from steprelay.api.deps import get_step_controller
from steprelay.errors import MissingParameterError, RelayInputError
from steprelay.runtime.deferred import DeferredActions
from steprelay.runtime.step_controller import OutcomeKind, StepController, StepOutcome
from steprelay.schemas.runs import RunEnvelope, RunOut, StepInvocation, snapshot
from steprelay.services.run_store import RunStore, get_run_store

router = APIRouter()

_HTTP_STATUS = {
    OutcomeKind.ACCEPTED: 202,
    OutcomeKind.FAILED: 500,
}


def _outcome_body(outcome: StepOutcome) -> dict:
    if outcome.kind == OutcomeKind.FAILED:
        return {"runId": outcome.run_id, "step": outcome.step, "error": outcome.message}
    body: dict = {"runId": outcome.run_id, "step": outcome.step, "status": outcome.kind.value}
    if outcome.kind == OutcomeKind.ACCEPTED:
        return body
    if outcome.kind in (OutcomeKind.COMPLETE, OutcomeKind.ALREADY_COMPLETED):
        body["durationMs"] = outcome.duration_ms
    else:
        body["message"] = outcome.message
    body["run"] = snapshot(outcome.run)
    return body


@router.post("/{step}")
async def invoke_step(
    step: str,
    background_tasks: BackgroundTasks,
    body: StepInvocation | None = Body(default=None),
    controller: StepController = Depends(get_step_controller),
):
    """Execute one chained step.

    Steps run inline or are accepted with 202 depending on the chain plan;
    the next step is always triggered after this response has been sent.
    """
    deferred = DeferredActions()
    try:
        outcome = await controller.invoke(step, body.run_id if body else None, deferred)
    except RelayInputError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc))
    if len(deferred):
        background_tasks.add_task(deferred.launch)
    return JSONResponse(
        _outcome_body(outcome),
        status_code=_HTTP_STATUS.get(outcome.kind, 200),
        background=background_tasks,
    )


@router.get("/status", response_model=RunEnvelope)
async def chained_status(runId: str | None = None, store: RunStore = Depends(get_run_store)):
    if not runId:
        raise HTTPException(status_code=400, detail=str(MissingParameterError("runId")))
    run = await store.get_run(runId)
    if run is None:
        raise HTTPException(status_code=404, detail="Run not found")
    return RunEnvelope(run=RunOut.from_record(run))
