"""Events API router — run snapshots over SSE."""

from __future__ import annotations

import asyncio
import json

from fastapi import APIRouter, Depends, HTTPException, Request
from sse_starlette.sse import EventSourceResponse

from steprelay.config import settings
from steprelay.schemas.runs import snapshot
from steprelay.services.run_store import RunStore, get_run_store

router = APIRouter()


@router.get("/runs/{run_id}/stream")
async def stream_run(run_id: str, request: Request, store: RunStore = Depends(get_run_store)):
    """SSE endpoint — polls the store and emits the snapshot whenever it changes.

    The stream ends after the first terminal snapshot has been sent.
    """
    if await store.get_run(run_id) is None:
        raise HTTPException(status_code=404, detail="Run not found")

    async def event_generator():
        last_payload = None
        while True:
            if await request.is_disconnected():
                break
            run = await store.get_run(run_id)
            if run is None:
                break
            payload = json.dumps(snapshot(run))
            if payload != last_payload:
                last_payload = payload
                yield {"event": "run_snapshot", "data": payload}
            if run.is_terminal:
                break
            await asyncio.sleep(settings.STREAM_POLL_INTERVAL_SECONDS)

    return EventSourceResponse(event_generator())
