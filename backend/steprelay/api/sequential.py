"""Streaming scenarios — all steps in one request, progress as NDJSON."""

from __future__ import annotations

import json
from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import aclosing

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from steprelay.runtime.sequential import Event, SequentialRunner
from steprelay.services.run_store import RunStore, get_run_store

router = APIRouter()

NDJSON = "application/x-ndjson"


async def _ndjson(events: AsyncGenerator[Event, None]) -> AsyncIterator[str]:
    # Closing the body closes the runner, which fails an unfinished run.
    async with aclosing(events):
        async for event in events:
            yield json.dumps(event) + "\n"


async def _stream(runner: SequentialRunner) -> StreamingResponse:
    run = await runner.start()
    return StreamingResponse(
        _ndjson(runner.stream(run.id)),
        media_type=NDJSON,
        headers={"Cache-Control": "no-cache", "X-Run-ID": run.id},
    )


@router.post("/sequential")
async def run_sequential(store: RunStore = Depends(get_run_store)):
    return await _stream(SequentialRunner.plain(store))


@router.post("/sequential-with-race")
async def run_sequential_with_race(store: RunStore = Depends(get_run_store)):
    return await _stream(SequentialRunner.with_race(store))
