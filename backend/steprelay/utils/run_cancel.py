"""Run cancellation — in-process registry + store-level signal.

Two-layer cancellation:

1. **Store state** (authoritative):
   - ``kill_run`` flips the run to FAILED.  Every step invocation re-reads the
     run before and after its work, so a kill is always observed there, on
     any process.

2. **In-process event** (``asyncio.Event``, best effort):
   - Lets a kill abort a *local* job's wait immediately instead of at the next
     re-read.  Only works within a single process.
   - ``watch_run`` bridges 1 → 2: it polls the store while a job runs and sets
     the event as soon as the run turns terminal, so kills issued from another
     process still interrupt the wait within one poll interval.

Usage:
    # In the kill endpoint (after the store transition):
    mark_cancelled(run_id)          # in-process fast path

    # Around a step's job:
    abort = register(run_id)
    async with watch_run(store, run_id, abort):
        await simulate_job(step, duration, abort)
    deregister(run_id, abort)
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, suppress
from typing import TYPE_CHECKING

from steprelay.config import settings

if TYPE_CHECKING:
    from steprelay.services.run_store import RunStore

logger = logging.getLogger("steprelay.run_cancel")

_events: dict[str, set[asyncio.Event]] = {}


# ─────────────────────────────────────────────────────────────────────────────
# In-process event registry
# ─────────────────────────────────────────────────────────────────────────────


def register(run_id: str) -> asyncio.Event:
    """Create a fresh (unset) abort event for a job of *run_id*."""
    event = asyncio.Event()
    _events.setdefault(run_id, set()).add(event)
    logger.debug("Cancel registry: registered job for run %s", run_id)
    return event


def mark_cancelled(run_id: str) -> int:
    """Signal every registered job of *run_id*.  Returns how many were signalled."""
    events = _events.get(run_id) or set()
    for event in events:
        event.set()
    if events:
        logger.info("Cancel registry: signalled %d job(s) of run %s", len(events), run_id)
    else:
        logger.debug("Cancel registry: run %s has no local jobs (remote or finished)", run_id)
    return len(events)


def deregister(run_id: str, event: asyncio.Event) -> None:
    """Forget *event* (call in the finally block around the job)."""
    events = _events.get(run_id)
    if events is None:
        return
    events.discard(event)
    if not events:
        _events.pop(run_id, None)
    logger.debug("Cancel registry: deregistered job for run %s", run_id)


# ─────────────────────────────────────────────────────────────────────────────
# Store → in-process bridge
# ─────────────────────────────────────────────────────────────────────────────


async def _poll_until_terminal(store: RunStore, run_id: str, abort: asyncio.Event, interval: float) -> None:
    while not abort.is_set():
        await asyncio.sleep(interval)
        try:
            run = await store.get_run(run_id)
        except Exception:
            logger.exception("Kill watcher: failed to read run %s", run_id)
            continue
        if run is None or run.is_terminal:
            logger.info("Kill watcher: run %s is terminal — aborting local job", run_id)
            abort.set()
            return


@asynccontextmanager
async def watch_run(
    store: RunStore,
    run_id: str,
    abort: asyncio.Event,
    interval: float | None = None,
) -> AsyncIterator[asyncio.Event]:
    """Set *abort* if the run turns terminal while the block is executing."""
    interval = interval if interval is not None else settings.KILL_POLL_INTERVAL_SECONDS
    watcher = asyncio.create_task(_poll_until_terminal(store, run_id, abort, interval))
    try:
        yield abort
    finally:
        watcher.cancel()
        with suppress(asyncio.CancelledError):
            await watcher
