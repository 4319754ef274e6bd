"""Race a step's job against a self-imposed timeout.

The timeout is set below the platform's execution budget so a slow step fails
on our own terms, with its failure recorded, instead of being killed mid-write.
"""

from __future__ import annotations

import asyncio
from contextlib import suppress

from steprelay.runtime.jobs import JobAbortedError, JobResult, simulate_job


class StepTimeoutError(Exception):
    """The timeout won the race against the step's job."""

    def __init__(self, step: int, timeout_seconds: float):
        super().__init__(f"Step {step} timed out after {timeout_seconds:g}s")
        self.step = step
        self.timeout_seconds = timeout_seconds


async def race_job(
    step: int,
    duration_seconds: float,
    timeout_seconds: float,
    abort: asyncio.Event | None = None,
) -> JobResult:
    """Run :func:`simulate_job` under *timeout_seconds*.

    When the timeout wins the job's abort signal is set and the job is awaited
    so nothing keeps running in the background.  An abort raised by someone
    else (e.g. a kill) propagates as :class:`JobAbortedError`.
    """
    abort = abort if abort is not None else asyncio.Event()
    job = asyncio.create_task(simulate_job(step, duration_seconds, abort))
    try:
        # shield: the job is stopped via its abort signal, not task cancellation
        return await asyncio.wait_for(asyncio.shield(job), timeout=max(timeout_seconds, 0))
    except asyncio.TimeoutError:
        abort.set()
        with suppress(JobAbortedError):
            await job
        raise StepTimeoutError(step, timeout_seconds) from None
    except asyncio.CancelledError:
        abort.set()
        raise
