"""Simulated unit of work for one step.

This is the only "business logic" in the service: it waits for the requested
duration and reports how long it took.  Real deployments swap in actual work
behind the same contract.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Literal


class JobAbortedError(Exception):
    """The job's abort signal fired before it finished."""

    def __init__(self, step: int):
        super().__init__(f"Step {step} aborted")
        self.step = step


@dataclass(frozen=True)
class JobResult:
    step: int
    duration_ms: int
    status: Literal["complete"] = "complete"


async def simulate_job(step: int, duration_seconds: float, abort: asyncio.Event | None = None) -> JobResult:
    """Wait *duration_seconds*, or raise :class:`JobAbortedError` if *abort* is set first."""
    if abort is None:
        await asyncio.sleep(duration_seconds)
        return JobResult(step=step, duration_ms=round(duration_seconds * 1000))

    if abort.is_set():
        raise JobAbortedError(step)
    try:
        await asyncio.wait_for(abort.wait(), timeout=duration_seconds)
    except asyncio.TimeoutError:
        return JobResult(step=step, duration_ms=round(duration_seconds * 1000))
    raise JobAbortedError(step)
