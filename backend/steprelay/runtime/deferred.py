"""Post-response scheduling ("run this after the reply has been sent").

A router collects deferred actions in a :class:`DeferredActions` during one
invocation and hands :meth:`DeferredActions.launch` to Starlette's
``BackgroundTasks``.  Starlette only runs background tasks once the response
body has been sent, and ``launch`` itself just spawns one ``asyncio.Task`` per
action and returns.  Nothing downstream waits on them.

Contract for actions:
  * no arguments, awaitable;
  * errors are reported through the run store by the action itself, since there is
    no caller left to report to.  Anything that still escapes is logged here
    and never affects sibling actions.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

logger = logging.getLogger("steprelay.deferred")

DeferredAction = Callable[[], Awaitable[object]]

# Strong references to running actions; the event loop only keeps weak ones.
_pending: set[asyncio.Task] = set()


async def _run_guarded(name: str, action: DeferredAction) -> None:
    try:
        await action()
    except asyncio.CancelledError:
        logger.warning("Deferred action %r cancelled", name)
        raise
    except Exception:
        logger.exception("Deferred action %r failed", name)


class DeferredActions:
    """Actions registered during one invocation, started after the response."""

    def __init__(self) -> None:
        self._actions: list[tuple[str, DeferredAction]] = []
        self._launched = False

    def defer(self, name: str, action: DeferredAction) -> None:
        if self._launched:
            raise RuntimeError("DeferredActions already launched")
        self._actions.append((name, action))

    @property
    def names(self) -> list[str]:
        return [name for name, _ in self._actions]

    def __len__(self) -> int:
        return len(self._actions)

    async def launch(self) -> list[asyncio.Task]:
        """Start every registered action as an independent task."""
        self._launched = True
        tasks = []
        for name, action in self._actions:
            task = asyncio.create_task(_run_guarded(name, action), name=f"deferred:{name}")
            _pending.add(task)
            task.add_done_callback(_pending.discard)
            tasks.append(task)
        if tasks:
            logger.debug("Launched %d deferred action(s): %s", len(tasks), ", ".join(self.names))
        return tasks


def pending_count() -> int:
    return len(_pending)


async def drain(timeout: float) -> int:
    """Wait up to *timeout* seconds for running actions; cancel the rest.

    Returns the number of actions that had to be cancelled.
    """
    if not _pending:
        return 0
    # Actions may launch follow-ups while we wait, so loop until quiet.
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while _pending:
        remaining = deadline - loop.time()
        if remaining <= 0:
            break
        await asyncio.wait(set(_pending), timeout=remaining)
    leftovers = list(_pending)
    for task in leftovers:
        task.cancel()
    if leftovers:
        await asyncio.gather(*leftovers, return_exceptions=True)
        logger.warning("Cancelled %d deferred action(s) still running at shutdown", len(leftovers))
    return len(leftovers)
