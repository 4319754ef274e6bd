"""HTTP client used by deferred actions to call back into the service."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from steprelay.config import settings

logger = logging.getLogger("steprelay.connectors.relay")


class RelayTriggerError(Exception):
    """The next step could not be started.

    ``status_code`` is set when the step endpoint answered with a non-2xx
    status and is ``None`` for transport failures.
    """

    def __init__(self, step: int, message: str, status_code: int | None = None):
        super().__init__(message)
        self.step = step
        self.status_code = status_code


class RelayClient:
    """
    Calls this service's own endpoints.

    Protocol contract:
      POST {base_url}/api/chained/{step}
      Body: {"runId": "..."}
      Response: 2xx when the step was accepted or ran; anything else means
      the chain is broken at that step.

      POST {base_url}/api/ping
      Body: {"source": "..."}

    A fresh ``httpx.AsyncClient`` is opened per call: deferred actions outlive
    the request that created them and must not share its resources.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout if timeout is not None else settings.TRIGGER_TIMEOUT_SECONDS
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self._transport)

    async def trigger_step(self, run_id: str, step: int) -> int:
        """Start *step* of *run_id*.  Returns the HTTP status on success."""
        url = f"/api/chained/{step}"
        logger.info("Run %s: triggering step %d → %s%s", run_id, step, self.base_url, url)
        try:
            async with self._client() as client:
                resp = await client.post(url, json={"runId": run_id}, headers={"X-Run-ID": run_id})
        except httpx.RequestError as exc:
            raise RelayTriggerError(step, f"{type(exc).__name__}: {exc}") from exc
        if resp.is_error:
            logger.error("Run %s: step %d returned %d: %s", run_id, step, resp.status_code, resp.text)
            raise RelayTriggerError(step, f"HTTP {resp.status_code}", status_code=resp.status_code)
        return resp.status_code

    async def ping(self, source: str) -> dict[str, Any]:
        logger.info("Pinging %s/api/ping from %r", self.base_url, source)
        async with self._client() as client:
            resp = await client.post("/api/ping", json={"source": source})
            resp.raise_for_status()
            return resp.json()
