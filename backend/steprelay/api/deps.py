"""FastAPI dependencies shared by the routers."""

from __future__ import annotations

from fastapi import Depends, Request

from steprelay.config import settings
from steprelay.connectors.relay_client import RelayClient
from steprelay.runtime.step_controller import StepController
from steprelay.services.run_store import RunStore, get_run_store


def get_relay_client(request: Request) -> RelayClient:
    """Client for calls back into this service.

    ``SELF_BASE_URL`` wins when set (e.g. behind a proxy); otherwise the
    incoming request's own base URL is used.
    """
    return RelayClient(settings.SELF_BASE_URL or str(request.base_url))


def get_step_controller(
    store: RunStore = Depends(get_run_store),
    relay: RelayClient = Depends(get_relay_client),
) -> StepController:
    return StepController(store, relay)
