"""Liveness target for the chained scenario's secondary deferred call."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Body

from steprelay.schemas.runs import PingRequest

logger = logging.getLogger("steprelay.api.ping")

router = APIRouter()


@router.post("/ping")
async def ping(body: PingRequest | None = Body(default=None)):
    source = body.source if body and body.source else "unknown"
    logger.info("Ping received from %s", source)
    return {"ok": True, "source": source, "timestamp": datetime.now(timezone.utc).isoformat()}
