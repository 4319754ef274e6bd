"""Shared fixtures for backend tests."""

from __future__ import annotations

import asyncio

import pytest
from httpx import ASGITransport, AsyncClient

from steprelay.api.deps import get_relay_client
from steprelay.config import settings
from steprelay.connectors.relay_client import RelayClient
from steprelay.db.engine import build_engine, build_session_factory
from steprelay.db.models import Base, JobStatus
from steprelay.main import app
from steprelay.runtime import deferred
from steprelay.services.memory_store import InMemoryRunStore
from steprelay.services.run_store import RunRecord, RunStore, SqlRunStore, get_run_store
from steprelay.utils.metrics import metrics

TOTAL_STEPS = 4


# ── Settings ────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def fast_settings(monkeypatch):
    """Millisecond-scale durations so chains finish well inside a test."""
    monkeypatch.setattr(settings, "TOTAL_STEPS", TOTAL_STEPS)
    monkeypatch.setattr(settings, "CHAINED_JOB_DURATION_SECONDS", 0.01)
    monkeypatch.setattr(settings, "CHAINED_FINAL_JOB_DURATION_SECONDS", 0.01)
    monkeypatch.setattr(settings, "CHAINED_FINAL_RACE_TIMEOUT_SECONDS", 1.0)
    monkeypatch.setattr(settings, "CHAINED_MAX_DURATION", 2.0)
    monkeypatch.setattr(settings, "CHAINED_SYNC_STEPS", [1])
    monkeypatch.setattr(settings, "CHAINED_PING_ENABLED", False)
    monkeypatch.setattr(settings, "SEQUENTIAL_JOB_DURATION_SECONDS", 0.01)
    monkeypatch.setattr(settings, "SEQUENTIAL_MAX_DURATION", 2.0)
    monkeypatch.setattr(settings, "RACE_TIMEOUT_SECONDS", 1.0)
    monkeypatch.setattr(settings, "KILL_POLL_INTERVAL_SECONDS", 0.01)
    monkeypatch.setattr(settings, "STREAM_POLL_INTERVAL_SECONDS", 0.01)
    monkeypatch.setattr(settings, "SELF_BASE_URL", None)
    monkeypatch.setattr(settings, "RUN_CREATE_POLICY", "get_or_create")
    return settings


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


# ── Stores ──────────────────────────────────────────────────────


async def _sql_store(path) -> tuple[SqlRunStore, object]:
    engine = build_engine(f"sqlite+aiosqlite:///{path}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return SqlRunStore(build_session_factory(engine), total_steps=TOTAL_STEPS), engine


@pytest.fixture(params=["memory", "sql"])
async def store(request, tmp_path):
    """Every RunStore implementation; SQLite is file-backed so sessions really run concurrently."""
    if request.param == "memory":
        yield InMemoryRunStore(total_steps=TOTAL_STEPS)
        return
    sql_store, engine = await _sql_store(tmp_path / "runs.db")
    yield sql_store
    await engine.dispose()


@pytest.fixture
async def sql_store(tmp_path):
    sql_store, engine = await _sql_store(tmp_path / "runs.db")
    yield sql_store
    await engine.dispose()


@pytest.fixture
def memory_store():
    return InMemoryRunStore(total_steps=TOTAL_STEPS)


# ── Relay doubles ───────────────────────────────────────────────


class RecordingRelay(RelayClient):
    """Relay that records every trigger and forwards it only when ``forward`` is set."""

    def __init__(self, base_url: str = "http://test", transport=None, forward: bool = True):
        super().__init__(base_url, transport=transport)
        self.forward = forward
        self.triggered: list[tuple[str, int]] = []
        self.pings: list[str] = []

    async def trigger_step(self, run_id: str, step: int) -> int:
        self.triggered.append((run_id, step))
        if not self.forward:
            return 202
        return await super().trigger_step(run_id, step)

    async def ping(self, source: str) -> dict:
        self.pings.append(source)
        if not self.forward:
            return {"ok": True, "source": source}
        return await super().ping(source)


@pytest.fixture
def relay():
    """Relay that calls back into the app in-process."""
    return RecordingRelay(transport=ASGITransport(app=app))


# ── App client ──────────────────────────────────────────────────


@pytest.fixture
async def app_store(request, memory_store, tmp_path):
    """Store behind the app.  In-memory unless parametrized indirectly with ``"sql"``."""
    if getattr(request, "param", "memory") == "memory":
        yield memory_store
        return
    sql_store, engine = await _sql_store(tmp_path / "app.db")
    yield sql_store
    await engine.dispose()


@pytest.fixture
async def client(app_store, relay):
    """Async test client with the app store and in-process relay wired in."""
    app.dependency_overrides[get_run_store] = lambda: app_store
    app.dependency_overrides[get_relay_client] = lambda: relay
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
    await deferred.drain(2.0)


# ── Helpers ─────────────────────────────────────────────────────


async def wait_for_run(store: RunStore, run_id: str, predicate, timeout: float = 2.0) -> RunRecord:
    """Poll *store* until *predicate(run)* holds; fail the test on timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        run = await store.get_run(run_id)
        if run is not None and predicate(run):
            return run
        if loop.time() >= deadline:
            pytest.fail(f"run {run_id} did not reach the expected state: {run}")
        await asyncio.sleep(0.01)


def step_statuses(run: RunRecord) -> list[JobStatus]:
    return [s.status for s in run.steps]
