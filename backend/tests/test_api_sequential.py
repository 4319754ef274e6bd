"""Tests for the NDJSON streaming scenarios."""

from __future__ import annotations

import asyncio
import json

import pytest

from conftest import TOTAL_STEPS
from steprelay.api.sequential import _ndjson
from steprelay.db.models import JobScenario, JobStatus
from steprelay.runtime.sequential import STREAM_CLOSED_MESSAGE, SequentialRunner


def _events(resp) -> list[dict]:
    return [json.loads(line) for line in resp.text.splitlines() if line.strip()]


class TestSequentialStream:
    @pytest.mark.asyncio
    async def test_all_steps_stream_in_order(self, client, memory_store):
        resp = await client.post("/api/sequential")
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("application/x-ndjson")

        events = _events(resp)
        types = [e["type"] for e in events]
        assert types == ["run_started"] + ["start", "complete"] * TOTAL_STEPS + ["done"]
        run_id = events[0]["runId"]
        assert resp.headers["x-run-id"] == run_id
        assert all(e["runId"] == run_id for e in events)
        assert [e["step"] for e in events if e["type"] == "complete"] == list(range(1, TOTAL_STEPS + 1))
        assert events[-1]["completedSteps"] == list(range(1, TOTAL_STEPS + 1))

        run = await memory_store.get_run(run_id)
        assert run.scenario == JobScenario.SEQUENTIAL
        assert run.status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_budget_exhaustion_emits_timeout(self, client, memory_store, fast_settings):
        fast_settings.SEQUENTIAL_JOB_DURATION_SECONDS = 0.1
        fast_settings.SEQUENTIAL_MAX_DURATION = 0.25
        events = _events(await client.post("/api/sequential"))

        last = events[-1]
        assert last["type"] == "timeout"
        assert last["failedStep"] == 3
        assert last["completedSteps"] == [1, 2]
        run = await memory_store.get_run(last["runId"])
        assert run.status == JobStatus.FAILED
        assert run.get_step(3).status == JobStatus.FAILED
        assert run.get_step(4).status == JobStatus.PENDING

    @pytest.mark.asyncio
    async def test_closing_response_body_fails_unfinished_run(self, memory_store):
        runner = SequentialRunner(memory_store, job_duration_seconds=0.2, max_duration_seconds=5.0)
        run = await runner.start()
        body = _ndjson(runner.stream(run.id))
        async for line in body:
            if json.loads(line)["type"] == "start":
                break
        await body.aclose()

        final = await memory_store.get_run(run.id)
        assert final.status == JobStatus.FAILED
        assert final.error == STREAM_CLOSED_MESSAGE


class TestSequentialWithRace:
    @pytest.mark.asyncio
    async def test_completes_inside_race_limit(self, client, memory_store):
        events = _events(await client.post("/api/sequential-with-race"))
        assert events[-1]["type"] == "done"
        run = await memory_store.get_run(events[0]["runId"])
        assert run.scenario == JobScenario.RACE
        assert run.status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_race_timeout_names_failed_step(self, client, memory_store, fast_settings):
        fast_settings.SEQUENTIAL_JOB_DURATION_SECONDS = 0.1
        fast_settings.RACE_TIMEOUT_SECONDS = 0.25
        fast_settings.SEQUENTIAL_MAX_DURATION = 5.0
        events = _events(await client.post("/api/sequential-with-race"))

        last = events[-1]
        assert last["type"] == "race_timeout"
        assert last["failedStep"] == 3
        assert last["completedSteps"] == [1, 2]
        assert "Race timeout after 0.25s" in last["message"]
        assert isinstance(last["elapsed"], int)
        run = await memory_store.get_run(last["runId"])
        assert run.status == JobStatus.FAILED
        assert run.error == last["message"]


class TestSequentialRunner:
    @pytest.mark.asyncio
    async def test_kill_mid_stream_emits_manual_stop(self, memory_store):
        runner = SequentialRunner(
            memory_store,
            job_duration_seconds=0.2,
            max_duration_seconds=5.0,
        )
        run = await runner.start()
        events: list[dict] = []

        async def consume():
            async for event in runner.stream(run.id):
                events.append(event)
                if event["type"] == "complete" and event["step"] == 1:
                    await memory_store.kill_run(run.id, "stop streaming")

        await asyncio.wait_for(consume(), timeout=3.0)
        last = events[-1]
        assert last["type"] == "manual_stop"
        assert last["message"] == "stop streaming"
        assert last["completedSteps"] == [1]
        final = await memory_store.get_run(run.id)
        assert final.get_step(1).status == JobStatus.COMPLETED
        assert final.get_step(2).status == JobStatus.FAILED

    @pytest.mark.asyncio
    async def test_closing_stream_mid_step_fails_the_run(self, store):
        runner = SequentialRunner(store, job_duration_seconds=0.2, max_duration_seconds=5.0)
        run = await runner.start()
        gen = runner.stream(run.id)
        async for event in gen:
            if event["type"] == "start":
                break
        await gen.aclose()

        final = await store.get_run(run.id)
        assert final.status == JobStatus.FAILED
        assert final.error == STREAM_CLOSED_MESSAGE
        assert final.get_step(1).status == JobStatus.FAILED
        assert final.get_step(2).status == JobStatus.PENDING

    @pytest.mark.asyncio
    async def test_closing_stream_between_steps_keeps_completed_step(self, memory_store):
        runner = SequentialRunner(memory_store, job_duration_seconds=0.01, max_duration_seconds=5.0)
        run = await runner.start()
        gen = runner.stream(run.id)
        async for event in gen:
            if event["type"] == "complete":
                break
        await gen.aclose()

        final = await memory_store.get_run(run.id)
        assert final.status == JobStatus.FAILED
        assert final.get_step(1).status == JobStatus.COMPLETED
        assert final.get_step(2).status == JobStatus.PENDING

    @pytest.mark.asyncio
    async def test_cancelled_consumer_fails_the_run(self, memory_store):
        runner = SequentialRunner(memory_store, job_duration_seconds=1.0, max_duration_seconds=5.0)
        run = await runner.start()
        started = asyncio.Event()

        async def consume():
            async for event in runner.stream(run.id):
                if event["type"] == "start":
                    started.set()

        task = asyncio.create_task(consume())
        await asyncio.wait_for(started.wait(), timeout=2.0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        final = await memory_store.get_run(run.id)
        assert final.status == JobStatus.FAILED
        assert final.error == STREAM_CLOSED_MESSAGE
        assert final.get_step(1).status == JobStatus.FAILED

    @pytest.mark.asyncio
    async def test_closing_after_done_leaves_run_completed(self, memory_store):
        runner = SequentialRunner(memory_store, job_duration_seconds=0.01, max_duration_seconds=5.0)
        run = await runner.start()
        gen = runner.stream(run.id)
        async for event in gen:
            if event["type"] == "done":
                break
        await gen.aclose()
        assert (await memory_store.get_run(run.id)).status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_store_error_ends_stream_with_error_event(self, memory_store, monkeypatch):
        runner = SequentialRunner(memory_store, job_duration_seconds=0.01, max_duration_seconds=5.0)
        run = await runner.start()

        async def broken_complete(*args, **kwargs):
            raise RuntimeError("write failed")

        monkeypatch.setattr(memory_store, "mark_step_complete", broken_complete)
        events = [e async for e in runner.stream(run.id)]

        assert events[-1]["type"] == "error"
        assert events[-1]["message"] == "write failed"
        assert events[-1]["step"] == 1
        assert (await memory_store.get_run(run.id)).status == JobStatus.FAILED
