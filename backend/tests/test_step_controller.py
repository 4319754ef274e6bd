"""Tests for the chained step controller, driven directly (no HTTP)."""

from __future__ import annotations

import asyncio

import pytest

from conftest import TOTAL_STEPS, RecordingRelay
from steprelay.db.models import JobScenario, JobStatus
from steprelay.errors import InvalidStepError, ScenarioMismatchError
from steprelay.runtime.deferred import DeferredActions
from steprelay.runtime.step_controller import ChainPlan, OutcomeKind, StepController
from steprelay.utils.metrics import metrics


def _plan(**overrides) -> ChainPlan:
    values = dict(
        total_steps=TOTAL_STEPS,
        job_duration_seconds=0.01,
        final_job_duration_seconds=0.01,
        final_race_timeout_seconds=None,
        max_duration_seconds=1.0,
        sync_steps=frozenset(range(1, TOTAL_STEPS + 1)),
        ping_enabled=False,
    )
    values.update(overrides)
    return ChainPlan(**values)


@pytest.fixture
def offline_relay():
    return RecordingRelay(forward=False)


@pytest.fixture
def controller(memory_store, offline_relay):
    return StepController(memory_store, offline_relay, _plan())


async def _run_deferred(actions: DeferredActions) -> None:
    await asyncio.gather(*(await actions.launch()))


class TestChainPlan:
    def test_from_settings(self, fast_settings):
        plan = ChainPlan.from_settings()
        assert plan.total_steps == TOTAL_STEPS
        assert plan.sync_steps == frozenset({1})
        assert plan.is_sync(1) and not plan.is_sync(2)
        assert plan.race_timeout_for(TOTAL_STEPS) == fast_settings.CHAINED_FINAL_RACE_TIMEOUT_SECONDS
        assert plan.race_timeout_for(1) is None
        assert plan.duration_for(TOTAL_STEPS) == fast_settings.CHAINED_FINAL_JOB_DURATION_SECONDS


class TestValidation:
    @pytest.mark.parametrize("raw", ["0", "5", "-1", "abc", "", "1.5", None])
    def test_invalid_steps(self, controller, raw):
        with pytest.raises(InvalidStepError) as exc_info:
            controller.validate_step(raw)
        assert f"Must be 1-{TOTAL_STEPS}" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_invalid_step_touches_nothing(self, controller, memory_store):
        with pytest.raises(InvalidStepError):
            await controller.invoke("9", "r-invalid", DeferredActions())
        assert await memory_store.get_run("r-invalid") is None

    @pytest.mark.asyncio
    async def test_scenario_mismatch(self, controller, memory_store):
        await memory_store.create_run(JobScenario.RACE, "r-race")
        with pytest.raises(ScenarioMismatchError):
            await controller.invoke("1", "r-race", DeferredActions())
        assert (await memory_store.get_run("r-race")).status == JobStatus.PENDING


class TestSyncStep:
    @pytest.mark.asyncio
    async def test_complete_schedules_next_step(self, controller, memory_store, offline_relay):
        actions = DeferredActions()
        outcome = await controller.invoke("1", "r1", actions)

        assert outcome.kind == OutcomeKind.COMPLETE
        assert outcome.duration_ms == 10
        assert outcome.run.get_step(1).status == JobStatus.COMPLETED
        assert actions.names == ["continue:r1:2"]
        assert offline_relay.triggered == []

        await _run_deferred(actions)
        assert offline_relay.triggered == [("r1", 2)]

    @pytest.mark.asyncio
    async def test_without_run_id_creates_a_run(self, controller, memory_store):
        outcome = await controller.invoke("1", None, DeferredActions())
        assert outcome.kind == OutcomeKind.COMPLETE
        assert (await memory_store.get_run(outcome.run_id)) is not None

    @pytest.mark.asyncio
    async def test_last_step_completes_run_and_defers_audit(self, controller, memory_store):
        for step in range(1, TOTAL_STEPS):
            await controller.invoke(str(step), "r-last", DeferredActions())
        actions = DeferredActions()
        outcome = await controller.invoke(str(TOTAL_STEPS), "r-last", actions)

        assert outcome.kind == OutcomeKind.COMPLETE
        assert outcome.run.status == JobStatus.COMPLETED
        assert actions.names == ["audit:r-last"]
        assert all(s.status == JobStatus.COMPLETED and s.duration_ms >= 0 for s in outcome.run.steps)
        await _run_deferred(actions)

    @pytest.mark.asyncio
    async def test_ping_is_an_independent_deferred_action(self, memory_store, offline_relay):
        controller = StepController(memory_store, offline_relay, _plan(ping_enabled=True))
        actions = DeferredActions()
        await controller.invoke("1", "r-ping", actions)
        assert actions.names == ["continue:r-ping:2", "ping:r-ping:1"]
        await _run_deferred(actions)
        assert offline_relay.pings == ["step-1 (run r-ping)"]
        assert offline_relay.triggered == [("r-ping", 2)]


class TestPreconditions:
    @pytest.mark.asyncio
    async def test_already_completed_keeps_duration(self, controller, memory_store):
        await controller.invoke("1", "r-again", DeferredActions())
        before = (await memory_store.get_run("r-again")).get_step(1)

        actions = DeferredActions()
        outcome = await controller.invoke("1", "r-again", actions)
        assert outcome.kind == OutcomeKind.ALREADY_COMPLETED
        assert outcome.duration_ms == before.duration_ms
        assert (await memory_store.get_run("r-again")).get_step(1) == before
        assert len(actions) == 0

    @pytest.mark.asyncio
    async def test_already_completed_wins_over_terminal_run(self, controller, memory_store):
        await controller.invoke("1", "r-done", DeferredActions())
        await memory_store.kill_run("r-done", "stop")
        outcome = await controller.invoke("1", "r-done", DeferredActions())
        assert outcome.kind == OutcomeKind.ALREADY_COMPLETED

    @pytest.mark.asyncio
    async def test_killed_run_aborts_without_mutation(self, controller, memory_store):
        await controller.invoke("1", "r2", DeferredActions())
        await memory_store.kill_run("r2", "Manually stopped via kill switch.")
        before = await memory_store.get_run("r2")

        actions = DeferredActions()
        outcome = await controller.invoke("2", "r2", actions)
        assert outcome.kind == OutcomeKind.ABORTED
        assert outcome.message == "Manually stopped via kill switch."
        assert await memory_store.get_run("r2") == before
        assert len(actions) == 0


class TestDuringExecution:
    @pytest.mark.asyncio
    async def test_kill_mid_step_discards_result(self, memory_store, offline_relay, fast_settings):
        controller = StepController(memory_store, offline_relay, _plan(job_duration_seconds=5.0))
        actions = DeferredActions()
        task = asyncio.create_task(controller.invoke("2", "r-mid", actions))
        await asyncio.sleep(0.05)
        assert (await memory_store.get_run("r-mid")).get_step(2).status == JobStatus.ONGOING

        await memory_store.kill_run("r-mid", "stop now")
        outcome = await asyncio.wait_for(task, timeout=2.0)

        assert outcome.kind == OutcomeKind.ABORTED
        assert outcome.message == "stop now"
        run = await memory_store.get_run("r-mid")
        assert run.get_step(2).status == JobStatus.FAILED
        assert run.get_step(2).duration_ms is None
        assert len(actions) == 0

    @pytest.mark.asyncio
    async def test_race_timeout_fails_run_gracefully(self, memory_store, offline_relay):
        controller = StepController(
            memory_store,
            offline_relay,
            _plan(final_job_duration_seconds=5.0, final_race_timeout_seconds=0.02, max_duration_seconds=6.0),
        )
        for step in range(1, TOTAL_STEPS):
            await controller.invoke(str(step), "r-race", DeferredActions())

        actions = DeferredActions()
        outcome = await controller.invoke(str(TOTAL_STEPS), "r-race", actions)

        assert outcome.kind == OutcomeKind.RACE_TIMEOUT
        assert "race timeout after 0.02s" in outcome.message
        assert "maxDuration (6s)" in outcome.message
        assert outcome.run.status == JobStatus.FAILED
        assert outcome.run.get_step(TOTAL_STEPS).status == JobStatus.FAILED
        assert outcome.run.error == outcome.message
        assert len(actions) == 0
        assert metrics.get_counter("race_timeout_total", labels={"scenario": "chained"}) == 1

    @pytest.mark.asyncio
    async def test_executor_error_is_persisted(self, memory_store, offline_relay, monkeypatch):
        import steprelay.runtime.step_controller as controller_mod

        async def broken_job(step, duration, abort=None):
            raise RuntimeError("disk on fire")

        monkeypatch.setattr(controller_mod, "simulate_job", broken_job)
        controller = StepController(memory_store, offline_relay, _plan())
        outcome = await controller.invoke("1", "r-err", DeferredActions())

        assert outcome.kind == OutcomeKind.FAILED
        assert outcome.message == "disk on fire"
        run = await memory_store.get_run("r-err")
        assert run.status == JobStatus.FAILED
        assert run.get_step(1).error == "disk on fire"

    @pytest.mark.asyncio
    async def test_store_error_while_failing_is_swallowed(self, memory_store, offline_relay, monkeypatch, caplog):
        import steprelay.runtime.step_controller as controller_mod

        async def broken_job(step, duration, abort=None):
            raise RuntimeError("first failure")

        async def broken_persist(*args, **kwargs):
            raise ConnectionError("store down")

        monkeypatch.setattr(controller_mod, "simulate_job", broken_job)
        monkeypatch.setattr(memory_store, "mark_run_failed", broken_persist)
        controller = StepController(memory_store, offline_relay, _plan())

        outcome = await controller.invoke("1", "r-down", DeferredActions())
        assert outcome.kind == OutcomeKind.FAILED
        assert "failed to persist error" in caplog.text


class TestDeferredSteps:
    @pytest.mark.asyncio
    async def test_accepted_step_runs_after_launch(self, memory_store, offline_relay):
        controller = StepController(memory_store, offline_relay, _plan(sync_steps=frozenset({1})))
        actions = DeferredActions()
        outcome = await controller.invoke("2", "r-202", actions)

        assert outcome.kind == OutcomeKind.ACCEPTED
        assert outcome.run is None
        assert (await memory_store.get_run("r-202")).get_step(2).status == JobStatus.ONGOING
        assert actions.names == ["step:r-202:2"]

        await _run_deferred(actions)
        # The deferred step launched its own continuation.
        for _ in range(50):
            if offline_relay.triggered:
                break
            await asyncio.sleep(0.01)
        assert (await memory_store.get_run("r-202")).get_step(2).status == JobStatus.COMPLETED
        assert offline_relay.triggered == [("r-202", 3)]


class TestContinuationFailures:
    @pytest.mark.asyncio
    async def test_http_error_fails_run_naming_target_step(self, memory_store):
        class RejectingRelay(RecordingRelay):
            async def trigger_step(self, run_id, step):
                from steprelay.connectors.relay_client import RelayTriggerError

                raise RelayTriggerError(step, "HTTP 503", status_code=503)

        controller = StepController(memory_store, RejectingRelay(forward=False), _plan())
        actions = DeferredActions()
        await controller.invoke("1", "r-503", actions)
        await _run_deferred(actions)

        run = await memory_store.get_run("r-503")
        assert run.status == JobStatus.FAILED
        assert run.error == "Step 2 failed to start (HTTP 503)."
        assert run.get_step(1).status == JobStatus.COMPLETED
        assert run.get_step(2).status == JobStatus.FAILED
        assert metrics.get_counter("trigger_failures_total", labels={"step": "2"}) == 1

    @pytest.mark.asyncio
    async def test_transport_error_fails_run(self, memory_store):
        class UnreachableRelay(RecordingRelay):
            async def trigger_step(self, run_id, step):
                from steprelay.connectors.relay_client import RelayTriggerError

                raise RelayTriggerError(step, "ConnectError: refused")

        controller = StepController(memory_store, UnreachableRelay(forward=False), _plan())
        actions = DeferredActions()
        await controller.invoke("1", "r-down", actions)
        await _run_deferred(actions)

        run = await memory_store.get_run("r-down")
        assert run.error == "Step 2 failed to start after previous completion."
