import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from aqualuminus.domain.models import Schedule, TaskContext, TaskResult, TimeOfDay, Weekday
from aqualuminus.services.cleaning_cycle import CleaningCycleExecutor
from aqualuminus.services.orchestrator import (
    NOTICE,
    RUN_CYCLE,
    TURN_OFF,
    RecurrenceOrchestrator,
    occurrence_payload,
)
from aqualuminus.services.reconciler import DeviceStateReconciler

UTC = timezone.utc
MONDAY_9AM = datetime(2024, 1, 8, 9, 0, tzinfo=UTC)
WEDNESDAY_9AM = datetime(2024, 1, 10, 9, 0, tzinfo=UTC)


@pytest.fixture
def schedule() -> Schedule:
    return Schedule(
        id="s1",
        device_id="UV001",
        name="Morning Clean",
        weekdays=frozenset({Weekday.MON, Weekday.WED}),
        time_of_day=TimeOfDay(9, 0),
        duration_minutes=30,
    )


@pytest.fixture
def rig(engine, repo, sim_api, notifier, clock):
    reconciler = DeviceStateReconciler(api=sim_api, store=repo, activity=repo, clock=clock)
    orchestrator = RecurrenceOrchestrator(engine, repo, advance_notice=timedelta(minutes=5), clock=clock)
    executor = CleaningCycleExecutor(reconciler, orchestrator, engine, notifier, repo, clock=clock)
    executor.register()
    return reconciler, orchestrator, executor


def _ctx(kind, payload, attempt=1, max_attempts=3) -> TaskContext:
    return TaskContext(task_id="t", kind=kind, tag="s1", payload=payload, attempt=attempt, max_attempts=max_attempts)


def test_full_occurrence_runs_and_rearms(rig, engine, repo, sim_api, notifier, clock, schedule, lamp_device):
    reconciler, orchestrator, _ = rig

    async def scenario():
        await reconciler.add_device(lamp_device)
        await repo.save(schedule)
        await orchestrator.arm(schedule)

        clock.now = MONDAY_9AM - timedelta(minutes=5)
        assert await engine.run_due() == 1
        assert notifier.kinds() == ["advance"]

        clock.now = MONDAY_9AM
        assert await engine.run_due() == 1
        assert sim_api.lamp("10.0.0.5", 80).uv_on
        after_start = await engine.pending(tag="s1")

        clock.now = MONDAY_9AM + timedelta(minutes=30)
        assert await engine.run_due() == 1
        return after_start, await engine.pending(tag="s1"), reconciler.get("UV001")

    after_start, after_off, device = asyncio.run(scenario())

    assert sorted((t.kind, t.due_utc) for t in after_start) == [
        (NOTICE, WEDNESDAY_9AM - timedelta(minutes=5)),
        (RUN_CYCLE, WEDNESDAY_9AM),
        (TURN_OFF, MONDAY_9AM + timedelta(minutes=30)),
    ]
    assert sorted(t.kind for t in after_off) == [NOTICE, RUN_CYCLE]
    assert notifier.kinds() == ["advance", "started", "completed"]
    assert not sim_api.lamp("10.0.0.5", 80).uv_on
    assert device.total_uv_seconds == pytest.approx(1800.0)


def test_late_delivery_shortens_turn_off_delay(rig, engine, repo, clock, schedule, lamp_device):
    reconciler, _, executor = rig
    payload = occurrence_payload(schedule, MONDAY_9AM)

    async def scenario():
        await reconciler.add_device(lamp_device)
        await repo.save(schedule)
        clock.now = MONDAY_9AM + timedelta(minutes=40)
        result = await executor.run_cycle(_ctx(RUN_CYCLE, payload))
        return result, await engine.pending(tag="s1", kind=TURN_OFF)

    result, (turn_off,) = asyncio.run(scenario())
    assert result is TaskResult.SUCCESS
    assert turn_off.due_utc == clock.now
    assert turn_off.id == f"s1:turn_off:{MONDAY_9AM.isoformat()}"


def test_redelivered_run_cycle_does_not_duplicate_turn_off(rig, engine, repo, clock, schedule, lamp_device):
    reconciler, _, executor = rig
    payload = occurrence_payload(schedule, MONDAY_9AM)

    async def scenario():
        await reconciler.add_device(lamp_device)
        await repo.save(schedule)
        clock.now = MONDAY_9AM
        await executor.run_cycle(_ctx(RUN_CYCLE, payload))
        await executor.run_cycle(_ctx(RUN_CYCLE, payload))
        return await engine.pending(tag="s1")

    tasks = asyncio.run(scenario())
    assert sorted(t.kind for t in tasks) == [NOTICE, RUN_CYCLE, TURN_OFF]


def test_missing_device_reports_error_and_rearms(rig, engine, repo, notifier, clock, schedule):
    _, _, executor = rig
    payload = occurrence_payload(schedule, MONDAY_9AM)

    async def scenario():
        await repo.save(schedule)
        clock.now = MONDAY_9AM
        result = await executor.run_cycle(_ctx(RUN_CYCLE, payload))
        return result, await engine.pending(tag="s1")

    result, tasks = asyncio.run(scenario())
    assert result is TaskResult.FAILURE
    assert notifier.events[-1] == ("error", "s1", "Morning Clean", "Device not found")
    assert sorted(t.kind for t in tasks) == [NOTICE, RUN_CYCLE]


def test_unreachable_lamp_retries_then_rearms_on_last_attempt(
    rig, engine, repo, sim_api, notifier, clock, schedule, lamp_device
):
    reconciler, _, executor = rig
    payload = occurrence_payload(schedule, MONDAY_9AM)

    async def scenario():
        await reconciler.add_device(lamp_device)
        await repo.save(schedule)
        sim_api.lamp("10.0.0.5", 80).reachable = False
        clock.now = MONDAY_9AM

        first = await executor.run_cycle(_ctx(RUN_CYCLE, payload, attempt=1))
        pending_after_first = await engine.pending(tag="s1")
        last = await executor.run_cycle(_ctx(RUN_CYCLE, payload, attempt=3))
        return first, pending_after_first, last, await engine.pending(tag="s1")

    first, pending_after_first, last, pending_after_last = asyncio.run(scenario())
    assert first is TaskResult.RETRY
    assert pending_after_first == []
    assert last is TaskResult.FAILURE
    assert sorted(t.kind for t in pending_after_last) == [NOTICE, RUN_CYCLE]
    assert ("error", "s1", "Morning Clean", "Failed to start UV cleaning") in notifier.events


def test_turn_off_failure_retries(rig, sim_api, notifier, schedule, lamp_device):
    reconciler, _, executor = rig
    payload = {"schedule_id": "s1", "schedule_name": "Morning Clean", "device_id": "UV001"}

    async def scenario():
        await reconciler.add_device(lamp_device)
        await reconciler.turn_on("UV001")
        sim_api.lamp("10.0.0.5", 80).reachable = False
        retry = await executor.turn_off(_ctx(TURN_OFF, payload, attempt=1))
        failed = await executor.turn_off(_ctx(TURN_OFF, payload, attempt=3))
        sim_api.lamp("10.0.0.5", 80).reachable = True
        done = await executor.turn_off(_ctx(TURN_OFF, payload, attempt=2))
        return retry, failed, done

    retry, failed, done = asyncio.run(scenario())
    assert (retry, failed, done) == (TaskResult.RETRY, TaskResult.FAILURE, TaskResult.SUCCESS)
    assert notifier.kinds() == ["error", "error", "completed"]


def test_deleted_schedule_drops_occurrence_without_rearm(rig, engine, notifier, clock, schedule, lamp_device):
    reconciler, _, executor = rig
    payload = occurrence_payload(schedule, MONDAY_9AM)

    async def scenario():
        await reconciler.add_device(lamp_device)
        clock.now = MONDAY_9AM
        result = await executor.run_cycle(_ctx(RUN_CYCLE, payload))
        return result, await engine.pending(), reconciler.get("UV001")

    result, tasks, device = asyncio.run(scenario())
    assert result is TaskResult.FAILURE
    assert tasks == []
    assert not device.uv_on
    assert notifier.events == []


def test_notice_carries_fire_time(rig, notifier, schedule):
    _, _, executor = rig
    payload = occurrence_payload(schedule, MONDAY_9AM)

    result = asyncio.run(executor.notice(_ctx(NOTICE, payload)))
    assert result is TaskResult.SUCCESS
    assert notifier.events == [("advance", "s1", "Morning Clean", 30, MONDAY_9AM)]


class TurnOffEnqueueFails:
    """Delegates to a real engine but refuses to enqueue turn-off tasks."""

    def __init__(self, engine):
        self._engine = engine

    async def enqueue(self, kind, delay, tag, payload, *, dedupe_key=None):
        if kind == TURN_OFF:
            raise RuntimeError("task store unavailable")
        return await self._engine.enqueue(kind, delay, tag, payload, dedupe_key=dedupe_key)

    def __getattr__(self, name):
        return getattr(self._engine, name)


def test_error_on_last_attempt_still_rearms(engine, repo, sim_api, notifier, clock, schedule, lamp_device):
    reconciler = DeviceStateReconciler(api=sim_api, store=repo, activity=repo, clock=clock)
    orchestrator = RecurrenceOrchestrator(engine, repo, advance_notice=timedelta(minutes=5), clock=clock)
    executor = CleaningCycleExecutor(reconciler, orchestrator, TurnOffEnqueueFails(engine), notifier, repo, clock=clock)
    payload = occurrence_payload(schedule, MONDAY_9AM)

    async def scenario():
        await reconciler.add_device(lamp_device)
        await repo.save(schedule)
        clock.now = MONDAY_9AM

        with pytest.raises(RuntimeError):
            await executor.run_cycle(_ctx(RUN_CYCLE, payload, attempt=1))
        pending_after_first = await engine.pending(tag="s1")

        last = await executor.run_cycle(_ctx(RUN_CYCLE, payload, attempt=3))
        return pending_after_first, last, await engine.pending(tag="s1")

    pending_after_first, last, tasks = asyncio.run(scenario())
    assert pending_after_first == []
    assert last is TaskResult.FAILURE
    assert sorted((t.kind, t.due_utc) for t in tasks) == [
        (NOTICE, WEDNESDAY_9AM - timedelta(minutes=5)),
        (RUN_CYCLE, WEDNESDAY_9AM),
    ]
    assert notifier.events[-1] == (
        "error", "s1", "Morning Clean", "UV cleaning encountered an error: task store unavailable"
    )
