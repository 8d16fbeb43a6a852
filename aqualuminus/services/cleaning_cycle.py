from __future__ import annotations
import logging
from datetime import datetime, timedelta
from typing import Callable

from ..core.timeutil import now_local
from ..domain.interfaces import NotificationSink, ScheduleRepository, WorkEngine
from ..domain.models import TaskContext, TaskResult
from .orchestrator import NOTICE, RUN_CYCLE, TURN_OFF, RecurrenceOrchestrator
from .reconciler import DeviceStateReconciler

logger = logging.getLogger(__name__)


class CleaningCycleExecutor:
    """Task bodies for one cleaning occurrence: notice, run_cycle, turn_off.

    Every body is safe to re-run: the reconciler diffs commands against
    stored state, the turn-off task is deduplicated per occurrence, and
    re-arming cancels before it enqueues.
    """

    def __init__(
        self,
        reconciler: DeviceStateReconciler,
        orchestrator: RecurrenceOrchestrator,
        engine: WorkEngine,
        notifier: NotificationSink,
        schedules: ScheduleRepository,
        clock: Callable[[], datetime] = now_local,
    ) -> None:
        self._reconciler = reconciler
        self._orchestrator = orchestrator
        self._engine = engine
        self._notifier = notifier
        self._schedules = schedules
        self._clock = clock

    def register(self) -> None:
        self._engine.register(NOTICE, self.notice)
        self._engine.register(RUN_CYCLE, self.run_cycle)
        self._engine.register(TURN_OFF, self.turn_off)

    async def notice(self, ctx: TaskContext) -> TaskResult:
        p = ctx.payload
        await self._notifier.advance_notice(
            p["schedule_id"],
            p.get("schedule_name", "UV Cleaning"),
            int(p.get("duration_minutes", 30)),
            datetime.fromisoformat(p["fire_time"]),
        )
        logger.debug("Advance notification sent for %s", p.get("schedule_name"))
        return TaskResult.SUCCESS

    async def run_cycle(self, ctx: TaskContext) -> TaskResult:
        p = ctx.payload
        schedule_id = p["schedule_id"]
        name = p.get("schedule_name", "UV Cleaning")
        device_id = p["device_id"]
        duration = int(p.get("duration_minutes", 30))
        fire_time = datetime.fromisoformat(p["fire_time"])

        logger.info(
            "Starting UV cleaning: %s for %d minutes on device %s (attempt %d/%d)",
            name, duration, device_id, ctx.attempt, ctx.max_attempts,
        )

        try:
            if await self._schedules.get(schedule_id) is None:
                logger.warning("Schedule %s no longer exists, dropping occurrence", schedule_id)
                return TaskResult.FAILURE

            if self._reconciler.get(device_id) is None:
                await self._notifier.error(schedule_id, name, "Device not found")
                await self._orchestrator.rearm_after_cycle(schedule_id)
                return TaskResult.FAILURE

            await self._notifier.started(schedule_id, name, duration)

            if not await self._reconciler.turn_on(device_id):
                logger.error("Failed to start UV cleaning for device %s", device_id)
                await self._notifier.error(schedule_id, name, "Failed to start UV cleaning")
                if ctx.last_attempt:
                    await self._orchestrator.rearm_after_cycle(schedule_id)
                    return TaskResult.FAILURE
                return TaskResult.RETRY

            off_delay = fire_time + timedelta(minutes=duration) - self._clock()
            await self._engine.enqueue(
                TURN_OFF,
                off_delay,
                schedule_id,
                {
                    "schedule_id": schedule_id,
                    "schedule_name": name,
                    "device_id": device_id,
                    "fire_time": p["fire_time"],
                },
                dedupe_key=f"{schedule_id}:turn_off:{p['fire_time']}",
            )
            logger.info("UV light on, turn-off for %s in %.0fs", name, max(off_delay.total_seconds(), 0.0))

            await self._orchestrator.rearm_after_cycle(schedule_id)
            return TaskResult.SUCCESS
        except Exception as e:
            logger.exception("UV cleaning failed for %s (attempt %d/%d)", name, ctx.attempt, ctx.max_attempts)
            await self._notifier.error(schedule_id, name, f"UV cleaning encountered an error: {e}")
            if not ctx.last_attempt:
                raise
            # no retry follows, so the next week must be armed here
            try:
                await self._orchestrator.rearm_after_cycle(schedule_id)
            except Exception:
                logger.exception("Failed to reschedule %s after error", name)
            return TaskResult.FAILURE

    async def turn_off(self, ctx: TaskContext) -> TaskResult:
        p = ctx.payload
        schedule_id = p.get("schedule_id", "unknown")
        name = p.get("schedule_name", "UV Cleaning")
        device_id = p.get("device_id", "unknown")

        logger.info("Turning off UV light for: %s", name)
        if await self._reconciler.turn_off(device_id):
            await self._notifier.completed(schedule_id, name)
            return TaskResult.SUCCESS

        logger.error("Failed to turn off UV light for %s", name)
        await self._notifier.error(schedule_id, name, "Failed to turn off UV light")
        return TaskResult.FAILURE if ctx.last_attempt else TaskResult.RETRY
