from __future__ import annotations
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from ..core.timeutil import now_local
from ..domain.interfaces import ScheduleRepository, WorkEngine
from ..domain.models import Schedule
from ..domain.schedule import next_run_time

logger = logging.getLogger(__name__)

# Task kinds; every task of an occurrence is tagged with its schedule id
NOTICE = "notice"
RUN_CYCLE = "run_cycle"
TURN_OFF = "turn_off"

_ARM_KINDS = (NOTICE, RUN_CYCLE)
_SLOT = timedelta(minutes=1)


def occurrence_payload(schedule: Schedule, fire_time: datetime) -> dict:
    return {
        "schedule_id": schedule.id,
        "schedule_name": schedule.name,
        "device_id": schedule.device_id,
        "duration_minutes": schedule.duration_minutes,
        "fire_time": fire_time.isoformat(),
    }


class RecurrenceOrchestrator:
    """Turns a weekly schedule into a chain of one-shot delayed tasks.

    Per schedule: Idle (nothing pending) -> Armed (notice + run_cycle pending)
    -> Running (turn_off pending) -> Armed for the next week, or Idle once the
    schedule is deactivated or deleted.
    """

    def __init__(
        self,
        engine: WorkEngine,
        schedules: ScheduleRepository,
        advance_notice: timedelta = timedelta(minutes=5),
        clock: Callable[[], datetime] = now_local,
    ) -> None:
        self._engine = engine
        self._schedules = schedules
        self._advance_notice = advance_notice
        self._clock = clock
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock(self, schedule_id: str) -> asyncio.Lock:
        lock = self._locks.get(schedule_id)
        if lock is None:
            lock = self._locks[schedule_id] = asyncio.Lock()
        return lock

    async def arm(
        self,
        schedule: Schedule,
        *,
        keep_turn_off: bool = False,
        not_before: Optional[datetime] = None,
    ) -> Optional[datetime]:
        """Cancel the schedule's pending chain and enqueue the next occurrence.

        ``keep_turn_off`` spares a turn-off that belongs to an occurrence
        already in progress. ``not_before`` moves the search start past
        ``now``. Returns the fire time, or None when nothing was armed.
        """
        async with self._lock(schedule.id):
            return await self._arm(schedule, keep_turn_off=keep_turn_off, not_before=not_before)

    async def _arm(
        self,
        schedule: Schedule,
        *,
        keep_turn_off: bool = False,
        not_before: Optional[datetime] = None,
    ) -> Optional[datetime]:
        # caller holds the schedule lock
        await self._engine.cancel_by_tag(schedule.id, _ARM_KINDS if keep_turn_off else None)

        if not schedule.active:
            logger.debug("Schedule %s is inactive, skipping", schedule.name)
            return None
        if not schedule.weekdays:
            logger.warning("Schedule %s is active but has no weekdays, skipping", schedule.name)
            return None

        now = self._clock()
        start = max(now, not_before) if not_before is not None else now
        fire_time = next_run_time(schedule.weekdays, schedule.time_of_day, start)
        delay = fire_time - now
        if delay <= timedelta(0):
            logger.warning("Schedule %s is in the past (%s), skipping", schedule.name, fire_time.isoformat())
            return None

        payload = occurrence_payload(schedule, fire_time)
        await self._engine.enqueue(NOTICE, max(delay - self._advance_notice, timedelta(0)), schedule.id, payload)
        await self._engine.enqueue(RUN_CYCLE, delay, schedule.id, payload)

        logger.info("Scheduled UV cleaning for %s at %s", schedule.name, fire_time.isoformat())
        return fire_time

    async def _disarm(self, schedule_id: str) -> int:
        cancelled = await self._engine.cancel_by_tag(schedule_id)
        logger.info("Cancelled schedule %s (%d pending task(s))", schedule_id, cancelled)
        return cancelled

    async def disarm(self, schedule_id: str) -> int:
        async with self._lock(schedule_id):
            return await self._disarm(schedule_id)

    async def rearm_after_cycle(self, schedule_id: str) -> Optional[datetime]:
        async with self._lock(schedule_id):
            schedule = await self._schedules.get(schedule_id)
            if schedule is None or not schedule.active:
                logger.info("Schedule %s not found or inactive, skipping reschedule", schedule_id)
                return None
            # skip the slot that just fired
            fire_time = await self._arm(schedule, keep_turn_off=True, not_before=self._clock() + _SLOT)
        if fire_time is not None:
            logger.info("Rescheduled next occurrence for %s", schedule.name)
        return fire_time

    async def apply_edit(self, schedule: Schedule) -> Optional[datetime]:
        """Re-arm after a create/update/toggle. Never patches a chain in place."""
        async with self._lock(schedule.id):
            await self._disarm(schedule.id)
            return await self._arm(schedule)

    async def delete(self, schedule_id: str) -> None:
        async with self._lock(schedule_id):
            await self._disarm(schedule_id)
            await self._schedules.delete(schedule_id)

    async def rearm_all(self) -> int:
        """Recompute chains from persisted schedules; run on every start.

        An active schedule whose run_cycle is still queued keeps it (the
        engine delivers it, late if the process was down); everything else
        active is armed afresh. Pending tasks of inactive or deleted
        schedules are cancelled.
        """
        schedules = {s.id: s for s in await self._schedules.list_all()}
        armed = 0
        for schedule in schedules.values():
            async with self._lock(schedule.id):
                if schedule.armable:
                    if await self._engine.pending(tag=schedule.id, kind=RUN_CYCLE):
                        continue
                    if await self._arm(schedule, keep_turn_off=True) is not None:
                        armed += 1
                elif await self._engine.pending(tag=schedule.id):
                    await self._disarm(schedule.id)

        orphans = {t.tag for t in await self._engine.pending()} - set(schedules)
        for tag in orphans:
            await self.disarm(tag)

        logger.info("Rescheduled %d of %d schedule(s)", armed, len(schedules))
        return armed
