from __future__ import annotations
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Iterable, Optional, Protocol, runtime_checkable

from .models import (
    ActivityEvent,
    CommandReport,
    Device,
    DeviceInfo,
    Schedule,
    SensorReport,
    SensorSample,
    StatusReport,
    TaskContext,
    TaskRecord,
    TaskResult,
)

TaskHandler = Callable[[TaskContext], Awaitable[TaskResult]]


@runtime_checkable
class DeviceApi(Protocol):
    """REST surface of the lamp firmware. Every call may raise DeviceUnreachable."""

    async def get_status(self, host: str, port: int) -> StatusReport:
        ...

    async def turn_on(self, host: str, port: int) -> CommandReport:
        ...

    async def turn_off(self, host: str, port: int) -> CommandReport:
        ...

    async def get_sensors(self, host: str, port: int) -> SensorReport:
        ...

    async def get_info(self, host: str, port: int) -> DeviceInfo:
        ...


@runtime_checkable
class DeviceStore(Protocol):
    async def get_device(self, device_id: str) -> Optional[Device]:
        ...

    async def list_devices(self) -> list[Device]:
        ...

    async def save_device(self, device: Device) -> None:
        ...

    async def delete_device(self, device_id: str) -> None:
        ...


@runtime_checkable
class ScheduleRepository(Protocol):
    async def get(self, schedule_id: str) -> Optional[Schedule]:
        ...

    async def list_active(self) -> list[Schedule]:
        ...

    async def list_all(self) -> list[Schedule]:
        ...

    async def save(self, schedule: Schedule) -> None:
        ...

    async def delete(self, schedule_id: str) -> None:
        ...


@runtime_checkable
class ActivityLog(Protocol):
    async def add_activity(self, event: ActivityEvent) -> None:
        ...


@runtime_checkable
class SensorHistory(Protocol):
    async def add_sensor_sample(self, sample: SensorSample) -> None:
        ...


@runtime_checkable
class NotificationSink(Protocol):
    """Fire-and-forget: implementations log their own failures and never raise."""

    async def advance_notice(
        self, schedule_id: str, name: str, duration_minutes: int, start_time: datetime
    ) -> None:
        ...

    async def started(self, schedule_id: str, name: str, duration_minutes: int) -> None:
        ...

    async def completed(self, schedule_id: str, name: str) -> None:
        ...

    async def error(self, schedule_id: str, name: str, message: str) -> None:
        ...


@runtime_checkable
class WorkEngine(Protocol):
    def register(self, kind: str, handler: TaskHandler) -> None:
        ...

    async def enqueue(
        self,
        kind: str,
        delay: timedelta,
        tag: str,
        payload: dict,
        *,
        dedupe_key: Optional[str] = None,
    ) -> str:
        ...

    async def cancel_by_tag(self, tag: str, kinds: Optional[Iterable[str]] = None) -> int:
        ...

    async def pending(self, tag: Optional[str] = None, kind: Optional[str] = None) -> list[TaskRecord]:
        ...
