from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from aqualuminus.domain.models import Device
from aqualuminus.drivers.device_sim import SimulatedDeviceApi
from aqualuminus.services.work_engine import SQLiteWorkEngine
from aqualuminus.storage.sqlite_repo import SQLiteRepository


class FakeClock:
    """Settable clock; advance() moves it forward."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingNotifier:
    def __init__(self) -> None:
        self.events: list[tuple] = []

    async def advance_notice(self, schedule_id, name, duration_minutes, start_time):
        self.events.append(("advance", schedule_id, name, duration_minutes, start_time))

    async def started(self, schedule_id, name, duration_minutes):
        self.events.append(("started", schedule_id, name, duration_minutes))

    async def completed(self, schedule_id, name):
        self.events.append(("completed", schedule_id, name))

    async def error(self, schedule_id, name, message):
        self.events.append(("error", schedule_id, name, message))

    def kinds(self) -> list[str]:
        return [e[0] for e in self.events]


@pytest.fixture
def db_path(tmp_path) -> str:
    return str(tmp_path / "aqualuminus-test.db")


@pytest.fixture
def clock() -> FakeClock:
    # Sunday 2024-01-07 23:00 UTC
    return FakeClock(datetime(2024, 1, 7, 23, 0, tzinfo=timezone.utc))


@pytest.fixture
def repo(db_path) -> SQLiteRepository:
    r = SQLiteRepository(db_path)
    asyncio.run(r.init())
    return r


@pytest.fixture
def engine(db_path, clock) -> SQLiteWorkEngine:
    e = SQLiteWorkEngine(
        db_path,
        poll_seconds=0.01,
        max_attempts=3,
        backoff_seconds=30.0,
        max_backoff_seconds=600.0,
        concurrency=2,
        clock=clock,
    )
    asyncio.run(e.init())
    return e


@pytest.fixture
def sim_api() -> SimulatedDeviceApi:
    api = SimulatedDeviceApi()
    api.lamp("10.0.0.5", 80).name = "Tank Lamp"
    return api


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def lamp_device() -> Device:
    return Device(id="UV001", name="Tank Lamp", host="10.0.0.5", port=80)
