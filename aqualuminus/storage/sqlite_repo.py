from __future__ import annotations
import uuid
from typing import List, Optional

import aiosqlite

from ..core.timeutil import from_iso, now_utc, to_iso
from ..domain.models import (
    ActivityEvent,
    Device,
    DeviceStatus,
    Offline,
    Online,
    Schedule,
    SensorSample,
    Unknown,
    Weekday,
)
from ..domain.schedule import parse_time_of_day, parse_weekdays


_DEVICE_COLUMNS = (
    "id,name,host,port,hostname,version,device_type,status_kind,uv_on,"
    "uv_session_start,uv_session_end,total_uv_seconds,last_seen,temperature_c,ph"
)
_SCHEDULE_COLUMNS = "id,device_id,name,weekdays,time_of_day,duration_minutes,active"


def _status_from_row(kind: str, uv_on: bool) -> DeviceStatus:
    if kind == Online.kind:
        return Online(uv_on=uv_on)
    if kind == Offline.kind:
        return Offline(last_uv_on=uv_on)
    return Unknown()


def _device_from_row(row) -> Device:
    (did, name, host, port, hostname, version, dtype, kind, uv_on,
     start, end, total, seen, temp, ph) = row
    return Device(
        id=did,
        name=name,
        host=host,
        port=int(port),
        hostname=hostname,
        version=version,
        device_type=dtype,
        status=_status_from_row(kind, bool(uv_on)),
        uv_session_start=from_iso(start),
        uv_session_end=from_iso(end),
        total_uv_seconds=float(total),
        last_seen=from_iso(seen),
        temperature_c=temp,
        ph=ph,
    )


def _schedule_from_row(row) -> Schedule:
    sid, device_id, name, weekdays, tod, duration, active = row
    names = [w for w in weekdays.split(",") if w]
    return Schedule(
        id=sid,
        device_id=device_id,
        name=name,
        weekdays=parse_weekdays(names),
        time_of_day=parse_time_of_day(tod),
        duration_minutes=int(duration),
        active=bool(active),
    )


def _weekdays_to_text(weekdays: frozenset[Weekday]) -> str:
    return ",".join(w.short_name for w in sorted(weekdays))


class SQLiteRepository:
    """Devices, schedules, activity log and sensor history in one SQLite file."""

    def __init__(self, path: str) -> None:
        self._path = path

    async def init(self) -> None:
        async with aiosqlite.connect(self._path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS devices (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    host TEXT NOT NULL,
                    port INTEGER NOT NULL,
                    hostname TEXT NOT NULL,
                    version TEXT NOT NULL,
                    device_type TEXT NOT NULL,
                    status_kind TEXT NOT NULL,
                    uv_on INTEGER NOT NULL,
                    uv_session_start TEXT,
                    uv_session_end TEXT,
                    total_uv_seconds REAL NOT NULL,
                    last_seen TEXT,
                    temperature_c REAL,
                    ph REAL
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS schedules (
                    id TEXT PRIMARY KEY,
                    device_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    weekdays TEXT NOT NULL,
                    time_of_day TEXT NOT NULL,
                    duration_minutes INTEGER NOT NULL,
                    active INTEGER NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS activity_log (
                    id TEXT PRIMARY KEY,
                    ts_utc TEXT NOT NULL,
                    device_id TEXT NOT NULL,
                    event_type TEXT NOT NULL,
                    description TEXT NOT NULL
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS sensor_history (
                    ts_utc TEXT NOT NULL,
                    device_id TEXT NOT NULL,
                    temperature_c REAL,
                    ph REAL
                )
                """
            )
            await db.execute("CREATE INDEX IF NOT EXISTS idx_activity_ts ON activity_log(ts_utc)")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_history_device_ts ON sensor_history(device_id, ts_utc)")
            await db.commit()

    # --- Devices ---

    async def get_device(self, device_id: str) -> Optional[Device]:
        async with aiosqlite.connect(self._path) as db:
            cur = await db.execute(f"SELECT {_DEVICE_COLUMNS} FROM devices WHERE id = ?", (device_id,))
            row = await cur.fetchone()
        return _device_from_row(row) if row else None

    async def list_devices(self) -> List[Device]:
        async with aiosqlite.connect(self._path) as db:
            cur = await db.execute(f"SELECT {_DEVICE_COLUMNS} FROM devices ORDER BY name")
            rows = await cur.fetchall()
        return [_device_from_row(r) for r in rows]

    async def save_device(self, d: Device) -> None:
        async with aiosqlite.connect(self._path) as db:
            await db.execute(
                f"INSERT OR REPLACE INTO devices({_DEVICE_COLUMNS}) VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)",
                (
                    d.id,
                    d.name,
                    d.host,
                    d.port,
                    d.hostname,
                    d.version,
                    d.device_type,
                    d.status.kind,
                    1 if d.uv_on else 0,
                    to_iso(d.uv_session_start),
                    to_iso(d.uv_session_end),
                    float(d.total_uv_seconds),
                    to_iso(d.last_seen),
                    d.temperature_c,
                    d.ph,
                ),
            )
            await db.commit()

    async def delete_device(self, device_id: str) -> None:
        async with aiosqlite.connect(self._path) as db:
            await db.execute("DELETE FROM devices WHERE id = ?", (device_id,))
            await db.commit()

    # --- Schedules ---

    async def get(self, schedule_id: str) -> Optional[Schedule]:
        async with aiosqlite.connect(self._path) as db:
            cur = await db.execute(f"SELECT {_SCHEDULE_COLUMNS} FROM schedules WHERE id = ?", (schedule_id,))
            row = await cur.fetchone()
        return _schedule_from_row(row) if row else None

    async def list_all(self) -> List[Schedule]:
        async with aiosqlite.connect(self._path) as db:
            cur = await db.execute(f"SELECT {_SCHEDULE_COLUMNS} FROM schedules ORDER BY name")
            rows = await cur.fetchall()
        return [_schedule_from_row(r) for r in rows]

    async def list_active(self) -> List[Schedule]:
        async with aiosqlite.connect(self._path) as db:
            cur = await db.execute(f"SELECT {_SCHEDULE_COLUMNS} FROM schedules WHERE active = 1 ORDER BY name")
            rows = await cur.fetchall()
        return [_schedule_from_row(r) for r in rows]

    async def save(self, s: Schedule) -> None:
        async with aiosqlite.connect(self._path) as db:
            await db.execute(
                f"INSERT OR REPLACE INTO schedules({_SCHEDULE_COLUMNS},updated_at) VALUES (?,?,?,?,?,?,?,?)",
                (
                    s.id,
                    s.device_id,
                    s.name,
                    _weekdays_to_text(s.weekdays),
                    str(s.time_of_day),
                    s.duration_minutes,
                    1 if s.active else 0,
                    now_utc().isoformat(),
                ),
            )
            await db.commit()

    async def delete(self, schedule_id: str) -> None:
        async with aiosqlite.connect(self._path) as db:
            await db.execute("DELETE FROM schedules WHERE id = ?", (schedule_id,))
            await db.commit()

    # --- Activity log ---

    async def add_activity(self, e: ActivityEvent) -> None:
        async with aiosqlite.connect(self._path) as db:
            await db.execute(
                "INSERT INTO activity_log(id,ts_utc,device_id,event_type,description) VALUES (?,?,?,?,?)",
                (e.id or str(uuid.uuid4()), e.ts_utc.isoformat(), e.device_id, e.event_type, e.description),
            )
            await db.commit()

    async def query_activity(self, limit: int = 100, device_id: Optional[str] = None) -> List[ActivityEvent]:
        sql = "SELECT id,ts_utc,device_id,event_type,description FROM activity_log"
        params: tuple = ()
        if device_id is not None:
            sql += " WHERE device_id = ?"
            params = (device_id,)
        sql += " ORDER BY ts_utc DESC LIMIT ?"
        async with aiosqlite.connect(self._path) as db:
            cur = await db.execute(sql, params + (limit,))
            rows = await cur.fetchall()
        return [
            ActivityEvent(id=eid, ts_utc=from_iso(ts), device_id=did, event_type=et, description=desc)
            for eid, ts, did, et, desc in rows
        ]

    # --- Sensor history ---

    async def add_sensor_sample(self, s: SensorSample) -> None:
        async with aiosqlite.connect(self._path) as db:
            await db.execute(
                "INSERT INTO sensor_history(ts_utc,device_id,temperature_c,ph) VALUES (?,?,?,?)",
                (s.ts_utc.isoformat(), s.device_id, s.temperature_c, s.ph),
            )
            await db.commit()

    async def query_sensor_history(self, device_id: str, limit: int = 100) -> List[SensorSample]:
        async with aiosqlite.connect(self._path) as db:
            cur = await db.execute(
                """
                SELECT ts_utc,device_id,temperature_c,ph
                FROM sensor_history
                WHERE device_id = ?
                ORDER BY ts_utc DESC
                LIMIT ?
                """,
                (device_id, limit),
            )
            rows = await cur.fetchall()
        return [
            SensorSample(ts_utc=from_iso(ts), device_id=did, temperature_c=t, ph=ph)
            for ts, did, t, ph in rows
        ]
