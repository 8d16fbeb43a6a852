from __future__ import annotations

import logging
import uuid
from dataclasses import replace

from fastapi import APIRouter, Depends, HTTPException

from ..core.config import settings
from ..core.timeutil import now_local, to_iso
from ..domain.errors import DeviceNotFound, DeviceUnreachable
from ..domain.models import Device, Schedule
from ..domain.schedule import describe_next_run, parse_time_of_day, parse_weekdays
from ..services.orchestrator import RecurrenceOrchestrator
from ..services.poller import DevicePoller
from ..services.reconciler import DeviceStateReconciler
from ..services.work_engine import SQLiteWorkEngine
from ..storage.sqlite_repo import SQLiteRepository
from .schemas import DeviceIn, DiscoverRequest, ScheduleActiveRequest, ScheduleIn

logger = logging.getLogger(__name__)

router = APIRouter()


# --- Dependency getters (main.py binds them via app.dependency_overrides) ---
def get_reconciler() -> DeviceStateReconciler:  # overridden in main
    raise RuntimeError("Reconciler dependency not configured")

def get_orchestrator() -> RecurrenceOrchestrator:  # overridden in main
    raise RuntimeError("Orchestrator dependency not configured")

def get_repo() -> SQLiteRepository:  # overridden in main
    raise RuntimeError("Repo dependency not configured")

def get_engine() -> SQLiteWorkEngine:  # overridden in main
    raise RuntimeError("Work engine dependency not configured")

def get_poller() -> DevicePoller:  # overridden in main
    raise RuntimeError("Poller dependency not configured")


def _device_out(d: Device) -> dict:
    return {
        "id": d.id,
        "name": d.name,
        "host": d.host,
        "port": d.port,
        "hostname": d.hostname,
        "version": d.version,
        "device_type": d.device_type,
        "status": d.status.kind,
        "online": d.online,
        "uv_on": d.uv_on,
        "uv_session_start": to_iso(d.uv_session_start),
        "uv_session_end": to_iso(d.uv_session_end),
        "total_uv_seconds": d.total_uv_seconds,
        "last_seen": to_iso(d.last_seen),
        "temperature_c": d.temperature_c,
        "ph": d.ph,
    }


def _schedule_out(s: Schedule) -> dict:
    return {
        "id": s.id,
        "device_id": s.device_id,
        "name": s.name,
        "days": [w.short_name for w in sorted(s.weekdays)],
        "time": str(s.time_of_day),
        "duration_minutes": s.duration_minutes,
        "active": s.active,
        "next_run": describe_next_run(s, now_local()),
    }


def _schedule_from_request(schedule_id: str, req: ScheduleIn) -> Schedule:
    return Schedule(
        id=schedule_id,
        device_id=req.device_id,
        name=req.name.strip() or "Untitled Schedule",
        weekdays=parse_weekdays(req.days),
        time_of_day=parse_time_of_day(req.time),
        duration_minutes=req.duration_minutes,
        active=req.active,
    )


@router.get("/live")
async def get_live(
    poller: DevicePoller = Depends(get_poller),
    engine: SQLiteWorkEngine = Depends(get_engine),
):
    st = poller.state
    return {
        "app": settings.app_name,
        "now_local": now_local().isoformat(),
        "poller": {
            "last_refresh_utc": to_iso(st.last_refresh_utc),
            "last_history_utc": to_iso(st.last_history_utc),
            "device_count": st.device_count,
            "online_count": st.online_count,
        },
        "pending_tasks": len(await engine.pending()),
    }


# --- Devices ---

@router.get("/devices")
async def list_devices(rec: DeviceStateReconciler = Depends(get_reconciler)):
    return {"devices": [_device_out(d) for d in rec.list()]}


@router.post("/devices")
async def add_device(req: DeviceIn, rec: DeviceStateReconciler = Depends(get_reconciler)):
    try:
        device = await rec.add_device(Device(id=req.id, name=req.name, host=req.host, port=req.port))
    except DeviceUnreachable as e:
        raise HTTPException(status_code=502, detail=str(e))
    return {"ok": True, "device": _device_out(device)}


@router.post("/devices/discover")
async def discover(req: DiscoverRequest = DiscoverRequest()):
    from ..services.mdns_discovery import discover_devices
    devices = await discover_devices(timeout=req.timeout_s or 3.0)
    return {"devices": devices}


@router.get("/devices/{device_id}")
async def get_device(device_id: str, rec: DeviceStateReconciler = Depends(get_reconciler)):
    device = rec.get(device_id)
    if device is None:
        raise HTTPException(status_code=404, detail=f"Device not found: {device_id}")
    return _device_out(device)


@router.delete("/devices/{device_id}")
async def delete_device(device_id: str, rec: DeviceStateReconciler = Depends(get_reconciler)):
    await rec.remove_device(device_id)
    return {"ok": True}


@router.post("/devices/{device_id}/refresh")
async def refresh_device(device_id: str, rec: DeviceStateReconciler = Depends(get_reconciler)):
    try:
        device = await rec.refresh(device_id)
    except DeviceNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    return _device_out(device)


async def _uv_command(rec: DeviceStateReconciler, device_id: str, on: bool) -> dict:
    if rec.get(device_id) is None:
        raise HTTPException(status_code=404, detail=f"Device not found: {device_id}")
    ok = await rec.turn_on(device_id) if on else await rec.turn_off(device_id)
    if not ok:
        raise HTTPException(status_code=502, detail=f"Failed to turn UV {'on' if on else 'off'}")
    return {"ok": True, "device": _device_out(rec.get(device_id))}


@router.post("/devices/{device_id}/uv/on")
async def uv_on(device_id: str, rec: DeviceStateReconciler = Depends(get_reconciler)):
    return await _uv_command(rec, device_id, True)


@router.post("/devices/{device_id}/uv/off")
async def uv_off(device_id: str, rec: DeviceStateReconciler = Depends(get_reconciler)):
    return await _uv_command(rec, device_id, False)


@router.get("/devices/{device_id}/history")
async def sensor_history(
    device_id: str,
    limit: int = 100,
    repo: SQLiteRepository = Depends(get_repo),
):
    rows = await repo.query_sensor_history(device_id, limit=min(max(1, limit), 5000))
    return {
        "device_id": device_id,
        "rows": [
            {"ts_utc": r.ts_utc.isoformat(), "temperature_c": r.temperature_c, "ph": r.ph}
            for r in rows
        ],
    }


# --- Schedules ---

@router.get("/schedules")
async def list_schedules(repo: SQLiteRepository = Depends(get_repo)):
    return {"schedules": [_schedule_out(s) for s in await repo.list_all()]}


@router.post("/schedules")
async def create_schedule(
    req: ScheduleIn,
    repo: SQLiteRepository = Depends(get_repo),
    orch: RecurrenceOrchestrator = Depends(get_orchestrator),
):
    schedule = _schedule_from_request(str(uuid.uuid4()), req)
    await repo.save(schedule)
    fire_time = await orch.apply_edit(schedule)
    return {"ok": True, "schedule": _schedule_out(schedule), "next_fire_time": to_iso(fire_time)}


@router.put("/schedules/{schedule_id}")
async def update_schedule(
    schedule_id: str,
    req: ScheduleIn,
    repo: SQLiteRepository = Depends(get_repo),
    orch: RecurrenceOrchestrator = Depends(get_orchestrator),
):
    if await repo.get(schedule_id) is None:
        raise HTTPException(status_code=404, detail=f"Schedule not found: {schedule_id}")
    schedule = _schedule_from_request(schedule_id, req)
    await repo.save(schedule)
    fire_time = await orch.apply_edit(schedule)
    return {"ok": True, "schedule": _schedule_out(schedule), "next_fire_time": to_iso(fire_time)}


@router.post("/schedules/{schedule_id}/active")
async def set_schedule_active(
    schedule_id: str,
    req: ScheduleActiveRequest,
    repo: SQLiteRepository = Depends(get_repo),
    orch: RecurrenceOrchestrator = Depends(get_orchestrator),
):
    current = await repo.get(schedule_id)
    if current is None:
        raise HTTPException(status_code=404, detail=f"Schedule not found: {schedule_id}")
    if req.active and not current.weekdays:
        raise HTTPException(status_code=400, detail="An active schedule needs at least one day")
    schedule = replace(current, active=req.active)
    await repo.save(schedule)
    fire_time = await orch.apply_edit(schedule)
    return {"ok": True, "schedule": _schedule_out(schedule), "next_fire_time": to_iso(fire_time)}


@router.delete("/schedules/{schedule_id}")
async def delete_schedule(schedule_id: str, orch: RecurrenceOrchestrator = Depends(get_orchestrator)):
    await orch.delete(schedule_id)
    return {"ok": True}


# --- Activity & tasks ---

@router.get("/activity")
async def activity(
    limit: int = 100,
    device_id: str | None = None,
    repo: SQLiteRepository = Depends(get_repo),
):
    rows = await repo.query_activity(limit=min(max(1, limit), 1000), device_id=device_id)
    return {
        "rows": [
            {
                "id": e.id,
                "ts_utc": e.ts_utc.isoformat(),
                "device_id": e.device_id,
                "event_type": e.event_type,
                "description": e.description,
            }
            for e in rows
        ]
    }


@router.get("/tasks")
async def tasks(engine: SQLiteWorkEngine = Depends(get_engine)):
    return {
        "tasks": [
            {
                "id": t.id,
                "kind": t.kind,
                "tag": t.tag,
                "due_utc": t.due_utc.isoformat(),
                "attempts": t.attempts,
                "payload": t.payload,
            }
            for t in await engine.pending()
        ]
    }
