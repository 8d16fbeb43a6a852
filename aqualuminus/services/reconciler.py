from __future__ import annotations
import asyncio
import logging
from dataclasses import replace
from datetime import datetime
from typing import Callable, Optional

from ..core.timeutil import now_utc
from ..domain.errors import DeviceNotFound, DeviceUnreachable
from ..domain.interfaces import ActivityLog, DeviceApi, DeviceStore
from ..domain.models import ActivityEvent, Device, Offline
from ..domain.transitions import apply_uv_report, mark_offline

logger = logging.getLogger(__name__)


class DeviceStateReconciler:
    """Single owner of device state.

    Keeps an in-memory view backed by the device store. Every mutation for a
    given device id runs under that id's lock; different devices proceed in
    parallel.
    """

    def __init__(
        self,
        api: DeviceApi,
        store: DeviceStore,
        activity: ActivityLog,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self._api = api
        self._store = store
        self._activity = activity
        self._clock = clock
        self._devices: dict[str, Device] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    async def load(self) -> None:
        self._devices = {d.id: d for d in await self._store.list_devices()}
        logger.info("Loaded %d device(s) from storage", len(self._devices))

    def _lock(self, device_id: str) -> asyncio.Lock:
        lock = self._locks.get(device_id)
        if lock is None:
            lock = self._locks[device_id] = asyncio.Lock()
        return lock

    def get(self, device_id: str) -> Optional[Device]:
        return self._devices.get(device_id)

    def list(self) -> list[Device]:
        return sorted(self._devices.values(), key=lambda d: d.name)

    def _require(self, device_id: str) -> Device:
        device = self._devices.get(device_id)
        if device is None:
            raise DeviceNotFound(device_id)
        return device

    async def _persist(self, device: Device) -> None:
        self._devices[device.id] = device
        await self._store.save_device(device)

    async def _log(self, device_id: str, event_type: str, description: str) -> None:
        try:
            await self._activity.add_activity(
                ActivityEvent(ts_utc=self._clock(), device_id=device_id, event_type=event_type, description=description)
            )
        except Exception:
            logger.exception("Failed to record %s activity for %s", event_type, device_id)

    # --- Device registry ---

    async def add_device(self, device: Device) -> Device:
        """Verify the device answers ``info`` and ``status``, then store it.

        Raises DeviceUnreachable if it does not.
        """
        async with self._lock(device.id):
            info = await self._api.get_info(device.host, device.port)
            status = await self._api.get_status(device.host, device.port)
            now = self._clock()
            previous = self._devices.get(device.id)
            verified = replace(
                previous or device,
                name=info.device_name or device.name,
                host=device.host,
                port=device.port,
                hostname=info.hostname or device.hostname,
                version=info.version or device.version,
                last_seen=now,
            )
            verified = apply_uv_report(verified, status.uv_light_on, now).device
            await self._persist(verified)
        logger.info("Device added: %s (%s)", verified.name, verified.address)
        return verified

    async def remove_device(self, device_id: str) -> None:
        async with self._lock(device_id):
            self._devices.pop(device_id, None)
            await self._store.delete_device(device_id)
        logger.info("Device removed: %s", device_id)

    # --- Polling ---

    async def refresh(self, device_id: str) -> Device:
        async with self._lock(device_id):
            device = self._require(device_id)
            now = self._clock()
            try:
                status = await self._api.get_status(device.host, device.port)
                sensors = await self._api.get_sensors(device.host, device.port)
            except DeviceUnreachable as e:
                logger.warning("Device %s appears offline: %s", device.name, e.reason)
                if device.online:
                    await self._log(device.id, "CONNECTION", f"{device.name} went offline.")
                updated = mark_offline(device)
                if updated != device:
                    await self._persist(updated)
                return updated

            if isinstance(device.status, Offline):
                await self._log(device.id, "CONNECTION", f"{device.name} is now online.")

            transition = apply_uv_report(device, status.uv_light_on, now)
            if transition.action != "NOOP":
                logger.info(
                    "Device %s UV %s observed by poll (session=%.0fs)",
                    device.name, transition.action, transition.session_seconds,
                )
            updated = replace(transition.device, temperature_c=sensors.temperature_c, ph=sensors.ph)
            await self._persist(updated)
            return updated

    async def refresh_all(self) -> list[Device]:
        ids = list(self._devices)
        results = await asyncio.gather(*(self.refresh(i) for i in ids), return_exceptions=True)
        out: list[Device] = []
        for device_id, res in zip(ids, results):
            if isinstance(res, DeviceNotFound):
                continue  # removed while the poll was running
            if isinstance(res, BaseException):
                logger.error("Refresh of %s failed", device_id, exc_info=res)
                continue
            out.append(res)
        return out

    # --- Commands ---

    async def turn_on(self, device_id: str) -> bool:
        return await self._command(device_id, on=True)

    async def turn_off(self, device_id: str) -> bool:
        return await self._command(device_id, on=False)

    async def _command(self, device_id: str, on: bool) -> bool:
        word = "ON" if on else "OFF"
        async with self._lock(device_id):
            device = self._devices.get(device_id)
            if device is None:
                logger.error("Cannot turn UV %s: device %s not found", word, device_id)
                return False
            try:
                if on:
                    await self._api.turn_on(device.host, device.port)
                else:
                    await self._api.turn_off(device.host, device.port)
            except DeviceUnreachable as e:
                logger.error("Error turning UV %s for device %s: %s", word, device_id, e.reason)
                return False

            transition = apply_uv_report(device, on, self._clock())
            await self._persist(transition.device)
            logger.info(
                "Updated UV status for device %s: action=%s start=%s end=%s total=%.0fs",
                device_id,
                transition.action,
                transition.device.uv_session_start,
                transition.device.uv_session_end,
                transition.device.total_uv_seconds,
            )

        if transition.action != "NOOP":
            await self._log(device_id, "UV_STATUS", f"UV light turned {word}.")
        return True

