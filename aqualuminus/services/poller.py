from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from ..core.timeutil import now_utc
from ..domain.interfaces import SensorHistory
from ..domain.models import SensorSample
from .reconciler import DeviceStateReconciler

logger = logging.getLogger(__name__)


@dataclass
class PollerState:
    last_refresh_utc: Optional[datetime] = None
    last_history_utc: Optional[datetime] = None
    online_count: int = 0
    device_count: int = 0


class DevicePoller:
    """Periodic status/sensor refresh plus a slower sensor-history snapshot."""

    def __init__(
        self,
        reconciler: DeviceStateReconciler,
        history: SensorHistory,
        poll_seconds: float = 900,
        history_seconds: float = 86400,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self._reconciler = reconciler
        self._history = history
        self._poll_seconds = poll_seconds
        self._history_interval = timedelta(seconds=history_seconds)
        self._clock = clock

        self._task: Optional[asyncio.Task] = None
        self._stop = asyncio.Event()
        self.state = PollerState()

    async def start(self) -> None:
        self._stop.clear()
        self._task = asyncio.create_task(self._run(), name="device_poller")

    async def stop(self) -> None:
        self._stop.set()
        if self._task:
            await self._task
            self._task = None

    async def poll_once(self) -> None:
        devices = await self._reconciler.refresh_all()
        now = self._clock()
        self.state.last_refresh_utc = now
        self.state.device_count = len(devices)
        self.state.online_count = sum(1 for d in devices if d.online)
        logger.info("Refreshed %d device(s), %d online", self.state.device_count, self.state.online_count)

        last = self.state.last_history_utc
        if last is None or now - last >= self._history_interval:
            await self.log_history()

    async def log_history(self) -> int:
        now = self._clock()
        written = 0
        for device in self._reconciler.list():
            await self._history.add_sensor_sample(
                SensorSample(ts_utc=now, device_id=device.id, temperature_c=device.temperature_c, ph=device.ph)
            )
            written += 1
        self.state.last_history_utc = now
        logger.info("Logged sensor history for %d device(s)", written)
        return written

    async def _run(self) -> None:
        logger.info(
            "Device poller started (poll_seconds=%s history_seconds=%s)",
            self._poll_seconds,
            self._history_interval.total_seconds(),
        )

        while not self._stop.is_set():
            try:
                await self.poll_once()
            except Exception as e:
                logger.exception("Device poller error: %s", e)

            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self._poll_seconds)
            except asyncio.TimeoutError:
                pass

        logger.info("Device poller stopped")
