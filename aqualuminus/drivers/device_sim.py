from __future__ import annotations
import logging
from dataclasses import dataclass

from ..domain.errors import DeviceUnreachable
from ..domain.models import CommandReport, DeviceInfo, SensorReport, StatusReport

logger = logging.getLogger(__name__)


@dataclass
class SimulatedLamp:
    uv_on: bool = False
    reachable: bool = True
    temperature_c: float = 26.5
    ph: float = 7.2
    name: str = "AquaLuminus-Sim"
    version: str = "sim-1.0"


class SimulatedDeviceApi:
    """In-process stand-in for the lamp firmware, keyed by ``host:port``."""

    def __init__(self) -> None:
        self.lamps: dict[str, SimulatedLamp] = {}

    def lamp(self, host: str, port: int) -> SimulatedLamp:
        return self.lamps.setdefault(f"{host}:{port}", SimulatedLamp())

    def _reach(self, host: str, port: int) -> SimulatedLamp:
        lamp = self.lamp(host, port)
        if not lamp.reachable:
            raise DeviceUnreachable(f"{host}:{port}", "simulated timeout")
        return lamp

    async def get_status(self, host: str, port: int) -> StatusReport:
        lamp = self._reach(host, port)
        return StatusReport(uv_light_on=lamp.uv_on, status="ok")

    async def turn_on(self, host: str, port: int) -> CommandReport:
        lamp = self._reach(host, port)
        lamp.uv_on = True
        logger.info("SIM LAMP %s:%s uv=ON", host, port)
        return CommandReport(success=True, uv_light_on=True, message="UV light turned on")

    async def turn_off(self, host: str, port: int) -> CommandReport:
        lamp = self._reach(host, port)
        lamp.uv_on = False
        logger.info("SIM LAMP %s:%s uv=OFF", host, port)
        return CommandReport(success=True, uv_light_on=False, message="UV light turned off")

    async def get_sensors(self, host: str, port: int) -> SensorReport:
        lamp = self._reach(host, port)
        return SensorReport(temperature_c=lamp.temperature_c, ph=lamp.ph)

    async def get_info(self, host: str, port: int) -> DeviceInfo:
        lamp = self._reach(host, port)
        return DeviceInfo(device="AquaLuminus", device_name=lamp.name, version=lamp.version, ip=host)
