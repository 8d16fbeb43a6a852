from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from ..domain.errors import DeviceUnreachable
from ..domain.models import CommandReport, DeviceInfo, SensorReport, StatusReport

logger = logging.getLogger(__name__)


class AquaLuminusHttpClient:
    """Client for the lamp firmware REST API (``http://host:port/api/...``).

    Transport errors, timeouts and non-2xx responses all surface as
    DeviceUnreachable; callers treat them as "device offline".
    """

    def __init__(
        self,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._timeout = timeout
        self._transport = transport

    async def _request(self, method: str, host: str, port: int, path: str) -> dict[str, Any]:
        address = f"{host}:{port}"
        url = f"http://{address}/api/{path}"
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                resp = await client.request(method, url)
                resp.raise_for_status()
                data = resp.json()
        except httpx.HTTPError as e:
            logger.debug("%s %s failed: %s", method, url, e)
            raise DeviceUnreachable(address, f"{type(e).__name__}: {e}") from e
        except ValueError as e:
            # body was not JSON
            raise DeviceUnreachable(address, f"invalid response body: {e}") from e
        if not isinstance(data, dict):
            raise DeviceUnreachable(address, "unexpected response shape")
        return data

    async def get_status(self, host: str, port: int) -> StatusReport:
        data = await self._request("GET", host, port, "status")
        return StatusReport(
            uv_light_on=bool(data.get("uvLightOn", False)),
            status=str(data.get("status", "")),
            timestamp=data.get("timestamp"),
        )

    async def _command(self, host: str, port: int, path: str) -> CommandReport:
        data = await self._request("POST", host, port, path)
        report = CommandReport(
            success=bool(data.get("success", True)),
            uv_light_on=data.get("uvLightOn"),
            message=str(data.get("message", "")),
            timestamp=data.get("timestamp"),
        )
        if not report.success:
            raise DeviceUnreachable(f"{host}:{port}", f"command {path} rejected: {report.message}")
        logger.info("Device %s:%s command=%s uvLightOn=%s", host, port, path, report.uv_light_on)
        return report

    async def turn_on(self, host: str, port: int) -> CommandReport:
        return await self._command(host, port, "on")

    async def turn_off(self, host: str, port: int) -> CommandReport:
        return await self._command(host, port, "off")

    async def get_sensors(self, host: str, port: int) -> SensorReport:
        data = await self._request("GET", host, port, "sensors")
        return SensorReport(
            temperature_c=data.get("temperature_c"),
            ph=data.get("ph"),
            ph_voltage=data.get("ph_voltage"),
            turbidity_raw=data.get("turbidity_raw"),
        )

    async def get_info(self, host: str, port: int) -> DeviceInfo:
        data = await self._request("GET", host, port, "info")
        return DeviceInfo(
            device=data.get("device"),
            device_id=data.get("device_id"),
            device_name=data.get("device_name"),
            version=data.get("version"),
            ip=data.get("ip"),
            mac=data.get("mac"),
            hostname=data.get("hostname"),
        )
