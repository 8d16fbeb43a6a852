from __future__ import annotations

import asyncio
import logging
from typing import Any

from zeroconf import ServiceStateChange
from zeroconf.asyncio import AsyncServiceBrowser, AsyncZeroconf

logger = logging.getLogger(__name__)

SERVICE_TYPE = "_http._tcp.local."


def is_aqualuminus_service(name: str) -> bool:
    # Lamps advertise as "AquaLuminus_UV001._http._tcp.local."
    lowered = name.lower()
    return "aqualuminus" in lowered or "uv" in lowered


def device_from_txt(service_name: str, txt: dict[str, str], ip: str | None, port: int | None) -> dict[str, Any]:
    instance = service_name.split(".", 1)[0]
    device_id = txt.get("device_id") or instance.rsplit("_", 1)[-1]
    device_type = txt.get("device", "AquaLuminus")
    return {
        "id": device_id,
        "name": f"{device_type}-{device_id}",
        "ip": ip,
        "port": port,
        "type": device_type,
        "version": txt.get("version", "Unknown"),
        "txt": txt,
    }


async def discover_devices(timeout: float = 3.0) -> list[dict[str, Any]]:
    """Browse mDNS for AquaLuminus lamps.

    Returns a list of dicts: {id, name, ip, port, type, version, txt}.
    """
    devices: list[dict[str, Any]] = []
    found_names: set[str] = set()
    zc = AsyncZeroconf()

    def on_state_change(
        zeroconf: Any, service_type: str, name: str, state_change: ServiceStateChange
    ) -> None:
        if state_change is ServiceStateChange.Added and is_aqualuminus_service(name):
            found_names.add(name)

    browser = AsyncServiceBrowser(zc.zeroconf, SERVICE_TYPE, handlers=[on_state_change])

    try:
        await asyncio.sleep(timeout)

        for name in found_names:
            info = await zc.zeroconf.async_get_service_info(SERVICE_TYPE, name)
            if info is None:
                logger.warning("Resolve failed for %s", name)
                continue
            addresses = info.parsed_addresses()
            ip = addresses[0] if addresses else None
            txt: dict[str, str] = {}
            if info.properties:
                for k, v in info.properties.items():
                    key = k.decode() if isinstance(k, bytes) else str(k)
                    val = v.decode() if isinstance(v, bytes) else ("" if v is None else str(v))
                    txt[key] = val
            devices.append(device_from_txt(name, txt, ip, info.port))
    finally:
        await browser.async_cancel()
        await zc.async_close()

    logger.info("mDNS discovery found %d AquaLuminus device(s)", len(devices))
    return devices
