import asyncio
import json

import httpx
import pytest

from aqualuminus.domain.errors import DeviceUnreachable
from aqualuminus.drivers.device_http import AquaLuminusHttpClient


def _client(handler) -> AquaLuminusHttpClient:
    return AquaLuminusHttpClient(timeout=1.0, transport=httpx.MockTransport(handler))


def test_status_and_sensors_are_parsed():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append((request.method, str(request.url)))
        if request.url.path == "/api/status":
            return httpx.Response(200, json={"uvLightOn": True, "status": "ok", "timestamp": 1234})
        return httpx.Response(200, json={"temperature_c": 25.5, "ph": 7.1, "ph_voltage": 2.4, "turbidity_raw": 812})

    client = _client(handler)
    status = asyncio.run(client.get_status("10.0.0.5", 8080))
    sensors = asyncio.run(client.get_sensors("10.0.0.5", 8080))

    assert status.uv_light_on is True
    assert status.timestamp == 1234
    assert sensors.ph == pytest.approx(7.1)
    assert sensors.turbidity_raw == 812
    assert calls == [("GET", "http://10.0.0.5:8080/api/status"), ("GET", "http://10.0.0.5:8080/api/sensors")]


def test_commands_post_to_on_and_off():
    posted = []

    def handler(request: httpx.Request) -> httpx.Response:
        posted.append((request.method, request.url.path))
        on = request.url.path.endswith("/on")
        return httpx.Response(200, json={"success": True, "uvLightOn": on, "message": "ok"})

    client = _client(handler)
    on = asyncio.run(client.turn_on("lamp.local", 80))
    off = asyncio.run(client.turn_off("lamp.local", 80))

    assert on.uv_light_on is True and off.uv_light_on is False
    assert posted == [("POST", "/api/on"), ("POST", "/api/off")]


def test_info_fields():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            content=json.dumps({
                "device": "AquaLuminus",
                "device_id": "UV001",
                "device_name": "Reef Tank",
                "version": "1.2.0",
                "ip": "10.0.0.5",
                "mac": "AA:BB:CC:DD:EE:FF",
                "hostname": "aqualuminus-uv001",
            }),
            headers={"content-type": "application/json"},
        )

    info = asyncio.run(_client(handler).get_info("10.0.0.5", 80))
    assert info.device_name == "Reef Tank"
    assert info.hostname == "aqualuminus-uv001"


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(500, json={"error": "boom"}),
        httpx.Response(200, content=b"<html>not json</html>"),
        httpx.Response(200, json=["not", "an", "object"]),
        httpx.Response(200, json={"success": False, "message": "busy"}),
    ],
)
def test_failures_surface_as_unreachable(response):
    client = _client(lambda request: response)
    with pytest.raises(DeviceUnreachable) as exc:
        asyncio.run(client.turn_on("10.0.0.5", 80))
    assert exc.value.address == "10.0.0.5:80"


def test_transport_error_is_unreachable():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timed out", request=request)

    with pytest.raises(DeviceUnreachable) as exc:
        asyncio.run(_client(handler).get_status("10.0.0.9", 80))
    assert "ConnectTimeout" in exc.value.reason
