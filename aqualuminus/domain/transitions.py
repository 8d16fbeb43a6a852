from __future__ import annotations
from dataclasses import dataclass, replace
from datetime import datetime

from .models import Device, Offline, Online


@dataclass(frozen=True)
class UvTransition:
    action: str  # "ON" | "OFF" | "NOOP"
    device: Device
    session_seconds: float = 0.0


def apply_uv_report(device: Device, reported_uv_on: bool, now: datetime) -> UvTransition:
    """Diff a reported UV flag against the stored one.

    Used for polled status and for optimistic updates after a successful
    on/off command, so a duplicate command never opens or closes a session
    twice.
    """
    if reported_uv_on and not device.uv_on:
        updated = replace(
            device,
            status=Online(uv_on=True),
            uv_session_start=now,
            uv_session_end=None,
            last_seen=now,
        )
        return UvTransition("ON", updated)

    if not reported_uv_on and device.uv_on:
        session = 0.0
        if device.uv_session_start is not None:
            session = max(0.0, (now - device.uv_session_start).total_seconds())
        updated = replace(
            device,
            status=Online(uv_on=False),
            uv_session_end=now,
            total_uv_seconds=device.total_uv_seconds + session,
            last_seen=now,
        )
        return UvTransition("OFF", updated, session_seconds=session)

    return UvTransition("NOOP", replace(device, status=Online(uv_on=reported_uv_on), last_seen=now))


def mark_offline(device: Device) -> Device:
    # UV session fields are left alone; the next successful poll reconciles them
    return replace(device, status=Offline(last_uv_on=device.uv_on))
