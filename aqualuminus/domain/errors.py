from __future__ import annotations


class AquaLuminusError(Exception):
    """Base class for errors raised by the scheduler core."""


class InvalidRecurrence(AquaLuminusError, ValueError):
    """A weekly recurrence that cannot produce a fire time (e.g. no weekdays)."""


class MalformedTime(AquaLuminusError, ValueError):
    """A time-of-day string that is not HH:MM in 24-hour form."""


class DeviceUnreachable(AquaLuminusError):
    """Network failure, timeout or bad HTTP status talking to a device.

    Recoverable: callers mark the device offline or retry the task.
    """

    def __init__(self, address: str, reason: str) -> None:
        super().__init__(f"Device at {address} unreachable: {reason}")
        self.address = address
        self.reason = reason


class DeviceNotFound(AquaLuminusError, LookupError):
    def __init__(self, device_id: str) -> None:
        super().__init__(f"Device not found: {device_id}")
        self.device_id = device_id
