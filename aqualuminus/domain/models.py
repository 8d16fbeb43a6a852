from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from enum import IntEnum
from typing import ClassVar, NamedTuple, Optional, Union

from .errors import InvalidRecurrence


class Weekday(IntEnum):
    # Values match datetime.weekday()
    MON = 0
    TUE = 1
    WED = 2
    THU = 3
    FRI = 4
    SAT = 5
    SUN = 6

    @property
    def short_name(self) -> str:
        return self.name.capitalize()

    @classmethod
    def from_name(cls, name: str) -> "Weekday":
        try:
            key = name.strip().upper()
            return cls[_FULL_NAMES.get(key, key)]
        except KeyError:
            raise InvalidRecurrence(f"Unknown weekday: {name!r}") from None


_FULL_NAMES = {
    full: day.name
    for full, day in zip(
        ("MONDAY", "TUESDAY", "WEDNESDAY", "THURSDAY", "FRIDAY", "SATURDAY", "SUNDAY"), Weekday
    )
}


class TimeOfDay(NamedTuple):
    hour: int
    minute: int

    def __str__(self) -> str:
        return f"{self.hour:02d}:{self.minute:02d}"


@dataclass(frozen=True)
class Schedule:
    id: str
    device_id: str
    name: str
    weekdays: frozenset[Weekday]
    time_of_day: TimeOfDay
    duration_minutes: int = 30
    active: bool = True

    def __post_init__(self) -> None:
        if self.duration_minutes <= 0:
            raise ValueError(f"duration_minutes must be > 0, got {self.duration_minutes}")

    @property
    def armable(self) -> bool:
        return self.active and bool(self.weekdays)


# --- Device connection status (tagged variant) ---

@dataclass(frozen=True)
class Unknown:
    kind: ClassVar[str] = "unknown"


@dataclass(frozen=True)
class Online:
    uv_on: bool
    kind: ClassVar[str] = "online"


@dataclass(frozen=True)
class Offline:
    last_uv_on: bool = False
    kind: ClassVar[str] = "offline"


DeviceStatus = Union[Unknown, Online, Offline]


@dataclass(frozen=True)
class Device:
    id: str
    name: str
    host: str
    port: int = 80
    hostname: str = ""
    version: str = "1.0"
    device_type: str = "AquaLuminus"
    status: DeviceStatus = field(default_factory=Unknown)
    uv_session_start: Optional[datetime] = None
    uv_session_end: Optional[datetime] = None
    total_uv_seconds: float = 0.0
    last_seen: Optional[datetime] = None
    temperature_c: Optional[float] = None
    ph: Optional[float] = None

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    @property
    def online(self) -> bool:
        return isinstance(self.status, Online)

    @property
    def uv_on(self) -> bool:
        if isinstance(self.status, Online):
            return self.status.uv_on
        if isinstance(self.status, Offline):
            return self.status.last_uv_on
        return False


@dataclass(frozen=True)
class ActivityEvent:
    ts_utc: datetime
    device_id: str
    event_type: str  # "UV_STATUS" | "CONNECTION"
    description: str
    id: Optional[str] = None


@dataclass(frozen=True)
class SensorSample:
    ts_utc: datetime
    device_id: str
    temperature_c: Optional[float]
    ph: Optional[float]


# --- Device API payloads ---

@dataclass(frozen=True)
class StatusReport:
    uv_light_on: bool
    status: str = ""
    timestamp: Optional[int] = None


@dataclass(frozen=True)
class CommandReport:
    success: bool
    uv_light_on: Optional[bool] = None
    message: str = ""
    timestamp: Optional[int] = None


@dataclass(frozen=True)
class SensorReport:
    temperature_c: Optional[float] = None
    ph: Optional[float] = None
    ph_voltage: Optional[float] = None
    turbidity_raw: Optional[int] = None


@dataclass(frozen=True)
class DeviceInfo:
    device: Optional[str] = None
    device_id: Optional[str] = None
    device_name: Optional[str] = None
    version: Optional[str] = None
    ip: Optional[str] = None
    mac: Optional[str] = None
    hostname: Optional[str] = None


# --- Work engine ---

class TaskResult(IntEnum):
    SUCCESS = 0
    RETRY = 1
    FAILURE = 2


@dataclass(frozen=True)
class TaskRecord:
    id: str
    kind: str  # "notice" | "run_cycle" | "turn_off"
    tag: str
    payload: dict
    due_utc: datetime
    attempts: int = 0
    status: str = "pending"  # pending|running|done|failed|cancelled
    last_error: Optional[str] = None


@dataclass(frozen=True)
class TaskContext:
    task_id: str
    kind: str
    tag: str
    payload: dict
    attempt: int  # 1-based
    max_attempts: int

    @property
    def last_attempt(self) -> bool:
        return self.attempt >= self.max_attempts
