from __future__ import annotations
from pydantic import BaseModel, Field, field_validator, model_validator
from typing import List, Optional

from ..domain.schedule import parse_time_of_day, parse_weekdays


class DeviceIn(BaseModel):
    id: str = Field(min_length=1)
    name: str = "AquaLuminus"
    host: str = Field(min_length=1)
    port: int = Field(default=80, ge=1, le=65535)


class ScheduleIn(BaseModel):
    device_id: str = Field(min_length=1)
    name: str = ""
    days: List[str] = Field(default_factory=list)  # ["Mon", "Wed"]
    time: str                                      # "HH:MM"
    duration_minutes: int = Field(default=30, ge=1, le=24 * 60)
    active: bool = True

    @field_validator("time")
    @classmethod
    def _check_time(cls, v: str) -> str:
        parse_time_of_day(v)
        return v

    @field_validator("days")
    @classmethod
    def _check_days(cls, v: List[str]) -> List[str]:
        parse_weekdays(v)
        return v

    @model_validator(mode="after")
    def _active_needs_days(self) -> "ScheduleIn":
        if self.active and not self.days:
            raise ValueError("An active schedule needs at least one day")
        return self


class ScheduleActiveRequest(BaseModel):
    active: bool


class DiscoverRequest(BaseModel):
    timeout_s: Optional[float] = Field(default=3.0, gt=0, le=30)
