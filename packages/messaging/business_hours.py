from __future__ import annotations

from datetime import UTC, datetime, time
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator, model_validator

DEFAULT_TIMEZONE = "America/Sao_Paulo"
WEEKDAYS: tuple[str, ...] = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


class DaySchedule(BaseModel):
    start: str = "09:00"
    end: str = "18:00"
    closed: bool = False

    @field_validator("start", "end")
    @classmethod
    def validate_clock(cls, value: str) -> str:
        time.fromisoformat(value)
        return value

    @model_validator(mode="after")
    def validate_range(self) -> "DaySchedule":
        if not self.closed and time.fromisoformat(self.start) > time.fromisoformat(self.end):
            raise ValueError("start must not be after end")
        return self


def _default_week() -> dict[str, DaySchedule]:
    week = {day: DaySchedule() for day in WEEKDAYS[:5]}
    week["saturday"] = DaySchedule(start="09:00", end="13:00")
    week["sunday"] = DaySchedule(closed=True)
    return week


class BusinessHours(BaseModel):
    enabled: bool = False
    timezone: str = DEFAULT_TIMEZONE
    days: dict[str, DaySchedule] = Field(default_factory=_default_week)

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except ZoneInfoNotFoundError as exc:
            raise ValueError(f"unknown timezone {value}") from exc
        return value

    @field_validator("days")
    @classmethod
    def validate_days(cls, value: dict[str, DaySchedule]) -> dict[str, DaySchedule]:
        unknown = sorted(set(value) - set(WEEKDAYS))
        if unknown:
            raise ValueError(f"unknown weekdays: {', '.join(unknown)}")
        return value


def is_within_business_hours(config: BusinessHours | None, now: datetime | None = None) -> bool:
    """Unconfigured or disabled schedules count as always open."""
    if config is None or not config.enabled:
        return True
    current = now or datetime.now(UTC)
    if current.tzinfo is None:
        current = current.replace(tzinfo=UTC)
    local = current.astimezone(ZoneInfo(config.timezone))
    schedule = config.days.get(WEEKDAYS[local.weekday()])
    if schedule is None or schedule.closed:
        return False
    local_clock = local.time().replace(second=0, microsecond=0)
    return time.fromisoformat(schedule.start) <= local_clock <= time.fromisoformat(schedule.end)
