"""
Human schedule descriptions and their derived forms.

A report's ``schedule_config`` (frequency, time, dayOfWeek/dayOfMonth,
timezone) is the source of truth. The cron expression stored on its
ScheduledJob and the report's next_run_at are both recomputed from it.
Everything here is pure.
"""
import calendar
import os
import re
from datetime import datetime, timedelta, timezone, time as dt_time
from enum import Enum
from typing import Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from apscheduler.triggers.cron import CronTrigger
from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError
from pydantic import field_validator, model_validator

from core.errors import ValidationError

SCHEDULER_TIMEZONE = os.environ.get("SCHEDULER_TIMEZONE", "America/New_York")

# Crontab numbering, 0 = sunday
DAY_NAMES = ["sunday", "monday", "tuesday", "wednesday", "thursday", "friday", "saturday"]

_TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})$")


class Frequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


def _zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValueError(f"unknown timezone '{name}'") from e


class ScheduleConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    frequency: Frequency
    time: str = "09:00"
    day_of_week: Optional[str] = Field(default=None, alias="dayOfWeek")
    day_of_month: Optional[int] = Field(default=None, alias="dayOfMonth", ge=1, le=31)
    timezone: str = SCHEDULER_TIMEZONE

    @field_validator("frequency", mode="before")
    @classmethod
    def _lower_frequency(cls, value):
        return value.strip().lower() if isinstance(value, str) else value

    @field_validator("time")
    @classmethod
    def _check_time(cls, value: str) -> str:
        match = _TIME_RE.match(value.strip())
        if not match:
            raise ValueError("time must be HH:MM")
        hour, minute = int(match.group(1)), int(match.group(2))
        if hour > 23 or minute > 59:
            raise ValueError("time must be HH:MM")
        return f"{hour:02d}:{minute:02d}"

    @field_validator("day_of_week", mode="before")
    @classmethod
    def _normalise_day(cls, value):
        if value is None:
            return None
        if isinstance(value, int) and not isinstance(value, bool):
            if 0 <= value <= 6:
                return DAY_NAMES[value]
            raise ValueError("dayOfWeek must be 0-6 (0 = sunday)")
        name = str(value).strip().lower()
        for day in DAY_NAMES:
            if name == day or name == day[:3]:
                return day
        raise ValueError(f"unknown dayOfWeek '{value}'")

    @field_validator("timezone")
    @classmethod
    def _check_timezone(cls, value: str) -> str:
        _zone(value)
        return value

    @model_validator(mode="after")
    def _require_day(self):
        if self.frequency == Frequency.WEEKLY and self.day_of_week is None:
            raise ValueError("weekly schedules require dayOfWeek")
        if self.frequency == Frequency.MONTHLY and self.day_of_month is None:
            raise ValueError("monthly schedules require dayOfMonth")
        return self

    @classmethod
    def coerce(cls, value: Union["ScheduleConfig", dict]) -> "ScheduleConfig":
        if isinstance(value, cls):
            return value
        if not isinstance(value, dict):
            raise ValidationError("Schedule config must be an object")
        try:
            return cls.model_validate(value)
        except PydanticValidationError as e:
            raise ValidationError.from_pydantic(e, "schedule config") from e

    @property
    def hour(self) -> int:
        return int(self.time.split(":")[0])

    @property
    def minute(self) -> int:
        return int(self.time.split(":")[1])

    @property
    def cron_weekday(self) -> Optional[int]:
        return DAY_NAMES.index(self.day_of_week) if self.day_of_week else None

    @property
    def zone(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    def to_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def schedule_to_cron(schedule: Union[ScheduleConfig, dict]) -> str:
    """
    >>> schedule_to_cron({"frequency": "weekly", "dayOfWeek": "friday", "time": "09:00"})
    '0 9 * * 5'
    """
    cfg = ScheduleConfig.coerce(schedule)
    if cfg.frequency == Frequency.WEEKLY:
        return f"{cfg.minute} {cfg.hour} * * {cfg.cron_weekday}"
    if cfg.frequency == Frequency.MONTHLY:
        return f"{cfg.minute} {cfg.hour} {cfg.day_of_month} * *"
    return f"{cfg.minute} {cfg.hour} * * *"


def _clamped(year: int, month: int, day: int, at: dt_time, tz: ZoneInfo) -> datetime:
    last_day = calendar.monthrange(year, month)[1]
    return datetime.combine(datetime(year, month, min(day, last_day)).date(), at, tzinfo=tz)


def calculate_next_run_time(schedule: Union[ScheduleConfig, dict], now: Optional[datetime] = None) -> datetime:
    """
    Next strictly-future occurrence of the schedule, as an aware datetime in
    the schedule's own timezone. A naive ``now`` is read as UTC.
    """
    cfg = ScheduleConfig.coerce(schedule)
    tz = cfg.zone
    now = now or utc_now()
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    local_now = now.astimezone(tz)
    at = dt_time(cfg.hour, cfg.minute)
    candidate = datetime.combine(local_now.date(), at, tzinfo=tz)

    if cfg.frequency == Frequency.WEEKLY:
        # python weekday() has monday = 0
        target = (cfg.cron_weekday - 1) % 7
        candidate += timedelta(days=(target - candidate.weekday()) % 7)
        if candidate <= local_now:
            candidate += timedelta(days=7)
        return candidate

    if cfg.frequency == Frequency.MONTHLY:
        candidate = _clamped(local_now.year, local_now.month, cfg.day_of_month, at, tz)
        if candidate <= local_now:
            year, month = local_now.year, local_now.month + 1
            if month > 12:
                year, month = year + 1, 1
            candidate = _clamped(year, month, cfg.day_of_month, at, tz)
        return candidate

    if candidate <= local_now:
        candidate += timedelta(days=1)
    return candidate


# ----------------------------------------------------------------------------
# Cron expressions
# ----------------------------------------------------------------------------

def _crontab_day_of_week(field: str) -> str:
    """
    Translate a crontab weekday field (0/7 = sunday) into APScheduler's
    numbering (0 = monday). Numeric ranges and steps are expanded to lists.
    """
    if field in ("*", "?"):
        return "*"
    values = set()
    names = []
    for part in field.lower().split(","):
        body, _, step = part.partition("/")
        if body.replace("-", "").isalpha():
            if step:
                raise ValueError(f"step not supported on weekday names: '{part}'")
            names.append(body)
            continue
        if body == "*":
            low, high = 0, 6
        elif "-" in body:
            low, high = (int(x) for x in body.split("-", 1))
        else:
            low = int(body)
            high = 6 if step else low
        if not (0 <= low <= 7 and 0 <= high <= 7) or low > high:
            raise ValueError(f"weekday out of range: '{part}'")
        for n in range(low, high + 1, int(step) if step else 1):
            values.add((n - 1) % 7)
    return ",".join([str(v) for v in sorted(values)] + names)


def build_cron_trigger(expression: str, tz: Optional[str] = None) -> CronTrigger:
    """Build an APScheduler trigger from a 5-field crontab expression."""
    fields = (expression or "").split()
    if len(fields) != 5:
        raise ValidationError(f"Invalid cron expression '{expression}': expected 5 fields")
    minute, hour, day, month, day_of_week = fields
    try:
        return CronTrigger(
            minute=minute,
            hour=hour,
            day="*" if day == "?" else day,
            month=month,
            day_of_week=_crontab_day_of_week(day_of_week),
            timezone=_zone(tz or SCHEDULER_TIMEZONE),
        )
    except ValueError as e:
        raise ValidationError(f"Invalid cron expression '{expression}': {e}") from e


def validate_cron(expression: str, tz: Optional[str] = None) -> bool:
    """True when the expression parses; never raises."""
    try:
        build_cron_trigger(expression, tz)
        return True
    except ValidationError:
        return False


def next_fire_time(expression: str, tz: Optional[str] = None, now: Optional[datetime] = None) -> Optional[datetime]:
    trigger = build_cron_trigger(expression, tz)
    now = now or utc_now()
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return trigger.get_next_fire_time(None, now)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_utc_naive(value: Optional[datetime]) -> Optional[datetime]:
    """Normalise to the naive-UTC form timestamps are stored in."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
