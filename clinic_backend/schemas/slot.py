from datetime import date, datetime, time, timedelta

from pydantic import BaseModel, ConfigDict, field_validator, model_validator

from clinic_backend.core import config
from clinic_backend.models.slot_template import ScheduleType

WEEKDAY_NAMES = ('monday', 'tuesday', 'wednesday', 'thursday', 'friday', 'saturday', 'sunday')


def parse_weekday(value: int | str) -> int:
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in WEEKDAY_NAMES:
            return WEEKDAY_NAMES.index(normalized)
        if not normalized.isdigit():
            raise ValueError(f'Unknown weekday: {value!r}.')
        value = int(normalized)
    if not 0 <= value <= 6:
        raise ValueError('Weekdays are numbered 0 (Monday) through 6 (Sunday).')
    return value


def minutes_between(start: time, end: time) -> int:
    delta = datetime.combine(date.min, end) - datetime.combine(date.min, start)
    return int(delta.total_seconds() // 60)


class SlotTemplateRequest(BaseModel):
    location: str
    schedule_type: ScheduleType = ScheduleType.SPECIFIC_DATES
    weekdays: list[int] = []
    start_date: date
    end_date: date | None = None
    start_time: time
    end_time: time
    slot_minutes: int = config.DEFAULT_SLOT_MINUTES
    buffer_minutes: int = 0
    capacity: int = 1
    min_advance_hours: float | None = None
    max_advance_days: int | None = None

    @field_validator('location')
    @classmethod
    def validate_location(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('Location is required.')
        return normalized

    @field_validator('weekdays', mode='before')
    @classmethod
    def validate_weekdays(cls, value):
        if value is None:
            return []
        if isinstance(value, dict):
            # {"monday": true, "tuesday": false, ...}
            value = [day for day, enabled in value.items() if enabled]
        return sorted({parse_weekday(day) for day in value})

    @model_validator(mode='after')
    def validate_window(self):
        if self.start_time >= self.end_time:
            raise ValueError('End time must be after start time.')
        if self.slot_minutes <= 0:
            raise ValueError('Slot length must be positive.')
        if self.buffer_minutes < 0:
            raise ValueError('Buffer time cannot be negative.')
        if self.slot_minutes > minutes_between(self.start_time, self.end_time):
            raise ValueError('Time range is too short for the slot length.')
        if self.capacity < 1:
            raise ValueError('Capacity must be at least 1.')
        if self.min_advance_hours is not None and self.min_advance_hours < 0:
            raise ValueError('Minimum advance booking cannot be negative.')
        if self.max_advance_days is not None and self.max_advance_days < 1:
            raise ValueError('Maximum advance booking must be at least 1 day.')

        if self.schedule_type == ScheduleType.ONGOING_RECURRING:
            self.end_date = None
        elif self.end_date is None:
            if self.schedule_type == ScheduleType.RECURRING_DAYS:
                raise ValueError('End date is required for a recurring schedule.')
            self.end_date = self.start_date
        elif self.end_date < self.start_date:
            raise ValueError('End date must be on or after start date.')

        if self.schedule_type == ScheduleType.SPECIFIC_DATES:
            self.weekdays = []
        elif not self.weekdays:
            raise ValueError('Please select at least one day for a recurring schedule.')
        return self


class SlotTemplateResponse(BaseModel):
    id: int
    location: str
    schedule_type: ScheduleType
    weekdays: list[int]
    start_date: date
    end_date: date | None = None
    start_time: time
    end_time: time
    slot_minutes: int
    buffer_minutes: int
    capacity: int
    min_advance_hours: float | None = None
    max_advance_days: int | None = None

    class Config:
        from_attributes = True


class SlotInstance(BaseModel):
    """One dated occurrence of a slot template."""
    model_config = ConfigDict(frozen=True)

    template_id: int
    location: str
    date: date
    start_time: time
    end_time: time
    capacity: int = 1

    @property
    def key(self) -> tuple[str, date, time]:
        return (self.location, self.date, self.start_time)

    @property
    def starts_at(self) -> datetime:
        return datetime.combine(self.date, self.start_time)

    @property
    def ends_at(self) -> datetime:
        return datetime.combine(self.date, self.end_time)

    @property
    def duration(self) -> timedelta:
        return self.ends_at - self.starts_at


class BlockedPeriodRequest(BaseModel):
    location: str | None = None
    start_date: date
    end_date: date | None = None
    start_time: time | None = None
    end_time: time | None = None
    reason: str | None = None

    @field_validator('location', 'reason')
    @classmethod
    def strip_optional(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip() or None

    @model_validator(mode='after')
    def validate_range(self):
        if self.end_date is None:
            self.end_date = self.start_date
        if self.end_date < self.start_date:
            raise ValueError('End date must be on or after start date.')
        if (self.start_time is None) != (self.end_time is None):
            raise ValueError('Provide both start and end time, or neither to block whole days.')
        if self.start_time is not None and self.start_time >= self.end_time:
            raise ValueError('End time must be after start time.')
        return self


class BlockedPeriodResponse(BaseModel):
    id: int
    location: str | None = None
    start_date: date
    end_date: date
    start_time: time | None = None
    end_time: time | None = None
    reason: str | None = None

    class Config:
        from_attributes = True
