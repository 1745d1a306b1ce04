"""Slot catalog model definitions."""

from datetime import datetime
from enum import Enum

from sqlalchemy import JSON, Column, Date, DateTime, Float, Integer, String, Text, Time
from clinic_backend.database import Base


class ScheduleType(str, Enum):
    SPECIFIC_DATES = 'specific_dates'
    RECURRING_DAYS = 'recurring_days'
    ONGOING_RECURRING = 'ongoing_recurring'


ALL_WEEKDAYS = (0, 1, 2, 3, 4, 5, 6)


def active_weekdays(schedule_type: str, weekdays) -> frozenset[int]:
    if schedule_type == ScheduleType.SPECIFIC_DATES.value:
        return frozenset(ALL_WEEKDAYS)
    return frozenset(weekdays or ())


class SlotTemplate(Base):
    """A bookable daily window at one location, split into slot instances."""
    __tablename__ = "slot_templates"

    id = Column(Integer, primary_key=True)
    location = Column(String, nullable=False, index=True)
    schedule_type = Column(String, nullable=False, default=ScheduleType.SPECIFIC_DATES.value)
    weekdays = Column(JSON, nullable=False, default=list)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    slot_minutes = Column(Integer, nullable=False)
    buffer_minutes = Column(Integer, nullable=False, default=0)
    capacity = Column(Integer, nullable=False, default=1)
    min_advance_hours = Column(Float)
    max_advance_days = Column(Integer)
    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    @property
    def active_weekdays(self) -> frozenset[int]:
        return active_weekdays(self.schedule_type, self.weekdays)


class BlockedPeriod(Base):
    """Closure of a whole day range, or a time range within it."""
    __tablename__ = "blocked_periods"

    id = Column(Integer, primary_key=True)
    location = Column(String, index=True)  # null blocks every location
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    start_time = Column(Time)
    end_time = Column(Time)
    reason = Column(Text)
    created_at = Column(DateTime, default=datetime.now)

    @property
    def is_full_day(self) -> bool:
        return self.start_time is None or self.end_time is None
