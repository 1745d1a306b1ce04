from datetime import date, datetime, time

from pydantic import BaseModel, field_validator

MAX_APPOINTMENT_NOTES_LENGTH = 600
APPOINTMENT_TYPES = ('consultation', 'follow-up', 'emergency', 'routine check-up')


def normalize_email(value: str) -> str:
    normalized = value.strip().lower()
    if not normalized or '@' not in normalized:
        raise ValueError('Please enter a valid email address.')
    return normalized


class PatientDetails(BaseModel):
    email: str
    name: str | None = None
    phone: str | None = None
    pid: str | None = None

    @field_validator('email')
    @classmethod
    def validate_email(cls, value: str) -> str:
        return normalize_email(value)

    @field_validator('name', 'phone', 'pid')
    @classmethod
    def strip_optional(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip() or None


class AppointmentResponse(BaseModel):
    id: int
    template_id: int | None = None
    location: str
    appointment_date: date
    appointment_time: time
    end_time: time
    seat: int = 0
    patient_email: str
    patient_name: str | None = None
    patient_phone: str | None = None
    patient_pid: str | None = None
    appointment_type: str
    reason_for_visit: str | None = None
    notes: str | None = None
    status: str
    canceled_by: str
    canceled_by_role: str | None = None
    canceled_by_email: str | None = None
    cancel_reason: str | None = None
    rescheduled_from_id: int | None = None
    rescheduled_to_id: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    confirmed_at: datetime | None = None
    canceled_at: datetime | None = None
    completed_at: datetime | None = None

    class Config:
        from_attributes = True


class AppointmentTypeOptionResponse(BaseModel):
    appointment_type: str
