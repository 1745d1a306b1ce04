"""Appointment model definitions."""

from datetime import datetime
from enum import Enum

from sqlalchemy import Column, Date, DateTime, ForeignKey, Index, Integer, String, Text, Time, text
from clinic_backend.database import Base


class AppointmentStatus(str, Enum):
    PENDING = 'pending'
    CONFIRMED = 'confirmed'
    CANCELED = 'canceled'
    COMPLETED = 'completed'


ACTIVE_STATUSES = (AppointmentStatus.PENDING.value, AppointmentStatus.CONFIRMED.value)


class CancelActor(str, Enum):
    PATIENT = 'patient'
    DOCTOR = 'doctor'
    NONE = 'none'


class CancelReason(str, Enum):
    PATIENT_REQUEST = 'patient_request'
    DOCTOR_REQUEST = 'doctor_request'
    RESCHEDULED = 'rescheduled'


class Appointment(Base):
    """Represents one patient's reservation of a slot instance."""
    __tablename__ = "appointments"
    __table_args__ = (
        # The occupancy key: one non-canceled booking per slot seat.
        Index(
            'uq_appointments_active_slot',
            'location',
            'appointment_date',
            'appointment_time',
            'seat',
            unique=True,
            sqlite_where=text("status != 'canceled'"),
            postgresql_where=text("status != 'canceled'"),
        ),
        Index('idx_appointments_patient_date', 'patient_email', 'appointment_date'),
    )

    id = Column(Integer, primary_key=True)
    template_id = Column(Integer, ForeignKey("slot_templates.id", ondelete="SET NULL"), nullable=True)
    location = Column(String, nullable=False)
    appointment_date = Column(Date, nullable=False)
    appointment_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    seat = Column(Integer, nullable=False, default=0)

    patient_email = Column(String, nullable=False, index=True)
    patient_name = Column(String)
    patient_phone = Column(String)
    patient_pid = Column(String)
    appointment_type = Column(String, nullable=False)
    reason_for_visit = Column(Text)
    notes = Column(Text)

    status = Column(String, nullable=False, default=AppointmentStatus.CONFIRMED.value)
    canceled_by = Column(String, nullable=False, default=CancelActor.NONE.value)
    canceled_by_role = Column(String)
    canceled_by_email = Column(String)
    cancel_reason = Column(String)
    rescheduled_from_id = Column(Integer)
    rescheduled_to_id = Column(Integer)

    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)
    confirmed_at = Column(DateTime)
    canceled_at = Column(DateTime)
    completed_at = Column(DateTime)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def starts_at(self) -> datetime:
        return datetime.combine(self.appointment_date, self.appointment_time)

    @property
    def ends_at(self) -> datetime:
        return datetime.combine(self.appointment_date, self.end_time)

    @property
    def slot_key(self) -> tuple:
        return (self.location, self.appointment_date, self.appointment_time)

    def __repr__(self) -> str:
        return f"<Appointment {self.id} {self.location} {self.appointment_date} {self.appointment_time} {self.status}>"
