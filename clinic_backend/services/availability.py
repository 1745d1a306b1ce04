"""Free slot lookup: catalog instances minus instances the ledger has filled.

Read only. A slot reported free may be reserved a moment later; callers treat
``booking_ledger.reserve`` as the source of truth.
"""

from collections import Counter
from datetime import date, datetime, time

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from clinic_backend.core.errors import PersistenceUnavailable
from clinic_backend.models.appointment import Appointment, AppointmentStatus
from clinic_backend.schemas.slot import SlotInstance
from clinic_backend.services import slot_catalog


def occupied_slot_counts(
    location: str | None,
    start_date: date,
    end_date: date,
    db: Session,
) -> Counter[tuple[str, date, time]]:
    query = db.query(
        Appointment.location,
        Appointment.appointment_date,
        Appointment.appointment_time,
        func.count(Appointment.id),
    ).filter(
        Appointment.status != AppointmentStatus.CANCELED.value,
        Appointment.appointment_date >= start_date,
        Appointment.appointment_date <= end_date,
    )
    if location is not None:
        query = query.filter(Appointment.location == location.strip())

    try:
        rows = query.group_by(
            Appointment.location,
            Appointment.appointment_date,
            Appointment.appointment_time,
        ).all()
    except SQLAlchemyError as exc:
        raise PersistenceUnavailable() from exc

    return Counter({(row_location, row_date, row_time): count for row_location, row_date, row_time, count in rows})


def availability(
    location: str | None,
    start_date: date,
    end_date: date,
    db: Session,
    now: datetime | None = None,
) -> list[SlotInstance]:
    now = now or datetime.now()
    listing = slot_catalog.list_slots(location, start_date, end_date, db)
    occupied = occupied_slot_counts(location, start_date, end_date, db)

    free: list[SlotInstance] = []
    for instance in listing:
        if occupied[instance.key] >= instance.capacity:
            continue
        template = listing.templates_by_id.get(instance.template_id)
        if not slot_catalog.is_within_booking_window(instance, template, now):
            continue
        free.append(instance)
    return free
