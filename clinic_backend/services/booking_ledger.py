"""Booking ledger: the authoritative record of appointments.

The only cross-request coordination point is the partial unique index on
(location, appointment_date, appointment_time, seat) over non-canceled rows.
``reserve`` performs a single conditional insert against it, so of any
number of concurrent attempts on a capacity-1 slot exactly one commits and
the rest get ``SlotAlreadyTaken``. Nothing here retries a lost race.
"""

import logging
from datetime import datetime

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from clinic_backend.auth.identity import Identity
from clinic_backend.core import config
from clinic_backend.core.errors import (
    InvalidSlot,
    InvalidTransition,
    NotFound,
    PermissionDenied,
    PersistenceUnavailable,
    RescheduleConflict,
    SlotAlreadyTaken,
)
from clinic_backend.models.appointment import ACTIVE_STATUSES, Appointment, AppointmentStatus, CancelReason
from clinic_backend.schemas.appointment import AppointmentResponse, PatientDetails
from clinic_backend.schemas.slot import SlotInstance
from clinic_backend.services import lifecycle, slot_catalog
from clinic_backend.services.live_view import LiveViewProjector

logger = logging.getLogger(__name__)


def validated_instance(slot: SlotInstance, db: Session, now: datetime) -> SlotInstance:
    instance = slot_catalog.find_slot_instance(slot.location, slot.date, slot.start_time, db)

    if instance.starts_at <= now:
        raise InvalidSlot('Appointments must be scheduled in the future.')

    template = slot_catalog.template_for(instance, db)
    if not slot_catalog.is_within_booking_window(instance, template, now):
        earliest, last_day = slot_catalog.booking_window(template, now)
        raise InvalidSlot(
            f'This slot can only be booked between {earliest:%Y-%m-%d %H:%M} and {last_day:%Y-%m-%d}.'
        )
    return instance


def free_seat(instance: SlotInstance, db: Session, patient_email: str | None = None) -> int | None:
    """Lowest seat of the instance with no active booking, or None when full."""
    holders = db.query(Appointment.seat, Appointment.patient_email).filter(
        Appointment.location == instance.location,
        Appointment.appointment_date == instance.date,
        Appointment.appointment_time == instance.start_time,
        Appointment.status != AppointmentStatus.CANCELED.value,
    ).all()

    if patient_email is not None and any(email == patient_email for _, email in holders):
        return None

    if len(holders) >= instance.capacity:
        return None

    taken = {seat for seat, _ in holders}
    for seat in range(instance.capacity):
        if seat not in taken:
            return seat
    return None


def _new_appointment(
    instance: SlotInstance,
    seat: int,
    patient: PatientDetails,
    appointment_type: str,
    reason_for_visit: str | None,
    notes: str | None,
    now: datetime,
) -> Appointment:
    appointment = Appointment(
        template_id=instance.template_id,
        location=instance.location,
        appointment_date=instance.date,
        appointment_time=instance.start_time,
        end_time=instance.end_time,
        seat=seat,
        patient_email=patient.email,
        patient_name=patient.name,
        patient_phone=patient.phone,
        patient_pid=patient.pid,
        appointment_type=appointment_type.strip().lower(),
        reason_for_visit=reason_for_visit,
        notes=notes,
    )
    lifecycle.stamp_initial(appointment, now)
    return appointment


def _publish(projector: LiveViewProjector | None, appointments) -> None:
    if projector is not None:
        projector.publish(appointments)


def reserve(
    slot: SlotInstance,
    patient: PatientDetails,
    appointment_type: str,
    reason_for_visit: str | None,
    db: Session,
    notes: str | None = None,
    now: datetime | None = None,
    projector: LiveViewProjector | None = None,
) -> Appointment:
    now = now or datetime.now()
    instance = validated_instance(slot, db, now)

    try:
        seat = free_seat(instance, db, patient_email=patient.email)
        if seat is None:
            raise SlotAlreadyTaken()

        appointment = _new_appointment(instance, seat, patient, appointment_type, reason_for_visit, notes, now)
        db.add(appointment)
        db.commit()
        db.refresh(appointment)
    except IntegrityError as exc:
        db.rollback()
        logger.warning('Reservation race lost for %s %s %s', instance.location, instance.date, instance.start_time)
        raise SlotAlreadyTaken() from exc
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception('Failed to reserve %s %s %s', instance.location, instance.date, instance.start_time)
        raise PersistenceUnavailable() from exc

    logger.info(
        'Appointment %s reserved at %s %s %s for %s',
        appointment.id, instance.location, instance.date, instance.start_time, patient.email,
    )
    _publish(projector, [appointment])
    return appointment


def _load_for_actor(appointment_id: int, actor: Identity, db: Session, action: str) -> Appointment:
    appointment = db.get(Appointment, appointment_id)
    if appointment is None:
        raise NotFound('Appointment not found.')
    if not actor.is_admin and appointment.patient_email != actor.email:
        raise PermissionDenied(f'Only the patient who booked this appointment can {action} it.')
    return appointment


def get_appointment(appointment_id: int, actor: Identity, db: Session) -> Appointment:
    try:
        return _load_for_actor(appointment_id, actor, db, 'view')
    except SQLAlchemyError as exc:
        raise PersistenceUnavailable() from exc


def cancel(
    appointment_id: int,
    actor: Identity,
    db: Session,
    now: datetime | None = None,
    projector: LiveViewProjector | None = None,
) -> Appointment:
    now = now or datetime.now()
    try:
        appointment = _load_for_actor(appointment_id, actor, db, 'cancel')
        if appointment.status == AppointmentStatus.CANCELED.value:
            return appointment

        reason = CancelReason.DOCTOR_REQUEST if actor.is_admin else CancelReason.PATIENT_REQUEST
        lifecycle.mark_canceled(appointment, actor, reason, now)
        db.commit()
        db.refresh(appointment)
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception('Failed to cancel appointment %s', appointment_id)
        raise PersistenceUnavailable() from exc

    logger.info('Appointment %s canceled by %s (%s)', appointment_id, actor.email, appointment.canceled_by_role)
    _publish(projector, [appointment])
    return appointment


def rollback_with_retry(db: Session) -> None:
    attempts = config.RESCHEDULE_ROLLBACK_ATTEMPTS
    for attempt in range(1, attempts + 1):
        try:
            db.rollback()
            return
        except SQLAlchemyError:
            logger.warning('Rollback attempt %s/%s failed', attempt, attempts, exc_info=True)
    raise PersistenceUnavailable('Could not confirm that the original booking was kept. Please check your appointments.')


def reschedule(
    appointment_id: int,
    new_slot: SlotInstance,
    actor: Identity,
    db: Session,
    now: datetime | None = None,
    projector: LiveViewProjector | None = None,
) -> Appointment:
    """Move a booking to another slot; returns the new appointment.

    The old booking is canceled and the new one inserted in one transaction.
    If the insert loses the new slot, the transaction is rolled back so the
    original booking stays exactly as it was.
    """
    now = now or datetime.now()
    try:
        old = _load_for_actor(appointment_id, actor, db, 'reschedule')
    except SQLAlchemyError as exc:
        raise PersistenceUnavailable() from exc
    if old.status not in ACTIVE_STATUSES:
        raise InvalidTransition('Only pending or confirmed appointments can be rescheduled.')

    instance = validated_instance(new_slot, db, now)
    if instance.key == old.slot_key:
        raise InvalidSlot('The appointment is already booked for this time.')

    try:
        seat = free_seat(instance, db, patient_email=old.patient_email)
        if seat is None:
            raise RescheduleConflict()

        patient = PatientDetails(
            email=old.patient_email,
            name=old.patient_name,
            phone=old.patient_phone,
            pid=old.patient_pid,
        )
        lifecycle.mark_canceled(old, actor, CancelReason.RESCHEDULED, now)
        db.flush()

        new = _new_appointment(
            instance, seat, patient, old.appointment_type, old.reason_for_visit, old.notes, now
        )
        new.rescheduled_from_id = old.id
        db.add(new)
        db.flush()

        old.rescheduled_to_id = new.id
        db.commit()
    except IntegrityError as exc:
        rollback_with_retry(db)
        logger.warning('Reschedule of appointment %s lost the new slot; original kept', appointment_id)
        raise RescheduleConflict() from exc
    except SQLAlchemyError as exc:
        rollback_with_retry(db)
        logger.exception('Failed to reschedule appointment %s', appointment_id)
        raise PersistenceUnavailable() from exc

    db.refresh(old)
    db.refresh(new)
    logger.info('Appointment %s rescheduled to %s by %s', old.id, new.id, actor.email)
    _publish(projector, [old, new])
    return new


def delete_permanently(
    appointment_id: int,
    actor: Identity,
    db: Session,
    projector: LiveViewProjector | None = None,
) -> None:
    if not actor.is_admin:
        raise PermissionDenied('Only the clinic administrator can delete appointments.')

    try:
        appointment = db.get(Appointment, appointment_id)
        if appointment is None:
            raise NotFound('Appointment not found.')

        removed = AppointmentResponse.model_validate(appointment)
        db.delete(appointment)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception('Failed to delete appointment %s', appointment_id)
        raise PersistenceUnavailable() from exc

    logger.info('Appointment %s permanently deleted by %s', appointment_id, actor.email)
    _publish(projector, [removed])


def list_appointments(
    db: Session,
    patient_email: str | None = None,
    location: str | None = None,
    status: AppointmentStatus | None = None,
    upcoming_from: datetime | None = None,
    newest_first: bool = False,
) -> list[Appointment]:
    query = db.query(Appointment)
    if patient_email is not None:
        query = query.filter(Appointment.patient_email == patient_email)
    if location is not None:
        query = query.filter(Appointment.location == location)
    if status is not None:
        query = query.filter(Appointment.status == status.value)
    if upcoming_from is not None:
        query = query.filter(Appointment.appointment_date >= upcoming_from.date())

    if newest_first:
        ordering = (Appointment.appointment_date.desc(), Appointment.appointment_time.desc())
    else:
        ordering = (Appointment.appointment_date.asc(), Appointment.appointment_time.asc())

    try:
        return query.order_by(*ordering, Appointment.id.asc()).all()
    except SQLAlchemyError as exc:
        raise PersistenceUnavailable() from exc
