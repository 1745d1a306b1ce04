"""Appointment state machine.

    pending ──confirm──▶ confirmed ──complete──▶ completed
       │                    │
       └──────cancel────────┴──▶ canceled

``canceled`` and ``completed`` are terminal. Canceling a canceled
appointment is a no-op.
"""

import logging
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from clinic_backend.auth.identity import Identity
from clinic_backend.core import config
from clinic_backend.core.errors import InvalidTransition, NotFound, PermissionDenied, PersistenceUnavailable
from clinic_backend.models.appointment import Appointment, AppointmentStatus, CancelActor, CancelReason
from clinic_backend.services.live_view import LiveViewProjector

logger = logging.getLogger(__name__)

TRANSITIONS = {
    AppointmentStatus.PENDING: {AppointmentStatus.CONFIRMED, AppointmentStatus.CANCELED},
    AppointmentStatus.CONFIRMED: {AppointmentStatus.CANCELED, AppointmentStatus.COMPLETED},
    AppointmentStatus.CANCELED: set(),
    AppointmentStatus.COMPLETED: set(),
}


def initial_status() -> AppointmentStatus:
    return AppointmentStatus(config.BOOKING_INITIAL_STATUS)


def can_transition(current: str, target: AppointmentStatus) -> bool:
    return target in TRANSITIONS[AppointmentStatus(current)]


def check_transition(appointment: Appointment, target: AppointmentStatus) -> None:
    if not can_transition(appointment.status, target):
        raise InvalidTransition(
            f'A {appointment.status} appointment cannot be marked {target.value}.'
        )


def stamp_initial(appointment: Appointment, now: datetime) -> None:
    status = initial_status()
    appointment.status = status.value
    appointment.canceled_by = CancelActor.NONE.value
    appointment.created_at = now
    appointment.updated_at = now
    if status == AppointmentStatus.CONFIRMED:
        appointment.confirmed_at = now


def mark_canceled(appointment: Appointment, actor: Identity, reason: CancelReason, now: datetime) -> None:
    check_transition(appointment, AppointmentStatus.CANCELED)
    appointment.status = AppointmentStatus.CANCELED.value
    appointment.canceled_by = actor.actor.value
    appointment.canceled_by_role = actor.actor.value
    appointment.canceled_by_email = actor.email
    appointment.cancel_reason = reason.value
    appointment.canceled_at = now
    appointment.updated_at = now


def _require_admin(actor: Identity) -> None:
    if not actor.is_admin:
        raise PermissionDenied('Only the clinic administrator can change appointment status.')


def _transition(
    appointment_id: int,
    target: AppointmentStatus,
    actor: Identity,
    db: Session,
    now: datetime,
    projector: LiveViewProjector | None,
) -> Appointment:
    _require_admin(actor)
    try:
        appointment = db.get(Appointment, appointment_id)
        if appointment is None:
            raise NotFound('Appointment not found.')

        check_transition(appointment, target)
        if target == AppointmentStatus.COMPLETED and appointment.ends_at > now:
            raise InvalidTransition('Appointments can only be completed after they have taken place.')

        appointment.status = target.value
        appointment.updated_at = now
        if target == AppointmentStatus.CONFIRMED:
            appointment.confirmed_at = now
        else:
            appointment.completed_at = now
        db.commit()
        db.refresh(appointment)
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception('Failed to mark appointment %s %s', appointment_id, target.value)
        raise PersistenceUnavailable() from exc

    logger.info('Appointment %s marked %s by %s', appointment_id, target.value, actor.email)
    if projector is not None:
        projector.publish([appointment])
    return appointment


def confirm(
    appointment_id: int,
    actor: Identity,
    db: Session,
    now: datetime | None = None,
    projector: LiveViewProjector | None = None,
) -> Appointment:
    return _transition(appointment_id, AppointmentStatus.CONFIRMED, actor, db, now or datetime.now(), projector)


def complete(
    appointment_id: int,
    actor: Identity,
    db: Session,
    now: datetime | None = None,
    projector: LiveViewProjector | None = None,
) -> Appointment:
    return _transition(appointment_id, AppointmentStatus.COMPLETED, actor, db, now or datetime.now(), projector)
