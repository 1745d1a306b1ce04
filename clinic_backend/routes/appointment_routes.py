import asyncio
import logging
from datetime import date, datetime, time

from fastapi import (
    APIRouter,
    BackgroundTasks,
    Depends,
    HTTPException,
    Query,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, field_validator
from sqlalchemy.orm import Session

from clinic_backend.auth.dependencies import get_current_identity, identity_from_token, require_admin
from clinic_backend.auth.identity import Identity
from clinic_backend.core import config
from clinic_backend.core.errors import BookingError
from clinic_backend.models.appointment import AppointmentStatus
from clinic_backend.routes.common import ensure_database_ready, get_db, get_notifier, get_projector, http_error
from clinic_backend.schemas.appointment import (
    APPOINTMENT_TYPES,
    MAX_APPOINTMENT_NOTES_LENGTH,
    AppointmentResponse,
    AppointmentTypeOptionResponse,
    PatientDetails,
    normalize_email,
)
from clinic_backend.services import booking_ledger, lifecycle, slot_catalog
from clinic_backend.services.live_view import LiveViewProjector, ViewFilter
from clinic_backend.services.notifications import NotificationDispatcher

router = APIRouter(tags=['appointments'])

logger = logging.getLogger(__name__)


def _strip_text(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip()
    if not normalized:
        return None
    if len(normalized) > MAX_APPOINTMENT_NOTES_LENGTH:
        raise ValueError(f'Text must be {MAX_APPOINTMENT_NOTES_LENGTH} characters or fewer.')
    return normalized


class CreateAppointmentRequest(BaseModel):
    location: str
    date: date
    time: time
    appointment_type: str = 'consultation'
    reason_for_visit: str | None = None
    notes: str | None = None
    patient_email: str | None = None
    patient_name: str | None = None
    patient_phone: str | None = None
    patient_pid: str | None = None

    @field_validator('location')
    @classmethod
    def validate_location(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('Location is required.')
        return normalized

    @field_validator('appointment_type')
    @classmethod
    def validate_appointment_type(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in APPOINTMENT_TYPES:
            raise ValueError('Invalid appointment type.')
        return normalized

    @field_validator('patient_email')
    @classmethod
    def validate_patient_email(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return normalize_email(value)

    @field_validator('reason_for_visit', 'notes')
    @classmethod
    def validate_text(cls, value: str | None) -> str | None:
        return _strip_text(value)


class RescheduleRequest(BaseModel):
    location: str | None = None
    date: date
    time: time


def patient_for_request(data: CreateAppointmentRequest, identity: Identity) -> PatientDetails:
    if identity.is_admin:
        if data.patient_email is None:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail='Patient email is required.',
            )
        email = data.patient_email
    else:
        if data.patient_email is not None and data.patient_email != identity.email:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail='Patients can only book appointments for themselves.',
            )
        email = identity.email

    return PatientDetails(
        email=email,
        name=data.patient_name,
        phone=data.patient_phone,
        pid=data.patient_pid,
    )


@router.get('/types', response_model=list[AppointmentTypeOptionResponse])
def list_appointment_types():
    return [AppointmentTypeOptionResponse(appointment_type=appointment_type) for appointment_type in APPOINTMENT_TYPES]


@router.post('', response_model=AppointmentResponse, status_code=status.HTTP_201_CREATED)
def create_appointment(
    data: CreateAppointmentRequest,
    background_tasks: BackgroundTasks,
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
    projector: LiveViewProjector = Depends(get_projector),
    notifier: NotificationDispatcher = Depends(get_notifier),
):
    ensure_database_ready()
    patient = patient_for_request(data, identity)

    try:
        slot = slot_catalog.find_slot_instance(data.location, data.date, data.time, db)
        appointment = booking_ledger.reserve(
            slot,
            patient,
            data.appointment_type,
            data.reason_for_visit,
            db,
            notes=data.notes,
            projector=projector,
        )
    except BookingError as exc:
        raise http_error(exc) from exc

    response = AppointmentResponse.model_validate(appointment)
    background_tasks.add_task(notifier.appointment_booked, response)
    return response


@router.get('/mine', response_model=list[AppointmentResponse])
def list_my_appointments(
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
):
    ensure_database_ready()
    try:
        return booking_ledger.list_appointments(db, patient_email=identity.email, newest_first=True)
    except BookingError as exc:
        raise http_error(exc) from exc


@router.get('', response_model=list[AppointmentResponse])
def list_appointments(
    location: str | None = Query(default=None),
    status_filter: AppointmentStatus | None = Query(default=None, alias='status'),
    upcoming_only: bool = Query(default=False),
    admin: Identity = Depends(require_admin),
    db: Session = Depends(get_db),
):
    ensure_database_ready()
    try:
        return booking_ledger.list_appointments(
            db,
            location=location,
            status=status_filter,
            upcoming_from=datetime.now() if upcoming_only else None,
        )
    except BookingError as exc:
        raise http_error(exc) from exc


@router.websocket('/live')
async def live_appointments(
    websocket: WebSocket,
    token: str = Query(...),
    location: str | None = Query(default=None),
):
    try:
        identity = identity_from_token(token)
    except HTTPException:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    if identity.is_admin:
        view_filter = ViewFilter(location=location)
    else:
        view_filter = ViewFilter(patient_email=identity.email)

    projector: LiveViewProjector = websocket.app.state.projector
    await websocket.accept()
    subscription = await run_in_threadpool(projector.subscribe, view_filter)
    watcher = asyncio.create_task(_close_on_disconnect(websocket, subscription))
    try:
        while not subscription.closed:
            snapshot = await run_in_threadpool(subscription.get, config.LIVE_VIEW_POLL_SECONDS)
            if snapshot is None:
                if not subscription.closed:
                    await run_in_threadpool(projector.resync)
                continue
            await websocket.send_json(snapshot.as_message())
    except WebSocketDisconnect:
        pass
    finally:
        subscription.close()
        watcher.cancel()
    logger.debug('Live view for %s closed', identity.email)


async def _close_on_disconnect(websocket: WebSocket, subscription) -> None:
    try:
        while True:
            message = await websocket.receive()
            if message['type'] == 'websocket.disconnect':
                break
    finally:
        subscription.close()


@router.get('/{appointment_id}', response_model=AppointmentResponse)
def get_appointment(
    appointment_id: int,
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
):
    ensure_database_ready()
    try:
        return booking_ledger.get_appointment(appointment_id, identity, db)
    except BookingError as exc:
        raise http_error(exc) from exc


@router.post('/{appointment_id}/cancel', response_model=AppointmentResponse)
def cancel_appointment(
    appointment_id: int,
    background_tasks: BackgroundTasks,
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
    projector: LiveViewProjector = Depends(get_projector),
    notifier: NotificationDispatcher = Depends(get_notifier),
):
    ensure_database_ready()
    try:
        previous_status = booking_ledger.get_appointment(appointment_id, identity, db).status
        appointment = booking_ledger.cancel(appointment_id, identity, db, projector=projector)
    except BookingError as exc:
        raise http_error(exc) from exc

    response = AppointmentResponse.model_validate(appointment)
    if previous_status != AppointmentStatus.CANCELED.value:
        background_tasks.add_task(notifier.appointment_canceled, response)
    return response


@router.post('/{appointment_id}/reschedule', response_model=AppointmentResponse)
def reschedule_appointment(
    appointment_id: int,
    data: RescheduleRequest,
    background_tasks: BackgroundTasks,
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
    projector: LiveViewProjector = Depends(get_projector),
    notifier: NotificationDispatcher = Depends(get_notifier),
):
    ensure_database_ready()
    try:
        current = booking_ledger.get_appointment(appointment_id, identity, db)
        previous = AppointmentResponse.model_validate(current)
        slot = slot_catalog.find_slot_instance(data.location or current.location, data.date, data.time, db)
        appointment = booking_ledger.reschedule(appointment_id, slot, identity, db, projector=projector)
    except BookingError as exc:
        raise http_error(exc) from exc

    response = AppointmentResponse.model_validate(appointment)
    background_tasks.add_task(notifier.appointment_rescheduled, previous, response)
    return response


@router.post('/{appointment_id}/confirm', response_model=AppointmentResponse)
def confirm_appointment(
    appointment_id: int,
    admin: Identity = Depends(require_admin),
    db: Session = Depends(get_db),
    projector: LiveViewProjector = Depends(get_projector),
):
    ensure_database_ready()
    try:
        return lifecycle.confirm(appointment_id, admin, db, projector=projector)
    except BookingError as exc:
        raise http_error(exc) from exc


@router.post('/{appointment_id}/complete', response_model=AppointmentResponse)
def complete_appointment(
    appointment_id: int,
    admin: Identity = Depends(require_admin),
    db: Session = Depends(get_db),
    projector: LiveViewProjector = Depends(get_projector),
):
    ensure_database_ready()
    try:
        return lifecycle.complete(appointment_id, admin, db, projector=projector)
    except BookingError as exc:
        raise http_error(exc) from exc


@router.delete('/{appointment_id}', status_code=status.HTTP_204_NO_CONTENT)
def delete_appointment(
    appointment_id: int,
    admin: Identity = Depends(require_admin),
    db: Session = Depends(get_db),
    projector: LiveViewProjector = Depends(get_projector),
):
    ensure_database_ready()
    try:
        booking_ledger.delete_permanently(appointment_id, admin, db, projector=projector)
    except BookingError as exc:
        raise http_error(exc) from exc
