from datetime import date, timedelta

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from clinic_backend.auth.dependencies import require_admin
from clinic_backend.auth.identity import Identity
from clinic_backend.core.errors import BookingError
from clinic_backend.routes.common import ensure_database_ready, get_db, http_error
from clinic_backend.schemas.slot import (
    BlockedPeriodRequest,
    BlockedPeriodResponse,
    SlotInstance,
    SlotTemplateRequest,
    SlotTemplateResponse,
)
from clinic_backend.services import availability, slot_catalog

router = APIRouter(tags=['slots'])

DEFAULT_LISTING_DAYS = 14


def resolve_range(start_date: date | None, end_date: date | None) -> tuple[date, date]:
    start_date = start_date or date.today()
    end_date = end_date or start_date + timedelta(days=DEFAULT_LISTING_DAYS - 1)
    return start_date, end_date


@router.post('', response_model=SlotTemplateResponse, status_code=status.HTTP_201_CREATED)
def define_slot(
    data: SlotTemplateRequest,
    admin: Identity = Depends(require_admin),
    db: Session = Depends(get_db),
):
    ensure_database_ready()
    try:
        return slot_catalog.define_slot(data, db)
    except BookingError as exc:
        raise http_error(exc) from exc


@router.get('', response_model=list[SlotTemplateResponse])
def list_templates(
    location: str | None = Query(default=None),
    db: Session = Depends(get_db),
):
    ensure_database_ready()
    try:
        return slot_catalog.list_templates(location, db)
    except BookingError as exc:
        raise http_error(exc) from exc


@router.get('/locations', response_model=list[str])
def list_locations(db: Session = Depends(get_db)):
    ensure_database_ready()
    try:
        return slot_catalog.list_locations(db)
    except BookingError as exc:
        raise http_error(exc) from exc


@router.get('/instances', response_model=list[SlotInstance])
def list_slot_instances(
    location: str | None = Query(default=None),
    start_date: date | None = Query(default=None),
    end_date: date | None = Query(default=None),
    include_blocked: bool = Query(default=False),
    admin: Identity = Depends(require_admin),
    db: Session = Depends(get_db),
):
    ensure_database_ready()
    start_date, end_date = resolve_range(start_date, end_date)
    try:
        return list(slot_catalog.list_slots(location, start_date, end_date, db, include_blocked=include_blocked))
    except BookingError as exc:
        raise http_error(exc) from exc


@router.get('/availability', response_model=list[SlotInstance])
def list_available_slots(
    location: str = Query(...),
    start_date: date | None = Query(default=None),
    end_date: date | None = Query(default=None),
    db: Session = Depends(get_db),
):
    ensure_database_ready()
    start_date, end_date = resolve_range(start_date, end_date)
    try:
        return availability.availability(location, start_date, end_date, db)
    except BookingError as exc:
        raise http_error(exc) from exc


@router.post('/blocked-periods', response_model=BlockedPeriodResponse, status_code=status.HTTP_201_CREATED)
def create_blocked_period(
    data: BlockedPeriodRequest,
    admin: Identity = Depends(require_admin),
    db: Session = Depends(get_db),
):
    ensure_database_ready()
    try:
        return slot_catalog.block_period(data, db)
    except BookingError as exc:
        raise http_error(exc) from exc


@router.get('/blocked-periods', response_model=list[BlockedPeriodResponse])
def list_blocked_periods(
    location: str | None = Query(default=None),
    db: Session = Depends(get_db),
):
    ensure_database_ready()
    try:
        return slot_catalog.list_blocked_periods(location, db, from_date=date.today())
    except BookingError as exc:
        raise http_error(exc) from exc


@router.delete('/blocked-periods/{block_id}', status_code=status.HTTP_204_NO_CONTENT)
def remove_blocked_period(
    block_id: int,
    admin: Identity = Depends(require_admin),
    db: Session = Depends(get_db),
):
    ensure_database_ready()
    try:
        slot_catalog.unblock_period(block_id, db)
    except BookingError as exc:
        raise http_error(exc) from exc


@router.get('/{template_id}', response_model=SlotTemplateResponse)
def get_template(template_id: int, db: Session = Depends(get_db)):
    ensure_database_ready()
    try:
        return slot_catalog.get_slot(template_id, db)
    except BookingError as exc:
        raise http_error(exc) from exc


@router.put('/{template_id}', response_model=SlotTemplateResponse)
def update_template(
    template_id: int,
    data: SlotTemplateRequest,
    admin: Identity = Depends(require_admin),
    db: Session = Depends(get_db),
):
    ensure_database_ready()
    try:
        return slot_catalog.update_slot(template_id, data, db)
    except BookingError as exc:
        raise http_error(exc) from exc


@router.delete('/{template_id}', status_code=status.HTTP_204_NO_CONTENT)
def remove_template(
    template_id: int,
    admin: Identity = Depends(require_admin),
    db: Session = Depends(get_db),
):
    ensure_database_ready()
    try:
        slot_catalog.remove_slot(template_id, db)
    except BookingError as exc:
        raise http_error(exc) from exc
