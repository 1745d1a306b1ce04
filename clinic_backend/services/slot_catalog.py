"""Slot catalog: administrator-defined slot templates and blocked periods.

Templates are stored once and expanded on demand into dated
``SlotInstance`` records. Two templates at the same location may not share
a day and an overlapping daily window.
"""

import logging
from collections import Counter
from collections.abc import Iterable, Iterator
from datetime import date, datetime, time, timedelta

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from clinic_backend.core import config
from clinic_backend.core.errors import InvalidRange, InvalidSlot, NotFound, OverlappingSlot, PersistenceUnavailable
from clinic_backend.models.appointment import ACTIVE_STATUSES, Appointment
from clinic_backend.models.slot_template import BlockedPeriod, SlotTemplate, active_weekdays
from clinic_backend.schemas.slot import BlockedPeriodRequest, SlotInstance, SlotTemplateRequest

logger = logging.getLogger(__name__)


def times_overlap(a_start: time, a_end: time, b_start: time, b_end: time) -> bool:
    return a_start < b_end and b_start < a_end


def share_a_day(
    a_start: date,
    a_end: date | None,
    a_days: Iterable[int],
    b_start: date,
    b_end: date | None,
    b_days: Iterable[int],
) -> bool:
    first = max(a_start, b_start)
    ends = [end for end in (a_end, b_end) if end is not None]
    last = min(ends) if ends else None
    if last is not None and last < first:
        return False

    common_days = set(a_days) & set(b_days)
    if not common_days:
        return False

    # A week of the shared range covers every weekday it can contain.
    probe_end = first + timedelta(days=6)
    if last is not None:
        probe_end = min(probe_end, last)
    day = first
    while day <= probe_end:
        if day.weekday() in common_days:
            return True
        day += timedelta(days=1)
    return False


def template_occurs_on(template: SlotTemplate, day: date) -> bool:
    if day < template.start_date:
        return False
    if template.end_date is not None and day > template.end_date:
        return False
    return day.weekday() in template.active_weekdays


def expand_template_day(template: SlotTemplate, day: date) -> Iterator[SlotInstance]:
    current = datetime.combine(day, template.start_time)
    window_end = datetime.combine(day, template.end_time)
    length = timedelta(minutes=template.slot_minutes)
    step = timedelta(minutes=template.slot_minutes + (template.buffer_minutes or 0))

    while current + length <= window_end:
        yield SlotInstance(
            template_id=template.id,
            location=template.location,
            date=day,
            start_time=current.time(),
            end_time=(current + length).time(),
            capacity=template.capacity or 1,
        )
        current += step


def blocking_period(instance: SlotInstance, blocks: Iterable[BlockedPeriod]) -> BlockedPeriod | None:
    for block in blocks:
        if block.location is not None and block.location != instance.location:
            continue
        if not block.start_date <= instance.date <= block.end_date:
            continue
        if block.is_full_day or times_overlap(
            instance.start_time, instance.end_time, block.start_time, block.end_time
        ):
            return block
    return None


class SlotListing:
    """Lazy, restartable expansion of slot templates over a bounded date range.

    Templates and blocked periods are read once; each iteration expands them
    again, so the listing can be walked any number of times.
    """

    def __init__(
        self,
        templates: list[SlotTemplate],
        blocks: list[BlockedPeriod],
        start_date: date,
        end_date: date,
        include_blocked: bool = False,
    ):
        self.templates = templates
        self.blocks = blocks
        self.start_date = start_date
        self.end_date = end_date
        self.include_blocked = include_blocked
        self.templates_by_id = {template.id: template for template in templates}

    def __iter__(self) -> Iterator[SlotInstance]:
        day = self.start_date
        while day <= self.end_date:
            instances: list[SlotInstance] = []
            for template in self.templates:
                if template_occurs_on(template, day):
                    instances.extend(expand_template_day(template, day))
            instances.sort(key=lambda instance: (instance.start_time, instance.location))

            for instance in instances:
                if self.include_blocked or blocking_period(instance, self.blocks) is None:
                    yield instance
            day += timedelta(days=1)


def validate_date_range(start_date: date, end_date: date) -> None:
    if end_date < start_date:
        raise InvalidRange('End date must be on or after start date.')
    if (end_date - start_date).days >= config.MAX_LISTING_DAYS:
        raise InvalidRange(f'Date ranges are limited to {config.MAX_LISTING_DAYS} days.')


def _templates_query(location: str | None, db: Session):
    query = db.query(SlotTemplate)
    if location is not None:
        query = query.filter(SlotTemplate.location == location.strip())
    return query


def _blocks_query(location: str | None, start_date: date, end_date: date, db: Session):
    query = db.query(BlockedPeriod).filter(
        BlockedPeriod.start_date <= end_date,
        BlockedPeriod.end_date >= start_date,
    )
    if location is not None:
        query = query.filter(
            (BlockedPeriod.location.is_(None)) | (BlockedPeriod.location == location.strip())
        )
    return query


def find_overlapping_template(data: SlotTemplateRequest, db: Session, exclude_id: int | None = None) -> SlotTemplate | None:
    candidates = db.query(SlotTemplate).filter(SlotTemplate.location == data.location)
    if exclude_id is not None:
        candidates = candidates.filter(SlotTemplate.id != exclude_id)

    requested_days = active_weekdays(data.schedule_type.value, data.weekdays)
    for existing in candidates.all():
        if not times_overlap(data.start_time, data.end_time, existing.start_time, existing.end_time):
            continue
        if share_a_day(
            data.start_date,
            data.end_date,
            requested_days,
            existing.start_date,
            existing.end_date,
            existing.active_weekdays,
        ):
            return existing
    return None


def _apply_template_fields(template: SlotTemplate, data: SlotTemplateRequest) -> None:
    template.location = data.location
    template.schedule_type = data.schedule_type.value
    template.weekdays = list(data.weekdays)
    template.start_date = data.start_date
    template.end_date = data.end_date
    template.start_time = data.start_time
    template.end_time = data.end_time
    template.slot_minutes = data.slot_minutes
    template.buffer_minutes = data.buffer_minutes
    template.capacity = data.capacity
    template.min_advance_hours = data.min_advance_hours
    template.max_advance_days = data.max_advance_days


def define_slot(data: SlotTemplateRequest, db: Session) -> SlotTemplate:
    try:
        overlapping = find_overlapping_template(data, db)
        if overlapping is not None:
            raise OverlappingSlot(
                f'This schedule overlaps schedule #{overlapping.id} at {overlapping.location}.'
            )

        template = SlotTemplate()
        _apply_template_fields(template, data)
        db.add(template)
        db.commit()
        db.refresh(template)
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception('Failed to save slot template for %s', data.location)
        raise PersistenceUnavailable() from exc

    logger.info('Defined slot template %s at %s', template.id, template.location)
    return template


def booking_outside_template(template: SlotTemplate, db: Session) -> Appointment | None:
    """First active booking of the template that none of its instances can hold."""
    booked = db.query(Appointment).filter(
        Appointment.template_id == template.id,
        Appointment.status.in_(ACTIVE_STATUSES),
    ).order_by(Appointment.appointment_date, Appointment.appointment_time).all()

    holders = Counter()
    for appointment in booked:
        day = appointment.appointment_date
        fits = template.location == appointment.location and template_occurs_on(template, day) and any(
            instance.start_time == appointment.appointment_time and instance.end_time == appointment.end_time
            for instance in expand_template_day(template, day)
        )
        if not fits:
            return appointment
        holders[appointment.slot_key] += 1
        if holders[appointment.slot_key] > (template.capacity or 1):
            return appointment
    return None


def update_slot(template_id: int, data: SlotTemplateRequest, db: Session) -> SlotTemplate:
    try:
        template = db.get(SlotTemplate, template_id)
        if template is None:
            raise NotFound('Schedule not found.')

        overlapping = find_overlapping_template(data, db, exclude_id=template_id)
        if overlapping is not None:
            raise OverlappingSlot(
                f'This schedule overlaps schedule #{overlapping.id} at {overlapping.location}.'
            )

        candidate = SlotTemplate(id=template_id)
        _apply_template_fields(candidate, data)
        stranded = booking_outside_template(candidate, db)
        if stranded is not None:
            raise OverlappingSlot(
                f'Appointment #{stranded.id} on {stranded.appointment_date} at '
                f'{stranded.appointment_time:%H:%M} does not fit the changed schedule.'
            )

        _apply_template_fields(template, data)
        db.commit()
        db.refresh(template)
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception('Failed to update slot template %s', template_id)
        raise PersistenceUnavailable() from exc

    logger.info('Updated slot template %s', template_id)
    return template


def remove_slot(template_id: int, db: Session) -> None:
    try:
        template = db.get(SlotTemplate, template_id)
        if template is None:
            raise NotFound('Schedule not found.')

        db.query(Appointment).filter(Appointment.template_id == template_id).update(
            {Appointment.template_id: None}, synchronize_session=False
        )
        db.delete(template)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception('Failed to remove slot template %s', template_id)
        raise PersistenceUnavailable() from exc

    logger.info('Removed slot template %s', template_id)


def get_slot(template_id: int, db: Session) -> SlotTemplate:
    try:
        template = db.get(SlotTemplate, template_id)
    except SQLAlchemyError as exc:
        raise PersistenceUnavailable() from exc
    if template is None:
        raise NotFound('Schedule not found.')
    return template


def list_templates(location: str | None, db: Session) -> list[SlotTemplate]:
    try:
        return _templates_query(location, db).order_by(
            SlotTemplate.location.asc(), SlotTemplate.start_date.asc(), SlotTemplate.start_time.asc()
        ).all()
    except SQLAlchemyError as exc:
        raise PersistenceUnavailable() from exc


def list_locations(db: Session) -> list[str]:
    try:
        rows = db.query(SlotTemplate.location).distinct().order_by(SlotTemplate.location.asc()).all()
    except SQLAlchemyError as exc:
        raise PersistenceUnavailable() from exc
    return [location for (location,) in rows]


def list_slots(
    location: str | None,
    start_date: date,
    end_date: date,
    db: Session,
    include_blocked: bool = False,
) -> SlotListing:
    validate_date_range(start_date, end_date)
    try:
        templates = _templates_query(location, db).filter(
            SlotTemplate.start_date <= end_date,
            (SlotTemplate.end_date.is_(None)) | (SlotTemplate.end_date >= start_date),
        ).all()
        blocks = _blocks_query(location, start_date, end_date, db).all()
    except SQLAlchemyError as exc:
        raise PersistenceUnavailable() from exc

    return SlotListing(templates, blocks, start_date, end_date, include_blocked=include_blocked)


def find_slot_instance(location: str, slot_date: date, start_time: time, db: Session) -> SlotInstance:
    """Resolve a requested (location, date, time) into the catalog's instance."""
    normalized_location = location.strip()
    start_time = start_time.replace(second=0, microsecond=0)
    listing = list_slots(normalized_location, slot_date, slot_date, db, include_blocked=True)

    for instance in listing:
        if instance.start_time != start_time:
            continue
        block = blocking_period(instance, listing.blocks)
        if block is not None:
            raise InvalidSlot(block.reason or 'This time is blocked.')
        return instance

    raise InvalidSlot(f'No appointment slot at {normalized_location} on {slot_date} at {start_time:%H:%M}.')


def template_for(instance: SlotInstance, db: Session) -> SlotTemplate | None:
    try:
        return db.get(SlotTemplate, instance.template_id)
    except SQLAlchemyError as exc:
        raise PersistenceUnavailable() from exc


def booking_window(template: SlotTemplate | None, now: datetime) -> tuple[datetime, date]:
    """Earliest bookable start and last bookable day for a template."""
    min_hours = config.DEFAULT_MIN_ADVANCE_HOURS
    max_days = config.DEFAULT_MAX_ADVANCE_DAYS
    if template is not None:
        if template.min_advance_hours is not None:
            min_hours = template.min_advance_hours
        if template.max_advance_days is not None:
            max_days = template.max_advance_days
    return now + timedelta(hours=min_hours), now.date() + timedelta(days=max_days)


def is_within_booking_window(instance: SlotInstance, template: SlotTemplate | None, now: datetime) -> bool:
    earliest, last_day = booking_window(template, now)
    return instance.starts_at >= earliest and instance.date <= last_day


def block_period(data: BlockedPeriodRequest, db: Session) -> BlockedPeriod:
    try:
        booked = db.query(Appointment).filter(
            Appointment.status.in_(ACTIVE_STATUSES),
            Appointment.appointment_date >= data.start_date,
            Appointment.appointment_date <= data.end_date,
        )
        if data.location is not None:
            booked = booked.filter(Appointment.location == data.location)

        for appointment in booked.all():
            if data.start_time is None or times_overlap(
                data.start_time, data.end_time, appointment.appointment_time, appointment.end_time
            ):
                raise OverlappingSlot('This time is already booked by a patient appointment.')

        block = BlockedPeriod(
            location=data.location,
            start_date=data.start_date,
            end_date=data.end_date,
            start_time=data.start_time,
            end_time=data.end_time,
            reason=data.reason,
        )
        db.add(block)
        db.commit()
        db.refresh(block)
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception('Failed to save blocked period')
        raise PersistenceUnavailable() from exc

    logger.info('Blocked %s from %s to %s', block.location or 'all locations', block.start_date, block.end_date)
    return block


def list_blocked_periods(location: str | None, db: Session, from_date: date | None = None) -> list[BlockedPeriod]:
    try:
        query = db.query(BlockedPeriod)
        if location is not None:
            query = query.filter(
                (BlockedPeriod.location.is_(None)) | (BlockedPeriod.location == location.strip())
            )
        if from_date is not None:
            query = query.filter(BlockedPeriod.end_date >= from_date)
        return query.order_by(BlockedPeriod.start_date.asc()).all()
    except SQLAlchemyError as exc:
        raise PersistenceUnavailable() from exc


def unblock_period(block_id: int, db: Session) -> None:
    try:
        block = db.get(BlockedPeriod, block_id)
        if block is None:
            raise NotFound('Blocked period not found.')
        db.delete(block)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise PersistenceUnavailable() from exc

    logger.info('Removed blocked period %s', block_id)
