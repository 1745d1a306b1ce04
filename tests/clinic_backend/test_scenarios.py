"""Whole-flow checks across catalog, ledger, availability and live views."""

from datetime import date, time

import pytest

from clinic_backend.core.errors import RescheduleConflict, SlotAlreadyTaken
from clinic_backend.schemas.appointment import PatientDetails
from clinic_backend.services import availability, booking_ledger
from clinic_backend.services.live_view import LiveViewProjector, ViewFilter

JUNE_1 = date(2025, 6, 1)


def _free_times(db, now, day=JUNE_1):
    return [instance.start_time for instance in availability.availability('ClinicX', day, day, db, now=now)]


def _reserve(db, slot, email, now, projector=None):
    return booking_ledger.reserve(
        slot, PatientDetails(email=email), 'consultation', None, db, now=now, projector=projector
    )


def test_admin_cancel_frees_slot_for_next_patient(db, clinic_template, find_slot, now, doctor) -> None:
    slot = find_slot(JUNE_1, time(11, 0))

    first = _reserve(db, slot, 'a@example.com', now)
    assert first.status == 'confirmed'

    with pytest.raises(SlotAlreadyTaken):
        _reserve(db, slot, 'b@example.com', now)
    assert time(11, 0) not in _free_times(db, now)

    canceled = booking_ledger.cancel(first.id, doctor, db, now=now)
    assert canceled.status == 'canceled'
    assert canceled.canceled_by_role == 'doctor'
    assert time(11, 0) in _free_times(db, now)

    retry = _reserve(db, slot, 'b@example.com', now)
    assert retry.status == 'confirmed'
    assert retry.patient_email == 'b@example.com'


def test_reschedule_swaps_occupied_slot(db, clinic_template, find_slot, now, patient_a) -> None:
    old = _reserve(db, find_slot(JUNE_1, time(9, 0)), 'a@example.com', now)

    new = booking_ledger.reschedule(old.id, find_slot(JUNE_1, time(10, 0)), patient_a, db, now=now)

    assert booking_ledger.get_appointment(old.id, patient_a, db).cancel_reason == 'rescheduled'
    assert new.status == 'confirmed'
    assert _free_times(db, now) == [time(9, 0), time(11, 0)]


def test_failed_reschedule_keeps_original_slot_occupied(db, clinic_template, find_slot, now, patient_a) -> None:
    old = _reserve(db, find_slot(JUNE_1, time(9, 0)), 'a@example.com', now)
    _reserve(db, find_slot(JUNE_1, time(10, 0)), 'b@example.com', now)

    with pytest.raises(RescheduleConflict):
        booking_ledger.reschedule(old.id, find_slot(JUNE_1, time(10, 0)), patient_a, db, now=now)

    kept = booking_ledger.get_appointment(old.id, patient_a, db)
    assert kept.slot_key == ('ClinicX', JUNE_1, time(9, 0))
    assert kept.status == 'confirmed'
    assert _free_times(db, now) == [time(11, 0)]


def test_latest_live_snapshot_matches_current_state(db, session_factory, clinic_template, find_slot, now, patient_a) -> None:
    projector = LiveViewProjector(session_factory)
    view_filter = ViewFilter(location='ClinicX')
    subscription = projector.subscribe(view_filter)

    booked = _reserve(db, find_slot(JUNE_1, time(9, 0)), 'a@example.com', now, projector)
    _reserve(db, find_slot(JUNE_1, time(10, 0)), 'b@example.com', now, projector)
    booking_ledger.reschedule(booked.id, find_slot(JUNE_1, time(11, 0)), patient_a, db, now=now, projector=projector)

    versions = []
    latest = None
    while True:
        snapshot = subscription.get(timeout=0.05)
        if snapshot is None:
            break
        versions.append(snapshot.version)
        latest = snapshot
    subscription.close()

    assert versions == [4]
    assert latest.appointments == projector.current(view_filter).appointments
