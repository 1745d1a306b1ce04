from datetime import time, timedelta

import pytest
from fastapi import BackgroundTasks, HTTPException
from fastapi.testclient import TestClient
from pydantic import ValidationError
from starlette.websockets import WebSocketDisconnect

from clinic_backend import main
from clinic_backend.auth.identity import ADMIN_ROLE
from clinic_backend.auth.jwt_handler import create_access_token
from clinic_backend.routes.appointment_routes import (
    CreateAppointmentRequest,
    RescheduleRequest,
    cancel_appointment,
    create_appointment,
    get_appointment,
    list_appointment_types,
    patient_for_request,
    reschedule_appointment,
)
from clinic_backend.routes.common import get_db


def _request(clinic_day, slot_time=time(9, 0), **overrides) -> CreateAppointmentRequest:
    return CreateAppointmentRequest(location='ClinicX', date=clinic_day, time=slot_time, **overrides)


def _auth(email: str, role: str = 'patient') -> dict:
    return {'Authorization': f'Bearer {create_access_token(email, role=role)}'}


@pytest.fixture
def client(session_factory, projector, notifier, monkeypatch):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    main.app.dependency_overrides[get_db] = override_get_db
    monkeypatch.setattr(main.app.state, 'projector', projector)
    monkeypatch.setattr(main.app.state, 'notifier', notifier)
    try:
        yield TestClient(main.app)
    finally:
        main.app.dependency_overrides.clear()


def test_list_appointment_types() -> None:
    assert [option.appointment_type for option in list_appointment_types()] == [
        'consultation',
        'follow-up',
        'emergency',
        'routine check-up',
    ]


def test_create_appointment_request_normalizes_fields(clinic_day) -> None:
    request = CreateAppointmentRequest(
        location=' ClinicX ',
        date=clinic_day,
        time=time(9, 0),
        appointment_type=' Follow-Up ',
        patient_email=' A@Example.com ',
        notes='   ',
    )

    assert request.location == 'ClinicX'
    assert request.appointment_type == 'follow-up'
    assert request.patient_email == 'a@example.com'
    assert request.notes is None


@pytest.mark.parametrize(
    'overrides',
    [
        {'appointment_type': 'surgery'},
        {'notes': 'x' * 601},
        {'location': '  '},
    ],
)
def test_create_appointment_request_rejects_invalid_fields(clinic_day, overrides: dict) -> None:
    values = {'location': 'ClinicX', 'date': clinic_day, 'time': time(9, 0)}
    values.update(overrides)

    with pytest.raises(ValidationError):
        CreateAppointmentRequest(**values)


def test_patient_for_request_books_patients_for_themselves(clinic_day, patient_a, patient_b, doctor) -> None:
    assert patient_for_request(_request(clinic_day), patient_a).email == 'a@example.com'
    assert patient_for_request(_request(clinic_day, patient_email='b@example.com'), doctor).email == 'b@example.com'

    with pytest.raises(HTTPException) as forbidden:
        patient_for_request(_request(clinic_day, patient_email='a@example.com'), patient_b)
    with pytest.raises(HTTPException) as missing:
        patient_for_request(_request(clinic_day), doctor)

    assert forbidden.value.status_code == 403
    assert missing.value.detail == 'Patient email is required.'


def test_create_appointment_schedules_notification(db, upcoming_template, clinic_day, patient_a, projector, notifier) -> None:
    background_tasks = BackgroundTasks()

    response = create_appointment(_request(clinic_day), background_tasks, patient_a, db, projector, notifier)

    assert response.patient_email == 'a@example.com'
    assert response.status == 'confirmed'
    assert len(background_tasks.tasks) == 1
    assert background_tasks.tasks[0].func == notifier.appointment_booked
    assert background_tasks.tasks[0].args == (response,)


def test_create_appointment_maps_taken_slot_to_conflict(db, upcoming_template, clinic_day, patient_a, patient_b, projector, notifier) -> None:
    create_appointment(_request(clinic_day), BackgroundTasks(), patient_a, db, projector, notifier)

    with pytest.raises(HTTPException) as exception_info:
        create_appointment(_request(clinic_day), BackgroundTasks(), patient_b, db, projector, notifier)

    assert exception_info.value.status_code == 409
    assert exception_info.value.detail == 'This time slot is no longer available. Please select another time.'


def test_create_appointment_rejects_unoffered_time(db, upcoming_template, clinic_day, patient_a, projector, notifier) -> None:
    with pytest.raises(HTTPException) as exception_info:
        create_appointment(_request(clinic_day, time(9, 30)), BackgroundTasks(), patient_a, db, projector, notifier)

    assert exception_info.value.status_code == 400


def test_cancel_appointment_notifies_once(db, upcoming_template, clinic_day, patient_a, projector, notifier) -> None:
    booked = create_appointment(_request(clinic_day), BackgroundTasks(), patient_a, db, projector, notifier)

    first_tasks = BackgroundTasks()
    canceled = cancel_appointment(booked.id, first_tasks, patient_a, db, projector, notifier)
    second_tasks = BackgroundTasks()
    cancel_appointment(booked.id, second_tasks, patient_a, db, projector, notifier)

    assert canceled.status == 'canceled'
    assert canceled.canceled_by == 'patient'
    assert len(first_tasks.tasks) == 1
    assert second_tasks.tasks == []


def test_reschedule_appointment_keeps_location_and_notifies(db, upcoming_template, clinic_day, patient_a, projector, notifier) -> None:
    booked = create_appointment(_request(clinic_day), BackgroundTasks(), patient_a, db, projector, notifier)
    background_tasks = BackgroundTasks()

    moved = reschedule_appointment(
        booked.id,
        RescheduleRequest(date=clinic_day + timedelta(days=1), time=time(10, 0)),
        background_tasks,
        patient_a,
        db,
        projector,
        notifier,
    )

    previous, response = background_tasks.tasks[0].args
    assert moved.location == 'ClinicX'
    assert moved.rescheduled_from_id == booked.id
    assert previous.appointment_time == time(9, 0)
    assert response.appointment_time == time(10, 0)


def test_get_appointment_hides_other_patients_bookings(db, upcoming_template, clinic_day, patient_a, patient_b, projector, notifier) -> None:
    booked = create_appointment(_request(clinic_day), BackgroundTasks(), patient_a, db, projector, notifier)

    with pytest.raises(HTTPException) as exception_info:
        get_appointment(booked.id, patient_b, db)

    assert exception_info.value.status_code == 403
    assert get_appointment(booked.id, patient_a, db).id == booked.id


def test_booking_flow_over_http(client, upcoming_template, clinic_day) -> None:
    body = {'location': 'ClinicX', 'date': clinic_day.isoformat(), 'time': '09:00:00'}

    created = client.post('/appointments', json=body, headers=_auth('a@example.com'))
    taken = client.post('/appointments', json=body, headers=_auth('b@example.com'))
    mine = client.get('/appointments/mine', headers=_auth('a@example.com'))
    forbidden = client.get('/appointments', headers=_auth('a@example.com'))
    canceled = client.post(f"/appointments/{created.json()['id']}/cancel", headers=_auth('a@example.com'))
    admin_view = client.get(
        '/appointments',
        params={'status': 'canceled'},
        headers=_auth('doctor@example.com', ADMIN_ROLE),
    )

    assert created.status_code == 201
    assert taken.status_code == 409
    assert [appointment['id'] for appointment in mine.json()] == [created.json()['id']]
    assert forbidden.status_code == 403
    assert canceled.json()['status'] == 'canceled'
    assert [appointment['id'] for appointment in admin_view.json()] == [created.json()['id']]


def test_requests_without_token_are_rejected(client) -> None:
    response = client.get('/appointments/mine')

    assert response.status_code in {401, 403}


def test_live_view_streams_patient_changes(client, upcoming_template, clinic_day) -> None:
    token = create_access_token('a@example.com')

    with client.websocket_connect(f'/appointments/live?token={token}') as websocket:
        initial = websocket.receive_json()
        created = client.post(
            '/appointments',
            json={'location': 'ClinicX', 'date': clinic_day.isoformat(), 'time': '10:00:00'},
            headers=_auth('a@example.com'),
        )
        update = websocket.receive_json()

    assert initial['appointments'] == []
    assert update['version'] > initial['version']
    assert [appointment['id'] for appointment in update['appointments']] == [created.json()['id']]


def test_live_view_rejects_invalid_token(client) -> None:
    with pytest.raises(WebSocketDisconnect) as exception_info:
        with client.websocket_connect('/appointments/live?token=garbage') as websocket:
            websocket.receive_json()

    assert exception_info.value.code == 1008
