from datetime import date, timedelta

import pytest

from clinic_backend.routes import appointment_routes, slot_routes
from clinic_backend.services import slot_catalog
from clinic_backend.services.live_view import LiveViewProjector
from clinic_backend.services.notifications import NotificationDispatcher


@pytest.fixture(autouse=True)
def database_ready(monkeypatch):
    monkeypatch.setattr(appointment_routes, 'ensure_database_ready', lambda: None)
    monkeypatch.setattr(slot_routes, 'ensure_database_ready', lambda: None)


@pytest.fixture
def clinic_day() -> date:
    """First day of a week of upcoming ClinicX hours."""
    return date.today() + timedelta(days=7)


@pytest.fixture
def upcoming_template(db, make_template_request, clinic_day):
    return slot_catalog.define_slot(
        make_template_request(start_date=clinic_day, end_date=clinic_day + timedelta(days=6)),
        db,
    )


@pytest.fixture
def projector(session_factory):
    return LiveViewProjector(session_factory)


@pytest.fixture
def notifier():
    return NotificationDispatcher(smtp_host='', from_address='', whatsapp_api_url='')
