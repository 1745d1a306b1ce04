import os
from datetime import date, datetime, time

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault('DATABASE_URL', 'sqlite://')

from clinic_backend.auth.identity import ADMIN_ROLE, Identity  # noqa: E402
from clinic_backend.database import Base  # noqa: E402
from clinic_backend.models.appointment import Appointment  # noqa: E402
from clinic_backend.models.slot_template import BlockedPeriod, SlotTemplate  # noqa: E402
from clinic_backend.schemas.slot import SlotTemplateRequest  # noqa: E402
from clinic_backend.services import slot_catalog  # noqa: E402

TABLES = [SlotTemplate.__table__, BlockedPeriod.__table__, Appointment.__table__]

# Booking "now" used across tests: a week before the June clinic days.
NOW = datetime(2025, 5, 25, 8, 0)

PATIENT_A = Identity(email='a@example.com')
PATIENT_B = Identity(email='b@example.com')
DOCTOR = Identity(email='doctor@example.com', role=ADMIN_ROLE)


def _build_session_factory(engine):
    Base.metadata.create_all(bind=engine, tables=TABLES)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def session_factory():
    engine = create_engine(
        'sqlite://',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )
    factory = _build_session_factory(engine)
    try:
        yield factory
    finally:
        Base.metadata.drop_all(bind=engine, tables=list(reversed(TABLES)))
        engine.dispose()


@pytest.fixture
def file_session_factory(tmp_path):
    engine = create_engine(
        f'sqlite:///{tmp_path / "ledger.db"}',
        connect_args={'check_same_thread': False, 'timeout': 30},
    )
    try:
        yield _build_session_factory(engine)
    finally:
        engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


def template_request(**overrides) -> SlotTemplateRequest:
    values = {
        'location': 'ClinicX',
        'start_date': date(2025, 6, 1),
        'end_date': date(2025, 6, 30),
        'start_time': time(9, 0),
        'end_time': time(12, 0),
        'slot_minutes': 60,
    }
    values.update(overrides)
    return SlotTemplateRequest(**values)


@pytest.fixture
def clinic_template(db):
    """ClinicX, every day in June 2025, hourly slots at 09:00, 10:00 and 11:00."""
    return slot_catalog.define_slot(template_request(), db)


@pytest.fixture
def find_slot(db):
    def _find(slot_date: date, slot_time: time, location: str = 'ClinicX'):
        return slot_catalog.find_slot_instance(location, slot_date, slot_time, db)

    return _find


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def patient_a():
    return PATIENT_A


@pytest.fixture
def patient_b():
    return PATIENT_B


@pytest.fixture
def doctor():
    return DOCTOR


@pytest.fixture
def make_template_request():
    return template_request
