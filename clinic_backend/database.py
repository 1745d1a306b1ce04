from threading import Lock

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.orm import declarative_base, sessionmaker

from clinic_backend.core import config


def build_engine(database_url: str):
    connect_args = {}
    if database_url.startswith('sqlite'):
        # Sync routes run in a thread pool.
        connect_args['check_same_thread'] = False
    return create_engine(database_url, connect_args=connect_args)


engine = build_engine(config.DATABASE_URL)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)

Base = declarative_base()

_schema_lock = Lock()
_slot_schema_checked = False
_appointment_schema_checked = False


def ensure_slot_schema() -> None:
    global _slot_schema_checked

    if _slot_schema_checked:
        return

    with _schema_lock:
        if _slot_schema_checked:
            return

        inspector = inspect(engine)

        if 'slot_templates' not in inspector.get_table_names():
            _slot_schema_checked = True
            return

        table_names = set(inspector.get_table_names())
        existing_columns = {column['name'] for column in inspector.get_columns('slot_templates')}
        migration_steps = [
            ('buffer_minutes', 'ALTER TABLE slot_templates ADD COLUMN buffer_minutes INTEGER DEFAULT 0'),
            ('min_advance_hours', 'ALTER TABLE slot_templates ADD COLUMN min_advance_hours FLOAT'),
            ('max_advance_days', 'ALTER TABLE slot_templates ADD COLUMN max_advance_days INTEGER'),
        ]

        with engine.begin() as connection:
            for column_name, statement in migration_steps:
                if column_name not in existing_columns:
                    connection.execute(text(statement))
            connection.execute(
                text('CREATE INDEX IF NOT EXISTS idx_slot_templates_location_dates ON slot_templates(location, start_date, end_date)')
            )
            if 'blocked_periods' in table_names:
                connection.execute(
                    text('CREATE INDEX IF NOT EXISTS idx_blocked_periods_dates ON blocked_periods(start_date, end_date)')
                )

        _slot_schema_checked = True


def ensure_appointment_schema() -> None:
    global _appointment_schema_checked

    if _appointment_schema_checked:
        return

    with _schema_lock:
        if _appointment_schema_checked:
            return

        inspector = inspect(engine)

        if 'appointments' not in inspector.get_table_names():
            _appointment_schema_checked = True
            return

        existing_columns = {column['name'] for column in inspector.get_columns('appointments')}
        migration_steps = [
            ('seat', 'ALTER TABLE appointments ADD COLUMN seat INTEGER DEFAULT 0 NOT NULL'),
            ('patient_pid', 'ALTER TABLE appointments ADD COLUMN patient_pid VARCHAR'),
            ('canceled_by_email', 'ALTER TABLE appointments ADD COLUMN canceled_by_email VARCHAR'),
            ('cancel_reason', 'ALTER TABLE appointments ADD COLUMN cancel_reason VARCHAR'),
            ('rescheduled_from_id', 'ALTER TABLE appointments ADD COLUMN rescheduled_from_id INTEGER'),
            ('rescheduled_to_id', 'ALTER TABLE appointments ADD COLUMN rescheduled_to_id INTEGER'),
        ]

        with engine.begin() as connection:
            for column_name, statement in migration_steps:
                if column_name not in existing_columns:
                    connection.execute(text(statement))
            connection.execute(
                text(
                    'CREATE UNIQUE INDEX IF NOT EXISTS uq_appointments_active_slot '
                    'ON appointments(location, appointment_date, appointment_time, seat) '
                    "WHERE status != 'canceled'"
                )
            )
            connection.execute(
                text('CREATE INDEX IF NOT EXISTS idx_appointments_patient_date ON appointments(patient_email, appointment_date)')
            )

        _appointment_schema_checked = True
