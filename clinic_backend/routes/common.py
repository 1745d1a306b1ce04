from fastapi import HTTPException, Request, status
from sqlalchemy.exc import SQLAlchemyError

from clinic_backend.core.errors import BookingError
from clinic_backend.database import SessionLocal, ensure_appointment_schema, ensure_slot_schema
from clinic_backend.services.live_view import LiveViewProjector
from clinic_backend.services.notifications import NotificationDispatcher


def ensure_database_ready() -> None:
    try:
        ensure_slot_schema()
        ensure_appointment_schema()
    except SQLAlchemyError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail='Database unavailable. Verify DATABASE_URL and Postgres credentials.',
        ) from exc


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_projector(request: Request) -> LiveViewProjector:
    return request.app.state.projector


def get_notifier(request: Request) -> NotificationDispatcher:
    return request.app.state.notifier


def http_error(exc: BookingError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.detail)
