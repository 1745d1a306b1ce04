"""Error kinds raised by the scheduling core.

Every error is scoped to the operation that raised it. Routes turn them into
``HTTPException`` using ``status_code``.
"""

from fastapi import status


class BookingError(Exception):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = 'Booking request failed.'

    def __init__(self, detail: str | None = None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class SlotAlreadyTaken(BookingError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = 'This time slot is no longer available. Please select another time.'


class OverlappingSlot(BookingError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = 'This schedule overlaps an existing one for the same location.'


class RescheduleConflict(BookingError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = 'The new time slot is no longer available. Your original booking was kept.'


class InvalidTransition(BookingError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = 'This appointment cannot be changed in its current state.'


class InvalidSlot(BookingError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = 'This time slot is not offered.'


class InvalidRange(BookingError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = 'Invalid date range.'


class NotFound(BookingError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = 'Not found.'


class PermissionDenied(BookingError):
    status_code = status.HTTP_403_FORBIDDEN
    default_detail = 'You are not allowed to perform this action.'


class PersistenceUnavailable(BookingError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_detail = 'Database unavailable. Verify DATABASE_URL and Postgres credentials.'
