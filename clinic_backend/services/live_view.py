"""Live appointment views for patient and admin dashboards.

Every subscriber owns a single-item queue. The projector puts a full
snapshot on it at subscribe time and again after every committed change
that touches an appointment matching the subscriber's filter; a newer
snapshot replaces one the consumer has not read yet. Snapshots are
stamped with a global version taken under the projector lock, and a
subscription never hands out a version older than one it already returned.
"""

import logging
import queue
import threading
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from clinic_backend.models.appointment import Appointment
from clinic_backend.schemas.appointment import AppointmentResponse

logger = logging.getLogger(__name__)

_CLOSED = object()


@dataclass(frozen=True)
class ViewFilter:
    patient_email: str | None = None
    location: str | None = None

    def matches(self, appointment: AppointmentResponse) -> bool:
        if self.patient_email is not None and appointment.patient_email != self.patient_email:
            return False
        if self.location is not None and appointment.location != self.location:
            return False
        return True

    def apply(self, query):
        if self.patient_email is not None:
            query = query.filter(Appointment.patient_email == self.patient_email)
        if self.location is not None:
            query = query.filter(Appointment.location == self.location)
        return query


@dataclass(frozen=True)
class Snapshot:
    version: int
    appointments: tuple[AppointmentResponse, ...]

    def as_message(self) -> dict:
        return {
            'version': self.version,
            'appointments': [appointment.model_dump(mode='json') for appointment in self.appointments],
        }


class Subscription:
    """Holds at most one pending item: the newest snapshot, or the close marker."""

    def __init__(self, projector: 'LiveViewProjector', view_filter: ViewFilter):
        self.view_filter = view_filter
        self._projector = projector
        self._queue: queue.Queue = queue.Queue(maxsize=1)
        self._pending_lock = threading.Lock()
        self._closed = threading.Event()
        self.last_version = 0
        self.stale = False

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def _replace_pending(self, item) -> None:
        with self._pending_lock:
            try:
                current = self._queue.get_nowait()
            except queue.Empty:
                current = None
            if current is _CLOSED:
                item = _CLOSED
            elif current is not None and item is not _CLOSED and current.version > item.version:
                item = current
            self._queue.put_nowait(item)

    def deliver(self, snapshot: Snapshot) -> None:
        if not self.closed:
            self._replace_pending(snapshot)

    def get(self, timeout: float | None = None) -> Snapshot | None:
        """Next snapshot, or None once closed or when ``timeout`` expires."""
        while not self.closed:
            try:
                item = self._queue.get(timeout=timeout)
            except queue.Empty:
                return None
            if item is _CLOSED:
                return None
            if item.version <= self.last_version:
                continue
            self.last_version = item.version
            return item
        return None

    def __iter__(self) -> Iterator[Snapshot]:
        while True:
            snapshot = self.get()
            if snapshot is None:
                return
            yield snapshot

    def close(self) -> None:
        if self.closed:
            return
        self._projector.unsubscribe(self)
        self._closed.set()
        self._replace_pending(_CLOSED)

    def __enter__(self) -> 'Subscription':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class LiveViewProjector:
    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory
        self._lock = threading.Lock()
        self._version = 0
        self._subscriptions: set[Subscription] = set()

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def _load(self, view_filter: ViewFilter, version: int) -> Snapshot:
        db = self._session_factory()
        try:
            rows = view_filter.apply(db.query(Appointment)).order_by(
                Appointment.appointment_date.asc(),
                Appointment.appointment_time.asc(),
                Appointment.id.asc(),
            ).all()
            appointments = tuple(AppointmentResponse.model_validate(row) for row in rows)
        finally:
            db.close()
        return Snapshot(version=version, appointments=appointments)

    def current(self, view_filter: ViewFilter) -> Snapshot:
        with self._lock:
            return self._load(view_filter, self._version)

    def subscribe(self, view_filter: ViewFilter) -> Subscription:
        subscription = Subscription(self, view_filter)
        with self._lock:
            self._version += 1
            snapshot = self._load(view_filter, self._version)
            self._subscriptions.add(subscription)
            subscription.deliver(snapshot)
        logger.debug('Live view subscribed: %s', view_filter)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            self._subscriptions.discard(subscription)
        logger.debug('Live view unsubscribed: %s', subscription.view_filter)

    def _refresh(self, subscriptions: Iterable[Subscription]) -> None:
        # Caller holds the lock.
        self._version += 1
        snapshots: dict[ViewFilter, Snapshot] = {}
        for subscription in subscriptions:
            snapshot = snapshots.get(subscription.view_filter)
            if snapshot is None:
                try:
                    snapshot = self._load(subscription.view_filter, self._version)
                except SQLAlchemyError:
                    logger.exception('Could not load live view for %s', subscription.view_filter)
                    subscription.stale = True
                    continue
                snapshots[subscription.view_filter] = snapshot
            subscription.stale = False
            subscription.deliver(snapshot)

    def publish(self, appointments: Iterable[Appointment | AppointmentResponse]) -> None:
        """Push fresh snapshots to every subscriber affected by a committed change."""
        changed = [
            appointment if isinstance(appointment, AppointmentResponse)
            else AppointmentResponse.model_validate(appointment)
            for appointment in appointments
        ]
        with self._lock:
            affected = [
                subscription
                for subscription in self._subscriptions
                if subscription.stale or any(subscription.view_filter.matches(item) for item in changed)
            ]
            if affected:
                self._refresh(affected)

    def resync(self) -> None:
        """Retry subscribers whose last refresh failed."""
        with self._lock:
            stale = [subscription for subscription in self._subscriptions if subscription.stale]
            if stale:
                self._refresh(stale)
