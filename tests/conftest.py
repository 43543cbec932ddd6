"""
Shared pytest fixtures for the queue engine tests.

Every test gets its own SQLite file, a clock it can move by hand, and an
engine wired to both.  Redis is never used here: the estimate cache and
the event publisher run in process.
"""

import os
import uuid
from datetime import date, datetime, timedelta

import pytest

os.environ.pop("REDIS_URL", None)

import store  # noqa: E402
from disruptions import DisruptionDetector  # noqa: E402
from estimator import WaitTimeEstimator  # noqa: E402
from events import EventPublisher  # noqa: E402
from models import AppointmentStatus, QueueMode  # noqa: E402
from queue_engine import QueueEngine  # noqa: E402
from recalc_worker import RecalculationQueue  # noqa: E402
from schemas import ClinicQueueConfig, CreateQueueEntryDTO  # noqa: E402

# A Monday
DAY = date(2026, 10, 19)


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.current = now

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


# ============================================================================
# INFRASTRUCTURE
# ============================================================================


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 10, 19, 9, 0))


@pytest.fixture
def appointment_store(tmp_path) -> store.AppointmentStore:
    """Fresh database file with the schema created."""
    appointment_store = store.AppointmentStore(str(tmp_path / "queue.db"))
    appointment_store.init_db()
    return appointment_store


@pytest.fixture
def recalc_queue(clock) -> RecalculationQueue:
    return RecalculationQueue(debounce_ms=2000, clock=clock)


@pytest.fixture
def publisher() -> EventPublisher:
    return EventPublisher()


@pytest.fixture
def published(publisher) -> list:
    """Events delivered to an in-process subscriber, in order."""
    received = []
    publisher.subscribe(received.append)
    return received


@pytest.fixture
def estimator(appointment_store, clock) -> WaitTimeEstimator:
    return WaitTimeEstimator(appointment_store, clock=clock)


@pytest.fixture
def detector(appointment_store, recalc_queue, clock) -> DisruptionDetector:
    return DisruptionDetector(appointment_store, recalc_queue=recalc_queue, clock=clock)


@pytest.fixture
def engine(appointment_store, publisher, estimator, detector, clock) -> QueueEngine:
    return QueueEngine(
        appointment_store,
        publisher=publisher,
        estimator=estimator,
        disruption_detector=detector,
        clock=clock,
    )


# ============================================================================
# CLINICS AND BOOKINGS
# ============================================================================


@pytest.fixture
def ordinal_clinic(engine) -> ClinicQueueConfig:
    return engine.configure_clinic(ClinicQueueConfig(clinic_id="clinic-1"))


@pytest.fixture
def grid_clinic(engine) -> ClinicQueueConfig:
    return engine.configure_clinic(
        ClinicQueueConfig(
            clinic_id="clinic-grid",
            queue_mode=QueueMode.time_grid_fixed,
            working_hours={0: [("09:00", "12:00"), ("14:00", "17:00")]},
        )
    )


@pytest.fixture
def book(engine):
    """Create an appointment with sensible defaults."""

    def _book(clinic_id="clinic-1", staff_id="dr-a", patient_id=None, **kwargs):
        kwargs.setdefault("appointment_date", DAY)
        dto = CreateQueueEntryDTO(
            clinic_id=clinic_id,
            staff_id=staff_id,
            patient_id=patient_id or f"p-{uuid.uuid4().hex[:6]}",
            **kwargs,
        )
        return engine.create_appointment(dto)

    return _book


def at(hour: int, minute: int = 0, day: date = DAY) -> datetime:
    return datetime.combine(day, datetime.min.time()).replace(hour=hour, minute=minute)


@pytest.fixture
def add_history(appointment_store):
    """Insert completed appointments with the given durations."""

    def _add(clinic_id, appointment_type, durations, day=DAY - timedelta(days=1), staff_id="dr-history"):
        with appointment_store.transaction() as conn:
            start = store.max_position(conn, staff_id, day)
            for offset, minutes in enumerate(durations, start=1):
                store.insert_appointment(
                    conn,
                    {
                        "id": uuid.uuid4().hex,
                        "clinic_id": clinic_id,
                        "staff_id": staff_id,
                        "patient_id": f"hist-{offset}",
                        "is_guest": False,
                        "is_walk_in": False,
                        "appointment_date": day,
                        "queue_position": start + offset,
                        "original_queue_position": start + offset,
                        "status": AppointmentStatus.completed,
                        "skip_count": 0,
                        "actual_duration_minutes": minutes,
                        "appointment_type": appointment_type,
                        "booking_method": "online",
                        "created_at": datetime(2026, 10, 1, 8, 0),
                        "updated_at": datetime(2026, 10, 1, 8, 0),
                    },
                )

    return _add
