"""Database models for the appointment queue.

We use SQLModel to define the schema.  ``Appointment`` rows hold every
booking and walk-in for a clinic, staff member and day; they are never
deleted, only moved to a terminal status.  ``ClinicSettings`` holds the
per-clinic queue configuration.  ``QueueEventRecord`` and ``QueueOverride``
are the audit trail of published events and manual queue changes.

The two unique indexes on ``appointment`` are what keeps concurrent
writers honest: one queue position per staff member and day, and one
active appointment per staff member and start time.
"""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import Index, text
from sqlmodel import Field, SQLModel


class AppointmentStatus(str, Enum):
    """Possible statuses for an appointment."""

    scheduled = "scheduled"
    waiting = "waiting"
    in_progress = "in_progress"
    completed = "completed"
    cancelled = "cancelled"
    no_show = "no_show"


ACTIVE_STATUSES = (AppointmentStatus.scheduled, AppointmentStatus.waiting, AppointmentStatus.in_progress)
CALLABLE_STATUSES = (AppointmentStatus.scheduled, AppointmentStatus.waiting)
TERMINAL_STATUSES = (AppointmentStatus.completed, AppointmentStatus.cancelled, AppointmentStatus.no_show)

ALLOWED_TRANSITIONS = {
    AppointmentStatus.scheduled: {
        AppointmentStatus.waiting,
        AppointmentStatus.in_progress,
        AppointmentStatus.cancelled,
        AppointmentStatus.no_show,
    },
    AppointmentStatus.waiting: {
        AppointmentStatus.in_progress,
        AppointmentStatus.cancelled,
        AppointmentStatus.no_show,
    },
    AppointmentStatus.in_progress: {AppointmentStatus.completed, AppointmentStatus.no_show},
    AppointmentStatus.completed: set(),
    AppointmentStatus.cancelled: set(),
    AppointmentStatus.no_show: set(),
}


class AppointmentType(str, Enum):
    consultation = "consultation"
    follow_up = "follow_up"
    emergency = "emergency"
    procedure = "procedure"
    vaccination = "vaccination"
    screening = "screening"


class SkipReason(str, Enum):
    patient_absent = "patient_absent"
    emergency_case = "emergency_case"
    doctor_preference = "doctor_preference"
    late_arrival = "late_arrival"
    other = "other"


class AbsenceResolution(str, Enum):
    rebooked = "rebooked"
    waitlist = "waitlist"


class QueueMode(str, Enum):
    ordinal_queue = "ordinal_queue"
    time_grid_fixed = "time_grid_fixed"


class BookingMethod(str, Enum):
    online = "online"
    walk_in = "walk_in"
    staff = "staff"


class QueueState(str, Enum):
    """Where an entry stands in the live queue.

    Derived from status, skip reason and return time so callers only ever
    check one value.
    """

    queued = "queued"
    absent = "absent"
    in_service = "in_service"
    closed = "closed"


class EventType(str, Enum):
    PATIENT_ADDED_TO_QUEUE = "PATIENT_ADDED_TO_QUEUE"
    APPOINTMENT_STATUS_CHANGED = "APPOINTMENT_STATUS_CHANGED"
    PATIENT_RETURNED = "PATIENT_RETURNED"
    PATIENT_MARKED_ABSENT = "PATIENT_MARKED_ABSENT"
    QUEUE_POSITION_CHANGED = "QUEUE_POSITION_CHANGED"


class OverrideAction(str, Enum):
    mark_absent = "mark_absent"
    returned = "returned"
    resolve_absent = "resolve_absent"
    reorder = "reorder"
    call_next = "call_next"
    end_day = "end_day"


_ACTIVE_SQL = "status IN ('scheduled', 'waiting', 'in_progress')"


class Appointment(SQLModel, table=True):
    __tablename__ = "appointment"
    __table_args__ = (
        Index(
            "uq_appointment_staff_day_position",
            "staff_id",
            "appointment_date",
            "queue_position",
            unique=True,
        ),
        Index(
            "uq_appointment_active_staff_start",
            "staff_id",
            "start_time",
            unique=True,
            sqlite_where=text(f"{_ACTIVE_SQL} AND start_time IS NOT NULL"),
            postgresql_where=text(f"{_ACTIVE_SQL} AND start_time IS NOT NULL"),
        ),
        Index("ix_appointment_clinic_day", "clinic_id", "appointment_date"),
    )

    id: str = Field(primary_key=True)
    clinic_id: str = Field(index=True)
    staff_id: str = Field(index=True)
    patient_id: Optional[str] = Field(default=None, index=True)
    guest_patient_id: Optional[str] = None
    is_guest: bool = Field(default=False)
    is_walk_in: bool = Field(default=False)
    appointment_date: date
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    scheduled_time: Optional[str] = None
    queue_position: Optional[int] = None
    original_queue_position: Optional[int] = None
    status: AppointmentStatus = Field(default=AppointmentStatus.scheduled)
    skip_reason: Optional[SkipReason] = None
    skip_count: int = Field(default=0)
    marked_absent_at: Optional[datetime] = None
    checked_in_at: Optional[datetime] = None
    returned_at: Optional[datetime] = None
    absence_resolution: Optional[AbsenceResolution] = None
    actual_start: Optional[datetime] = None
    actual_end: Optional[datetime] = None
    actual_duration_minutes: Optional[float] = None
    estimated_duration_minutes: Optional[int] = None
    appointment_type: AppointmentType = Field(default=AppointmentType.consultation)
    reason_for_visit: Optional[str] = None
    booking_method: BookingMethod = Field(default=BookingMethod.online)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class ClinicSettings(SQLModel, table=True):
    __tablename__ = "clinic_settings"

    clinic_id: str = Field(primary_key=True)
    queue_mode: QueueMode = Field(default=QueueMode.ordinal_queue)
    # JSON document: {"0": [["09:00", "17:00"]], ...} keyed by weekday.
    working_hours: str = Field(default="{}")
    buffer_time: int = Field(default=0)
    average_appointment_duration: Optional[int] = None
    max_queue_size: Optional[int] = None
    allow_walk_ins: bool = Field(default=True)
    # JSON document of threshold overrides, see config.QueueDefaults.
    overrides: str = Field(default="{}")
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class QueueEventRecord(SQLModel, table=True):
    __tablename__ = "queue_event"

    id: str = Field(primary_key=True)
    event_type: EventType
    clinic_id: str = Field(index=True)
    staff_id: str
    appointment_date: date
    appointment_ids: str
    payload: str = Field(default="{}")
    at: datetime = Field(default_factory=datetime.utcnow)


class QueueOverride(SQLModel, table=True):
    __tablename__ = "queue_override"

    id: Optional[int] = Field(default=None, primary_key=True)
    clinic_id: str = Field(index=True)
    appointment_id: str = Field(foreign_key="appointment.id")
    action: OverrideAction
    performed_by: str
    reason: Optional[str] = None
    previous_position: Optional[int] = None
    new_position: Optional[int] = None
    at: datetime = Field(default_factory=datetime.utcnow)


class DayClosure(SQLModel, table=True):
    """One closed day per staff member; a second close hits the unique index."""

    __tablename__ = "day_closure"
    __table_args__ = (
        Index("uq_day_closure_staff_day", "staff_id", "closure_date", unique=True),
    )

    id: str = Field(primary_key=True)
    clinic_id: str = Field(index=True)
    staff_id: str
    closure_date: date
    performed_by: str
    reason: Optional[str] = None
    total_appointments: int = Field(default=0)
    # JSON arrays of appointment ids
    no_show_ids: str = Field(default="[]")
    completed_ids: str = Field(default="[]")
    closed_at: datetime = Field(default_factory=datetime.utcnow)
