"""Pydantic schemas for requests and read models.

Request bodies (the ``*DTO`` classes) are what callers hand to the engine
and the API.  ``QueueEntry`` is the engine's view of one appointment row,
and ``ScheduleSnapshot`` the per staff/day read model rebuilt on every
query.
"""

from __future__ import annotations

import datetime as dt
from datetime import date, datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, computed_field, field_validator

from models import (
    AbsenceResolution,
    AppointmentStatus,
    AppointmentType,
    BookingMethod,
    QueueMode,
    QueueState,
    SkipReason,
)


class ClinicQueueConfig(BaseModel):
    clinic_id: str
    queue_mode: QueueMode = QueueMode.ordinal_queue
    # weekday (0 = Monday) -> list of (open, close) "HH:MM" pairs
    working_hours: Dict[int, List[Tuple[str, str]]] = Field(default_factory=dict)
    buffer_time: int = 0
    average_appointment_duration: Optional[int] = None
    max_queue_size: Optional[int] = None
    allow_walk_ins: bool = True

    # Optional overrides of the system defaults in config.QueueDefaults
    late_arrival_threshold_minutes: Optional[int] = None
    run_over_threshold_minutes: Optional[int] = None
    default_appointment_duration_minutes: Optional[int] = None
    historical_lookback_days: Optional[int] = None
    ml_confidence_threshold: Optional[float] = None
    periodic_check_interval_minutes: Optional[int] = None

    @field_validator("working_hours")
    @classmethod
    def _check_hours(cls, value: Dict[int, List[Tuple[str, str]]]) -> Dict[int, List[Tuple[str, str]]]:
        for weekday, ranges in value.items():
            if weekday < 0 or weekday > 6:
                raise ValueError(f"weekday must be 0-6, got {weekday}")
            for opens, closes in ranges:
                if opens >= closes:
                    raise ValueError(f"working hours {opens}-{closes} are empty")
        return value


class QueueEntry(BaseModel):
    id: str
    clinic_id: str
    staff_id: str
    patient_id: Optional[str] = None
    guest_patient_id: Optional[str] = None
    is_guest: bool = False
    is_walk_in: bool = False
    appointment_date: date
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    scheduled_time: Optional[str] = None
    queue_position: Optional[int] = None
    original_queue_position: Optional[int] = None
    status: AppointmentStatus
    skip_reason: Optional[SkipReason] = None
    skip_count: int = 0
    marked_absent_at: Optional[datetime] = None
    checked_in_at: Optional[datetime] = None
    returned_at: Optional[datetime] = None
    absence_resolution: Optional[AbsenceResolution] = None
    actual_start: Optional[datetime] = None
    actual_end: Optional[datetime] = None
    actual_duration_minutes: Optional[float] = None
    estimated_duration_minutes: Optional[int] = None
    appointment_type: AppointmentType = AppointmentType.consultation
    reason_for_visit: Optional[str] = None
    booking_method: BookingMethod = BookingMethod.online
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @computed_field
    @property
    def queue_state(self) -> QueueState:
        if self.status == AppointmentStatus.in_progress:
            return QueueState.in_service
        if self.status not in (AppointmentStatus.scheduled, AppointmentStatus.waiting):
            return QueueState.closed
        if self.skip_reason == SkipReason.patient_absent and self.returned_at is None:
            return QueueState.absent
        return QueueState.queued

    @computed_field
    @property
    def wait_since_scheduled_minutes(self) -> Optional[float]:
        """Minutes between the booked start and check-in, negative if early."""
        if self.checked_in_at is None or self.start_time is None:
            return None
        return round((self.checked_in_at - self.start_time).total_seconds() / 60, 1)


class CreateQueueEntryDTO(BaseModel):
    clinic_id: str
    staff_id: str
    patient_id: Optional[str] = None
    guest_patient_id: Optional[str] = None
    is_guest: bool = False
    # Kept as a plain string: unknown types fall back to consultation.
    appointment_type: str = AppointmentType.consultation.value
    is_walk_in: bool = False
    appointment_date: Optional[date] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    reason_for_visit: Optional[str] = None
    booking_method: Optional[BookingMethod] = None


class CallNextPatientDTO(BaseModel):
    clinic_id: str
    staff_id: str
    date: Optional[dt.date] = None
    performed_by: Optional[str] = None


class MarkAbsentDTO(BaseModel):
    appointment_id: str
    performed_by: str
    reason: Optional[str] = None


class ResolveAbsentDTO(BaseModel):
    appointment_id: str
    performed_by: str
    resolution: str


class ReorderQueueDTO(BaseModel):
    clinic_id: str
    staff_id: str
    date: dt.date
    ordered_appointment_ids: List[str]
    performed_by: str
    reason: Optional[str] = None


class PerformedByDTO(BaseModel):
    performed_by: str
    reason: Optional[str] = None


class EstimationSource(str, Enum):
    ml = "ml"
    rule_based = "rule_based"


class DurationEstimate(BaseModel):
    appointment_type: AppointmentType
    minutes: float
    source: EstimationSource
    confidence: float
    sample_size: int = 0


class EntryEstimate(BaseModel):
    appointment_id: str
    queue_position: Optional[int] = None
    estimated_start: datetime
    estimated_wait_minutes: int
    duration_minutes: float
    source: EstimationSource
    confidence: float


class ScheduleSnapshot(BaseModel):
    clinic_id: str
    staff_id: str
    date: dt.date
    operating_mode: EstimationSource
    queue_mode: QueueMode
    entries: List[QueueEntry]
    estimates: List[EntryEstimate] = Field(default_factory=list)
    generated_at: datetime

    def active_entries(self) -> List[QueueEntry]:
        return [e for e in self.entries if e.queue_state == QueueState.queued]


class QueuePositionInfo(BaseModel):
    appointment_id: str
    position: int
    total: int
    estimated_wait_minutes: Optional[int] = None


class QueueSummary(BaseModel):
    clinic_id: str
    date: dt.date
    total: int = 0
    waiting: int = 0
    in_progress: int = 0
    completed: int = 0
    absent: int = 0
    cancelled: int = 0
    no_show: int = 0
    average_duration_minutes: Optional[float] = None


class DisruptionType(str, Enum):
    run_over = "run_over"
    late_arrival = "late_arrival"


class Disruption(BaseModel):
    type: DisruptionType
    clinic_id: str
    staff_id: str
    date: dt.date
    appointment_id: str
    reason: str
    minutes: float
    detected_at: datetime


class TimeSlot(BaseModel):
    start: datetime
    end: datetime
    available: bool = True


class ResolutionRequest(PerformedByDTO):
    resolution: str


class EndDayDTO(BaseModel):
    clinic_id: str
    staff_id: str
    date: dt.date
    performed_by: str
    reason: Optional[str] = None


class DayClosurePreview(BaseModel):
    """What closing the day would change, without changing it."""

    clinic_id: str
    staff_id: str
    date: dt.date
    total: int = 0
    waiting: int = 0
    in_progress: int = 0
    absent: int = 0
    completed: int = 0
    already_no_show: int = 0
    will_mark_no_show: int = 0
    will_mark_completed: int = 0


class DayClosureSummary(BaseModel):
    closure_id: str
    clinic_id: str
    staff_id: str
    date: dt.date
    performed_by: str
    reason: Optional[str] = None
    total: int
    no_show_ids: List[str]
    completed_ids: List[str]
    closed_at: datetime
