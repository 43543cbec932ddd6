"""Queue ordering engine.

:class:`QueueEngine` owns every change to a staff member's daily queue:
booking, calling the next patient, check-in, absence and return, manual
reordering, completion, cancellation, no-shows and closing the day.  Each operation runs in
one store transaction; once it commits, the estimate cache for that queue
is dropped and a :class:`events.QueueEvent` goes out.  Disruption checks
run after the commit and never fail the operation.

The engine holds no module level state.  Build one with its collaborators
injected, or call :func:`build_engine` for the wiring the web app uses.
"""

from __future__ import annotations

import logging
import uuid
from collections import Counter
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

import store
from config import DEFAULTS, LIMITS, QueueDefaults, SystemClock, get_redis, resolve_thresholds, type_duration
from disruptions import DisruptionDetector
from errors import BusinessRuleViolation, ConflictError, NotFoundError, QueueEmptyError, ValidationError
from estimator import EstimateCache, WaitTimeEstimator
from events import EventPublisher, QueueEvent
from models import (
    ALLOWED_TRANSITIONS,
    AbsenceResolution,
    AppointmentStatus,
    AppointmentType,
    BookingMethod,
    EventType,
    OverrideAction,
    QueueMode,
    QueueState,
    SkipReason,
)
from recalc_worker import RecalcKey, RecalculationQueue, RecalculationWorker
from schemas import (
    CallNextPatientDTO,
    ClinicQueueConfig,
    CreateQueueEntryDTO,
    DayClosurePreview,
    DayClosureSummary,
    Disruption,
    EndDayDTO,
    MarkAbsentDTO,
    QueueEntry,
    QueuePositionInfo,
    QueueSummary,
    ReorderQueueDTO,
    ScheduleSnapshot,
    TimeSlot,
)
from slots import SlotChecker, within_working_hours

logger = logging.getLogger(__name__)


def _check_transition(entry: QueueEntry, target: AppointmentStatus) -> None:
    if target not in ALLOWED_TRANSITIONS[entry.status]:
        raise BusinessRuleViolation(
            f"Cannot move appointment {entry.id} from {entry.status.value} to {target.value}",
            rule="status_transition",
        )


def _queued(entries: Iterable[QueueEntry]) -> List[QueueEntry]:
    return [e for e in entries if e.queue_state == QueueState.queued]


class QueueEngine:
    def __init__(
        self,
        appointment_store: store.AppointmentStore,
        publisher: Optional[EventPublisher] = None,
        estimator: Optional[WaitTimeEstimator] = None,
        disruption_detector: Optional[DisruptionDetector] = None,
        slot_checker: Optional[SlotChecker] = None,
        clock=None,
        defaults: Optional[QueueDefaults] = None,
        recalc_worker: Optional[RecalculationWorker] = None,
    ) -> None:
        self.store = appointment_store
        self.clock = clock or SystemClock()
        self.defaults = defaults or DEFAULTS
        self.publisher = publisher or EventPublisher()
        self.estimator = estimator or WaitTimeEstimator(appointment_store, clock=self.clock, defaults=self.defaults)
        self.disruption_detector = disruption_detector or DisruptionDetector(
            appointment_store, clock=self.clock, defaults=self.defaults
        )
        self.slot_checker = slot_checker or SlotChecker(appointment_store)
        self.recalc_worker = recalc_worker

    # ===== CLINIC SETTINGS =====

    def configure_clinic(self, clinic_config: ClinicQueueConfig) -> ClinicQueueConfig:
        with self.store.transaction() as conn:
            store.save_clinic_config(conn, clinic_config)
        logger.info(f"Clinic {clinic_config.clinic_id} configured for {clinic_config.queue_mode.value}")
        return clinic_config

    def get_clinic_config(self, clinic_id: str) -> ClinicQueueConfig:
        with self.store.reading() as conn:
            return self._load_config(conn, clinic_id)

    @staticmethod
    def _load_config(conn, clinic_id: str) -> ClinicQueueConfig:
        clinic_config = store.get_clinic_config(conn, clinic_id)
        if clinic_config is None:
            raise NotFoundError("Clinic", clinic_id)
        return clinic_config

    @staticmethod
    def _require(conn, appointment_id: str) -> QueueEntry:
        entry = store.get_appointment(conn, appointment_id)
        if entry is None:
            raise NotFoundError("Appointment", appointment_id)
        return entry

    # ===== WRITES =====

    def create_appointment(self, dto: CreateQueueEntryDTO) -> QueueEntry:
        """Book an appointment or register a walk-in and give it a queue position."""
        now = self.clock.now()
        try:
            appointment_type = AppointmentType(dto.appointment_type)
        except ValueError:
            logger.warning(f"Unknown appointment type {dto.appointment_type!r}, booking as consultation")
            appointment_type = AppointmentType.consultation
        if not dto.patient_id and not dto.guest_patient_id:
            raise ValidationError("patient_id or guest_patient_id is required", field="patient_id")
        for field in ("start_time", "end_time"):
            value = getattr(dto, field)
            if value is not None and value.tzinfo is not None:
                raise ValidationError(f"{field} must be clinic local time without a UTC offset", field=field)

        day = dto.appointment_date or (dto.start_time.date() if dto.start_time else now.date())
        if dto.start_time is not None and dto.start_time.date() != day:
            raise ValidationError("start_time must fall on appointment_date", field="start_time")

        events = []
        with self.store.transaction() as conn:
            clinic_config = self._load_config(conn, dto.clinic_id)
            if store.get_day_closure(conn, dto.staff_id, day) is not None:
                raise BusinessRuleViolation(f"Day {day} is closed for staff {dto.staff_id}", rule="day_closed")
            if dto.is_walk_in and not clinic_config.allow_walk_ins:
                raise BusinessRuleViolation(
                    f"Clinic {dto.clinic_id} does not accept walk-ins", rule="walk_ins_disabled"
                )
            if clinic_config.max_queue_size is not None:
                active = store.count_active(conn, dto.clinic_id, dto.staff_id, day)
                if active >= clinic_config.max_queue_size:
                    raise BusinessRuleViolation(
                        f"Queue for staff {dto.staff_id} on {day} is full ({active})", rule="max_queue_size"
                    )

            thresholds = resolve_thresholds(clinic_config, self.defaults)
            duration = clinic_config.average_appointment_duration or type_duration(appointment_type, thresholds)
            start_time = end_time = scheduled_time = None

            if clinic_config.queue_mode == QueueMode.time_grid_fixed:
                start_time, end_time = self._check_slot(conn, clinic_config, dto, day, duration)
                scheduled_time = start_time.strftime("%H:%M")

            position = store.max_position(conn, dto.staff_id, day) + 1
            booking_method = dto.booking_method or (BookingMethod.walk_in if dto.is_walk_in else BookingMethod.online)
            appointment_id = uuid.uuid4().hex
            store.insert_appointment(
                conn,
                {
                    "id": appointment_id,
                    "clinic_id": dto.clinic_id,
                    "staff_id": dto.staff_id,
                    "patient_id": dto.patient_id,
                    "guest_patient_id": dto.guest_patient_id,
                    "is_guest": dto.is_guest,
                    "is_walk_in": dto.is_walk_in,
                    "appointment_date": day,
                    "start_time": start_time,
                    "end_time": end_time,
                    "scheduled_time": scheduled_time,
                    "queue_position": position,
                    "original_queue_position": position,
                    "status": AppointmentStatus.scheduled,
                    "skip_count": 0,
                    "estimated_duration_minutes": duration,
                    "appointment_type": appointment_type,
                    "reason_for_visit": dto.reason_for_visit,
                    "booking_method": booking_method,
                    "created_at": now,
                    "updated_at": now,
                },
            )

            moved = []
            if clinic_config.queue_mode == QueueMode.time_grid_fixed:
                moved = self._resequence_by_time(conn, dto.clinic_id, dto.staff_id, day, now)

            entry = store.get_appointment(conn, appointment_id)
            events.append(
                self._record_event(
                    conn,
                    EventType.PATIENT_ADDED_TO_QUEUE,
                    entry,
                    queue_position=entry.queue_position,
                    moved=[{"id": i, "from": old, "to": new} for i, old, new in moved],
                )
            )

        logger.info(
            f"Appointment {entry.id} added for staff {entry.staff_id} on {day} at position {entry.queue_position}"
        )
        self._after_commit(events)
        return entry

    def _check_slot(self, conn, clinic_config, dto, day, duration) -> Tuple[datetime, datetime]:
        if dto.start_time is None:
            raise ValidationError("start_time is required in fixed time-grid mode", field="start_time")
        start_time = dto.start_time
        end_time = dto.end_time or start_time + timedelta(minutes=duration + clinic_config.buffer_time)
        if end_time <= start_time:
            raise ValidationError("end_time must be after start_time", field="end_time")
        if not within_working_hours(clinic_config, start_time, end_time):
            raise BusinessRuleViolation(
                f"Slot {start_time:%H:%M}-{end_time:%H:%M} is outside working hours", rule="working_hours"
            )
        conflicts = self.slot_checker.find_conflicts(conn, dto.staff_id, day, start_time, end_time)
        if conflicts:
            taken = conflicts[0]
            raise ConflictError(
                f"Slot {start_time:%H:%M}-{end_time:%H:%M} overlaps appointment {taken.id} "
                f"({taken.start_time:%H:%M}-{taken.end_time:%H:%M})"
            )
        return start_time, end_time

    def _resequence_by_time(self, conn, clinic_id, staff_id, day, now) -> List[Tuple[str, int, int]]:
        """Hand the grid-ordered entries' positions out again in start-time order.

        Returned patients and entries moved by a manual reorder keep the
        position they were given.
        """
        queued = [
            e for e in _queued(store.list_day(conn, clinic_id, staff_id, day))
            if e.start_time is not None and e.returned_at is None
        ]
        pinned = store.overridden_ids(conn, [e.id for e in queued], OverrideAction.reorder)
        queued = [e for e in queued if e.id not in pinned]
        positions = sorted(e.queue_position for e in queued)
        by_time = sorted(queued, key=lambda e: (e.start_time, e.queue_position))
        moved = [
            (e.id, e.queue_position, position)
            for e, position in zip(by_time, positions)
            if e.queue_position != position
        ]
        store.reassign_positions(conn, [(i, new) for i, _old, new in moved], now)
        return moved

    def call_next_patient(self, dto: CallNextPatientDTO) -> QueueEntry:
        """Move the first queued patient into service."""
        now = self.clock.now()
        day = dto.date or now.date()
        events = []
        with self.store.transaction() as conn:
            clinic_config = self._load_config(conn, dto.clinic_id)
            entries = store.list_day(conn, dto.clinic_id, dto.staff_id, day)
            queued = _queued(entries)
            if not queued:
                raise QueueEmptyError(dto.staff_id, day)
            entry = queued[0]
            _check_transition(entry, AppointmentStatus.in_progress)
            updated = self._update(
                conn,
                entry.id,
                now,
                status=AppointmentStatus.in_progress,
                actual_start=now,
                checked_in_at=entry.checked_in_at or now,
            )
            store.insert_override(
                conn,
                entry.clinic_id,
                entry.id,
                OverrideAction.call_next,
                dto.performed_by or dto.staff_id,
                now,
                previous_position=entry.queue_position,
                new_position=entry.queue_position,
            )
            events.append(self._status_event(conn, entry, updated, performed_by=dto.performed_by))
            in_service = [e for e in entries if e.queue_state == QueueState.in_service]

        logger.info(f"Called appointment {updated.id} (position {updated.queue_position}) for staff {dto.staff_id}")
        self._after_commit(events)
        for other in in_service:
            self._safe_check(self.disruption_detector.check_appointment, other, clinic_config)
        return updated

    def check_in_patient(self, appointment_id: str, performed_by: Optional[str] = None) -> QueueEntry:
        """Record arrival: scheduled becomes waiting."""
        now = self.clock.now()
        events = []
        with self.store.transaction() as conn:
            entry = self._require(conn, appointment_id)
            clinic_config = self._load_config(conn, entry.clinic_id)
            _check_transition(entry, AppointmentStatus.waiting)
            updated = self._update(conn, entry.id, now, status=AppointmentStatus.waiting, checked_in_at=now)
            events.append(self._status_event(conn, entry, updated, performed_by=performed_by))

        logger.info(f"Appointment {appointment_id} checked in")
        self._after_commit(events)
        self._safe_check(self.disruption_detector.check_late_arrival, updated, clinic_config)
        return updated

    def mark_patient_absent(self, dto: MarkAbsentDTO) -> QueueEntry:
        now = self.clock.now()
        events = []
        with self.store.transaction() as conn:
            entry = self._require(conn, dto.appointment_id)
            if entry.queue_state != QueueState.queued:
                raise BusinessRuleViolation(
                    f"Appointment {entry.id} is {entry.queue_state.value}, only queued patients can be marked absent",
                    rule="not_queued",
                )
            updated = self._update(
                conn,
                entry.id,
                now,
                skip_reason=SkipReason.patient_absent,
                marked_absent_at=now,
                returned_at=None,
                absence_resolution=None,
                skip_count=entry.skip_count + 1,
            )
            store.insert_override(
                conn,
                entry.clinic_id,
                entry.id,
                OverrideAction.mark_absent,
                dto.performed_by,
                now,
                reason=dto.reason,
                previous_position=entry.queue_position,
                new_position=entry.queue_position,
            )
            events.append(
                self._record_event(
                    conn,
                    EventType.PATIENT_MARKED_ABSENT,
                    updated,
                    performed_by=dto.performed_by,
                    queue_position=updated.queue_position,
                    skip_count=updated.skip_count,
                )
            )

        logger.info(f"Appointment {entry.id} marked absent by {dto.performed_by}")
        self._after_commit(events)
        return updated

    def mark_patient_returned(self, appointment_id: str, performed_by: str) -> QueueEntry:
        """Put an absent patient back at the end of the queue."""
        now = self.clock.now()
        events = []
        with self.store.transaction() as conn:
            entry = self._require(conn, appointment_id)
            if entry.queue_state != QueueState.absent:
                raise BusinessRuleViolation(f"Appointment {entry.id} is not marked absent", rule="not_absent")
            position = store.max_position(conn, entry.staff_id, entry.appointment_date) + 1
            updated = self._update(conn, entry.id, now, returned_at=now, queue_position=position)
            store.insert_override(
                conn,
                entry.clinic_id,
                entry.id,
                OverrideAction.returned,
                performed_by,
                now,
                previous_position=entry.queue_position,
                new_position=position,
            )
            events.append(
                self._record_event(
                    conn,
                    EventType.PATIENT_RETURNED,
                    updated,
                    performed_by=performed_by,
                    previous_position=entry.queue_position,
                    queue_position=position,
                )
            )

        logger.info(f"Appointment {entry.id} returned, position {entry.queue_position} -> {position}")
        self._after_commit(events)
        return updated

    def resolve_absent_appointment(self, appointment_id: str, performed_by: str, resolution: str) -> QueueEntry:
        """Close out an absence: ``rebooked`` cancels, ``waitlist`` keeps the entry parked."""
        try:
            resolution = AbsenceResolution(getattr(resolution, "value", resolution))
        except ValueError:
            raise ValidationError(
                f"Unknown resolution {resolution!r}, expected one of: "
                + ", ".join(r.value for r in AbsenceResolution),
                field="resolution",
            )

        now = self.clock.now()
        events = []
        with self.store.transaction() as conn:
            entry = self._require(conn, appointment_id)
            if entry.queue_state != QueueState.absent:
                raise BusinessRuleViolation(f"Appointment {entry.id} is not marked absent", rule="not_absent")
            fields = {"absence_resolution": resolution}
            if resolution == AbsenceResolution.rebooked:
                _check_transition(entry, AppointmentStatus.cancelled)
                fields["status"] = AppointmentStatus.cancelled
            updated = self._update(conn, entry.id, now, **fields)
            store.insert_override(
                conn,
                entry.clinic_id,
                entry.id,
                OverrideAction.resolve_absent,
                performed_by,
                now,
                reason=resolution.value,
                previous_position=entry.queue_position,
                new_position=updated.queue_position,
            )
            events.append(
                self._status_event(conn, entry, updated, performed_by=performed_by, resolution=resolution.value)
            )

        logger.info(f"Absent appointment {entry.id} resolved as {resolution.value}")
        self._after_commit(events)
        return updated

    def complete_appointment(self, appointment_id: str, performed_by: Optional[str] = None) -> QueueEntry:
        now = self.clock.now()
        events = []
        with self.store.transaction() as conn:
            entry = self._require(conn, appointment_id)
            clinic_config = self._load_config(conn, entry.clinic_id)
            _check_transition(entry, AppointmentStatus.completed)
            duration = None
            if entry.actual_start is not None:
                duration = round((now - entry.actual_start).total_seconds() / 60, 1)
            updated = self._update(
                conn,
                entry.id,
                now,
                status=AppointmentStatus.completed,
                actual_end=now,
                actual_duration_minutes=duration,
            )
            events.append(self._status_event(conn, entry, updated, performed_by=performed_by, duration=duration))

        logger.info(f"Appointment {appointment_id} completed after {duration} min")
        self._after_commit(events)
        self._safe_check(self.disruption_detector.check_appointment, updated, clinic_config)
        return updated

    def cancel_appointment(
        self, appointment_id: str, performed_by: Optional[str] = None, reason: Optional[str] = None
    ) -> QueueEntry:
        return self._close(appointment_id, AppointmentStatus.cancelled, performed_by, reason)

    def mark_no_show(
        self, appointment_id: str, performed_by: Optional[str] = None, reason: Optional[str] = None
    ) -> QueueEntry:
        return self._close(appointment_id, AppointmentStatus.no_show, performed_by, reason)

    def _close(self, appointment_id, status, performed_by, reason) -> QueueEntry:
        now = self.clock.now()
        events = []
        with self.store.transaction() as conn:
            entry = self._require(conn, appointment_id)
            _check_transition(entry, status)
            updated = self._update(conn, entry.id, now, status=status)
            events.append(self._status_event(conn, entry, updated, performed_by=performed_by, reason=reason))

        logger.info(f"Appointment {appointment_id} {entry.status.value} -> {status.value}")
        self._after_commit(events)
        return updated

    def reorder_queue(self, dto: ReorderQueueDTO) -> List[QueueEntry]:
        """Apply a manual order to the queued entries, reusing their current positions."""
        ids = dto.ordered_appointment_ids
        if len(set(ids)) != len(ids):
            raise ValidationError("ordered_appointment_ids contains duplicates", field="ordered_appointment_ids")

        now = self.clock.now()
        events = []
        with self.store.transaction() as conn:
            self._load_config(conn, dto.clinic_id)
            queued = _queued(store.list_day(conn, dto.clinic_id, dto.staff_id, dto.date))
            current = {e.id: e for e in queued}
            if set(ids) != set(current):
                missing = sorted(set(current) - set(ids))
                extra = sorted(set(ids) - set(current))
                raise ValidationError(
                    f"ordered_appointment_ids must match the queued appointments (missing: {missing}, extra: {extra})",
                    field="ordered_appointment_ids",
                )
            positions = sorted(e.queue_position for e in queued)
            moved = [
                (appointment_id, current[appointment_id].queue_position, position)
                for appointment_id, position in zip(ids, positions)
                if current[appointment_id].queue_position != position
            ]
            store.reassign_positions(conn, [(i, new) for i, _old, new in moved], now)
            for appointment_id, old, new in moved:
                store.insert_override(
                    conn,
                    dto.clinic_id,
                    appointment_id,
                    OverrideAction.reorder,
                    dto.performed_by,
                    now,
                    reason=dto.reason,
                    previous_position=old,
                    new_position=new,
                )
            if moved:
                events.append(
                    self._record_event(
                        conn,
                        EventType.QUEUE_POSITION_CHANGED,
                        None,
                        scope=(dto.clinic_id, dto.staff_id, dto.date),
                        appointment_ids=[i for i, _old, _new in moved],
                        performed_by=dto.performed_by,
                        positions={i: new for i, _old, new in moved},
                    )
                )
            result = _queued(store.list_day(conn, dto.clinic_id, dto.staff_id, dto.date))

        logger.info(f"Queue for staff {dto.staff_id} on {dto.date} reordered by {dto.performed_by}, {len(moved)} moved")
        self._after_commit(events)
        return result

    def end_day(self, dto: EndDayDTO) -> DayClosureSummary:
        """Close a staff member's day.

        Queued and absent patients become no-shows, the visit still in
        service is completed, and every change is audited with the closure
        reason.  A day can only be closed once; later bookings for it are
        refused.
        """
        now = self.clock.now()
        events = []
        with self.store.transaction() as conn:
            self._load_config(conn, dto.clinic_id)
            if store.get_day_closure(conn, dto.staff_id, dto.date) is not None:
                raise ConflictError(f"Day {dto.date} is already closed for staff {dto.staff_id}")
            entries = store.list_day(conn, dto.clinic_id, dto.staff_id, dto.date)
            no_show_ids, completed_ids = [], []
            for entry in entries:
                if entry.queue_state in (QueueState.queued, QueueState.absent):
                    self._update(conn, entry.id, now, status=AppointmentStatus.no_show, actual_end=now)
                    no_show_ids.append(entry.id)
                elif entry.queue_state == QueueState.in_service:
                    duration = None
                    if entry.actual_start is not None:
                        duration = round((now - entry.actual_start).total_seconds() / 60, 1)
                    self._update(
                        conn,
                        entry.id,
                        now,
                        status=AppointmentStatus.completed,
                        actual_end=now,
                        actual_duration_minutes=duration,
                    )
                    completed_ids.append(entry.id)
                else:
                    continue
                store.insert_override(
                    conn,
                    dto.clinic_id,
                    entry.id,
                    OverrideAction.end_day,
                    dto.performed_by,
                    now,
                    reason=dto.reason,
                    previous_position=entry.queue_position,
                    new_position=entry.queue_position,
                )

            closure_id = uuid.uuid4().hex
            store.insert_day_closure(
                conn,
                closure_id,
                dto.clinic_id,
                dto.staff_id,
                dto.date,
                dto.performed_by,
                dto.reason,
                len(entries),
                no_show_ids,
                completed_ids,
                now,
            )
            if no_show_ids or completed_ids:
                events.append(
                    self._record_event(
                        conn,
                        EventType.APPOINTMENT_STATUS_CHANGED,
                        None,
                        scope=(dto.clinic_id, dto.staff_id, dto.date),
                        appointment_ids=no_show_ids + completed_ids,
                        performed_by=dto.performed_by,
                        reason=dto.reason,
                        no_show=no_show_ids,
                        completed=completed_ids,
                    )
                )

        logger.info(
            f"Day {dto.date} closed for staff {dto.staff_id} by {dto.performed_by}: "
            f"{len(no_show_ids)} no-show, {len(completed_ids)} completed"
        )
        self._after_commit(events)
        return DayClosureSummary(
            closure_id=closure_id,
            clinic_id=dto.clinic_id,
            staff_id=dto.staff_id,
            date=dto.date,
            performed_by=dto.performed_by,
            reason=dto.reason,
            total=len(entries),
            no_show_ids=no_show_ids,
            completed_ids=completed_ids,
            closed_at=now,
        )

    def preview_end_day(self, clinic_id: str, staff_id: str, day: date) -> DayClosurePreview:
        with self.store.reading() as conn:
            self._load_config(conn, clinic_id)
            entries = store.list_day(conn, clinic_id, staff_id, day)
        states = Counter(e.queue_state for e in entries)
        statuses = Counter(e.status for e in entries)
        return DayClosurePreview(
            clinic_id=clinic_id,
            staff_id=staff_id,
            date=day,
            total=len(entries),
            waiting=states[QueueState.queued],
            in_progress=states[QueueState.in_service],
            absent=states[QueueState.absent],
            completed=statuses[AppointmentStatus.completed],
            already_no_show=statuses[AppointmentStatus.no_show],
            will_mark_no_show=states[QueueState.queued] + states[QueueState.absent],
            will_mark_completed=states[QueueState.in_service],
        )

    # ===== READS =====

    def get_entry(self, appointment_id: str) -> QueueEntry:
        with self.store.reading() as conn:
            return self._require(conn, appointment_id)

    def get_schedule(self, clinic_id: str, staff_id: str, day: date) -> ScheduleSnapshot:
        with self.store.reading() as conn:
            clinic_config = self._load_config(conn, clinic_id)
            entries = store.list_day(conn, clinic_id, staff_id, day)
        estimates = self.estimator.estimate_queue(clinic_config, staff_id, day)
        return ScheduleSnapshot(
            clinic_id=clinic_id,
            staff_id=staff_id,
            date=day,
            operating_mode=self.estimator.operating_mode(estimates),
            queue_mode=clinic_config.queue_mode,
            entries=entries,
            estimates=estimates,
            generated_at=self.clock.now(),
        )

    def get_queue_position(self, clinic_id: str, patient_id: str, day: Optional[date] = None) -> QueuePositionInfo:
        day = day or self.clock.now().date()
        with self.store.reading() as conn:
            clinic_config = self._load_config(conn, clinic_id)
            mine = _queued(store.find_patient_entries(conn, clinic_id, patient_id, day))
            if not mine:
                raise NotFoundError("Queued appointment for patient", patient_id)
            entry = mine[0]
            queued = _queued(store.list_day(conn, clinic_id, entry.staff_id, day))
        position = next(i for i, e in enumerate(queued, start=1) if e.id == entry.id)
        estimates = self.estimator.estimate_queue(clinic_config, entry.staff_id, day)
        wait = next((e.estimated_wait_minutes for e in estimates if e.appointment_id == entry.id), None)
        return QueuePositionInfo(
            appointment_id=entry.id,
            position=position,
            total=len(queued),
            estimated_wait_minutes=wait,
        )

    def get_queue_summary(self, clinic_id: str, day: Optional[date] = None) -> QueueSummary:
        day = day or self.clock.now().date()
        with self.store.reading() as conn:
            self._load_config(conn, clinic_id)
            counts = store.status_counts(conn, clinic_id, day)
        average = counts.pop("average_duration_minutes")
        return QueueSummary(
            clinic_id=clinic_id,
            date=day,
            average_duration_minutes=round(average, 1) if average is not None else None,
            **counts,
        )

    def available_slots(
        self, clinic_id: str, staff_id: str, day: date, duration_minutes: Optional[int] = None
    ) -> List[TimeSlot]:
        clinic_config = self.get_clinic_config(clinic_id)
        if duration_minutes is None:
            thresholds = resolve_thresholds(clinic_config, self.defaults)
            duration_minutes = clinic_config.average_appointment_duration or thresholds.default_appointment_duration_minutes
        return self.slot_checker.available_slots(clinic_config, staff_id, day, duration_minutes)

    def recent_disruptions(self, clinic_id: str) -> List[Disruption]:
        return self.disruption_detector.recent(clinic_id)

    def get_overrides(self, appointment_id: str) -> List[Dict]:
        with self.store.reading() as conn:
            self._require(conn, appointment_id)
            return store.list_overrides(conn, appointment_id)

    def list_events(self, clinic_id: str, day: date) -> List[Dict]:
        with self.store.reading() as conn:
            return store.list_events(conn, clinic_id, day)

    # ===== BACKGROUND =====

    def recalculate(self, key: RecalcKey) -> None:
        """Rebuild the cached estimates of one queue; safe to run twice."""
        clinic_config = self.get_clinic_config(key.clinic_id)
        self.estimator.refresh(clinic_config, key.staff_id, key.day)
        logger.info(f"Estimates recalculated for {key.clinic_id}/{key.staff_id}/{key.day}")

    def start_background(self) -> None:
        self.disruption_detector.start()
        if self.recalc_worker is not None:
            self.recalc_worker.start()

    def stop_background(self) -> None:
        self.disruption_detector.stop()
        if self.recalc_worker is not None:
            self.recalc_worker.stop()

    # ===== HELPERS =====

    @staticmethod
    def _update(conn, appointment_id: str, now: datetime, **fields) -> QueueEntry:
        store.update_appointment(conn, appointment_id, updated_at=now, **fields)
        return store.get_appointment(conn, appointment_id)

    def _record_event(
        self,
        conn,
        event_type: EventType,
        entry: Optional[QueueEntry],
        scope: Optional[Tuple[str, str, date]] = None,
        appointment_ids: Optional[List[str]] = None,
        **payload,
    ) -> QueueEvent:
        clinic_id, staff_id, day = scope or (entry.clinic_id, entry.staff_id, entry.appointment_date)
        event = QueueEvent(
            event_type=event_type,
            clinic_id=clinic_id,
            staff_id=staff_id,
            date=day,
            appointment_ids=appointment_ids or [entry.id],
            occurred_at=self.clock.now(),
            payload=payload,
        )
        store.insert_event(
            conn,
            event.event_id,
            event.event_type,
            clinic_id,
            staff_id,
            day,
            event.appointment_ids,
            event.payload,
            event.occurred_at,
        )
        return event

    def _status_event(self, conn, before: QueueEntry, after: QueueEntry, **payload) -> QueueEvent:
        return self._record_event(
            conn,
            EventType.APPOINTMENT_STATUS_CHANGED,
            after,
            previous_status=before.status.value,
            status=after.status.value,
            **payload,
        )

    def _after_commit(self, events: List[QueueEvent]) -> None:
        for event in events:
            self.estimator.invalidate(event.clinic_id, event.staff_id, event.date)
        self.publisher.publish_all(events)

    @staticmethod
    def _safe_check(check, entry: QueueEntry, clinic_config: ClinicQueueConfig) -> None:
        try:
            check(entry, clinic_config)
        except Exception as e:
            logger.warning(f"Disruption check failed for {entry.id}: {e}")


def build_engine(db_path: Optional[str] = None, clock=None) -> QueueEngine:
    """Wire the engine the way the service runs it."""
    appointment_store = store.AppointmentStore(db_path) if db_path else store.AppointmentStore()
    appointment_store.init_db()
    clock = clock or SystemClock()
    redis_client = get_redis()

    cache = EstimateCache(LIMITS.estimation_cache_ttl_ms, clock=clock, redis_client=redis_client)
    estimator = WaitTimeEstimator(appointment_store, clock=clock, cache=cache)
    recalc_queue = RecalculationQueue(clock=clock)
    detector = DisruptionDetector(appointment_store, recalc_queue=recalc_queue, clock=clock)
    engine = QueueEngine(
        appointment_store,
        publisher=EventPublisher(redis_client),
        estimator=estimator,
        disruption_detector=detector,
        clock=clock,
    )
    engine.recalc_worker = RecalculationWorker(recalc_queue, engine.recalculate)
    return engine
