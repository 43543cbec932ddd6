"""Disruption detection.

A disruption is an appointment running past its expected duration by more
than the run-over threshold, or a patient checking in later than the
late-arrival threshold.  Checks run synchronously when a patient is called
or completed, and on a periodic sweep over every in-service appointment.
Each clinic keeps only its most recent disruptions; every new one asks the
recalculation queue to refresh the affected staff member's estimates.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from datetime import date, datetime
from typing import Deque, Dict, List, Optional, Set, Tuple

import store
from config import DEFAULTS, LIMITS, QueueDefaults, SystemClock, SystemLimits, resolve_thresholds, type_duration
from models import AppointmentStatus
from recalc_worker import RecalculationQueue
from schemas import ClinicQueueConfig, Disruption, DisruptionType, QueueEntry

logger = logging.getLogger(__name__)


def expected_minutes(entry: QueueEntry, defaults: Optional[QueueDefaults] = None) -> float:
    """Booked slot length when there is one, else the estimate made at booking."""
    if entry.start_time is not None and entry.end_time is not None:
        return (entry.end_time - entry.start_time).total_seconds() / 60
    if entry.estimated_duration_minutes:
        return float(entry.estimated_duration_minutes)
    return float(type_duration(entry.appointment_type, defaults))


class DisruptionDetector:
    def __init__(
        self,
        appointment_store: store.AppointmentStore,
        recalc_queue: Optional[RecalculationQueue] = None,
        clock=None,
        defaults: Optional[QueueDefaults] = None,
        limits: Optional[SystemLimits] = None,
    ) -> None:
        self.store = appointment_store
        self.recalc_queue = recalc_queue
        self.clock = clock or SystemClock()
        self.defaults = defaults or DEFAULTS
        self.limits = limits or LIMITS
        self._buffers: Dict[str, Deque[Disruption]] = {}
        # (appointment_id, type) already reported, with the day for pruning
        self._reported: Dict[Tuple[str, DisruptionType], date] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ----- checks -----

    def check_appointment(
        self,
        entry: QueueEntry,
        clinic_config: Optional[ClinicQueueConfig] = None,
        now: Optional[datetime] = None,
    ) -> Optional[Disruption]:
        """Run-over check for an in-service or just completed appointment."""
        if entry.actual_start is None:
            return None
        if entry.status == AppointmentStatus.completed and entry.actual_duration_minutes is not None:
            actual = entry.actual_duration_minutes
        elif entry.status == AppointmentStatus.in_progress:
            now = now or self.clock.now()
            actual = (now - entry.actual_start).total_seconds() / 60
        else:
            return None

        thresholds = resolve_thresholds(clinic_config, self.defaults)
        expected = expected_minutes(entry, thresholds)
        overrun = actual - expected
        if overrun <= thresholds.run_over_threshold_minutes:
            return None
        return self._record(
            Disruption(
                type=DisruptionType.run_over,
                clinic_id=entry.clinic_id,
                staff_id=entry.staff_id,
                date=entry.appointment_date,
                appointment_id=entry.id,
                reason=f"Ran {overrun:.0f} min over the expected {expected:.0f} min",
                minutes=round(overrun, 1),
                detected_at=self.clock.now(),
            )
        )

    def check_late_arrival(
        self,
        entry: QueueEntry,
        clinic_config: Optional[ClinicQueueConfig] = None,
    ) -> Optional[Disruption]:
        late = entry.wait_since_scheduled_minutes
        if late is None:
            return None
        thresholds = resolve_thresholds(clinic_config, self.defaults)
        if late <= thresholds.late_arrival_threshold_minutes:
            return None
        return self._record(
            Disruption(
                type=DisruptionType.late_arrival,
                clinic_id=entry.clinic_id,
                staff_id=entry.staff_id,
                date=entry.appointment_date,
                appointment_id=entry.id,
                reason=f"Checked in {late:.0f} min after the booked start",
                minutes=late,
                detected_at=self.clock.now(),
            )
        )

    def _record(self, disruption: Disruption) -> Optional[Disruption]:
        key = (disruption.appointment_id, disruption.type)
        with self._lock:
            if key in self._reported:
                return None
            self._reported[key] = disruption.date
            buffer = self._buffers.get(disruption.clinic_id)
            if buffer is None:
                buffer = deque(maxlen=self.limits.max_disruption_buffer_size)
                self._buffers[disruption.clinic_id] = buffer
            buffer.append(disruption)

        logger.warning(
            f"Disruption {disruption.type.value} at {disruption.clinic_id}/{disruption.staff_id}: "
            f"{disruption.reason} (appointment {disruption.appointment_id})"
        )
        if self.recalc_queue is not None:
            self.recalc_queue.submit(disruption.clinic_id, disruption.staff_id, disruption.date)
        return disruption

    def recent(self, clinic_id: str) -> List[Disruption]:
        """Most recent disruptions for a clinic, oldest first."""
        with self._lock:
            return list(self._buffers.get(clinic_id, ()))

    # ----- periodic sweep -----

    def sweep(self, day: Optional[date] = None) -> List[Disruption]:
        """Check every in-service appointment of ``day`` (today by default)."""
        now = self.clock.now()
        day = day or now.date()
        self._prune(day)
        found = []
        configs: Dict[str, Optional[ClinicQueueConfig]] = {}
        offset = 0
        batch = self.limits.batch_process_size
        while True:
            with self.store.reading() as conn:
                entries = store.in_service_entries(conn, day, limit=batch, offset=offset)
                for clinic_id in {e.clinic_id for e in entries} - configs.keys():
                    configs[clinic_id] = store.get_clinic_config(conn, clinic_id)
            for entry in entries:
                disruption = self.check_appointment(entry, configs.get(entry.clinic_id), now=now)
                if disruption is not None:
                    found.append(disruption)
            if len(entries) < batch:
                break
            offset += batch
        logger.debug(f"Disruption sweep for {day} found {len(found)}")
        return found

    def _prune(self, day: date) -> None:
        with self._lock:
            self._reported = {key: d for key, d in self._reported.items() if d >= day}

    def _run(self) -> None:
        interval = self.defaults.periodic_check_interval_minutes * 60
        logger.info(f"Disruption sweep running every {self.defaults.periodic_check_interval_minutes} min")
        while not self._stop.wait(interval):
            try:
                self.sweep()
            except Exception as e:
                logger.error(f"Disruption sweep failed: {e}")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="disruption-sweep", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
