"""Slot and conflict checks for clinics running a fixed time grid.

Overlap uses half-open intervals: an appointment ending at 10:15 does not
collide with one starting at 10:15.  :meth:`SlotChecker.is_available` is
the quick answer for a booking screen; the engine repeats the same check
inside its write transaction, and the store's unique index on
``(staff_id, start_time)`` catches anything that still slips through.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import date, datetime, time, timedelta
from typing import List, Optional, Tuple

import store
from models import ACTIVE_STATUSES
from schemas import ClinicQueueConfig, QueueEntry, TimeSlot

logger = logging.getLogger(__name__)


def overlaps(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    return a_start < b_end and a_end > b_start


def _parse_hhmm(value: str) -> time:
    hours, minutes = value.split(":")[:2]
    return time(int(hours), int(minutes))


def working_ranges(clinic_config: ClinicQueueConfig, day: date) -> List[Tuple[datetime, datetime]]:
    ranges = clinic_config.working_hours.get(day.weekday(), [])
    return [
        (datetime.combine(day, _parse_hhmm(opens)), datetime.combine(day, _parse_hhmm(closes)))
        for opens, closes in ranges
    ]


def within_working_hours(clinic_config: ClinicQueueConfig, start: datetime, end: datetime) -> bool:
    """True when the interval fits one opening range, or no hours are configured for that day."""
    ranges = working_ranges(clinic_config, start.date())
    if not ranges:
        return True
    return any(opens <= start and end <= closes for opens, closes in ranges)


def generate_slots(clinic_config: ClinicQueueConfig, day: date, duration_minutes: int) -> List[TimeSlot]:
    """Lay out the day's grid: each slot lasts the appointment plus buffer."""
    step = timedelta(minutes=duration_minutes + clinic_config.buffer_time)
    if step <= timedelta(0):
        return []
    slots = []
    for opens, closes in working_ranges(clinic_config, day):
        cursor = opens
        while cursor + step <= closes:
            slots.append(TimeSlot(start=cursor, end=cursor + step))
            cursor += step
    return slots


class SlotChecker:
    def __init__(self, appointment_store: store.AppointmentStore) -> None:
        self.store = appointment_store

    def find_conflicts(
        self,
        conn: sqlite3.Connection,
        staff_id: str,
        day: date,
        start: datetime,
        end: datetime,
        exclude_id: Optional[str] = None,
    ) -> List[QueueEntry]:
        """Active entries overlapping the candidate, read on the caller's connection."""
        return store.find_overlapping(conn, staff_id, day, start, end, exclude_id=exclude_id)

    def is_available(self, staff_id: str, start: datetime, end: datetime) -> bool:
        with self.store.reading() as conn:
            conflicts = self.find_conflicts(conn, staff_id, start.date(), start, end)
        if conflicts:
            logger.debug(f"Slot {start:%H:%M}-{end:%H:%M} for {staff_id} taken by {conflicts[0].id}")
        return not conflicts

    def available_slots(
        self,
        clinic_config: ClinicQueueConfig,
        staff_id: str,
        day: date,
        duration_minutes: int,
    ) -> List[TimeSlot]:
        """The day's grid with every slot flagged free or taken."""
        slots = generate_slots(clinic_config, day, duration_minutes)
        with self.store.reading() as conn:
            taken = [
                e for e in store.list_day(conn, clinic_config.clinic_id, staff_id, day)
                if e.status in ACTIVE_STATUSES
                and e.start_time is not None and e.end_time is not None
            ]
        for slot in slots:
            slot.available = not any(overlaps(slot.start, slot.end, e.start_time, e.end_time) for e in taken)
        return slots
