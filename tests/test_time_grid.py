"""
Tests for fixed time-grid booking: slot conflicts, working hours, slot
generation and concurrent bookings racing for the same slot.
"""

import threading
from datetime import timezone

import pytest

from conftest import DAY, at
from errors import BusinessRuleViolation, ConflictError, ValidationError
from models import AppointmentStatus
from schemas import CallNextPatientDTO, ClinicQueueConfig, MarkAbsentDTO, ReorderQueueDTO
from slots import generate_slots, overlaps, within_working_hours


def grid_book(book, start, end=None, **kwargs):
    return book(clinic_id="clinic-grid", start_time=start, end_time=end, **kwargs)


class TestOverlap:
    def test_half_open_intervals(self):
        assert overlaps(at(10), at(10, 15), at(10, 5), at(10, 20))
        assert not overlaps(at(10), at(10, 15), at(10, 15), at(10, 30))
        assert not overlaps(at(10, 15), at(10, 30), at(10), at(10, 15))
        assert overlaps(at(10), at(11), at(10, 15), at(10, 30))


class TestFixedGridBooking:
    def test_overlapping_slot_is_rejected(self, grid_clinic, book):
        """10:00-10:15 taken: 10:05-10:20 conflicts, 10:15-10:30 is free."""
        grid_book(book, at(10), at(10, 15))

        with pytest.raises(ConflictError):
            grid_book(book, at(10, 5), at(10, 20))

        entry = grid_book(book, at(10, 15), at(10, 30))
        assert entry.start_time == at(10, 15)
        assert entry.scheduled_time == "10:15"

    def test_conflict_inserts_nothing(self, engine, grid_clinic, book):
        grid_book(book, at(10), at(10, 15))
        with pytest.raises(ConflictError):
            grid_book(book, at(10, 5), at(10, 20))

        snapshot = engine.get_schedule("clinic-grid", "dr-a", DAY)
        assert len(snapshot.entries) == 1

    def test_other_staff_may_share_the_slot(self, grid_clinic, book):
        grid_book(book, at(10), at(10, 15), staff_id="dr-a")
        entry = grid_book(book, at(10), at(10, 15), staff_id="dr-b")
        assert entry.queue_position == 1

    def test_cancelled_slot_can_be_rebooked(self, engine, grid_clinic, book):
        first = grid_book(book, at(10), at(10, 15))
        engine.cancel_appointment(first.id, "reception")

        again = grid_book(book, at(10), at(10, 15))
        assert again.start_time == at(10)

    def test_end_time_derived_from_type_and_buffer(self, engine, book):
        engine.configure_clinic(
            ClinicQueueConfig(
                clinic_id="clinic-grid",
                queue_mode="time_grid_fixed",
                working_hours={0: [("09:00", "17:00")]},
                buffer_time=5,
            )
        )
        entry = grid_book(book, at(9), appointment_type="procedure")
        assert entry.end_time == at(9, 35)

    def test_start_time_required(self, grid_clinic, book):
        with pytest.raises(ValidationError) as excinfo:
            book(clinic_id="clinic-grid")
        assert excinfo.value.field == "start_time"

    def test_end_must_follow_start(self, grid_clinic, book):
        with pytest.raises(ValidationError) as excinfo:
            grid_book(book, at(10), at(10))
        assert excinfo.value.field == "end_time"

    def test_outside_working_hours(self, grid_clinic, book):
        with pytest.raises(BusinessRuleViolation) as excinfo:
            grid_book(book, at(12, 50), at(13, 5))
        assert excinfo.value.rule == "working_hours"

    def test_positions_follow_start_time(self, engine, grid_clinic, book, published):
        late = grid_book(book, at(11), at(11, 15))
        early = grid_book(book, at(9), at(9, 15))

        assert early.queue_position == 1
        assert engine.get_entry(late.id).queue_position == 2
        assert published[-1].payload["moved"]

        called = engine.call_next_patient(CallNextPatientDTO(clinic_id="clinic-grid", staff_id="dr-a", date=DAY))
        assert called.id == early.id

    def test_returned_patient_keeps_place_after_next_booking(self, engine, grid_clinic, book):
        first = grid_book(book, at(9), at(9, 15))
        second = grid_book(book, at(9, 30), at(9, 45))
        third = grid_book(book, at(10), at(10, 15))
        engine.mark_patient_absent(MarkAbsentDTO(appointment_id=first.id, performed_by="nurse"))
        returned = engine.mark_patient_returned(first.id, "nurse")
        assert returned.queue_position == 4

        grid_book(book, at(11), at(11, 15))

        assert engine.get_entry(first.id).queue_position == 4
        assert engine.get_entry(second.id).queue_position == 2
        assert engine.get_entry(third.id).queue_position == 3
        called = engine.call_next_patient(CallNextPatientDTO(clinic_id="clinic-grid", staff_id="dr-a", date=DAY))
        assert called.id == second.id

    def test_manual_order_survives_next_booking(self, engine, grid_clinic, book):
        a = grid_book(book, at(9), at(9, 15))
        b = grid_book(book, at(9, 30), at(9, 45))
        engine.reorder_queue(
            ReorderQueueDTO(
                clinic_id="clinic-grid",
                staff_id="dr-a",
                date=DAY,
                ordered_appointment_ids=[b.id, a.id],
                performed_by="dr-a",
            )
        )

        grid_book(book, at(11), at(11, 15))

        assert engine.get_entry(b.id).queue_position == 1
        assert engine.get_entry(a.id).queue_position == 2

    def test_earlier_booking_still_slots_in_among_grid_entries(self, engine, grid_clinic, book):
        pinned = grid_book(book, at(9), at(9, 15))
        later = grid_book(book, at(10), at(10, 15))
        engine.mark_patient_absent(MarkAbsentDTO(appointment_id=pinned.id, performed_by="nurse"))
        engine.mark_patient_returned(pinned.id, "nurse")

        early = grid_book(book, at(9, 30), at(9, 45))

        assert engine.get_entry(pinned.id).queue_position == 3
        assert early.queue_position == 2
        assert engine.get_entry(later.id).queue_position == 4

    @pytest.mark.parametrize("field", ["start_time", "end_time"])
    def test_offset_aware_times_are_rejected(self, engine, grid_clinic, book, field):
        times = {"start_time": at(9), "end_time": at(9, 15)}
        times[field] = times[field].replace(tzinfo=timezone.utc)

        with pytest.raises(ValidationError) as excinfo:
            book(clinic_id="clinic-grid", **times)
        assert excinfo.value.field == field
        assert engine.get_schedule("clinic-grid", "dr-a", DAY).entries == []

    def test_late_check_in_reports_wait(self, engine, grid_clinic, book, clock):
        entry = grid_book(book, at(9), at(9, 15))
        clock.advance(minutes=4)

        checked = engine.check_in_patient(entry.id)
        assert checked.wait_since_scheduled_minutes == 4.0

    def test_early_check_in_is_negative(self, engine, grid_clinic, book):
        entry = grid_book(book, at(10), at(10, 15))
        checked = engine.check_in_patient(entry.id)
        assert checked.wait_since_scheduled_minutes == -60.0

    def test_active_intervals_never_overlap(self, engine, grid_clinic, book):
        candidates = [(9, 0, 9, 20), (9, 10, 9, 25), (9, 20, 9, 40), (9, 30, 9, 45), (9, 40, 10, 0)]
        for h1, m1, h2, m2 in candidates:
            try:
                grid_book(book, at(h1, m1), at(h2, m2))
            except ConflictError:
                pass

        entries = [
            e for e in engine.get_schedule("clinic-grid", "dr-a", DAY).entries
            if e.status in (AppointmentStatus.scheduled, AppointmentStatus.waiting, AppointmentStatus.in_progress)
        ]
        for i, a in enumerate(entries):
            for b in entries[i + 1:]:
                assert not overlaps(a.start_time, a.end_time, b.start_time, b.end_time)


class TestConcurrentBooking:
    def test_one_winner_per_slot(self, grid_clinic, book):
        """Several threads race for 10:00; exactly one booking commits."""
        workers = 6
        barrier = threading.Barrier(workers)
        results = []
        lock = threading.Lock()

        def attempt(n):
            barrier.wait()
            try:
                entry = grid_book(book, at(10), at(10, 15), patient_id=f"racer-{n}")
                outcome = ("ok", entry.id)
            except ConflictError:
                outcome = ("conflict", None)
            except Exception as e:
                outcome = ("error", repr(e))
            with lock:
                results.append(outcome)

        threads = [threading.Thread(target=attempt, args=(n,)) for n in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(30)

        kinds = [kind for kind, _ in results]
        assert kinds.count("ok") == 1
        assert kinds.count("conflict") == workers - 1

    def test_parallel_ordinal_bookings_get_unique_positions(self, engine, ordinal_clinic, book):
        workers = 8
        barrier = threading.Barrier(workers)
        positions = []
        lock = threading.Lock()

        def attempt():
            barrier.wait()
            entry = book()
            with lock:
                positions.append(entry.queue_position)

        threads = [threading.Thread(target=attempt) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(30)

        assert sorted(positions) == list(range(1, workers + 1))


class TestSlots:
    def test_generate_slots(self, grid_clinic):
        slots = generate_slots(grid_clinic, DAY, 30)

        assert slots[0].start == at(9)
        assert slots[0].end == at(9, 30)
        assert len(slots) == 12
        assert all(s.end <= at(12) or s.start >= at(14) for s in slots)

    def test_generate_slots_with_buffer(self, grid_clinic):
        config = grid_clinic.model_copy(update={"buffer_time": 5})
        slots = generate_slots(config, DAY, 15)
        assert [s.start for s in slots[:3]] == [at(9), at(9, 20), at(9, 40)]

    def test_no_hours_means_no_slots(self, grid_clinic):
        sunday = DAY.replace(day=18)
        assert generate_slots(grid_clinic, sunday, 15) == []

    def test_unconfigured_day_accepts_any_time(self, grid_clinic):
        sunday = DAY.replace(day=18)
        assert within_working_hours(grid_clinic, at(22, 0, sunday), at(22, 15, sunday))

    def test_available_slots_marks_taken(self, engine, grid_clinic, book):
        grid_book(book, at(9, 15), at(9, 30))

        slots = engine.available_slots("clinic-grid", "dr-a", DAY, 15)
        taken = [s.start for s in slots if not s.available]
        assert taken == [at(9, 15)]

    def test_is_available(self, engine, grid_clinic, book):
        grid_book(book, at(9), at(9, 15))

        assert not engine.slot_checker.is_available("dr-a", at(9, 10), at(9, 25))
        assert engine.slot_checker.is_available("dr-a", at(9, 15), at(9, 30))
