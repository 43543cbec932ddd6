"""
Tests for DisruptionDetector: run-over and late-arrival checks, the
per-clinic ring buffer, the periodic sweep and recalculation requests.
"""

from config import SystemLimits
from conftest import DAY, at
from disruptions import DisruptionDetector, expected_minutes
from schemas import CallNextPatientDTO, ClinicQueueConfig, DisruptionType, QueueEntry


def call_next(engine, clinic_id="clinic-1"):
    return engine.call_next_patient(CallNextPatientDTO(clinic_id=clinic_id, staff_id="dr-a", date=DAY))


def in_service_entry(n: int, clinic_id="clinic-1", started=None) -> QueueEntry:
    return QueueEntry(
        id=f"appt-{n}",
        clinic_id=clinic_id,
        staff_id="dr-a",
        appointment_date=DAY,
        status="in_progress",
        actual_start=started or at(8),
        estimated_duration_minutes=15,
    )


class TestRunOver:
    def test_completion_past_threshold(self, engine, ordinal_clinic, book, clock, recalc_queue):
        entry = book()
        call_next(engine)
        clock.advance(minutes=30)
        engine.complete_appointment(entry.id)

        disruptions = engine.recent_disruptions("clinic-1")
        assert len(disruptions) == 1
        assert disruptions[0].type == DisruptionType.run_over
        assert disruptions[0].appointment_id == entry.id
        assert disruptions[0].minutes == 15.0

        recalc_queue.collect()
        assert recalc_queue.pending() == [("clinic-1", "dr-a", DAY)]

    def test_within_threshold_is_quiet(self, engine, ordinal_clinic, book, clock):
        entry = book()
        call_next(engine)
        clock.advance(minutes=25)
        engine.complete_appointment(entry.id)

        assert engine.recent_disruptions("clinic-1") == []

    def test_clinic_threshold_override(self, engine, book, clock):
        engine.configure_clinic(ClinicQueueConfig(clinic_id="clinic-1", run_over_threshold_minutes=2))
        entry = book()
        call_next(engine)
        clock.advance(minutes=18)
        engine.complete_appointment(entry.id)

        assert len(engine.recent_disruptions("clinic-1")) == 1

    def test_calling_next_checks_patient_still_in_service(self, engine, ordinal_clinic, book, clock):
        first = book()
        book()
        call_next(engine)
        clock.advance(minutes=40)

        call_next(engine)
        disruptions = engine.recent_disruptions("clinic-1")
        assert [d.appointment_id for d in disruptions] == [first.id]

    def test_reported_once_per_appointment(self, detector, clock):
        entry = in_service_entry(1)
        clock.current = at(9)

        assert detector.check_appointment(entry) is not None
        assert detector.check_appointment(entry) is None
        assert len(detector.recent("clinic-1")) == 1

    def test_booked_slot_length_is_the_expectation(self, engine, grid_clinic, book, clock):
        entry = book(clinic_id="clinic-grid", start_time=at(9), end_time=at(10))
        call_next(engine, clinic_id="clinic-grid")
        clock.advance(minutes=40)
        engine.complete_appointment(entry.id)

        assert engine.recent_disruptions("clinic-grid") == []

    def test_run_over_measured_against_booked_slot(self, engine, grid_clinic, book, clock):
        entry = book(clinic_id="clinic-grid", start_time=at(9), end_time=at(10))
        call_next(engine, clinic_id="clinic-grid")
        clock.advance(minutes=75)
        engine.complete_appointment(entry.id)

        disruptions = engine.recent_disruptions("clinic-grid")
        assert [d.minutes for d in disruptions] == [15.0]

    def test_expected_minutes_fallbacks(self):
        entry = in_service_entry(1).model_copy(update={"estimated_duration_minutes": None})
        assert expected_minutes(entry) == 15.0

        timed = entry.model_copy(update={"start_time": at(10), "end_time": at(10, 40)})
        assert expected_minutes(timed) == 40.0


class TestLateArrival:
    def test_late_check_in_recorded(self, engine, grid_clinic, book, clock, recalc_queue):
        entry = book(clinic_id="clinic-grid", start_time=at(9), end_time=at(9, 15))
        clock.advance(minutes=12)
        engine.check_in_patient(entry.id)

        disruptions = engine.recent_disruptions("clinic-grid")
        assert [d.type for d in disruptions] == [DisruptionType.late_arrival]
        assert disruptions[0].minutes == 12.0

    def test_on_time_check_in_is_quiet(self, engine, grid_clinic, book, clock):
        entry = book(clinic_id="clinic-grid", start_time=at(9), end_time=at(9, 15))
        clock.advance(minutes=10)
        engine.check_in_patient(entry.id)

        assert engine.recent_disruptions("clinic-grid") == []


class TestRingBuffer:
    def test_oldest_disruption_evicted(self, appointment_store, clock):
        detector = DisruptionDetector(
            appointment_store, clock=clock, limits=SystemLimits(max_disruption_buffer_size=3)
        )
        clock.current = at(12)
        for n in range(5):
            detector.check_appointment(in_service_entry(n))

        assert [d.appointment_id for d in detector.recent("clinic-1")] == ["appt-2", "appt-3", "appt-4"]

    def test_buffers_are_per_clinic(self, detector, clock):
        clock.current = at(12)
        detector.check_appointment(in_service_entry(1, clinic_id="clinic-1"))
        detector.check_appointment(in_service_entry(2, clinic_id="clinic-2"))

        assert [d.appointment_id for d in detector.recent("clinic-1")] == ["appt-1"]
        assert [d.appointment_id for d in detector.recent("clinic-2")] == ["appt-2"]


class TestSweep:
    def test_sweep_finds_overrunning_appointments(self, engine, detector, ordinal_clinic, book, clock):
        book(staff_id="dr-a")
        book(staff_id="dr-b")
        engine.call_next_patient(CallNextPatientDTO(clinic_id="clinic-1", staff_id="dr-a", date=DAY))
        clock.advance(minutes=10)
        engine.call_next_patient(CallNextPatientDTO(clinic_id="clinic-1", staff_id="dr-b", date=DAY))
        clock.advance(minutes=20)

        found = detector.sweep(DAY)
        assert [d.staff_id for d in found] == ["dr-a"]

        clock.advance(minutes=10)
        found = detector.sweep(DAY)
        assert [d.staff_id for d in found] == ["dr-b"]

    def test_sweep_pages_through_batches(self, appointment_store, engine, ordinal_clinic, book, clock):
        detector = DisruptionDetector(appointment_store, clock=clock, limits=SystemLimits(batch_process_size=2))
        for n in range(5):
            book(staff_id=f"dr-{n}")
            engine.call_next_patient(CallNextPatientDTO(clinic_id="clinic-1", staff_id=f"dr-{n}", date=DAY))
        clock.advance(hours=1)

        assert len(detector.sweep(DAY)) == 5

    def test_start_and_stop(self, detector):
        detector.start()
        assert detector._thread.is_alive()
        detector.stop()
        assert detector._thread is None
