"""
Tests for system defaults, clinic overrides and the appointment type table.
"""

import config
from config import QueueDefaults, load_defaults, load_limits, resolve_thresholds, type_duration
from models import AppointmentType
from schemas import ClinicQueueConfig


class TestDefaults:
    def test_system_values(self):
        defaults = QueueDefaults()
        assert defaults.late_arrival_threshold_minutes == 10
        assert defaults.run_over_threshold_minutes == 10
        assert defaults.default_appointment_duration_minutes == 15
        assert defaults.historical_lookback_days == 30
        assert defaults.ml_confidence_threshold == 0.3
        assert defaults.periodic_check_interval_minutes == 5

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("QUEUE_RUN_OVER_THRESHOLD_MINUTES", "20")
        monkeypatch.setenv("QUEUE_ML_CONFIDENCE_THRESHOLD", "0.5")
        monkeypatch.setenv("QUEUE_RECALCULATION_DEBOUNCE_MS", "500")

        assert load_defaults().run_over_threshold_minutes == 20
        assert load_defaults().ml_confidence_threshold == 0.5
        assert load_limits().recalculation_debounce_ms == 500
        assert load_limits().max_disruption_buffer_size == 10


class TestResolveThresholds:
    def test_no_clinic(self):
        assert resolve_thresholds(None) == config.DEFAULTS

    def test_clinic_overrides_win(self):
        clinic = ClinicQueueConfig(clinic_id="c", late_arrival_threshold_minutes=3, historical_lookback_days=7)
        merged = resolve_thresholds(clinic, QueueDefaults())

        assert merged.late_arrival_threshold_minutes == 3
        assert merged.historical_lookback_days == 7
        assert merged.run_over_threshold_minutes == 10

    def test_unset_overrides_keep_defaults(self):
        base = QueueDefaults(run_over_threshold_minutes=12)
        assert resolve_thresholds(ClinicQueueConfig(clinic_id="c"), base) is base


class TestTypeDuration:
    def test_known_types(self):
        assert type_duration(AppointmentType.procedure) == 30
        assert type_duration("screening") == 15

    def test_unknown_type_uses_default_duration(self):
        assert type_duration("massage", QueueDefaults(default_appointment_duration_minutes=25)) == 25
