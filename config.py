"""Configuration and clock for the queue engine.

System defaults are read from environment variables when present, the
same way the web app reads ``DATABASE_URL`` and ``REDIS_URL``.  Clinics
may override the values in :class:`QueueDefaults` through their own
settings row; :class:`SystemLimits` are fixed for every clinic.
"""

from __future__ import annotations

import logging
import os
from datetime import datetime
from typing import Optional

import redis
from pydantic import BaseModel

logger = logging.getLogger(__name__)

PROJECT_DIR = os.path.dirname(os.path.abspath(__file__))
DEFAULT_DB_FILENAME = os.path.join(PROJECT_DIR, "queue.db")

DATABASE_URL = os.getenv("DATABASE_URL", DEFAULT_DB_FILENAME)
REDIS_URL = os.getenv("REDIS_URL")
PORT = int(os.getenv("PORT", 8000))


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value else default


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value else default


class QueueDefaults(BaseModel):
    """Thresholds a clinic may override in its settings."""

    late_arrival_threshold_minutes: int = 10
    run_over_threshold_minutes: int = 10
    default_appointment_duration_minutes: int = 15
    historical_lookback_days: int = 30
    ml_confidence_threshold: float = 0.3
    periodic_check_interval_minutes: int = 5


class SystemLimits(BaseModel):
    max_disruption_buffer_size: int = 10
    recalculation_debounce_ms: int = 2000
    estimation_cache_ttl_ms: int = 30000
    batch_process_size: int = 50


def load_defaults() -> QueueDefaults:
    return QueueDefaults(
        late_arrival_threshold_minutes=_env_int("QUEUE_LATE_ARRIVAL_THRESHOLD_MINUTES", 10),
        run_over_threshold_minutes=_env_int("QUEUE_RUN_OVER_THRESHOLD_MINUTES", 10),
        default_appointment_duration_minutes=_env_int("QUEUE_DEFAULT_APPOINTMENT_DURATION_MINUTES", 15),
        historical_lookback_days=_env_int("QUEUE_HISTORICAL_LOOKBACK_DAYS", 30),
        ml_confidence_threshold=_env_float("QUEUE_ML_CONFIDENCE_THRESHOLD", 0.3),
        periodic_check_interval_minutes=_env_int("QUEUE_PERIODIC_CHECK_INTERVAL_MINUTES", 5),
    )


def load_limits() -> SystemLimits:
    return SystemLimits(
        max_disruption_buffer_size=_env_int("QUEUE_MAX_DISRUPTION_BUFFER_SIZE", 10),
        recalculation_debounce_ms=_env_int("QUEUE_RECALCULATION_DEBOUNCE_MS", 2000),
        estimation_cache_ttl_ms=_env_int("QUEUE_ESTIMATION_CACHE_TTL_MS", 30000),
        batch_process_size=_env_int("QUEUE_BATCH_PROCESS_SIZE", 50),
    )


DEFAULTS = load_defaults()
LIMITS = load_limits()

# Typical minutes per appointment type, used by the rule-based estimate and
# to derive the end of a fixed-grid slot when the caller leaves it out.
TYPE_DURATION_MINUTES = {
    "consultation": 15,
    "follow_up": 10,
    "emergency": 20,
    "procedure": 30,
    "vaccination": 10,
    "screening": 15,
}


def resolve_thresholds(clinic_config=None, defaults: Optional[QueueDefaults] = None) -> QueueDefaults:
    """Merge a clinic's overrides on top of the system defaults.

    ``clinic_config`` is a :class:`schemas.ClinicQueueConfig`; any override
    left as ``None`` keeps the system value.
    """
    base = defaults or DEFAULTS
    if clinic_config is None:
        return base
    overrides = {
        field: getattr(clinic_config, field)
        for field in QueueDefaults.model_fields
        if getattr(clinic_config, field, None) is not None
    }
    if not overrides:
        return base
    return base.model_copy(update=overrides)


def type_duration(appointment_type: str, defaults: Optional[QueueDefaults] = None) -> int:
    base = defaults or DEFAULTS
    key = getattr(appointment_type, "value", appointment_type)
    return TYPE_DURATION_MINUTES.get(key, base.default_appointment_duration_minutes)


class SystemClock:
    """Wall clock.  Tests swap in a clock with a settable ``now``."""

    def now(self) -> datetime:
        return datetime.now().replace(microsecond=0)


_redis_client = None


def get_redis() -> Optional[redis.Redis]:
    """Shared Redis client when ``REDIS_URL`` is configured, else ``None``."""
    global _redis_client
    if not REDIS_URL:
        return None

    if _redis_client is None:
        try:
            _redis_client = redis.from_url(REDIS_URL, decode_responses=True)
            _redis_client.ping()
        except Exception as e:
            logger.warning(f"Redis connection failed: {e}")
            _redis_client = None

    return _redis_client
