"""Wait-time estimation for a staff member's queue.

Durations come from completed appointments of the same clinic and type in
the trailing lookback window.  :class:`HistoricalDurationModel` turns that
sample into a projected duration and a confidence score; below the
confidence threshold the rule-based default wins (type duration or the
clinic's average, plus buffer).

Estimates are advisory.  They are cached per (clinic, staff, day) for a
short TTL, in Redis when ``REDIS_URL`` is configured and in process memory
otherwise, and every write to that queue drops the cached copy.
"""

from __future__ import annotations

import json
import logging
import statistics
import threading
from datetime import date, datetime, time, timedelta
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import store
from config import DEFAULTS, LIMITS, QueueDefaults, SystemClock, SystemLimits, resolve_thresholds, type_duration
from models import AppointmentType, QueueMode, QueueState
from schemas import (
    ClinicQueueConfig,
    DurationEstimate,
    EntryEstimate,
    EstimationSource,
    QueueEntry,
)
from slots import working_ranges

logger = logging.getLogger(__name__)

# (clinic_id, appointment_type, durations) -> (minutes, confidence)
Predictor = Callable[[str, str, Sequence[float]], Tuple[float, float]]


class HistoricalDurationModel:
    """Mean of past durations, trusted more with more and steadier samples."""

    full_confidence_samples = 20

    def predict(self, durations: Sequence[float]) -> Tuple[Optional[float], float]:
        n = len(durations)
        if n == 0:
            return None, 0.0
        mean = statistics.fmean(durations)
        if n < 2 or mean <= 0:
            return mean, 0.0
        cv = statistics.stdev(durations) / mean
        confidence = min(1.0, n / self.full_confidence_samples) * (1 - min(cv, 1.0) / 2)
        return mean, round(confidence, 3)


class EstimateCache:
    def __init__(self, ttl_ms: int, clock=None, redis_client=None) -> None:
        self.ttl_ms = ttl_ms
        self.clock = clock or SystemClock()
        self.redis = redis_client
        self._local: Dict[str, Tuple[datetime, List[EntryEstimate]]] = {}
        self._lock = threading.Lock()

    @staticmethod
    def key(clinic_id: str, staff_id: str, day: date) -> str:
        return f"queue:estimates:{clinic_id}:{staff_id}:{day.isoformat()}"

    def get(self, key: str) -> Optional[List[EntryEstimate]]:
        if self.redis is not None:
            try:
                cached = self.redis.get(key)
                if cached:
                    return [EntryEstimate.model_validate(item) for item in json.loads(cached)]
            except Exception as e:
                logger.warning(f"Redis get error: {e}")
            return None
        with self._lock:
            hit = self._local.get(key)
            if hit is None:
                return None
            stored_at, estimates = hit
            if self.clock.now() - stored_at >= timedelta(milliseconds=self.ttl_ms):
                self._local.pop(key, None)
                return None
        return estimates

    def set(self, key: str, estimates: List[EntryEstimate]) -> None:
        if self.redis is not None:
            try:
                payload = json.dumps([e.model_dump(mode="json") for e in estimates])
                self.redis.psetex(key, self.ttl_ms, payload)
            except Exception as e:
                logger.warning(f"Redis cache error: {e}")
            return
        now = self.clock.now()
        with self._lock:
            self._prune(now)
            self._local[key] = (now, estimates)

    def _prune(self, now: datetime) -> None:
        """Drop every local entry past its TTL."""
        ttl = timedelta(milliseconds=self.ttl_ms)
        for stale in [k for k, (stored_at, _) in self._local.items() if now - stored_at >= ttl]:
            del self._local[stale]

    def invalidate(self, key: str) -> None:
        if self.redis is not None:
            try:
                self.redis.delete(key)
            except Exception as e:
                logger.warning(f"Redis delete error: {e}")
            return
        with self._lock:
            self._local.pop(key, None)


class WaitTimeEstimator:
    def __init__(
        self,
        appointment_store: store.AppointmentStore,
        clock=None,
        defaults: Optional[QueueDefaults] = None,
        limits: Optional[SystemLimits] = None,
        model: Optional[HistoricalDurationModel] = None,
        predictor: Optional[Predictor] = None,
        cache: Optional[EstimateCache] = None,
    ) -> None:
        self.store = appointment_store
        self.clock = clock or SystemClock()
        self.defaults = defaults or DEFAULTS
        self.limits = limits or LIMITS
        self.model = model or HistoricalDurationModel()
        self.predictor = predictor
        self.cache = cache or EstimateCache(self.limits.estimation_cache_ttl_ms, clock=self.clock)

    # ----- durations -----

    def rule_based_minutes(self, clinic_config: ClinicQueueConfig, appointment_type: str) -> float:
        thresholds = resolve_thresholds(clinic_config, self.defaults)
        if clinic_config.average_appointment_duration:
            base = clinic_config.average_appointment_duration
        else:
            base = type_duration(appointment_type, thresholds)
        return float(base + clinic_config.buffer_time)

    def estimate_duration(
        self,
        conn,
        clinic_config: ClinicQueueConfig,
        appointment_type: AppointmentType,
        day: date,
    ) -> DurationEstimate:
        thresholds = resolve_thresholds(clinic_config, self.defaults)
        since = day - timedelta(days=thresholds.historical_lookback_days)
        durations = store.completed_durations(conn, clinic_config.clinic_id, appointment_type, since, day)

        minutes, confidence = self._project(clinic_config.clinic_id, appointment_type, durations)
        if minutes is not None and confidence >= thresholds.ml_confidence_threshold:
            return DurationEstimate(
                appointment_type=appointment_type,
                minutes=round(minutes, 1),
                source=EstimationSource.ml,
                confidence=confidence,
                sample_size=len(durations),
            )

        logger.debug(
            f"Confidence {confidence} below {thresholds.ml_confidence_threshold} for "
            f"{appointment_type.value} at {clinic_config.clinic_id}, using rule-based duration"
        )
        return DurationEstimate(
            appointment_type=appointment_type,
            minutes=self.rule_based_minutes(clinic_config, appointment_type),
            source=EstimationSource.rule_based,
            confidence=confidence,
            sample_size=len(durations),
        )

    def _project(self, clinic_id: str, appointment_type: AppointmentType, durations: List[float]):
        if self.predictor is not None:
            try:
                return self.predictor(clinic_id, appointment_type.value, durations)
            except Exception as e:
                logger.warning(f"Duration predictor failed, using historical model: {e}")
        return self.model.predict(durations)

    # ----- queue -----

    def estimate_queue(
        self,
        clinic_config: ClinicQueueConfig,
        staff_id: str,
        day: date,
        use_cache: bool = True,
    ) -> List[EntryEstimate]:
        """Estimated start and wait for every queued entry, in position order."""
        key = EstimateCache.key(clinic_config.clinic_id, staff_id, day)
        if use_cache:
            cached = self.cache.get(key)
            if cached is not None:
                return cached

        with self.store.reading() as conn:
            entries = store.list_day(conn, clinic_config.clinic_id, staff_id, day)
            durations: Dict[AppointmentType, DurationEstimate] = {}

            def duration_for(entry: QueueEntry) -> DurationEstimate:
                if entry.appointment_type not in durations:
                    durations[entry.appointment_type] = self.estimate_duration(
                        conn, clinic_config, entry.appointment_type, day
                    )
                return durations[entry.appointment_type]

            estimates = self._walk_queue(clinic_config, day, entries, duration_for)

        self.cache.set(key, estimates)
        return estimates

    def _walk_queue(self, clinic_config, day, entries, duration_for) -> List[EntryEstimate]:
        now = self.clock.now()
        cursor = max(now, self._day_opening(clinic_config, day))
        for entry in entries:
            if entry.queue_state == QueueState.in_service and entry.actual_start is not None:
                expected_end = entry.actual_start + timedelta(minutes=duration_for(entry).minutes)
                cursor = max(cursor, expected_end)

        estimates = []
        for entry in entries:
            if entry.queue_state != QueueState.queued:
                continue
            duration = duration_for(entry)
            start = cursor
            if clinic_config.queue_mode == QueueMode.time_grid_fixed and entry.start_time is not None:
                start = max(cursor, entry.start_time)
            cursor = start + timedelta(minutes=duration.minutes)
            wait = max(0, round((start - now).total_seconds() / 60))
            estimates.append(
                EntryEstimate(
                    appointment_id=entry.id,
                    queue_position=entry.queue_position,
                    estimated_start=start,
                    estimated_wait_minutes=wait,
                    duration_minutes=duration.minutes,
                    source=duration.source,
                    confidence=duration.confidence,
                )
            )
        return estimates

    @staticmethod
    def _day_opening(clinic_config: ClinicQueueConfig, day: date) -> datetime:
        ranges = working_ranges(clinic_config, day)
        if ranges:
            return min(opens for opens, _ in ranges)
        return datetime.combine(day, time.min)

    def operating_mode(self, estimates: List[EntryEstimate]) -> EstimationSource:
        if any(e.source == EstimationSource.ml for e in estimates):
            return EstimationSource.ml
        return EstimationSource.rule_based

    def invalidate(self, clinic_id: str, staff_id: str, day: date) -> None:
        self.cache.invalidate(EstimateCache.key(clinic_id, staff_id, day))

    def refresh(self, clinic_config: ClinicQueueConfig, staff_id: str, day: date) -> List[EntryEstimate]:
        self.invalidate(clinic_config.clinic_id, staff_id, day)
        return self.estimate_queue(clinic_config, staff_id, day, use_cache=False)
