#!/usr/bin/env python3
"""
Queue Recalculation Worker

Rebuilds cached wait-time estimates after disruptions.  Requests arrive as
messages on an inbox; requests for the same (clinic, staff, date) that land
inside the debounce window collapse into one unit of work, due one window
after the first request.  Running a unit twice is harmless: it only drops
and rebuilds a cache entry.

Usage:
    python recalc_worker.py

Environment Variables:
    DATABASE_URL - SQLite database path
    REDIS_URL - Redis connection URL (optional, shared estimate cache)
    QUEUE_RECALCULATION_DEBOUNCE_MS - coalescing window, default 2000
"""

from __future__ import annotations

import logging
import queue
import sys
import threading
from datetime import date, datetime, timedelta
from typing import Callable, Dict, List, NamedTuple, Optional

from config import LIMITS, SystemClock

logger = logging.getLogger(__name__)


class RecalcKey(NamedTuple):
    clinic_id: str
    staff_id: str
    day: date


class RecalculationQueue:
    """Inbox plus the pending set of coalesced keys."""

    def __init__(self, debounce_ms: Optional[int] = None, clock=None) -> None:
        self.debounce = timedelta(milliseconds=debounce_ms if debounce_ms is not None else LIMITS.recalculation_debounce_ms)
        self.clock = clock or SystemClock()
        self.inbox: "queue.Queue[RecalcKey]" = queue.Queue()
        self._pending: Dict[RecalcKey, datetime] = {}
        self.stats = {"submitted": 0, "coalesced": 0, "processed": 0, "failed": 0}
        # Guards stats and the pending set; submit runs on request threads.
        self._lock = threading.Lock()

    def count(self, name: str) -> None:
        with self._lock:
            self.stats[name] += 1

    def submit(self, clinic_id: str, staff_id: str, day: date) -> None:
        self.count("submitted")
        self.inbox.put(RecalcKey(clinic_id, staff_id, day))

    def collect(self, timeout: Optional[float] = None) -> int:
        """Move inbox messages into the pending set.

        Blocks up to ``timeout`` seconds for the first message when a timeout
        is given, then takes whatever else is already waiting.
        """
        moved = 0
        block = timeout is not None
        while True:
            try:
                key = self.inbox.get(block=block, timeout=timeout)
            except queue.Empty:
                return moved
            block = False
            with self._lock:
                if key in self._pending:
                    self.stats["coalesced"] += 1
                else:
                    self._pending[key] = self.clock.now() + self.debounce
            moved += 1

    def pop_due(self, now: Optional[datetime] = None) -> List[RecalcKey]:
        now = now or self.clock.now()
        with self._lock:
            due = [key for key, due_at in self._pending.items() if due_at <= now]
            for key in due:
                del self._pending[key]
        return due

    def pending(self) -> List[RecalcKey]:
        with self._lock:
            return list(self._pending)

    def next_due(self) -> Optional[datetime]:
        with self._lock:
            return min(self._pending.values()) if self._pending else None

    def snapshot(self) -> dict:
        with self._lock:
            return {**self.stats, "pending": len(self._pending)}


class RecalculationWorker:
    """Background thread draining a :class:`RecalculationQueue`."""

    def __init__(
        self,
        recalc_queue: RecalculationQueue,
        handler: Callable[[RecalcKey], None],
        poll_interval: float = 0.5,
    ) -> None:
        self.queue = recalc_queue
        self.handler = handler
        self.poll_interval = poll_interval
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_pending(self, now: Optional[datetime] = None) -> List[RecalcKey]:
        """Collect queued requests and run every unit that is due."""
        self.queue.collect()
        done = []
        for key in self.queue.pop_due(now):
            try:
                self.handler(key)
                self.queue.count("processed")
                done.append(key)
            except Exception as e:
                self.queue.count("failed")
                logger.warning(f"Recalculation failed for {key.clinic_id}/{key.staff_id}/{key.day}: {e}")
        return done

    def process_requests(self) -> None:
        """Main worker loop."""
        logger.info("Recalculation worker started")
        while not self._stop.is_set():
            try:
                self.queue.collect(timeout=self.poll_interval)
                self.run_pending()
            except Exception as e:
                logger.error(f"Error processing recalculation requests: {e}")
                self._stop.wait(1)
        logger.info("Recalculation worker stopped")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self.process_requests, name="recalc-worker", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def get_stats(self) -> dict:
        return {
            **self.queue.snapshot(),
            "worker_status": "running" if self._thread is not None and self._thread.is_alive() else "stopped",
        }


def main():
    """Run the recalculation worker and disruption sweep as a standalone process."""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    from queue_engine import build_engine

    engine = build_engine()
    engine.start_background()
    logger.info("Clinic queue recalculation worker running, press Ctrl+C to stop")
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        logger.info("Worker stopped by user")
    finally:
        engine.stop_background()


if __name__ == "__main__":
    main()
