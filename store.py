"""Database access using sqlite3.

The schema itself is declared in :mod:`models` with SQLModel and created
once by :meth:`AppointmentStore.init_db`; all reads and writes go through
the built-in ``sqlite3`` module with plain SQL.  Every mutation runs inside
:meth:`AppointmentStore.transaction`, which takes the database write lock
up front (``BEGIN IMMEDIATE``) so a check followed by an insert cannot
interleave with another writer.  Unique index violations come back as
:class:`errors.ConflictError`.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

from sqlmodel import SQLModel, create_engine

import models  # noqa: F401  registers the tables on SQLModel.metadata
from config import DATABASE_URL, QueueDefaults
from errors import ConflictError, ExternalServiceError, StoreIntegrityError
from models import ACTIVE_STATUSES, AppointmentStatus
from schemas import ClinicQueueConfig, QueueEntry

logger = logging.getLogger(__name__)

_UNIQUE_CODES = {
    sqlite3.SQLITE_CONSTRAINT_UNIQUE,
    sqlite3.SQLITE_CONSTRAINT_PRIMARYKEY,
}

_ACTIVE = tuple(s.value for s in ACTIVE_STATUSES)
_ACTIVE_PLACEHOLDERS = ", ".join("?" for _ in _ACTIVE)


def to_db(value: Any) -> Any:
    """Convert a Python value into what we store in SQLite."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat(timespec="seconds")
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, bool):
        return int(value)
    return value


def translate_integrity_error(exc: sqlite3.IntegrityError) -> Exception:
    """Map a constraint failure onto the engine's error types.

    Uses the extended result code rather than the message text: a unique
    or primary key violation means another writer got there first.
    """
    code = getattr(exc, "sqlite_errorcode", None)
    if code in _UNIQUE_CODES:
        return ConflictError(f"Concurrent booking rejected by the store: {exc}")
    return StoreIntegrityError(f"Store integrity failure: {exc}")


class AppointmentStore:
    """Opens connections and runs transactions against the queue database."""

    def __init__(self, db_path: str = DATABASE_URL, timeout: float = 5.0) -> None:
        if db_path.startswith("postgres"):
            raise RuntimeError("PostgreSQL is not supported by the sqlite store")
        self.db_path = db_path
        self.timeout = timeout

    def init_db(self) -> None:
        """Create tables and indexes if they do not exist."""
        engine = create_engine(f"sqlite:///{self.db_path}")
        try:
            SQLModel.metadata.create_all(engine)
        finally:
            engine.dispose()
        conn = self.connect()
        try:
            conn.execute("PRAGMA journal_mode = WAL")
        finally:
            conn.close()

    def connect(self) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(
                self.db_path,
                timeout=self.timeout,
                isolation_level=None,
                check_same_thread=False,
            )
        except sqlite3.Error as exc:
            raise ExternalServiceError("store", str(exc)) from exc
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the block as one write transaction.

        Domain errors raised inside the block roll the transaction back and
        propagate unchanged.
        """
        conn = self.connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.execute("COMMIT")
        except sqlite3.IntegrityError as exc:
            _rollback(conn)
            error = translate_integrity_error(exc)
            if isinstance(error, StoreIntegrityError):
                logger.error(f"Store integrity failure: {exc}")
            raise error from exc
        except sqlite3.OperationalError as exc:
            _rollback(conn)
            logger.error(f"Store unavailable: {exc}")
            raise ExternalServiceError("store", str(exc)) from exc
        except BaseException:
            _rollback(conn)
            raise
        finally:
            conn.close()

    @contextmanager
    def reading(self) -> Iterator[sqlite3.Connection]:
        conn = self.connect()
        try:
            yield conn
        except sqlite3.OperationalError as exc:
            logger.error(f"Store unavailable: {exc}")
            raise ExternalServiceError("store", str(exc)) from exc
        finally:
            conn.close()


def _rollback(conn: sqlite3.Connection) -> None:
    if conn.in_transaction:
        conn.execute("ROLLBACK")


# ===== APPOINTMENTS =====


def row_to_entry(row: sqlite3.Row) -> QueueEntry:
    return QueueEntry.model_validate(dict(row))


def get_appointment(conn: sqlite3.Connection, appointment_id: str) -> Optional[QueueEntry]:
    cur = conn.execute("SELECT * FROM appointment WHERE id = ?", (appointment_id,))
    row = cur.fetchone()
    return row_to_entry(row) if row else None


def insert_appointment(conn: sqlite3.Connection, values: Dict[str, Any]) -> None:
    columns = ", ".join(values)
    placeholders = ", ".join("?" for _ in values)
    conn.execute(
        f"INSERT INTO appointment ({columns}) VALUES ({placeholders})",
        tuple(to_db(v) for v in values.values()),
    )


def update_appointment(conn: sqlite3.Connection, appointment_id: str, **fields: Any) -> None:
    assignments = ", ".join(f"{name} = ?" for name in fields)
    conn.execute(
        f"UPDATE appointment SET {assignments} WHERE id = ?",
        tuple(to_db(v) for v in fields.values()) + (appointment_id,),
    )


def list_day(conn: sqlite3.Connection, clinic_id: str, staff_id: str, day: date) -> List[QueueEntry]:
    """All entries of one staff member's day, in queue order."""
    cur = conn.execute(
        """SELECT * FROM appointment
           WHERE clinic_id = ? AND staff_id = ? AND appointment_date = ?
           ORDER BY queue_position IS NULL, queue_position, created_at""",
        (clinic_id, staff_id, to_db(day)),
    )
    return [row_to_entry(r) for r in cur.fetchall()]


def list_clinic_day(conn: sqlite3.Connection, clinic_id: str, day: date) -> List[QueueEntry]:
    cur = conn.execute(
        """SELECT * FROM appointment
           WHERE clinic_id = ? AND appointment_date = ?
           ORDER BY staff_id, queue_position""",
        (clinic_id, to_db(day)),
    )
    return [row_to_entry(r) for r in cur.fetchall()]


def find_patient_entries(conn: sqlite3.Connection, clinic_id: str, patient_id: str, day: date) -> List[QueueEntry]:
    cur = conn.execute(
        """SELECT * FROM appointment
           WHERE clinic_id = ? AND appointment_date = ?
             AND (patient_id = ? OR guest_patient_id = ?)
           ORDER BY queue_position""",
        (clinic_id, to_db(day), patient_id, patient_id),
    )
    return [row_to_entry(r) for r in cur.fetchall()]


def max_position(conn: sqlite3.Connection, staff_id: str, day: date) -> int:
    """Highest queue position ever handed out for this staff member's day."""
    cur = conn.execute(
        "SELECT MAX(queue_position) AS top FROM appointment WHERE staff_id = ? AND appointment_date = ?",
        (staff_id, to_db(day)),
    )
    row = cur.fetchone()
    return row["top"] or 0


def count_active(conn: sqlite3.Connection, clinic_id: str, staff_id: str, day: date) -> int:
    """Entries still waiting to be seen, absent-without-return excluded."""
    cur = conn.execute(
        """SELECT COUNT(*) AS n FROM appointment
           WHERE clinic_id = ? AND staff_id = ? AND appointment_date = ?
             AND status IN ('scheduled', 'waiting')
             AND NOT (skip_reason = 'patient_absent' AND returned_at IS NULL)""",
        (clinic_id, staff_id, to_db(day)),
    )
    return cur.fetchone()["n"]


def find_overlapping(
    conn: sqlite3.Connection,
    staff_id: str,
    day: date,
    start: datetime,
    end: datetime,
    exclude_id: Optional[str] = None,
) -> List[QueueEntry]:
    """Active entries whose [start, end) interval overlaps the candidate."""
    params: List[Any] = [staff_id, to_db(day), *_ACTIVE, to_db(end), to_db(start)]
    sql = f"""SELECT * FROM appointment
              WHERE staff_id = ? AND appointment_date = ?
                AND status IN ({_ACTIVE_PLACEHOLDERS})
                AND start_time IS NOT NULL AND end_time IS NOT NULL
                AND start_time < ? AND end_time > ?"""
    if exclude_id:
        sql += " AND id != ?"
        params.append(exclude_id)
    cur = conn.execute(sql + " ORDER BY start_time", tuple(params))
    return [row_to_entry(r) for r in cur.fetchall()]


def reassign_positions(conn: sqlite3.Connection, assignments: Sequence[tuple], at: datetime) -> None:
    """Apply ``(appointment_id, position)`` pairs without tripping the unique index.

    SQLite checks the index row by row, so positions are first parked on
    negative values and then written for real.
    """
    for appointment_id, _position in assignments:
        conn.execute(
            "UPDATE appointment SET queue_position = -queue_position WHERE id = ?",
            (appointment_id,),
        )
    now = to_db(at)
    for appointment_id, position in assignments:
        conn.execute(
            "UPDATE appointment SET queue_position = ?, updated_at = ? WHERE id = ?",
            (position, now, appointment_id),
        )


def completed_durations(
    conn: sqlite3.Connection,
    clinic_id: str,
    appointment_type: str,
    since: date,
    until: date,
) -> List[float]:
    cur = conn.execute(
        """SELECT actual_duration_minutes FROM appointment
           WHERE clinic_id = ? AND appointment_type = ? AND status = ?
             AND actual_duration_minutes IS NOT NULL
             AND appointment_date >= ? AND appointment_date <= ?""",
        (clinic_id, to_db(appointment_type), AppointmentStatus.completed.value, to_db(since), to_db(until)),
    )
    return [row["actual_duration_minutes"] for row in cur.fetchall()]


def in_service_entries(conn: sqlite3.Connection, day: date, limit: int, offset: int = 0) -> List[QueueEntry]:
    cur = conn.execute(
        """SELECT * FROM appointment
           WHERE appointment_date = ? AND status = 'in_progress'
           ORDER BY actual_start LIMIT ? OFFSET ?""",
        (to_db(day), limit, offset),
    )
    return [row_to_entry(r) for r in cur.fetchall()]


def status_counts(conn: sqlite3.Connection, clinic_id: str, day: date) -> Dict[str, Any]:
    cur = conn.execute(
        """SELECT
             COUNT(*) AS total,
             SUM(CASE WHEN status IN ('scheduled', 'waiting')
                       AND NOT (skip_reason = 'patient_absent' AND returned_at IS NULL)
                  THEN 1 ELSE 0 END) AS waiting,
             SUM(CASE WHEN status IN ('scheduled', 'waiting')
                       AND skip_reason = 'patient_absent' AND returned_at IS NULL
                  THEN 1 ELSE 0 END) AS absent,
             SUM(CASE WHEN status = 'in_progress' THEN 1 ELSE 0 END) AS in_progress,
             SUM(CASE WHEN status = 'completed' THEN 1 ELSE 0 END) AS completed,
             SUM(CASE WHEN status = 'cancelled' THEN 1 ELSE 0 END) AS cancelled,
             SUM(CASE WHEN status = 'no_show' THEN 1 ELSE 0 END) AS no_show,
             AVG(actual_duration_minutes) AS average_duration_minutes
           FROM appointment
           WHERE clinic_id = ? AND appointment_date = ?""",
        (clinic_id, to_db(day)),
    )
    row = dict(cur.fetchone())
    return {k: (v or 0) if k != "average_duration_minutes" else v for k, v in row.items()}


# ===== CLINIC SETTINGS =====


def get_clinic_config(conn: sqlite3.Connection, clinic_id: str) -> Optional[ClinicQueueConfig]:
    cur = conn.execute("SELECT * FROM clinic_settings WHERE clinic_id = ?", (clinic_id,))
    row = cur.fetchone()
    if not row:
        return None
    data = dict(row)
    hours = json.loads(data.pop("working_hours") or "{}")
    overrides = json.loads(data.pop("overrides") or "{}")
    data.pop("updated_at", None)
    return ClinicQueueConfig(
        **data,
        working_hours={int(k): v for k, v in hours.items()},
        **overrides,
    )


def save_clinic_config(conn: sqlite3.Connection, clinic_config: ClinicQueueConfig) -> None:
    overrides = {
        key: value
        for key, value in clinic_config.model_dump().items()
        if key in QueueDefaults.model_fields and value is not None
    }
    hours = {str(k): [list(r) for r in v] for k, v in clinic_config.working_hours.items()}
    conn.execute(
        """INSERT INTO clinic_settings
             (clinic_id, queue_mode, working_hours, buffer_time, average_appointment_duration,
              max_queue_size, allow_walk_ins, overrides, updated_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
           ON CONFLICT (clinic_id) DO UPDATE SET
             queue_mode = excluded.queue_mode,
             working_hours = excluded.working_hours,
             buffer_time = excluded.buffer_time,
             average_appointment_duration = excluded.average_appointment_duration,
             max_queue_size = excluded.max_queue_size,
             allow_walk_ins = excluded.allow_walk_ins,
             overrides = excluded.overrides,
             updated_at = excluded.updated_at""",
        (
            clinic_config.clinic_id,
            to_db(clinic_config.queue_mode),
            json.dumps(hours),
            clinic_config.buffer_time,
            clinic_config.average_appointment_duration,
            clinic_config.max_queue_size,
            to_db(clinic_config.allow_walk_ins),
            json.dumps(overrides),
            to_db(datetime.now()),
        ),
    )


# ===== AUDIT TRAIL =====


def insert_event(
    conn: sqlite3.Connection,
    event_id: str,
    event_type: str,
    clinic_id: str,
    staff_id: str,
    day: date,
    appointment_ids: Iterable[str],
    payload: Dict[str, Any],
    at: datetime,
) -> None:
    conn.execute(
        """INSERT INTO queue_event (id, event_type, clinic_id, staff_id, appointment_date,
                                    appointment_ids, payload, at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            event_id,
            to_db(event_type),
            clinic_id,
            staff_id,
            to_db(day),
            json.dumps(list(appointment_ids)),
            json.dumps(payload, default=str),
            to_db(at),
        ),
    )


def insert_override(
    conn: sqlite3.Connection,
    clinic_id: str,
    appointment_id: str,
    action: str,
    performed_by: str,
    at: datetime,
    reason: Optional[str] = None,
    previous_position: Optional[int] = None,
    new_position: Optional[int] = None,
) -> None:
    conn.execute(
        """INSERT INTO queue_override (clinic_id, appointment_id, action, performed_by, reason,
                                       previous_position, new_position, at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
        (clinic_id, appointment_id, to_db(action), performed_by, reason, previous_position, new_position, to_db(at)),
    )


def list_overrides(conn: sqlite3.Connection, appointment_id: str) -> List[Dict[str, Any]]:
    cur = conn.execute(
        "SELECT * FROM queue_override WHERE appointment_id = ? ORDER BY id",
        (appointment_id,),
    )
    return [dict(r) for r in cur.fetchall()]


def list_events(conn: sqlite3.Connection, clinic_id: str, day: date) -> List[Dict[str, Any]]:
    cur = conn.execute(
        "SELECT * FROM queue_event WHERE clinic_id = ? AND appointment_date = ? ORDER BY at, rowid",
        (clinic_id, to_db(day)),
    )
    events = []
    for row in cur.fetchall():
        data = dict(row)
        data["appointment_ids"] = json.loads(data["appointment_ids"])
        data["payload"] = json.loads(data["payload"])
        events.append(data)
    return events


def overridden_ids(conn: sqlite3.Connection, appointment_ids: Sequence[str], action: str) -> set:
    """Ids among ``appointment_ids`` with at least one override of ``action``."""
    if not appointment_ids:
        return set()
    placeholders = ", ".join("?" for _ in appointment_ids)
    cur = conn.execute(
        f"SELECT DISTINCT appointment_id FROM queue_override WHERE action = ? AND appointment_id IN ({placeholders})",
        (to_db(action), *appointment_ids),
    )
    return {row["appointment_id"] for row in cur.fetchall()}


# ===== DAY CLOSURE =====


def insert_day_closure(
    conn: sqlite3.Connection,
    closure_id: str,
    clinic_id: str,
    staff_id: str,
    day: date,
    performed_by: str,
    reason: Optional[str],
    total: int,
    no_show_ids: List[str],
    completed_ids: List[str],
    at: datetime,
) -> None:
    conn.execute(
        """INSERT INTO day_closure (id, clinic_id, staff_id, closure_date, performed_by, reason,
                                    total_appointments, no_show_ids, completed_ids, closed_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            closure_id,
            clinic_id,
            staff_id,
            to_db(day),
            performed_by,
            reason,
            total,
            json.dumps(no_show_ids),
            json.dumps(completed_ids),
            to_db(at),
        ),
    )


def get_day_closure(conn: sqlite3.Connection, staff_id: str, day: date) -> Optional[Dict[str, Any]]:
    cur = conn.execute(
        "SELECT * FROM day_closure WHERE staff_id = ? AND closure_date = ?",
        (staff_id, to_db(day)),
    )
    row = cur.fetchone()
    if not row:
        return None
    data = dict(row)
    data["no_show_ids"] = json.loads(data["no_show_ids"])
    data["completed_ids"] = json.loads(data["completed_ids"])
    return data
