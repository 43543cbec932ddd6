"""Queue event publishing.

Events tell listeners that a staff member's queue changed; listeners are
expected to re-read the schedule rather than trust the payload.  Each
event goes to in-process subscribers and, when Redis is configured, to
the ``clinic:{clinic_id}:queue`` channel.  Publishing happens after the
mutation has committed, so a failed delivery is logged and dropped.
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
import datetime as dt
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from models import EventType

logger = logging.getLogger(__name__)

CHANNEL_PATTERN = "clinic:*:queue"


def channel_for(clinic_id: str) -> str:
    return f"clinic:{clinic_id}:queue"


class QueueEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    event_type: EventType
    clinic_id: str
    staff_id: str
    date: dt.date
    appointment_ids: List[str]
    occurred_at: datetime
    payload: Dict[str, Any] = Field(default_factory=dict)


Subscriber = Callable[[QueueEvent], None]


class EventPublisher:
    def __init__(self, redis_client=None) -> None:
        self.redis = redis_client
        self._subscribers: List[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register ``callback``; the returned function unregisters it."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, event: QueueEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception as e:
                logger.warning(f"Subscriber failed on {event.event_type.value} {event.event_id}: {e}")

        if self.redis is not None:
            try:
                self.redis.publish(channel_for(event.clinic_id), event.model_dump_json())
            except Exception as e:
                logger.warning(f"Redis publish error: {e}")

    def publish_all(self, events: List[QueueEvent]) -> None:
        for event in events:
            self.publish(event)


def decode_event(raw: str) -> Optional[QueueEvent]:
    """Parse an event read back from a Redis channel."""
    try:
        return QueueEvent.model_validate(json.loads(raw))
    except (ValueError, TypeError) as e:
        logger.warning(f"Dropping malformed queue event: {e}")
        return None
