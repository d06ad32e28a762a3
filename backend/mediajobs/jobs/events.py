"""
In-process event bus for job lifecycle notifications.

The JobQueue publishes one JobEvent per mutation. Listeners (the HTTP
event stream, the CLI, tests) subscribe and receive events synchronously,
in registration order.

Design rules:
- Copy-on-write listener list: subscribe/unsubscribe from inside a listener
  never affects the delivery pass already in progress
- A listener that raises is logged and skipped; delivery continues
- No persistence, no replay
"""

import logging
import threading
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from .models import utcnow

logger = logging.getLogger(__name__)


class JobEventType(str, Enum):
    """Event names pushed to subscribers and the UI bridge."""

    CREATED = "job:created"
    STAGE_CHANGED = "job:stage-changed"
    PROGRESS = "job:progress"
    FAILED = "job:failed"
    CANCELLED = "job:cancelled"
    REMOVED = "job:removed"


class JobEvent(BaseModel):
    """
    A single job lifecycle notification.

    payload carries the event-specific fields already in wire (camelCase) form:
    - job:created        {job}
    - job:stage-changed  {oldStatus, newStatus}
    - job:progress       {current, total, message, percent}
    - job:failed         {error}
    - job:cancelled      {}
    - job:removed        {}
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    type: JobEventType
    job_id: str
    timestamp: datetime = Field(default_factory=utcnow)
    payload: Dict[str, Any] = Field(default_factory=dict)

    def to_wire(self) -> Dict[str, Any]:
        """Flatten to the message shape sent to the presentation layer."""
        message: Dict[str, Any] = {"type": self.type.value, "jobId": self.job_id}
        message.update(self.payload)
        message["timestamp"] = self.timestamp.isoformat()
        return message


Listener = Callable[[JobEvent], None]


class Subscription:
    """
    Handle returned by EventBus.subscribe().

    Call it (or .unsubscribe()) to stop receiving events. Idempotent.
    Usable as a context manager.
    """

    def __init__(self, bus: "EventBus", token: int):
        self._bus = bus
        self._token = token

    @property
    def active(self) -> bool:
        return self._bus._has_token(self._token)

    def unsubscribe(self) -> bool:
        """Remove the listener. Returns False if it was already removed."""
        return self._bus._remove(self._token)

    __call__ = unsubscribe

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.unsubscribe()


class EventBus:
    """
    Synchronous publish/subscribe channel.

    Constructed once by the application and injected where needed.
    """

    def __init__(self):
        self._lock = threading.Lock()
        # Replaced wholesale on every change; publish() iterates a snapshot
        self._listeners: Tuple[Tuple[int, Listener], ...] = ()
        self._next_token = 0

    def subscribe(self, listener: Listener) -> Subscription:
        """
        Register a listener.

        Args:
            listener: Callable receiving each JobEvent

        Returns:
            Subscription handle used to unsubscribe

        Raises:
            TypeError: If listener is not callable
        """
        if not callable(listener):
            raise TypeError("listener must be callable")

        with self._lock:
            self._next_token += 1
            token = self._next_token
            self._listeners = self._listeners + ((token, listener),)

        logger.debug(f"[EVENTS] Listener {token} subscribed ({len(self._listeners)} total)")
        return Subscription(self, token)

    def publish(self, event: JobEvent) -> int:
        """
        Deliver an event to every current listener, in registration order.

        Listeners added or removed during delivery take effect on the next publish.

        Returns:
            Number of listeners that handled the event without raising
        """
        listeners = self._listeners
        delivered = 0
        for token, listener in listeners:
            try:
                listener(event)
                delivered += 1
            except Exception:
                logger.exception(
                    f"[EVENTS] Listener {token} raised while handling {event.type.value} "
                    f"for job {event.job_id}"
                )
        return delivered

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def clear(self) -> None:
        """Remove all listeners."""
        with self._lock:
            self._listeners = ()

    def _remove(self, token: int) -> bool:
        with self._lock:
            remaining = tuple(entry for entry in self._listeners if entry[0] != token)
            if len(remaining) == len(self._listeners):
                return False
            self._listeners = remaining
        logger.debug(f"[EVENTS] Listener {token} unsubscribed")
        return True

    def _has_token(self, token: int) -> bool:
        return any(entry[0] == token for entry in self._listeners)


def make_event(event_type: JobEventType, job_id: str, timestamp: Optional[datetime] = None, **payload: Any) -> JobEvent:
    """Build a JobEvent, defaulting the timestamp to now."""
    if timestamp is None:
        timestamp = utcnow()
    return JobEvent(type=event_type, job_id=job_id, timestamp=timestamp, payload=payload)
