"""
Best-effort fan-out of permit changes to interested viewers.

Nothing here is part of business correctness: there is no delivery or
ordering guarantee and missed events are not kept. A subscriber that
reconnects re-fetches the permit instead of replaying events.
"""
import logging
import threading
from dataclasses import dataclass, field

from django.utils import timezone

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PermitEvent:
    name: str
    permit_id: int
    payload: dict = field(default_factory=dict)
    occurred_at: object = field(default_factory=timezone.now)

    def as_dict(self):
        return {
            'name': self.name,
            'permit_id': self.permit_id,
            'payload': self.payload,
            'occurred_at': self.occurred_at.isoformat(),
        }


class NullPublisher:
    def publish(self, event):
        pass


class EventRelay:
    def __init__(self):
        self._subscribers = []
        self._lock = threading.Lock()

    def subscribe(self, callback):
        with self._lock:
            if callback not in self._subscribers:
                self._subscribers.append(callback)
        return callback

    def unsubscribe(self, callback):
        with self._lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    def publish(self, event):
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                logger.warning("Subscriber %r failed on %s for permit %s",
                               callback, event.name, event.permit_id, exc_info=True)


def log_event(event):
    logger.info("event %s permit=%s %s", event.name, event.permit_id, event.payload)


relay = EventRelay()
