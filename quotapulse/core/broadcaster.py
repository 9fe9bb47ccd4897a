import threading
from typing import Callable

from quotapulse.models import PulseState
from quotapulse.observability.logger import get_logger

log = get_logger("broadcaster")

Subscriber = Callable[[PulseState], None]


class Subscription:
    """Handle returned by `subscribe`; closing it more than once is harmless."""

    def __init__(self, broadcaster: "PulseBroadcaster", callback: Subscriber):
        self._broadcaster = broadcaster
        self._callback = callback
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self):
        if self._closed:
            return
        self._closed = True
        self._broadcaster._remove(self._callback)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


class PulseBroadcaster:
    """Fans published states out to subscribers, in publish order.

    Subscribers may subscribe or unsubscribe from any thread, including from
    inside a callback; each publish delivers to a snapshot of the list.
    """

    def __init__(self):
        self._subscribers: list[Subscriber] = []
        self._lock = threading.Lock()
        self._publish_lock = threading.RLock()
        self._latest: PulseState | None = None

    @property
    def latest(self) -> PulseState | None:
        return self._latest

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def subscribe(self, callback: Subscriber) -> Subscription:
        with self._lock:
            self._subscribers.append(callback)
            total = len(self._subscribers)
        log.debug("subscriber_added", total=total)
        return Subscription(self, callback)

    def _remove(self, callback: Subscriber):
        with self._lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)
            total = len(self._subscribers)
        log.debug("subscriber_removed", total=total)

    def publish(self, state: PulseState):
        with self._publish_lock:
            self._latest = state
            with self._lock:
                targets = list(self._subscribers)
            for callback in targets:
                try:
                    callback(state)
                except Exception as e:
                    log.error("subscriber_failed", error=str(e))
