# src/flowcore/engine/events.py
from __future__ import annotations

import threading
from collections import defaultdict, deque
from typing import Callable

from flowcore.domain.models import JobEvent
from flowcore.logging import get_logger

_LOG = get_logger(__name__)

Subscriber = Callable[[JobEvent], None]


class EventBus:
    """
    Fan-out of job change events to read-only subscribers.

    The controller never depends on anyone listening: a subscriber that raises
    is logged and skipped. A bounded per-job history backs polling clients.
    """

    def __init__(self, history_per_job: int = 500) -> None:
        if history_per_job <= 0:
            raise ValueError("history_per_job must be > 0")
        self._lock = threading.Lock()
        self._subscribers: list[Subscriber] = []
        self._history: dict[str, deque[JobEvent]] = defaultdict(
            lambda: deque(maxlen=history_per_job)
        )

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    def emit(self, event: JobEvent) -> None:
        with self._lock:
            self._history[event.job_id].append(event)
            subscribers = list(self._subscribers)

        for cb in subscribers:
            try:
                cb(event)
            except Exception:
                _LOG.exception("Event subscriber failed for job %s (continuing).", event.job_id)

    def recent(self, job_id: str, limit: int = 50) -> list[JobEvent]:
        with self._lock:
            history = list(self._history.get(job_id, ()))
        return history[-limit:] if limit > 0 else []

    def forget(self, job_id: str) -> None:
        with self._lock:
            self._history.pop(job_id, None)
