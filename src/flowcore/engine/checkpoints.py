# src/flowcore/engine/checkpoints.py
from __future__ import annotations

import threading
from typing import Optional

from flowcore.logging import get_logger

from .controller import JobController

_LOG = get_logger(__name__)


class CheckpointTimer:
    """
    Background loop that snapshots every job at a fixed interval.

    checkpoint() is idempotent, so a tick racing a transition is harmless.
    """

    def __init__(self, controller: JobController, interval_s: float) -> None:
        if interval_s <= 0:
            raise ValueError("interval_s must be > 0")
        self._controller = controller
        self._interval_s = interval_s
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        _LOG.info("Starting checkpoint timer: interval_s=%.1f", self._interval_s)
        self._stop.clear()
        self._thread = threading.Thread(target=self._run_loop, name="flowcore-checkpoints", daemon=True)
        self._thread.start()

    def stop(self, *, timeout_s: float = 5.0) -> None:
        """Stops the loop after one final pass."""
        _LOG.info("Stopping checkpoint timer...")
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=timeout_s)
        self.tick()
        _LOG.info("Checkpoint timer stopped.")

    def tick(self) -> int:
        try:
            saved = self._controller.checkpoint_all()
        except Exception:
            _LOG.exception("Checkpoint pass failed (continuing).")
            return 0
        _LOG.debug("Checkpointed %d job(s)", saved)
        return saved

    def _run_loop(self) -> None:
        while not self._stop.wait(timeout=self._interval_s):
            self.tick()
