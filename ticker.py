"""Background task that invokes a callback at a fixed interval."""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

LOGGER = logging.getLogger("stream_countdown.ticker")


class RecurringTask:
    """Runs ``callback`` every ``interval`` seconds on a daemon thread.

    Each run completes before the next one is scheduled, so the callback never
    overlaps with itself.
    """

    def __init__(self, interval: float, callback: Callable[[], object], *, name: str) -> None:
        self.interval = max(0.05, float(interval))
        self.name = name
        self._callback = callback
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._stop_event: Optional[threading.Event] = None

    def start(self) -> None:
        with self._lock:
            if self._thread and self._thread.is_alive():
                return
            stop_event = threading.Event()
            thread = threading.Thread(
                target=self._run,
                args=(stop_event,),
                name=self.name,
                daemon=True,
            )
            self._stop_event = stop_event
            self._thread = thread
        thread.start()

    def stop(self, timeout: Optional[float] = 2.0) -> None:
        with self._lock:
            thread = self._thread
            if self._stop_event:
                self._stop_event.set()
            self._stop_event = None
            self._thread = None
        if thread and thread is not threading.current_thread():
            thread.join(timeout=timeout)

    def is_running(self) -> bool:
        with self._lock:
            return bool(self._thread and self._thread.is_alive())

    def _run(self, stop_event: threading.Event) -> None:
        while not stop_event.wait(self.interval):
            try:
                self._callback()
            except Exception:
                LOGGER.exception("Recurring task %s failed", self.name)
