"""Countdown timer state machine used by the overlay server.

One :class:`TimerEngine` owns the authoritative state of a single countdown.
While the timer runs the absolute ``end_time`` is the source of truth; while
paused (or idle) the stored ``remaining`` value is.  A short grace window after
every authoritative write suppresses recomputation so that the first poll after
``start`` never reports a near-zero value caused by clock skew.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Mapping, Optional

LOGGER = logging.getLogger("stream_countdown.timer")

GRACE_WINDOW_SECONDS = 2.0
AUTO_EXTEND_DELAY_SECONDS = 30.0
AUTO_EXTEND_SECONDS = 300
DEFAULT_MINUTES = 20
DEFAULT_LANGUAGE = "en"


def coerce_minutes(value: object) -> float:
    """Return a usable countdown length in minutes.

    Anything that is not a finite number worth at least one second falls
    back to :data:`DEFAULT_MINUTES` instead of raising.
    """

    if isinstance(value, bool):
        return float(DEFAULT_MINUTES)
    try:
        minutes = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return float(DEFAULT_MINUTES)
    if not math.isfinite(minutes) or minutes * 60 < 1:
        return float(DEFAULT_MINUTES)
    return minutes


@dataclass
class TimerState:
    duration: int = 0
    remaining: int = 0
    end_time: Optional[float] = None
    is_running: bool = False
    is_paused: bool = False
    auto_extend_time: Optional[float] = None
    last_update_time: Optional[float] = None
    language: str = DEFAULT_LANGUAGE
    was_skipped: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_dict(raw: Mapping[str, Any]) -> "TimerState":
        state = TimerState()
        if not isinstance(raw, Mapping):
            return state

        for key in ("duration", "remaining"):
            try:
                setattr(state, key, max(0, int(raw.get(key, 0))))
            except (TypeError, ValueError):
                setattr(state, key, 0)

        for key in ("end_time", "auto_extend_time", "last_update_time"):
            value = raw.get(key)
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                setattr(state, key, float(value))

        state.is_running = bool(raw.get("is_running"))
        state.is_paused = bool(raw.get("is_paused")) and state.is_running
        state.was_skipped = bool(raw.get("was_skipped"))
        language = raw.get("language")
        if isinstance(language, str) and language.strip():
            state.language = language.strip()

        if state.is_running and not state.is_paused and state.end_time is None:
            # A running timer without an end time cannot be recomputed.
            state.is_running = False
        if not state.is_running or state.is_paused:
            state.end_time = None
        return state


class TimerEngine:
    """Owns one countdown's time state.

    All public methods are safe to call from the HTTP request threads and the
    session's recurring tick task at the same time.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._state = TimerState()

    def start(self, minutes: object) -> Dict[str, Any]:
        minutes_value = coerce_minutes(minutes)
        with self._lock:
            now = self._clock()
            duration = int(minutes_value * 60)
            state = self._state
            state.duration = duration
            state.remaining = duration
            state.end_time = now + duration
            state.is_running = True
            state.is_paused = False
            state.auto_extend_time = None
            state.last_update_time = now
            state.was_skipped = False
            LOGGER.info("Countdown started for %s seconds", duration)
            return state.to_dict()

    def pause(self) -> Dict[str, Any]:
        with self._lock:
            state = self._state
            if state.is_running and not state.is_paused and state.end_time is not None:
                now = self._clock()
                state.remaining = max(0, int(round(state.end_time - now)))
                state.is_paused = True
                state.end_time = None
                state.last_update_time = None
                LOGGER.info("Countdown paused with %s seconds left", state.remaining)
            return state.to_dict()

    def resume(self) -> Dict[str, Any]:
        with self._lock:
            state = self._state
            if state.is_paused:
                now = self._clock()
                state.end_time = now + state.remaining
                state.is_paused = False
                state.last_update_time = now
                LOGGER.info("Countdown resumed with %s seconds left", state.remaining)
            return state.to_dict()

    def reset(self) -> Dict[str, Any]:
        with self._lock:
            previous = self._state
            if previous.is_running and not previous.is_paused:
                remaining = self._derive_remaining_locked(self._clock())
            else:
                remaining = previous.remaining
            was_skipped = previous.is_running and remaining > 0

            self._state = TimerState(language=previous.language, was_skipped=was_skipped)
            if was_skipped:
                LOGGER.info("Countdown reset with %s seconds left", remaining)
            else:
                LOGGER.info("Countdown reset")
            return self._state.to_dict()

    def set_language(self, language: object) -> Dict[str, Any]:
        with self._lock:
            if isinstance(language, str) and language.strip():
                self._state.language = language.strip()
            return self._state.to_dict()

    def tick(self) -> bool:
        """Advance the countdown. Returns True when an auto-extension happened."""

        with self._lock:
            state = self._state
            if not state.is_running or state.is_paused or state.end_time is None:
                return False

            now = self._clock()
            if self._in_grace_window_locked(now):
                return False

            state.remaining = self._derive_remaining_locked(now)
            if state.remaining <= 0 and state.auto_extend_time is None:
                state.auto_extend_time = now + AUTO_EXTEND_DELAY_SECONDS
                LOGGER.info(
                    "Countdown expired; extending in %s seconds unless reset",
                    AUTO_EXTEND_DELAY_SECONDS,
                )

            if state.auto_extend_time is not None and now >= state.auto_extend_time:
                state.duration += AUTO_EXTEND_SECONDS
                state.remaining = AUTO_EXTEND_SECONDS
                state.end_time = now + AUTO_EXTEND_SECONDS
                state.auto_extend_time = None
                state.last_update_time = now
                LOGGER.info("Countdown auto-extended by %s seconds", AUTO_EXTEND_SECONDS)
                return True
            return False

    def status(self) -> Dict[str, Any]:
        with self._lock:
            snapshot = self._state.to_dict()
            state = self._state
            if state.is_running and not state.is_paused and state.end_time is not None:
                now = self._clock()
                if not self._in_grace_window_locked(now):
                    snapshot["remaining"] = self._derive_remaining_locked(now)
            return snapshot

    def restore(self, raw: Mapping[str, Any]) -> Dict[str, Any]:
        with self._lock:
            self._state = TimerState.from_dict(raw)
            return self._state.to_dict()

    def _in_grace_window_locked(self, now: float) -> bool:
        last_update = self._state.last_update_time
        return last_update is not None and now - last_update < GRACE_WINDOW_SECONDS

    def _derive_remaining_locked(self, now: float) -> int:
        end_time = self._state.end_time
        if end_time is None:
            return self._state.remaining
        return max(0, int(math.floor(end_time - now)))


def format_countdown(seconds: object) -> str:
    try:
        total = int(seconds)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        total = 0
    total = max(0, total)
    return f"{total // 60}:{total % 60:02d}"


def format_end_time(status: Mapping[str, Any], now: Optional[float] = None) -> str:
    """Wall-clock time at which the countdown will reach zero, as ``HH:MM``."""

    if not status.get("is_running"):
        return "--:--"
    current = time.time() if now is None else now
    end_time = status.get("end_time")
    if status.get("is_paused") or not isinstance(end_time, (int, float)):
        try:
            end_time = current + float(status.get("remaining") or 0)
        except (TypeError, ValueError):
            return "--:--"
    return datetime.fromtimestamp(end_time).strftime("%H:%M")
