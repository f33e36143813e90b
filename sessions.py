"""Per-session countdown state.

Every session owns its own :class:`TimerEngine`, used-video tracker and
recurring tick task. The registry is the only place sessions are created or
removed; request handlers look sessions up here instead of sharing module
level state.
"""

from __future__ import annotations

import json
import logging
import os
import re
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from ticker import RecurringTask
from timer_engine import TimerEngine
from video_library import UsedVideoTracker

LOGGER = logging.getLogger("stream_countdown.sessions")

DEFAULT_SESSION_ID = "default"
SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
DEFAULT_SESSION_TTL_SECONDS = 3600.0
DEFAULT_MAX_SESSIONS = 64


def normalize_session_id(value: object) -> str:
    if isinstance(value, str):
        candidate = value.strip()
        if SESSION_ID_RE.match(candidate):
            return candidate
    return DEFAULT_SESSION_ID


@dataclass
class TimerSession:
    session_id: str
    engine: TimerEngine
    used_videos: UsedVideoTracker
    entertainment_enabled: bool = False
    created_at: float = field(default_factory=time.time)
    last_seen: float = field(default_factory=time.time)
    task: Optional[RecurringTask] = None

    def is_idle(self) -> bool:
        return not self.engine.status()["is_running"]


class SessionRegistry:
    """Creates, ticks, persists and expires timer sessions.

    A session that is not running and has not been looked up for
    ``session_ttl`` seconds is dropped along with its tick task. When more
    than ``max_sessions`` exist, the least recently seen idle sessions are
    dropped first to make room for a new one. Running timers are never
    dropped.
    """

    def __init__(
        self,
        *,
        state_dir: Optional[Path] = None,
        tick_interval: float = 1.0,
        run_ticks: bool = True,
        clock: Callable[[], float] = time.time,
        session_ttl: float = DEFAULT_SESSION_TTL_SECONDS,
        max_sessions: int = DEFAULT_MAX_SESSIONS,
    ) -> None:
        self._lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._sessions: Dict[str, TimerSession] = {}
        self._state_dir = state_dir
        self._tick_interval = tick_interval
        self._run_ticks = run_ticks
        self._clock = clock
        self._session_ttl = max(1.0, float(session_ttl))
        self._max_sessions = max(1, int(max_sessions))
        self._sweeper: Optional[RecurringTask] = None

    @property
    def state_file(self) -> Optional[Path]:
        if self._state_dir is None:
            return None
        return self._state_dir / "timer_state.json"

    def get(self, session_id: object = None) -> TimerSession:
        key = normalize_session_id(session_id)
        now = self._clock()
        with self._lock:
            session = self._sessions.get(key)
            if session is not None:
                session.last_seen = now
                return session
            expired = self._collect_expired_locked(now, reserve=1)
            session = self._create_session_locked(key, now)
        self._retire(expired)
        if session.task is not None:
            session.task.start()
        self._ensure_sweeper()
        return session

    def session_ids(self) -> List[str]:
        with self._lock:
            return sorted(self._sessions)

    def remove(self, session_id: object) -> bool:
        key = normalize_session_id(session_id)
        with self._lock:
            session = self._sessions.pop(key, None)
        if session is None:
            return False
        self._retire([session])
        return True

    def expire_idle(self) -> List[str]:
        """Drop idle sessions past their time to live. Returns their ids."""

        with self._lock:
            expired = self._collect_expired_locked(self._clock())
        self._retire(expired)
        return sorted(session.session_id for session in expired)

    def tick_session(self, session_id: str) -> None:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            return
        if session.engine.tick():
            self.save()

    def shutdown(self) -> None:
        with self._lock:
            sessions = list(self._sessions.values())
            sweeper = self._sweeper
            self._sweeper = None
        if sweeper is not None:
            sweeper.stop()
        for session in sessions:
            if session.task is not None:
                session.task.stop()

    def save(self) -> None:
        """Write a snapshot of every session's timer state to the state blob."""

        state_file = self.state_file
        if state_file is None:
            return
        with self._write_lock:
            with self._lock:
                sessions = list(self._sessions.values())
            payload = {
                "saved_at": self._clock(),
                "sessions": {
                    session.session_id: {
                        "timer": session.engine.status(),
                        "entertainment_enabled": session.entertainment_enabled,
                    }
                    for session in sessions
                },
            }
            try:
                state_file.parent.mkdir(parents=True, exist_ok=True)
                tmp_path = state_file.with_suffix(".tmp")
                with tmp_path.open("w", encoding="utf-8") as fh:
                    json.dump(payload, fh, indent=2)
                os.replace(tmp_path, state_file)
            except OSError:
                LOGGER.exception("Unable to write timer state file")

    def load(self) -> int:
        """Restore sessions from the state blob. Returns how many were loaded."""

        state_file = self.state_file
        if state_file is None or not state_file.exists():
            return 0
        try:
            with state_file.open("r", encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, json.JSONDecodeError):
            LOGGER.exception("Unable to read timer state file")
            return 0

        raw_sessions = data.get("sessions") if isinstance(data, dict) else None
        if not isinstance(raw_sessions, dict):
            LOGGER.warning("Timer state file did not contain any sessions")
            return 0

        loaded = 0
        for session_id, raw in raw_sessions.items():
            if not isinstance(raw, dict) or normalize_session_id(session_id) != session_id:
                continue
            session = self.get(session_id)
            timer_raw = raw.get("timer")
            if isinstance(timer_raw, dict):
                session.engine.restore(timer_raw)
            session.entertainment_enabled = bool(raw.get("entertainment_enabled"))
            loaded += 1
        LOGGER.info("Restored %s timer sessions", loaded)
        return loaded

    def _collect_expired_locked(self, now: float, *, reserve: int = 0) -> List[TimerSession]:
        idle = [session for session in self._sessions.values() if session.is_idle()]
        expired = [session for session in idle if now - session.last_seen >= self._session_ttl]
        expired_ids = {session.session_id for session in expired}

        overflow = len(self._sessions) - len(expired) + reserve - self._max_sessions
        if overflow > 0:
            candidates = sorted(
                (session for session in idle if session.session_id not in expired_ids),
                key=lambda session: session.last_seen,
            )
            expired.extend(candidates[:overflow])

        for session in expired:
            del self._sessions[session.session_id]
        return expired

    def _retire(self, sessions: List[TimerSession]) -> None:
        if not sessions:
            return
        for session in sessions:
            if session.task is not None:
                session.task.stop()
            LOGGER.info("Session %s removed", session.session_id)
        self.save()

    def _ensure_sweeper(self) -> None:
        if not self._run_ticks:
            return
        with self._lock:
            if self._sweeper is not None:
                return
            interval = max(1.0, min(60.0, self._session_ttl / 2))
            self._sweeper = RecurringTask(interval, self.expire_idle, name="session-sweep")
            sweeper = self._sweeper
        sweeper.start()

    def _create_session_locked(self, key: str, now: float) -> TimerSession:
        used_path = None
        if self._state_dir is not None:
            used_path = self._state_dir / f"used_videos_{key}.json"
        session = TimerSession(
            session_id=key,
            engine=TimerEngine(clock=self._clock),
            used_videos=UsedVideoTracker(used_path),
            created_at=now,
            last_seen=now,
        )
        if self._run_ticks:
            session.task = RecurringTask(
                self._tick_interval,
                lambda: self.tick_session(key),
                name=f"timer-{key}",
            )
        self._sessions[key] = session
        LOGGER.info("Session %s created", key)
        return session
