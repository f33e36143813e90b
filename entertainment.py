"""Entertainment scheduling that runs alongside the countdown.

The :class:`PhaseController` is polled once per display tick with the latest
timer status. It picks a playlist when a countdown starts, plays the videos
with a visible break between them and makes sure the last seconds of the
countdown are shown full size without a video on top.

The overlay passed to the controller must provide ``enlarge()``, ``shrink()``,
``play_video(path)`` and ``fade_out()``; the last two return a
``threading.Event`` that is set once playback ended or the fade finished.
The used-video store must provide ``fetch_used()``, ``mark_used(path)`` and
``reset()`` and raise :class:`UsedVideoStoreError` on transient failures.
"""

from __future__ import annotations

import dataclasses
import logging
import math
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable, List, Mapping, Optional, Set

from video_library import UsedVideoTracker, Video, VideoMetadataCache, select_videos

LOGGER = logging.getLogger("stream_countdown.entertainment")

INTRO_SECONDS = 10
OUTRO_SECONDS = 10
TRANSITION_SECONDS = 10
TRANSITION_ENLARGE_SECONDS = 5
ESTIMATED_VIDEO_SECONDS = 30
FADE_OUT_SECONDS = 5.0
PLAYBACK_OVERRUN_SECONDS = 15.0


class UsedVideoStoreError(RuntimeError):
    """The shared used-video record could not be read or written."""


class Phase(str, Enum):
    IDLE = "idle"
    INTRO = "intro"
    PLAYING = "playing"
    TRANSITION = "transition"
    OUTRO = "outro"


@dataclass
class PlaylistState:
    available_videos: List[Video] = field(default_factory=list)
    used_videos: Set[str] = field(default_factory=set)
    current_playlist: List[Video] = field(default_factory=list)
    current_video_index: int = 0
    phase: Phase = Phase.IDLE
    phase_start_time: Optional[float] = None


class TrackerUsedVideoStore:
    """Used-video store backed by an in-process :class:`UsedVideoTracker`."""

    def __init__(self, tracker: UsedVideoTracker) -> None:
        self._tracker = tracker

    def fetch_used(self) -> List[str]:
        return self._tracker.snapshot()

    def mark_used(self, path: str) -> None:
        self._tracker.mark_used(path)

    def reset(self) -> None:
        self._tracker.reset()


def _as_int(value: Any) -> int:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(number):
        return 0
    return int(number)


class PhaseController:
    def __init__(
        self,
        overlay: Any,
        used_store: Any,
        durations: VideoMetadataCache,
        *,
        clock: Callable[[], float] = time.monotonic,
        playback_overrun: float = PLAYBACK_OVERRUN_SECONDS,
        fade_timeout: float = FADE_OUT_SECONDS + 5.0,
    ) -> None:
        self._overlay = overlay
        self._store = used_store
        self._durations = durations
        self._clock = clock
        self._playback_overrun = max(0.0, float(playback_overrun))
        self._fade_timeout = max(0.0, float(fade_timeout))
        self._tick_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._generation = 0
        self._all_videos: List[Video] = []
        self._state = PlaylistState()

    def load_library(self, videos: Iterable[Video]) -> None:
        self._all_videos = list(videos)

    @property
    def state(self) -> PlaylistState:
        with self._state_lock:
            state = self._state
            return dataclasses.replace(
                state,
                available_videos=list(state.available_videos),
                used_videos=set(state.used_videos),
                current_playlist=list(state.current_playlist),
            )

    @property
    def phase(self) -> Phase:
        return self._state.phase

    def is_active(self) -> bool:
        return self._state.phase != Phase.IDLE

    def tick(self, timer_status: Mapping[str, Any], enabled: bool) -> bool:
        """Evaluate one step of the phase machine.

        Returns False without touching any state when another evaluation is
        still in flight.
        """

        if not self._tick_lock.acquire(blocking=False):
            LOGGER.debug("Phase evaluation still in progress; skipping tick")
            return False
        try:
            self._evaluate(timer_status, bool(enabled))
        except UsedVideoStoreError as exc:
            LOGGER.warning("Used video store unavailable, retrying next tick: %s", exc)
        finally:
            self._tick_lock.release()
        return True

    def reset(self) -> None:
        with self._state_lock:
            self._generation += 1
            if self._state.phase == Phase.IDLE:
                return
            self._clear_locked()

        LOGGER.info("Entertainment reset")
        self._wait(self._overlay.fade_out(), self._fade_timeout, "fade out")
        self._overlay.enlarge()

        try:
            self._store.reset()
        except UsedVideoStoreError as exc:
            LOGGER.error("Unable to reset used videos: %s", exc)
        else:
            with self._state_lock:
                self._state.used_videos = set()

    def _evaluate(self, timer_status: Mapping[str, Any], enabled: bool) -> None:
        generation = self._generation
        used = set(self._store.fetch_used())
        with self._state_lock:
            if generation != self._generation:
                return
            self._state.used_videos = used

        is_running = bool(timer_status.get("is_running"))
        remaining = _as_int(timer_status.get("remaining"))

        if not enabled or not is_running or remaining <= 0:
            if self._state.phase != Phase.IDLE:
                self._stop(generation)
            return

        if self._state.phase == Phase.IDLE:
            if not self._enter_intro(generation, _as_int(timer_status.get("duration")), used):
                return

        if self._state.phase == Phase.INTRO and self._elapsed() >= INTRO_SECONDS:
            LOGGER.info("Intro complete")
            self._overlay.shrink()
            if self._state.current_playlist:
                if not self._play_current(generation):
                    return
            else:
                LOGGER.info("No videos in playlist, entering outro")
                self._enter_outro(generation, fade=False)

        if self._state.phase == Phase.TRANSITION:
            elapsed = self._elapsed()
            if elapsed < TRANSITION_ENLARGE_SECONDS:
                self._overlay.enlarge()
            elif elapsed >= TRANSITION_SECONDS:
                upcoming = self._upcoming_video()
                time_left = remaining - OUTRO_SECONDS
                if upcoming is not None and 0 < upcoming.duration_seconds <= time_left - TRANSITION_SECONDS:
                    self._overlay.shrink()
                    if not self._play_current(generation):
                        return
                else:
                    if upcoming is None:
                        LOGGER.info("Playlist complete, entering outro")
                    else:
                        LOGGER.info("No time left for %s, entering outro", upcoming.filename)
                    self._enter_outro(generation, fade=True)

        if self._state.phase not in (Phase.OUTRO, Phase.IDLE) and remaining <= OUTRO_SECONDS:
            LOGGER.info("Countdown almost over, entering outro")
            self._enter_outro(generation, fade=True)

    def _enter_intro(self, generation: int, duration: int, used: Set[str]) -> bool:
        available_time = duration - INTRO_SECONDS - OUTRO_SECONDS
        available = [
            video
            for video in self._all_videos
            if video.path not in used and self._durations.get(video.path) is not None
        ]
        estimated_count = max(1, available_time // ESTIMATED_VIDEO_SECONDS)
        time_for_videos = available_time - estimated_count * TRANSITION_SECONDS
        playlist = select_videos(time_for_videos, available, self._durations)

        with self._state_lock:
            if generation != self._generation:
                return False
            self._state.available_videos = available
            self._state.current_playlist = playlist
            self._state.current_video_index = 0
            self._set_phase_locked(Phase.INTRO)
        self._overlay.enlarge()

        LOGGER.info("Starting entertainment; playlist has %s videos", len(playlist))
        for position, video in enumerate(playlist, start=1):
            LOGGER.info("  %s. %s (%ss)", position, video.filename, video.duration_seconds)
        return True

    def _upcoming_video(self) -> Optional[Video]:
        index = self._state.current_video_index
        playlist = self._state.current_playlist
        if index < len(playlist):
            return playlist[index]
        return None

    def _play_current(self, generation: int) -> bool:
        """Play the video at the cursor and wait for it to end.

        Returns False when a reset happened before or during playback. A
        reset that lands while the video is being marked wins: nothing is
        played and the phase stays idle.
        """

        video = self._state.current_playlist[self._state.current_video_index]
        if generation != self._generation:
            return False
        self._store.mark_used(video.path)
        with self._state_lock:
            if generation != self._generation:
                return False
            self._state.used_videos.add(video.path)
            self._set_phase_locked(Phase.PLAYING)
        LOGGER.info("Playing %s (%ss)", video.filename, video.duration_seconds)

        try:
            completion = self._overlay.play_video(video.path)
        except (OSError, RuntimeError):
            LOGGER.exception("Unable to play %s", video.path)
        else:
            self._wait(
                completion,
                video.duration_seconds + self._playback_overrun,
                f"playback of {video.filename}",
            )

        with self._state_lock:
            if generation != self._generation:
                return False
            self._state.current_video_index += 1
            self._set_phase_locked(Phase.TRANSITION)
        return True

    def _enter_outro(self, generation: int, *, fade: bool) -> None:
        with self._state_lock:
            if generation != self._generation:
                return
            self._set_phase_locked(Phase.OUTRO)
        if fade:
            self._wait(self._overlay.fade_out(), self._fade_timeout, "fade out")
        if generation == self._generation:
            self._overlay.enlarge()

    def _stop(self, generation: int) -> None:
        LOGGER.info("Stopping entertainment")
        self._wait(self._overlay.fade_out(), self._fade_timeout, "fade out")
        with self._state_lock:
            if generation != self._generation:
                return
            self._clear_locked()
        self._overlay.enlarge()

    def _clear_locked(self) -> None:
        self._state.phase = Phase.IDLE
        self._state.phase_start_time = None
        self._state.current_playlist = []
        self._state.current_video_index = 0

    def _set_phase_locked(self, phase: Phase) -> None:
        self._state.phase = phase
        self._state.phase_start_time = self._clock()

    def _elapsed(self) -> int:
        started = self._state.phase_start_time
        if started is None:
            return 0
        return int(math.floor(self._clock() - started))

    @staticmethod
    def _wait(event: Optional[threading.Event], timeout: float, label: str) -> None:
        if event is None:
            return
        if not event.wait(timeout=timeout):
            LOGGER.warning("Timed out waiting for %s", label)
