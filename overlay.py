"""mpv based countdown overlay.

The countdown is drawn with an ffmpeg ``drawtext`` filter on top of whatever
mpv is showing: a looping background while the countdown is on its own, or an
entertainment video. ``enlarge`` centres the countdown at full size,
``shrink`` moves it into a corner so the video stays visible.
"""

from __future__ import annotations

import json
import logging
import os
import shlex
import shutil
import socket
import subprocess
import tempfile
import threading
import time
from itertools import count
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

LOGGER = logging.getLogger("stream_countdown.overlay")

DEFAULT_BACKGROUND_SOURCE = "av://lavfi:color=c=black:s=1920x1080:r=30"
DEFAULT_FADE_SECONDS = 5.0
FADE_STEPS = 20
LARGE_FONT_SIZE = 220
SMALL_FONT_SIZE = 64
MONITOR_INTERVAL_SECONDS = 0.5
START_TIMEOUT_SECONDS = 5.0
IPC_TIMEOUT_SECONDS = 2.0
IPC_STARTUP_TIMEOUT_SECONDS = 5.0
PLAYER_MISSING_MESSAGE = "Video player command not found. Install mpv or configure VIDEO_PLAYER_CMD."

_MPV_TRUE_WORDS = frozenset({"1", "true", "yes", "on"})
_MPV_FALSE_WORDS = frozenset({"", "0", "false", "no", "off"})


def mpv_truthy(value: Any) -> bool:
    """mpv reports flags as JSON booleans, numbers or "yes"/"no" strings."""

    if not isinstance(value, str):
        return bool(value)
    word = value.strip().lower()
    if word in _MPV_TRUE_WORDS:
        return True
    if word in _MPV_FALSE_WORDS:
        return False
    try:
        return float(word) != 0.0
    except ValueError:
        return True


class MpvOverlay:
    def __init__(
        self,
        player_command: Optional[List[str]] = None,
        *,
        background_source: str = DEFAULT_BACKGROUND_SOURCE,
        source_for: Optional[Callable[[str], str]] = None,
        ipc_path: Optional[str] = None,
        fade_seconds: float = DEFAULT_FADE_SECONDS,
    ) -> None:
        self.background_source = background_source
        self._source_for = source_for or (lambda path: path)
        self._fade_seconds = max(0.0, float(fade_seconds))
        self._lock = threading.RLock()
        self._process: Optional[subprocess.Popen[bytes]] = None
        self._ipc_path = ipc_path or str(Path(tempfile.gettempdir()) / "stream-countdown-mpv.sock")
        self._current: Optional[str] = None
        self._large = True
        self._countdown_text = "0:00"
        self._end_text = ""
        self._volume = 100.0
        self._monitor_stop: Optional[threading.Event] = None
        self._request_ids = count(1)

        if player_command:
            self._base_command = list(player_command)
        else:
            env_value = os.environ.get("VIDEO_PLAYER_CMD")
            if env_value:
                self._base_command = shlex.split(env_value)
            else:
                self._base_command = ["mpv", "--fs", "--no-terminal"]

        player_binary = self._base_command[0]
        resolved_binary = shutil.which(player_binary)
        if resolved_binary:
            self._base_command[0] = resolved_binary
            self._player_available = True
        else:
            LOGGER.warning(
                "Video player command '%s' not found on PATH. Install it or set VIDEO_PLAYER_CMD.",
                player_binary,
            )
            self._player_available = False

    @property
    def is_large(self) -> bool:
        return self._large

    @property
    def current(self) -> Optional[str]:
        return self._current

    def start(self) -> None:
        with self._lock:
            self._show_background_locked()

    def shutdown(self) -> None:
        with self._lock:
            self._stop_player_locked()

    def update_countdown(self, countdown: str, end_text: str = "") -> None:
        with self._lock:
            if countdown == self._countdown_text and end_text == self._end_text:
                return
            self._countdown_text = countdown
            self._end_text = end_text
            self._render_countdown_locked()

    def enlarge(self) -> None:
        with self._lock:
            if self._large:
                return
            self._large = True
            self._render_countdown_locked()

    def shrink(self) -> None:
        with self._lock:
            if not self._large:
                return
            self._large = False
            self._render_countdown_locked()

    def play_video(self, path: str) -> threading.Event:
        """Start ``path`` and return an event that is set when it ends."""

        source = self._source_for(path)
        finished = threading.Event()
        with self._lock:
            self._cancel_monitor_locked()
            self._load_locked(source, loop=False)
            stop_event = threading.Event()
            self._monitor_stop = stop_event
        thread = threading.Thread(
            target=self._monitor_playback,
            args=(source, stop_event, finished),
            daemon=True,
        )
        thread.start()
        return finished

    def fade_out(self) -> threading.Event:
        """Fade the current video out and return to the background loop."""

        done = threading.Event()
        with self._lock:
            playing_video = self._current not in (None, self.background_source)
            self._cancel_monitor_locked()
        if not playing_video:
            done.set()
            return done

        thread = threading.Thread(target=self._run_fade, args=(done,), daemon=True)
        thread.start()
        return done

    def _run_fade(self, done: threading.Event) -> None:
        try:
            step_delay = self._fade_seconds / FADE_STEPS if FADE_STEPS else 0.0
            for step in range(1, FADE_STEPS + 1):
                level = self._volume * (1.0 - step / FADE_STEPS)
                with self._lock:
                    if self._process is None:
                        break
                    try:
                        self._ipc("set_property", "volume", f"{level:.1f}")
                    except OSError:
                        break
                time.sleep(step_delay)
            with self._lock:
                self._show_background_locked()
        except Exception:
            LOGGER.exception("Unable to fade out video")
        finally:
            done.set()

    def _show_background_locked(self) -> None:
        self._load_locked(self.background_source, loop=True)

    def _load_locked(self, source: str, *, loop: bool) -> None:
        self._ensure_player_locked()
        try:
            self._ipc("loadfile", source, "replace")
            self._ipc("set_property", "loop-file", "inf" if loop else "no")
            self._ipc("set_property", "volume", f"{self._volume:.1f}")
            self._ipc("set_property", "pause", "no")
        except OSError as exc:
            LOGGER.exception("Unable to communicate with mpv over IPC")
            self._stop_player_locked()
            raise RuntimeError("Unable to control mpv player") from exc
        self._current = source
        self._render_countdown_locked()

    @staticmethod
    def _format_countdown_filter(text: str, large: bool) -> str:
        escaped_text = text.replace("\\", "\\\\").replace("'", "\\'").replace(":", "\\:")
        if large:
            layout = f"fontsize={LARGE_FONT_SIZE}:x=(w-text_w)/2:y=(h-text_h)/2"
        else:
            layout = f"fontsize={SMALL_FONT_SIZE}:x=w-text_w-72:y=72"
        drawtext = (
            "lavfi=[drawtext=font='DejaVu Sans':fontcolor=white:{}"
            ":box=1:boxcolor=0x64000000:boxborderw=24:shadowcolor=0xC0000000:shadowx=2:shadowy=2"
            ":text='{}']"
        ).format(layout, escaped_text)
        return f"@countdown:{drawtext}"

    def _display_text(self) -> str:
        if self._end_text:
            return f"{self._countdown_text}   End {self._end_text}"
        return self._countdown_text

    def _render_countdown_locked(self) -> None:
        if not self._player_alive():
            return
        try:
            response = self._ipc("vf", "del", "@countdown")
            if response.get("error") not in {"success", "property unavailable", "no such filter"}:
                LOGGER.debug("Countdown overlay removal returned %s", response.get("error"))
            response = self._ipc(
                "vf", "add", self._format_countdown_filter(self._display_text(), self._large)
            )
            if response.get("error") != "success":
                LOGGER.warning("Unable to draw countdown overlay: %s", response.get("error"))
        except OSError:
            LOGGER.exception("Unable to communicate with mpv while drawing countdown overlay")
            self._stop_player_locked()

    def _monitor_playback(
        self, source: str, stop_event: threading.Event, finished: threading.Event
    ) -> None:
        deadline_to_start = time.monotonic() + START_TIMEOUT_SECONDS
        started = False
        try:
            while not stop_event.wait(MONITOR_INTERVAL_SECONDS):
                try:
                    idle = self._query_flag("idle-active")
                    # eof-reached can linger from the previous file right after
                    # loadfile, so only trust it once the player left idle.
                    ended = idle or (started and self._query_flag("eof-reached"))
                except OSError:
                    return
                if not started:
                    if not idle:
                        started = True
                        continue
                    if time.monotonic() < deadline_to_start:
                        continue
                    LOGGER.warning("Video never started: %s", source)
                    break
                if ended:
                    LOGGER.info("Video ended: %s", source)
                    break

            with self._lock:
                if not stop_event.is_set() and self._current == source:
                    self._show_background_locked()
        except Exception:
            LOGGER.exception("Playback monitor failed for %s", source)
        finally:
            finished.set()

    def _cancel_monitor_locked(self) -> None:
        if self._monitor_stop:
            self._monitor_stop.set()
            self._monitor_stop = None

    def _player_alive(self) -> bool:
        return self._process is not None and self._process.poll() is None

    def _ensure_player_locked(self) -> None:
        if self._player_alive():
            return
        if not self._player_available:
            raise FileNotFoundError(PLAYER_MISSING_MESSAGE)

        try:
            Path(self._ipc_path).unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            LOGGER.warning("Could not remove stale IPC socket %s: %s", self._ipc_path, exc)

        argv = self._base_command + [
            "--idle=yes",
            "--force-window=yes",
            "--keep-open=yes",
            f"--input-ipc-server={self._ipc_path}",
        ]
        try:
            self._process = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
        except FileNotFoundError as exc:
            self._player_available = False
            raise FileNotFoundError(PLAYER_MISSING_MESSAGE) from exc
        LOGGER.info("Started video player %s", argv[0])

        deadline = time.monotonic() + IPC_STARTUP_TIMEOUT_SECONDS
        while time.monotonic() < deadline:
            if not self._player_alive():
                raise RuntimeError("mpv exited before its IPC socket came up")
            try:
                if self._ipc("get_property", "idle-active").get("error") == "success":
                    return
            except OSError:
                pass
            time.sleep(0.1)
        raise RuntimeError("Timed out waiting for mpv IPC to become ready")

    def _query_flag(self, name: str) -> bool:
        reply = self._ipc("get_property", name)
        return reply.get("error") == "success" and mpv_truthy(reply.get("data"))

    def _ipc(self, *command: str) -> Dict[str, Any]:
        """Send one command over mpv's JSON IPC socket and return its reply.

        mpv writes event notifications to the same socket, so the reply is
        matched by ``request_id`` and everything else is skipped.
        """

        request_id = next(self._request_ids)
        message = json.dumps({"command": list(command), "request_id": request_id}) + "\n"
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as sock:
            sock.settimeout(IPC_TIMEOUT_SECONDS)
            sock.connect(self._ipc_path)
            sock.sendall(message.encode("utf-8"))
            with sock.makefile("r", encoding="utf-8") as reader:
                for line in reader:
                    try:
                        reply = json.loads(line)
                    except json.JSONDecodeError:
                        continue
                    if isinstance(reply, dict) and reply.get("request_id") == request_id:
                        return reply
        return {"error": "no reply"}

    def _stop_player_locked(self) -> None:
        process, self._process = self._process, None
        self._current = None
        self._cancel_monitor_locked()
        if process is None or process.poll() is not None:
            return
        process.terminate()
        try:
            process.wait(timeout=3)
        except subprocess.TimeoutExpired:
            LOGGER.warning("Video player did not exit, killing it")
            process.kill()
