"""Display surface: shows the countdown and schedules entertainment videos.

Run this next to the streaming software. It polls the countdown server once a
second, keeps the mpv overlay's countdown label current and feeds the timer
status into the :class:`~entertainment.PhaseController`.
"""

from __future__ import annotations

import json
import logging
import os
import threading
import time
import urllib.error
import urllib.parse
import urllib.request
from pathlib import Path
from typing import Any, Dict, List, Optional

from entertainment import PhaseController, UsedVideoStoreError
from overlay import MpvOverlay
from ticker import RecurringTask
from timer_engine import format_countdown, format_end_time
from video_library import Video, VideoMetadataCache, probe_duration

LOGGER = logging.getLogger("stream_countdown.display")


def _parse_float_env(name: str, default: float, *, minimum: float) -> float:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except (TypeError, ValueError):
        LOGGER.warning("Invalid float value '%s' for %s; using %s.", raw, name, default)
        return default
    return max(minimum, value)


class CountdownClientError(RuntimeError):
    """The countdown server could not be reached or returned garbage."""


class CountdownClient:
    """Small JSON client for the countdown server's HTTP API."""

    def __init__(self, base_url: str, *, session_id: str = "default", request_timeout: float = 3.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.session_id = session_id
        self._request_timeout = max(0.5, float(request_timeout))

    def media_url(self, path: str) -> str:
        return f"{self.base_url}/media/{urllib.parse.quote(path)}"

    def get_status(self) -> Dict[str, Any]:
        return self._request("GET", "/api/status")

    def get_entertainment_state(self) -> Dict[str, Any]:
        return self._request("GET", "/api/entertainment/public")

    def list_videos(self) -> List[Video]:
        payload = self._request("GET", "/api/entertainment/videos")
        raw_videos = payload.get("videos")
        if not isinstance(raw_videos, list):
            return []
        videos: List[Video] = []
        for entry in raw_videos:
            video = Video.from_dict(entry)
            if video:
                videos.append(video)
        return videos

    def mark_used(self, path: str) -> Dict[str, Any]:
        return self._request("POST", "/api/entertainment/mark-used", {"path": path})

    def reset_used(self) -> Dict[str, Any]:
        return self._request("POST", "/api/entertainment/reset-used", {})

    def _request(self, method: str, endpoint: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        query = urllib.parse.urlencode({"session": self.session_id})
        url = f"{self.base_url}{endpoint}?{query}"
        data = None
        headers = {"Accept": "application/json"}
        if body is not None:
            data = json.dumps(body).encode("utf-8")
            headers["Content-Type"] = "application/json"

        request = urllib.request.Request(url, data=data, headers=headers, method=method)
        try:
            with urllib.request.urlopen(request, timeout=self._request_timeout) as response:
                raw = response.read()
        except urllib.error.URLError as exc:
            raise CountdownClientError(f"{method} {endpoint} failed: {exc}") from exc
        except OSError as exc:
            raise CountdownClientError(f"{method} {endpoint} failed: {exc}") from exc

        try:
            payload = json.loads(raw.decode("utf-8") or "{}")
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise CountdownClientError(f"{method} {endpoint} returned invalid JSON") from exc
        if not isinstance(payload, dict):
            raise CountdownClientError(f"{method} {endpoint} returned unexpected payload")
        return payload


class HttpUsedVideoStore:
    """Used-video store shared through the countdown server."""

    def __init__(self, client: CountdownClient) -> None:
        self._client = client

    def fetch_used(self) -> List[str]:
        try:
            payload = self._client.get_entertainment_state()
        except CountdownClientError as exc:
            raise UsedVideoStoreError(str(exc)) from exc
        used = payload.get("used_videos")
        if not isinstance(used, list):
            return []
        return [entry for entry in used if isinstance(entry, str)]

    def mark_used(self, path: str) -> None:
        try:
            self._client.mark_used(path)
        except CountdownClientError as exc:
            raise UsedVideoStoreError(str(exc)) from exc

    def reset(self) -> None:
        try:
            self._client.reset_used()
        except CountdownClientError as exc:
            raise UsedVideoStoreError(str(exc)) from exc


class DisplayRunner:
    def __init__(
        self,
        client: CountdownClient,
        overlay: Any,
        controller: PhaseController,
        durations: VideoMetadataCache,
        *,
        poll_interval: float = 1.0,
    ) -> None:
        self._client = client
        self._overlay = overlay
        self._controller = controller
        self._durations = durations
        self._task = RecurringTask(poll_interval, self.poll, name="display-poll")
        self._worker: Optional[threading.Thread] = None

    def scan_library(self) -> int:
        try:
            videos = self._client.list_videos()
        except CountdownClientError as exc:
            LOGGER.error("Unable to list videos: %s", exc)
            return 0
        LOGGER.info("Scanning %s videos...", len(videos))
        playable = self._durations.scan(videos)
        self._controller.load_library(videos)
        LOGGER.info("Scan complete, %s videos ready", playable)
        return playable

    def start(self) -> None:
        self._task.start()

    def stop(self) -> None:
        self._task.stop()

    def poll(self) -> Optional[threading.Thread]:
        try:
            status = self._client.get_status()
        except CountdownClientError as exc:
            LOGGER.warning("Unable to fetch timer status: %s", exc)
            return None

        self._overlay.update_countdown(
            format_countdown(status.get("remaining")),
            format_end_time(status) if status.get("is_running") else "",
        )

        if status.get("was_skipped") and self._controller.is_active():
            self._controller.reset()

        try:
            enabled = bool(self._client.get_entertainment_state().get("enabled"))
        except CountdownClientError as exc:
            LOGGER.warning("Unable to fetch entertainment settings: %s", exc)
            return None

        worker = threading.Thread(
            target=self._controller.tick,
            args=(status, enabled),
            name="phase-tick",
            daemon=True,
        )
        self._worker = worker
        worker.start()
        return worker


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="[%(levelname)s] %(message)s")

    server_url = os.environ.get("COUNTDOWN_SERVER_URL", "http://127.0.0.1:8050")
    session_id = os.environ.get("COUNTDOWN_SESSION", "default")
    poll_interval = _parse_float_env("DISPLAY_POLL_INTERVAL", 1.0, minimum=0.2)
    request_timeout = _parse_float_env("COUNTDOWN_REQUEST_TIMEOUT", 3.0, minimum=0.5)
    probe_timeout = _parse_float_env("FFPROBE_TIMEOUT", 30.0, minimum=1.0)
    media_dir_value = os.environ.get("DISPLAY_MEDIA_DIR")

    client = CountdownClient(server_url, session_id=session_id, request_timeout=request_timeout)

    if media_dir_value:
        media_dir = Path(media_dir_value).expanduser().resolve()

        def source_for(path: str) -> str:
            return str(media_dir / path)
    else:
        source_for = client.media_url

    durations = VideoMetadataCache(
        lambda source: probe_duration(source, timeout=probe_timeout),
        source_for=source_for,
    )
    overlay = MpvOverlay(source_for=source_for)
    controller = PhaseController(overlay, HttpUsedVideoStore(client), durations)
    runner = DisplayRunner(client, overlay, controller, durations, poll_interval=poll_interval)

    try:
        overlay.start()
    except FileNotFoundError as exc:
        LOGGER.error("%s", exc)
        return
    except RuntimeError:
        LOGGER.exception("Unable to start the overlay player")
        return

    runner.scan_library()
    runner.start()
    LOGGER.info("Display running against %s (session %s)", server_url, session_id)
    try:
        while True:
            time.sleep(1.0)
    except KeyboardInterrupt:
        LOGGER.info("Shutting down display")
    finally:
        runner.stop()
        overlay.shutdown()


if __name__ == "__main__":
    main()
