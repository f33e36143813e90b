"""Video discovery, duration probing, playlist selection and usage tracking."""

from __future__ import annotations

import json
import logging
import os
import shutil
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Union

LOGGER = logging.getLogger("stream_countdown.videos")

DEFAULT_VIDEO_EXTENSIONS = (".mp4", ".webm", ".mov", ".mkv", ".m4v")
DEFAULT_PROBE_TIMEOUT = 30.0


@dataclass(frozen=True)
class Video:
    path: str
    filename: str
    duration_seconds: int = 0

    def to_dict(self) -> Dict[str, object]:
        return {"path": self.path, "filename": self.filename}

    @staticmethod
    def from_dict(raw: Mapping[str, object]) -> Optional["Video"]:
        if not isinstance(raw, Mapping):
            return None
        path_value = raw.get("path")
        if not isinstance(path_value, str) or not path_value.strip():
            return None
        path = path_value.strip()
        filename_value = raw.get("filename")
        if isinstance(filename_value, str) and filename_value.strip():
            filename = filename_value.strip()
        else:
            filename = path.rsplit("/", 1)[-1]
        return Video(path=path, filename=filename)


def discover_videos(
    media_dir: Path, extensions: Iterable[str] = DEFAULT_VIDEO_EXTENSIONS
) -> List[Video]:
    """List playable files below ``media_dir`` ordered by relative path."""

    if not media_dir.is_dir():
        LOGGER.warning("Media directory not found: %s", media_dir)
        return []

    suffixes = {ext.lower() if ext.startswith(".") else f".{ext.lower()}" for ext in extensions}
    videos: List[Video] = []
    for candidate in sorted(media_dir.rglob("*")):
        if not candidate.is_file() or candidate.suffix.lower() not in suffixes:
            continue
        if any(part.startswith(".") for part in candidate.relative_to(media_dir).parts):
            continue
        relative = candidate.relative_to(media_dir).as_posix()
        videos.append(Video(path=relative, filename=candidate.name))
    return videos


def probe_duration(source: str, *, timeout: float = DEFAULT_PROBE_TIMEOUT) -> int:
    """Return the playable duration of ``source`` in whole seconds.

    ``source`` may be a local path or a URL. Raises ``RuntimeError`` when the
    duration cannot be determined.
    """

    ffprobe = shutil.which("ffprobe")
    if not ffprobe:
        raise RuntimeError("ffprobe not found on PATH")

    cmd = [
        ffprobe,
        "-v",
        "error",
        "-show_entries",
        "format=duration",
        "-of",
        "json",
        source,
    ]
    try:
        result = subprocess.run(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired as exc:
        raise RuntimeError(f"ffprobe timed out after {timeout}s") from exc
    except OSError as exc:
        raise RuntimeError("Unable to run ffprobe") from exc

    if result.returncode != 0:
        raise RuntimeError(f"ffprobe returned {result.returncode}: {result.stderr.strip()}")

    try:
        data = json.loads(result.stdout or "{}")
        duration = float(data.get("format", {}).get("duration"))
    except (TypeError, ValueError, AttributeError) as exc:
        raise RuntimeError("ffprobe did not report a duration") from exc
    return max(0, int(duration))


class VideoMetadataCache:
    """Resolves video paths to durations once per process.

    A probe failure is cached as ``0`` so the video stays excluded from
    selection until a new cache is built.
    """

    def __init__(
        self,
        prober: Callable[[str], int] = probe_duration,
        source_for: Optional[Callable[[str], str]] = None,
    ) -> None:
        self._prober = prober
        self._source_for = source_for or (lambda path: path)
        self._lock = threading.Lock()
        self._durations: Dict[str, int] = {}

    def get(self, path: str) -> Optional[int]:
        with self._lock:
            return self._durations.get(path)

    def resolve(self, path: str) -> int:
        with self._lock:
            cached = self._durations.get(path)
        if cached is not None:
            return cached

        try:
            duration = max(0, int(self._prober(self._source_for(path))))
        except Exception as exc:
            LOGGER.warning("Unable to read duration for %s: %s", path, exc)
            duration = 0

        with self._lock:
            # Another thread may have resolved it first; keep the first value.
            return self._durations.setdefault(path, duration)

    def scan(self, videos: Iterable[Video]) -> int:
        """Resolve every video and return how many are playable."""

        playable = 0
        for video in videos:
            duration = self.resolve(video.path)
            if duration > 0:
                playable += 1
                LOGGER.info("Loaded %s (%ss)", video.path, duration)
        return playable

    def __len__(self) -> int:
        with self._lock:
            return len(self._durations)


DurationLookup = Union[Mapping[str, int], VideoMetadataCache, Callable[[str], Optional[int]]]


def _lookup_duration(durations: DurationLookup, path: str) -> int:
    if isinstance(durations, VideoMetadataCache):
        value = durations.get(path)
    elif isinstance(durations, Mapping):
        value = durations.get(path)
    else:
        value = durations(path)
    return int(value) if value else 0


def select_videos(
    target_seconds: float, candidates: Sequence[Video], durations: DurationLookup
) -> List[Video]:
    """Pick videos largest-first while they fit into ``target_seconds``.

    This is a greedy approximation: it prefers fewer, longer videos over
    filling the budget exactly. Equal durations keep their candidate order.
    The returned videos carry their resolved ``duration_seconds``.
    """

    if target_seconds <= 0 or not candidates:
        return []

    valid = []
    for video in candidates:
        duration = _lookup_duration(durations, video.path)
        if duration > 0:
            valid.append(Video(path=video.path, filename=video.filename, duration_seconds=duration))
    if not valid:
        return []

    ordered = sorted(valid, key=lambda video: video.duration_seconds, reverse=True)

    selected: List[Video] = []
    budget = target_seconds
    for video in ordered:
        if video.duration_seconds <= budget:
            selected.append(video)
            budget -= video.duration_seconds
            if budget <= 0:
                break
    return selected


class UsedVideoTracker:
    """Records which videos were already shown.

    The set only grows until :meth:`reset`. When ``storage_path`` is given the
    list is written to disk after every change and read back on creation.
    """

    def __init__(self, storage_path: Optional[Path] = None) -> None:
        self._lock = threading.Lock()
        self._storage_path = storage_path
        self._used: List[str] = []
        self._used_set: Set[str] = set()
        if storage_path is not None:
            for path in self._load_from_disk(storage_path):
                if path not in self._used_set:
                    self._used.append(path)
                    self._used_set.add(path)

    def mark_used(self, path: str) -> bool:
        """Add ``path``. Returns False when it was already recorded."""

        with self._lock:
            if path in self._used_set:
                return False
            self._used.append(path)
            self._used_set.add(path)
            # Written under the lock so the file always matches the last change.
            self._save_to_disk(list(self._used))
        return True

    def reset(self) -> None:
        with self._lock:
            self._used = []
            self._used_set = set()
            self._save_to_disk([])

    def is_used(self, path: str) -> bool:
        with self._lock:
            return path in self._used_set

    def snapshot(self) -> List[str]:
        with self._lock:
            return list(self._used)

    @staticmethod
    def _load_from_disk(storage_path: Path) -> List[str]:
        if not storage_path.exists():
            return []
        try:
            with storage_path.open("r", encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, json.JSONDecodeError):
            LOGGER.exception("Unable to read used videos file %s", storage_path)
            return []

        raw = data.get("used_videos", []) if isinstance(data, dict) else data
        if not isinstance(raw, list):
            LOGGER.warning("Used videos file did not contain a list")
            return []
        return [entry for entry in raw if isinstance(entry, str) and entry]

    def _save_to_disk(self, used: List[str]) -> None:
        if self._storage_path is None:
            return
        try:
            self._storage_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self._storage_path.with_suffix(".tmp")
            with tmp_path.open("w", encoding="utf-8") as fh:
                json.dump({"used_videos": used}, fh, indent=2)
            os.replace(tmp_path, self._storage_path)
        except OSError:
            LOGGER.exception("Unable to write used videos file %s", self._storage_path)
