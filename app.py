import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from flask import Flask, abort, jsonify, request, send_from_directory

from sessions import SessionRegistry, TimerSession
from video_library import DEFAULT_VIDEO_EXTENSIONS, Video, discover_videos

BASE_DIR = Path(__file__).resolve().parent

logging.basicConfig(level=logging.INFO, format="[%(levelname)s] %(message)s")
LOGGER = logging.getLogger("stream_countdown")


def _parse_int_env(name: str, default: int, *, minimum: int, maximum: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except (TypeError, ValueError):
        LOGGER.warning("Invalid integer value '%s' for %s; using %s.", raw, name, default)
        return default
    return max(minimum, min(maximum, value))


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


def _coerce_bool(value: object) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
    return None


def _parse_extensions(raw: Optional[str]) -> Tuple[str, ...]:
    if not raw:
        return DEFAULT_VIDEO_EXTENSIONS
    extensions = []
    for part in raw.split(","):
        value = part.strip().lower()
        if not value:
            continue
        extensions.append(value if value.startswith(".") else f".{value}")
    return tuple(extensions) or DEFAULT_VIDEO_EXTENSIONS


MEDIA_DIR = Path(os.environ.get("MEDIA_DIR", str(BASE_DIR / "media"))).expanduser().resolve()
STATE_DIR = Path(os.environ.get("STATE_DIR", str(BASE_DIR / "state"))).expanduser().resolve()
VIDEO_EXTENSIONS = _parse_extensions(os.environ.get("VIDEO_EXTENSIONS"))
TIMER_TICK_INTERVAL = _parse_float_env("TIMER_TICK_INTERVAL", 1.0, minimum=0.1)
TIMER_RESTORE_STATE = bool(_coerce_bool(os.environ.get("TIMER_RESTORE_STATE")))
SERVER_HOST = os.environ.get("COUNTDOWN_HOST", "0.0.0.0")
SERVER_PORT = _parse_int_env("COUNTDOWN_PORT", 8050, minimum=1, maximum=65535)
SESSION_IDLE_TIMEOUT = _parse_float_env("SESSION_IDLE_TIMEOUT", 3600.0, minimum=60.0)
MAX_SESSIONS = _parse_int_env("MAX_SESSIONS", 64, minimum=1, maximum=1024)

MEDIA_DIR.mkdir(parents=True, exist_ok=True)

app = Flask(__name__)
session_registry = SessionRegistry(
    state_dir=STATE_DIR,
    tick_interval=TIMER_TICK_INTERVAL,
    session_ttl=SESSION_IDLE_TIMEOUT,
    max_sessions=MAX_SESSIONS,
)


def _current_session() -> TimerSession:
    return session_registry.get(request.args.get("session"))


def _request_data() -> Dict[str, Any]:
    data = request.get_json(force=True, silent=True)
    return data if isinstance(data, dict) else {}


def list_videos() -> List[Video]:
    return discover_videos(MEDIA_DIR, VIDEO_EXTENSIONS)


@app.route("/media/<path:filename>")
def media_file(filename: str):
    target = (MEDIA_DIR / filename).resolve()
    try:
        target.relative_to(MEDIA_DIR)
    except ValueError:
        abort(404)
    if not target.is_file():
        abort(404)
    return send_from_directory(MEDIA_DIR, filename)


@app.route("/api/status")
def api_status() -> Any:
    session = _current_session()
    return jsonify(session.engine.status())


@app.route("/api/start", methods=["POST"])
def api_start() -> Any:
    data = _request_data()
    session = _current_session()
    if "language" in data:
        session.engine.set_language(data.get("language"))
    state = session.engine.start(data.get("minutes"))
    session_registry.save()
    return jsonify(state)


@app.route("/api/pause", methods=["POST"])
def api_pause() -> Any:
    session = _current_session()
    state = session.engine.pause()
    session_registry.save()
    return jsonify(state)


@app.route("/api/resume", methods=["POST"])
def api_resume() -> Any:
    session = _current_session()
    state = session.engine.resume()
    session_registry.save()
    return jsonify(state)


@app.route("/api/reset", methods=["POST"])
def api_reset() -> Any:
    session = _current_session()
    state = session.engine.reset()
    session_registry.save()
    return jsonify(state)


@app.route("/api/language", methods=["POST"])
def api_language() -> Any:
    data = _request_data()
    language = data.get("language")
    if not isinstance(language, str) or not language.strip():
        return jsonify({"error": "Missing 'language' in request body"}), 400
    session = _current_session()
    state = session.engine.set_language(language)
    session_registry.save()
    return jsonify(state)


@app.route("/api/entertainment/videos")
def api_entertainment_videos() -> Any:
    return jsonify({"videos": [video.to_dict() for video in list_videos()]})


@app.route("/api/entertainment/public")
def api_entertainment_public() -> Any:
    session = _current_session()
    return jsonify(
        {
            "enabled": session.entertainment_enabled,
            "used_videos": session.used_videos.snapshot(),
        }
    )


@app.route("/api/entertainment/settings", methods=["POST"])
def api_entertainment_settings() -> Any:
    data = _request_data()
    enabled = _coerce_bool(data.get("enabled"))
    if enabled is None:
        return jsonify({"error": "Missing 'enabled' in request body"}), 400
    session = _current_session()
    session.entertainment_enabled = enabled
    LOGGER.info(
        "Entertainment %s for session %s", "enabled" if enabled else "disabled", session.session_id
    )
    session_registry.save()
    return jsonify({"status": "ok", "enabled": enabled})


@app.route("/api/entertainment/mark-used", methods=["POST"])
def api_entertainment_mark_used() -> Any:
    data = _request_data()
    path = data.get("path")
    if not isinstance(path, str) or not path.strip():
        return jsonify({"error": "Missing 'path' in request body"}), 400
    session = _current_session()
    added = session.used_videos.mark_used(path.strip())
    if added:
        LOGGER.info("Marked %s as used for session %s", path.strip(), session.session_id)
    return jsonify({"status": "ok", "used_videos": session.used_videos.snapshot()})


@app.route("/api/entertainment/reset-used", methods=["POST"])
def api_entertainment_reset_used() -> Any:
    session = _current_session()
    session.used_videos.reset()
    LOGGER.info("Cleared used videos for session %s", session.session_id)
    return jsonify({"status": "ok", "used_videos": []})


def main() -> None:
    if TIMER_RESTORE_STATE:
        session_registry.load()

    videos = list_videos()
    LOGGER.info("Found %s candidate videos in %s", len(videos), MEDIA_DIR)
    LOGGER.info("Starting HTTP server on %s:%s.", SERVER_HOST, SERVER_PORT)

    try:
        app.run(host=SERVER_HOST, port=SERVER_PORT, threaded=True)
    finally:
        session_registry.shutdown()


if __name__ == "__main__":
    main()
