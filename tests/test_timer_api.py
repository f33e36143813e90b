import json
import pathlib
import sys

import pytest

ROOT_DIR = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

pytest.importorskip("flask")

import app as app_module
from sessions import SessionRegistry


@pytest.fixture()
def registry(tmp_path):
    return SessionRegistry(state_dir=tmp_path / "state", run_ticks=False)


@pytest.fixture()
def media_dir(tmp_path):
    media = tmp_path / "media"
    (media / "loops").mkdir(parents=True)
    (media / "intro.mp4").write_bytes(b"intro")
    (media / "loops" / "rain.webm").write_bytes(b"rain")
    (media / "readme.txt").write_text("not a video", encoding="utf-8")
    return media


@pytest.fixture()
def client(monkeypatch: pytest.MonkeyPatch, registry, media_dir):
    monkeypatch.setattr(app_module, "session_registry", registry)
    monkeypatch.setattr(app_module, "MEDIA_DIR", media_dir)
    return app_module.app.test_client()


def test_start_returns_running_snapshot(client):
    response = client.post("/api/start", json={"minutes": 2})
    assert response.status_code == 200
    payload = response.get_json()
    assert payload["is_running"] is True
    assert payload["is_paused"] is False
    assert payload["duration"] == 120
    assert payload["remaining"] == 120

    status = client.get("/api/status").get_json()
    assert status["remaining"] == 120


@pytest.mark.parametrize("body", [{}, {"minutes": "soon"}, {"minutes": -4}, {"minutes": 0}])
def test_start_with_bad_minutes_uses_default(client, body):
    payload = client.post("/api/start", json=body).get_json()
    assert payload["duration"] == 20 * 60


def test_start_accepts_invalid_json_body(client):
    response = client.post("/api/start", data="not json", content_type="application/json")
    assert response.status_code == 200
    assert response.get_json()["duration"] == 20 * 60


def test_pause_resume_and_reset_flow(client):
    client.post("/api/start", json={"minutes": 5})

    paused = client.post("/api/pause").get_json()
    assert paused["is_paused"] is True
    assert paused["end_time"] is None
    assert 299 <= paused["remaining"] <= 300

    resumed = client.post("/api/resume").get_json()
    assert resumed["is_paused"] is False
    assert resumed["end_time"] is not None

    reset = client.post("/api/reset").get_json()
    assert reset["is_running"] is False
    assert reset["remaining"] == 0
    assert reset["was_skipped"] is True

    second_reset = client.post("/api/reset").get_json()
    assert second_reset["was_skipped"] is False


def test_resume_without_pause_is_noop(client):
    payload = client.post("/api/resume").get_json()
    assert payload["is_running"] is False
    assert payload["is_paused"] is False


def test_language_survives_reset(client):
    client.post("/api/start", json={"minutes": 1, "language": "de"})
    reset = client.post("/api/reset").get_json()
    assert reset["language"] == "de"

    payload = client.post("/api/language", json={"language": "fr"}).get_json()
    assert payload["language"] == "fr"

    assert client.post("/api/language", json={}).status_code == 400


def test_sessions_are_isolated(client):
    client.post("/api/start?session=studio-a", json={"minutes": 3})

    studio_a = client.get("/api/status?session=studio-a").get_json()
    studio_b = client.get("/api/status?session=studio-b").get_json()

    assert studio_a["is_running"] is True
    assert studio_b["is_running"] is False


def test_state_blob_written_after_start(client, registry):
    client.post("/api/start?session=main", json={"minutes": 1})

    with registry.state_file.open("r", encoding="utf-8") as fh:
        data = json.load(fh)

    assert data["sessions"]["main"]["timer"]["duration"] == 60


def test_videos_lists_media_files(client):
    payload = client.get("/api/entertainment/videos").get_json()
    assert payload == {
        "videos": [
            {"path": "intro.mp4", "filename": "intro.mp4"},
            {"path": "loops/rain.webm", "filename": "rain.webm"},
        ]
    }


def test_mark_used_and_reset_used(client):
    response = client.post("/api/entertainment/mark-used", json={"path": "intro.mp4"})
    assert response.status_code == 200
    client.post("/api/entertainment/mark-used", json={"path": "intro.mp4"})
    client.post("/api/entertainment/mark-used", json={"path": "loops/rain.webm"})

    public = client.get("/api/entertainment/public").get_json()
    assert public["used_videos"] == ["intro.mp4", "loops/rain.webm"]

    other = client.get("/api/entertainment/public?session=other").get_json()
    assert other["used_videos"] == []

    reset = client.post("/api/entertainment/reset-used").get_json()
    assert reset["used_videos"] == []
    assert client.get("/api/entertainment/public").get_json()["used_videos"] == []


def test_mark_used_requires_path(client):
    response = client.post("/api/entertainment/mark-used", json={"path": "  "})
    assert response.status_code == 400


def test_entertainment_settings_toggle(client):
    assert client.get("/api/entertainment/public").get_json()["enabled"] is False

    response = client.post("/api/entertainment/settings", json={"enabled": "yes"})
    assert response.get_json() == {"status": "ok", "enabled": True}
    assert client.get("/api/entertainment/public").get_json()["enabled"] is True

    assert client.post("/api/entertainment/settings", json={"enabled": "maybe"}).status_code == 400


def test_media_serves_files_inside_media_dir(client):
    response = client.get("/media/loops/rain.webm")
    assert response.status_code == 200
    assert response.data == b"rain"
    response.close()

    assert client.get("/media/missing.mp4").status_code == 404
    assert client.get("/media/../secret.txt").status_code == 404
