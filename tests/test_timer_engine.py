import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import timer_engine
from timer_engine import TimerEngine, TimerState, coerce_minutes, format_countdown, format_end_time


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def engine(clock: FakeClock) -> TimerEngine:
    return TimerEngine(clock=clock)


@pytest.mark.parametrize("minutes", [1, 5, 12.5, 90])
def test_start_reports_full_duration_within_grace_window(engine, clock, minutes):
    state = engine.start(minutes)

    expected = int(minutes * 60)
    assert state["duration"] == expected
    assert state["remaining"] == expected
    assert state["end_time"] == clock.now + expected
    assert state["is_running"] is True
    assert state["is_paused"] is False
    assert state["auto_extend_time"] is None

    clock.advance(1.5)
    assert engine.status()["remaining"] == expected


@pytest.mark.parametrize(
    "value", [None, "abc", 0, -3, 0.001, "0.01", float("nan"), float("inf"), True, [5]]
)
def test_start_falls_back_to_default_duration(engine, value):
    state = engine.start(value)

    assert state["duration"] == timer_engine.DEFAULT_MINUTES * 60
    assert state["is_running"] is True


def test_coerce_minutes_accepts_numeric_strings():
    assert coerce_minutes("7") == 7.0
    assert coerce_minutes(" 2.5 ") == 2.5


def test_tick_is_suppressed_during_grace_window(engine, clock):
    engine.start(5)
    clock.advance(1.9)

    assert engine.tick() is False
    assert engine.status()["remaining"] == 300


def test_tick_recomputes_remaining_from_end_time(engine, clock):
    engine.start(5)
    clock.advance(100.4)

    status_remaining = engine.status()["remaining"]
    engine.tick()

    assert status_remaining == 199
    assert engine.status()["remaining"] == 199


def test_pause_then_resume_keeps_remaining(engine, clock):
    engine.start(5)
    clock.advance(5)

    paused = engine.pause()
    assert paused["is_paused"] is True
    assert paused["is_running"] is True
    assert paused["end_time"] is None
    assert paused["last_update_time"] is None
    assert paused["remaining"] == 295

    resumed = engine.resume()
    assert resumed["is_paused"] is False
    assert resumed["end_time"] == clock.now + 295
    assert abs(engine.status()["remaining"] - 295) <= 1

    clock.advance(3)
    assert engine.status()["remaining"] == 292


def test_paused_timer_does_not_count_down(engine, clock):
    engine.start(5)
    clock.advance(10)
    engine.pause()

    clock.advance(120)
    assert engine.tick() is False
    assert engine.status()["remaining"] == 290


def test_pause_and_resume_are_noops_in_wrong_state(engine):
    idle = engine.status()

    assert engine.pause() == idle
    assert engine.resume() == idle

    engine.start(1)
    running = engine.status()
    assert engine.resume() == running


def test_pause_is_idempotent(engine, clock):
    engine.start(2)
    clock.advance(30)
    first = engine.pause()
    clock.advance(30)

    assert engine.pause() == first


@pytest.mark.parametrize("prepare", ["idle", "running", "paused", "expired"])
def test_reset_always_returns_to_idle(engine, clock, prepare):
    if prepare != "idle":
        engine.start(1)
        clock.advance(5)
    if prepare == "paused":
        engine.pause()
    if prepare == "expired":
        clock.advance(100)
        engine.tick()

    state = engine.reset()

    assert state["is_running"] is False
    assert state["is_paused"] is False
    assert state["remaining"] == 0
    assert state["duration"] == 0
    assert state["end_time"] is None
    assert state["auto_extend_time"] is None
    assert state["was_skipped"] is (prepare in {"running", "paused"})


def test_reset_preserves_language(engine):
    engine.set_language("de")
    engine.start(3)

    state = engine.reset()

    assert state["language"] == "de"


def test_start_clears_was_skipped(engine, clock):
    engine.start(3)
    clock.advance(10)
    assert engine.reset()["was_skipped"] is True

    assert engine.start(3)["was_skipped"] is False


def test_expired_timer_schedules_single_auto_extension(engine, clock):
    engine.start(1)
    clock.advance(61)

    assert engine.tick() is False
    expired = engine.status()
    assert expired["remaining"] == 0
    assert expired["auto_extend_time"] == clock.now + timer_engine.AUTO_EXTEND_DELAY_SECONDS

    clock.advance(29)
    assert engine.tick() is False
    assert engine.status()["duration"] == 60

    clock.advance(1)
    assert engine.tick() is True
    extended = engine.status()
    assert extended["duration"] == 60 + timer_engine.AUTO_EXTEND_SECONDS
    assert extended["remaining"] == timer_engine.AUTO_EXTEND_SECONDS
    assert extended["auto_extend_time"] is None
    assert extended["is_running"] is True

    extensions = 0
    for _ in range(250):
        clock.advance(1)
        if engine.tick():
            extensions += 1
    assert extensions == 0
    assert engine.status()["duration"] == 360


def test_reset_cancels_pending_auto_extension(engine, clock):
    engine.start(1)
    clock.advance(70)
    engine.tick()

    engine.reset()
    clock.advance(60)

    assert engine.tick() is False
    assert engine.status()["duration"] == 0


def test_restore_rebuilds_state_from_snapshot(engine, clock):
    state = engine.restore(
        {
            "duration": 600,
            "remaining": 420,
            "end_time": None,
            "is_running": True,
            "is_paused": True,
            "language": "fr",
        }
    )

    assert state["is_paused"] is True
    assert state["remaining"] == 420
    assert state["language"] == "fr"

    engine.resume()
    assert engine.status()["end_time"] == clock.now + 420


def test_timer_state_from_dict_rejects_running_without_end_time():
    state = TimerState.from_dict({"is_running": True, "remaining": 50})

    assert state.is_running is False
    assert state.end_time is None


def test_format_countdown():
    assert format_countdown(0) == "0:00"
    assert format_countdown(125) == "2:05"
    assert format_countdown(3600) == "60:00"
    assert format_countdown(-4) == "0:00"
    assert format_countdown(None) == "0:00"


def test_format_end_time(clock):
    assert format_end_time({"is_running": False}) == "--:--"

    engine = TimerEngine(clock=clock)
    engine.start(10)
    status = engine.status()
    expected = timer_engine.datetime.fromtimestamp(status["end_time"]).strftime("%H:%M")
    assert format_end_time(status, clock.now) == expected

    engine.pause()
    paused = engine.status()
    expected_paused = timer_engine.datetime.fromtimestamp(
        clock.now + paused["remaining"]
    ).strftime("%H:%M")
    assert format_end_time(paused, clock.now) == expected_paused
