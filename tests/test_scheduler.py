import time
from datetime import datetime

import pytest

from autosign_core.errors import ConfigurationError
from autosign_core.scheduler import (
    WindowScheduler, is_in_window, next_window_start, parse_hhmm,
)
from autosign_core.state import FORCE_RUN, SUPPRESS_RUN

from conftest import Clock


class FakeEngine:
    username = "3200000001"

    def __init__(self, running=False):
        self.running = running
        self.starts = 0
        self.stops = 0

    def start(self):
        self.starts += 1
        self.running = True
        return True

    def stop(self, timeout=None):
        self.stops += 1
        self.running = False
        return True


def _at(hour, minute=0, day=4):
    return datetime(2024, 3, day, hour, minute)


def _scheduler(engine, clock, start="08:00", end="22:00", enabled=True):
    return WindowScheduler(engine, start, end, enable_schedule=enabled,
                           transition_delay=0, tick_sec=3600, clock=clock)


@pytest.mark.parametrize("hm,expected", [
    ((7, 59), False), ((8, 0), True), ((12, 30), True), ((21, 59), True), ((22, 0), False),
])
def test_daytime_window(hm, expected):
    assert is_in_window((8, 0), (22, 0), _at(*hm)) is expected


@pytest.mark.parametrize("hm,expected", [
    ((21, 59), False), ((22, 0), True), ((23, 30), True), ((0, 0), True), ((6, 59), True), ((7, 0), False),
])
def test_overnight_window(hm, expected):
    assert is_in_window((22, 0), (7, 0), _at(*hm)) is expected


def test_equal_start_and_end_is_never_in_window():
    assert not is_in_window((8, 0), (8, 0), _at(8))


def test_parse_hhmm():
    assert parse_hhmm("08:30") == (8, 30)
    assert parse_hhmm("24:00") is None
    assert parse_hhmm("8") is None
    assert parse_hhmm("") is None


def test_next_window_start_rolls_to_tomorrow():
    assert next_window_start((8, 0), _at(7)) == _at(8)
    assert next_window_start((8, 0), _at(10)) == _at(8, day=5)


def test_tick_starts_and_stops_engine():
    engine = FakeEngine()
    clock = Clock(_at(10))
    scheduler = _scheduler(engine, clock)

    assert scheduler.tick()
    assert engine.running

    clock.now = _at(22, 5)
    assert scheduler.tick()
    assert not engine.running
    assert not scheduler.tick()


def test_disabled_schedule_never_transitions():
    engine = FakeEngine()
    scheduler = _scheduler(engine, Clock(_at(10)), enabled=False)
    assert not scheduler.tick()
    assert engine.starts == 0


def test_equal_window_is_manual_only():
    engine = FakeEngine(running=True)
    scheduler = _scheduler(engine, Clock(_at(10)), start="09:00", end="09:00")
    assert not scheduler.schedule_active
    assert not scheduler.tick()
    assert engine.running


def test_force_run_survives_window_end_until_next_start():
    engine = FakeEngine()
    clock = Clock(_at(23))
    scheduler = _scheduler(engine, clock)

    scheduler.pause_until_next_window_start()
    engine.start()
    assert scheduler.override.mode == FORCE_RUN
    assert scheduler.override.until == _at(8, day=5)

    clock.now = _at(23, 30)
    assert not scheduler.tick()
    assert engine.running

    # override expired at the window start, engine is in window anyway
    clock.now = _at(8, 1, day=5)
    assert not scheduler.tick()
    assert scheduler.override is None
    assert engine.running

    clock.now = _at(22, 1, day=5)
    assert scheduler.tick()
    assert not engine.running


def test_suppress_run_holds_engine_stopped_inside_window():
    engine = FakeEngine(running=True)
    clock = Clock(_at(10))
    scheduler = _scheduler(engine, clock)

    scheduler.pause_until_tomorrow()
    engine.stop()
    assert scheduler.override.mode == SUPPRESS_RUN

    clock.now = _at(15)
    assert not scheduler.tick()
    assert not engine.running

    clock.now = _at(8, 0, day=5)
    assert scheduler.tick()
    assert engine.running


def test_update_window_clears_override_and_reevaluates():
    engine = FakeEngine()
    clock = Clock(_at(23))
    scheduler = _scheduler(engine, clock)
    scheduler.set_override(SUPPRESS_RUN, _at(8, day=5))

    assert scheduler.update_window("22:00", "07:00")
    assert scheduler.override is None
    assert engine.running
    assert scheduler.status()["startTime"] == "22:00"


def test_disabling_schedule_stops_running_engine():
    engine = FakeEngine()
    scheduler = _scheduler(engine, Clock(_at(10)))
    scheduler.tick()
    assert engine.running

    scheduler.update_window(enable_schedule=False)
    assert not engine.running
    assert not scheduler.status()["enableSchedule"]


def test_update_window_rejects_bad_time():
    scheduler = _scheduler(FakeEngine(), Clock(_at(10)))
    with pytest.raises(ConfigurationError):
        scheduler.update_window("25:00", "07:00")


def test_timer_ticks_once_on_start():
    engine = FakeEngine()
    scheduler = _scheduler(engine, Clock(_at(10)))
    scheduler.start()
    deadline = time.time() + 2
    while engine.starts == 0 and time.time() < deadline:
        time.sleep(0.005)
    scheduler.stop()
    assert engine.starts == 1
    assert scheduler.status()["timerRunning"] is False


def test_tick_during_transition_is_ignored():
    engine = FakeEngine()
    scheduler = _scheduler(engine, Clock(_at(10)))

    with scheduler._transition_lock:
        assert not scheduler.tick()
    assert engine.starts == 0 and engine.stops == 0

    assert scheduler.tick()
    assert engine.running
