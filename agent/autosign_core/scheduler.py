"""
WindowScheduler: starts/stops one AutoSignEngine from a daily local-time window.

  - Windows are "HH:MM"-"HH:MM"; start > end wraps past midnight
    (22:00-07:00 is active from 22:00 through 06:59).
  - start == end means no automatic window: manual control only.
  - tick() runs every SCHEDULER_TICK_SEC and once right after start().
  - A manual override (force-run / suppress-run) freezes automatic
    decisions until the next window start.
  - Transitions (stop, delay, start) are serialized; a tick that arrives
    while one is in flight is ignored.
"""

import threading
from datetime import datetime, timedelta

from .config import log
from .constants import DEFAULT_WINDOW_END, DEFAULT_WINDOW_START, SCHEDULER_TICK_SEC, TRANSITION_DELAY_SEC
from .errors import ConfigurationError
from .state import FORCE_RUN, SUPPRESS_RUN, ScheduleOverride


def parse_hhmm(text):
    """"08:30" → (8, 30). None for empty or malformed input."""
    if not text:
        return None
    try:
        h, m = (int(v) for v in str(text).split(":"))
    except ValueError:
        return None
    if not (0 <= h < 24 and 0 <= m < 60):
        return None
    return h, m


def format_hhmm(hm):
    return f"{hm[0]:02d}:{hm[1]:02d}" if hm else None


def is_in_window(start, end, now) -> bool:
    """Whether `now` falls in [start, end), wrapping past midnight if start > end."""
    if not start or not end:
        return False
    start_min = start[0] * 60 + start[1]
    end_min = end[0] * 60 + end[1]
    now_min = now.hour * 60 + now.minute
    if start_min == end_min:
        return False
    if start_min < end_min:
        return start_min <= now_min < end_min
    return now_min >= start_min or now_min < end_min


def next_window_start(start, now):
    """The next instant (strictly after now) at which the window opens."""
    if not start:
        return None
    candidate = now.replace(hour=start[0], minute=start[1], second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


def _parse_or_raise(text, label):
    hm = parse_hhmm(text)
    if hm is None:
        raise ConfigurationError(f"{label} must be HH:MM, got {text!r}")
    return hm


class WindowScheduler:
    """Keeps an engine's running state in line with a daily window."""

    def __init__(self, engine, start_time=DEFAULT_WINDOW_START, end_time=DEFAULT_WINDOW_END,
                 enable_schedule=False, transition_delay=TRANSITION_DELAY_SEC,
                 tick_sec=SCHEDULER_TICK_SEC, clock=None):
        self.engine = engine
        self.enable_schedule = bool(enable_schedule)
        self.start_time = _parse_or_raise(start_time, "window start")
        self.end_time = _parse_or_raise(end_time, "window end")
        self.transition_delay = transition_delay
        self.tick_sec = tick_sec
        self._clock = clock or datetime.now

        self.override = None
        self._lock = threading.Lock()
        self._transition_lock = threading.Lock()
        self._closed = threading.Event()
        self._timer = None

    @property
    def name(self):
        return getattr(self.engine, "username", "?")

    @property
    def schedule_active(self) -> bool:
        """Enabled and with a real window (start != end)."""
        return (self.enable_schedule
                and self.start_time is not None
                and self.end_time is not None
                and self.start_time != self.end_time)

    # ─── Timer ───────────────────────────────────────────────

    def start(self):
        if self._timer is not None:
            return
        self._closed.clear()
        self._timer = threading.Thread(
            target=self._timer_loop, name=f"scheduler-{self.name}", daemon=True)
        self._timer.start()

    def stop(self):
        """Stop the timer and wait for any in-flight transition to finish."""
        self._closed.set()
        timer, self._timer = self._timer, None
        if timer is not None and timer is not threading.current_thread():
            timer.join()
        with self._transition_lock:
            pass

    def _timer_loop(self):
        while not self._closed.is_set():
            try:
                self.tick()
            except Exception as e:
                log.error("[%s] Scheduler tick failed: %s", self.name, e, exc_info=True)
            if self._closed.wait(self.tick_sec):
                break

    # ─── Evaluation ──────────────────────────────────────────

    def is_currently_in_window(self, now=None) -> bool:
        return is_in_window(self.start_time, self.end_time, now or self._clock())

    def _active_override(self, now):
        with self._lock:
            if self.override is not None and self.override.expired(now):
                log.info("[%s] Schedule override %s expired", self.name, self.override.mode)
                self.override = None
            return self.override

    def tick(self, ignore_override=False):
        """Evaluate the window once. Returns True if a transition ran."""
        if not self.schedule_active:
            return False
        now = self._clock()
        if self._active_override(now) is not None and not ignore_override:
            return False
        should_run = is_in_window(self.start_time, self.end_time, now)
        if should_run != self.engine.running:
            return self._transition_to(should_run)
        return False

    def _transition_to(self, should_run) -> bool:
        if not self._transition_lock.acquire(blocking=False):
            log.debug("[%s] Transition already in flight, tick ignored", self.name)
            return False
        try:
            log.info("[%s] Schedule transition → %s", self.name, "run" if should_run else "stop")
            if self.engine.running:
                self.engine.stop()
            if self.transition_delay > 0:
                self._closed.wait(self.transition_delay)
            if should_run and not self._closed.is_set():
                self.engine.start()
            return True
        finally:
            self._transition_lock.release()

    # ─── Overrides ───────────────────────────────────────────

    def set_override(self, mode, until):
        with self._lock:
            self.override = ScheduleOverride(mode, until) if until else None

    def pause_until_next_window_start(self):
        """Manual start outside the window: keep running until the window next opens."""
        until = next_window_start(self.start_time, self._clock())
        if until:
            self.set_override(FORCE_RUN, until)
            log.info("[%s] Force-run override until %s", self.name, until.isoformat())

    def pause_until_tomorrow(self):
        """Manual stop inside the window: stay stopped until the window next opens."""
        until = next_window_start(self.start_time, self._clock())
        if until:
            self.set_override(SUPPRESS_RUN, until)
            log.info("[%s] Suppress-run override until %s", self.name, until.isoformat())

    def update_window(self, start_time=None, end_time=None, enable_schedule=None):
        """Apply new window settings. Any override is dropped first."""
        new_start = _parse_or_raise(start_time, "window start") if start_time else self.start_time
        new_end = _parse_or_raise(end_time, "window end") if end_time else self.end_time

        was_enabled = self.enable_schedule
        with self._lock:
            self.override = None
            if isinstance(enable_schedule, bool):
                self.enable_schedule = enable_schedule
            self.start_time = new_start
            self.end_time = new_end

        if was_enabled and not self.enable_schedule and self.engine.running:
            return self._transition_to(False)
        return self.tick(ignore_override=True)

    def status(self):
        with self._lock:
            override = self.override
        return {
            "enableSchedule": self.enable_schedule,
            "startTime": format_hhmm(self.start_time),
            "endTime": format_hhmm(self.end_time),
            "timerRunning": self._timer is not None,
            "inWindow": self.is_currently_in_window(),
            "overrideMode": override.mode if override else None,
            "overrideUntil": override.until.isoformat() if override else None,
        }
