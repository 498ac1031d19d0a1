"""
AutoSignEngine: the polling loop for one account.

States: stopped → starting → running → stopped.

  start()  idempotent; spawns the poll thread
  stop()   idempotent; sets the stop event and joins the poll thread,
           so the in-flight iteration always finishes first

Each iteration fetches the open rollcalls and hands every unanswered one to
a dispatch thread (fire-and-forget); the loop cadence is the cooldown, not
dispatch completion. AuthExpired, whether raised by the fetch or reported
by a dispatch thread, gets one recovery attempt per iteration.
"""

import threading

from . import api
from .config import log
from .constants import DEFAULT_BEACON, DEFAULT_COOLDOWN_SEC
from .errors import AuthExpired, ResolutionFailure, TransientFetchFailure
from .responder import SignalResponder
from .state import EngineState


class AutoSignEngine:
    """Polls and answers rollcalls for one account."""

    def __init__(self, account_id, username, client, logger,
                 beacon_key=DEFAULT_BEACON, cooldown_sec=DEFAULT_COOLDOWN_SEC,
                 beacons=None, log_empty_polls=False, debug=False,
                 on_auth_expired=None, on_auth_recovered=None, responder=None):
        self.account_id = account_id
        self.username = username
        self.client = client
        self.logger = logger
        self.beacon_key = beacon_key
        self.cooldown_sec = cooldown_sec
        self.log_empty_polls = bool(log_empty_polls)
        self.debug = bool(debug)
        self.on_auth_expired = on_auth_expired
        self.on_auth_recovered = on_auth_recovered
        self.responder = responder or SignalResponder(
            client, logger, beacon_key=beacon_key, beacons=beacons)

        self.state = EngineState.STOPPED
        self.auth_expired = False
        self.req_num = 0

        self._lifecycle = threading.Lock()     # serializes start()/stop()
        self._state_lock = threading.Lock()    # guards state, _thread, _pending_auth
        self._stop_event = threading.Event()
        self._thread = None
        self._pending_auth = None
        self._retired = False

        # Rollcall ids with a dispatch thread still working on them.
        self._in_flight = set()
        self._in_flight_lock = threading.Lock()
        self._workers = set()

    # ─── Lifecycle ───────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self.state is EngineState.RUNNING and not self._stop_event.is_set()

    def start(self) -> bool:
        """Start polling. Returns False if already starting, running or retired."""
        with self._lifecycle:
            with self._state_lock:
                if self._retired or self.state is not EngineState.STOPPED:
                    return False
                self.state = EngineState.STARTING
                self._pending_auth = None
            self._stop_event.clear()
            thread = threading.Thread(
                target=self._run_loop, name=f"autosign-{self.username}", daemon=True)
            with self._state_lock:
                self._thread = thread
                self.state = EngineState.RUNNING
            thread.start()
        self.logger.info("Auto sign-in started")
        return True

    def stop(self, timeout=None) -> bool:
        """Stop polling and wait for the current iteration to drain."""
        with self._lifecycle:
            with self._state_lock:
                thread = self._thread
                if thread is None and self.state is EngineState.STOPPED:
                    return False
                self._stop_event.set()
            if thread is not None and thread is not threading.current_thread():
                thread.join(timeout)
            with self._state_lock:
                self._thread = None
                self.state = EngineState.STOPPED
        log.info("[%s] Auto sign-in stopped", self.username)
        return True

    def retire(self, timeout=None):
        """Stop for good. A retired engine refuses every later start()."""
        with self._state_lock:
            self._retired = True
        return self.stop(timeout)

    def _halt(self):
        """Terminal stop from inside the poll thread."""
        with self._state_lock:
            self._stop_event.set()
            self._thread = None
            self.state = EngineState.STOPPED

    def status(self):
        with self._in_flight_lock:
            in_flight = sorted(self._in_flight, key=str)
        return {
            "running": self.running,
            "state": self.state.value,
            "raderAt": self.beacon_key,
            "coldDownTime": int(round(self.cooldown_sec * 1000)),
            "authExpired": self.auth_expired,
            "requests": self.req_num,
            "inFlight": in_flight,
        }

    # ─── Poll loop ───────────────────────────────────────────

    def _run_loop(self):
        log.info("[%s] Poll loop started (cooldown=%.1fs)", self.username, self.cooldown_sec)
        while not self._stop_event.is_set():
            self.req_num += 1
            req_id = self.req_num
            try:
                self._raise_pending_auth()
                self.poll_once(req_id)
            except AuthExpired as e:
                if not self._handle_auth_expired(str(e)):
                    self._halt()
                    break
                continue
            except TransientFetchFailure as e:
                # Operator console only: routine network hiccups must not spam the owner.
                log.info("[%s](Req #%d) Failed to fetch rollcalls: %s", self.username, req_id, e)
            except Exception as e:
                log.error("[%s](Req #%d) Unexpected poll error: %s",
                          self.username, req_id, e, exc_info=True)
            if self._stop_event.wait(self.cooldown_sec):
                break
        log.info("[%s] Poll loop exited", self.username)

    def poll_once(self, req_id=0):
        """Fetch open rollcalls once and dispatch each. Returns the rollcalls."""
        rollcalls = api.fetch_rollcalls(self.client)
        if not rollcalls:
            log.info("[%s](Req #%d) No rollcalls found.", self.username, req_id)
            if self.log_empty_polls or self.debug:
                self.logger.info(f"(Req #{req_id}) No rollcalls found.")
            return rollcalls
        self.logger.info(f"(Req #{req_id}) Found {len(rollcalls)} rollcalls.")
        for rollcall in rollcalls:
            self.dispatch(rollcall)
        return rollcalls

    # ─── Dispatch ────────────────────────────────────────────

    def _claim(self, rollcall_id) -> bool:
        with self._in_flight_lock:
            if rollcall_id in self._in_flight:
                return False
            self._in_flight.add(rollcall_id)
            return True

    def _release(self, rollcall_id):
        with self._in_flight_lock:
            self._in_flight.discard(rollcall_id)

    def dispatch(self, rollcall):
        """Hand one rollcall to a resolver thread. Returns the thread, or None if skipped."""
        rid = rollcall.rollcall_id
        if rollcall.is_on_call:
            self.logger.info(f"Note that #{rid} is on call.")
            return None

        if rollcall.kind == api.RADAR:
            target = self._resolve_radar
            what = "radar"
        elif rollcall.kind == api.NUMERIC:
            target = self._resolve_number
            what = "number"
        else:
            log.info("[%s] Rollcall #%s has no supported answer type", self.username, rid)
            return None

        if not self._claim(rid):
            self.logger.info(f"Already answering {what} rollcall #{rid}")
            return None

        self.logger.info(f"Answering new {what} rollcall {rollcall.describe()}")
        worker = threading.Thread(
            target=self._run_worker, args=(target, rollcall),
            name=f"{what}-{rid}", daemon=True)
        with self._in_flight_lock:
            self._workers.add(worker)
        worker.start()
        return worker

    def _run_worker(self, target, rollcall):
        try:
            target(rollcall)
        except AuthExpired as e:
            self._report_worker_auth(e)
        except TransientFetchFailure as e:
            log.info("[%s] Rollcall #%s interrupted by network error: %s",
                     self.username, rollcall.rollcall_id, e)
        except Exception as e:
            log.error("[%s] Rollcall #%s resolver crashed: %s",
                      self.username, rollcall.rollcall_id, e, exc_info=True)
        finally:
            self._release(rollcall.rollcall_id)
            with self._in_flight_lock:
                self._workers.discard(threading.current_thread())

    def _resolve_radar(self, rollcall):
        try:
            self.responder.answer_radar(rollcall.rollcall_id)
        except ResolutionFailure as e:
            self.logger.warning(f"Radar rollcall failed: {e}")

    def _resolve_number(self, rollcall):
        rid = rollcall.rollcall_id
        try:
            code = self.responder.bruteforce_number(
                rid, should_continue=lambda: not self._stop_event.is_set())
        except ResolutionFailure:
            self.logger.error(f"Number rollcall #{rid} failed to find valid code.")
            return
        if code is not None:
            self.logger.success(f"Number rollcall #{rid} succeeded: found code {code}.")

    def wait_for_dispatches(self, timeout=None):
        """Join every resolver thread currently running."""
        with self._in_flight_lock:
            workers = list(self._workers)
        for worker in workers:
            worker.join(timeout)

    # ─── Authentication ──────────────────────────────────────

    def _report_worker_auth(self, error):
        with self._state_lock:
            if self._pending_auth is None:
                self._pending_auth = error
        log.info("[%s] Resolver saw expired authentication: %s", self.username, error)

    def _raise_pending_auth(self):
        with self._state_lock:
            error, self._pending_auth = self._pending_auth, None
        if error is not None:
            raise error

    def _handle_auth_expired(self, reason) -> bool:
        """Report upward, try one recovery. True when polling may continue."""
        self.auth_expired = True
        log.warning("[%s] Authentication expired: %s", self.username, reason)
        if self.on_auth_expired:
            try:
                self.on_auth_expired(reason)
            except Exception as e:
                log.error("[%s] on_auth_expired callback failed: %s", self.username, e)

        if self.client.can_refresh and self.client.refresh():
            self.auth_expired = False
            self.logger.info("Login re-established, polling resumes")
            if self.on_auth_recovered:
                try:
                    self.on_auth_recovered()
                except Exception as e:
                    log.error("[%s] on_auth_recovered callback failed: %s", self.username, e)
            return True

        if self.client.can_refresh:
            self.logger.warning("Login expired and automatic re-login failed; paused until credentials are updated.")
        else:
            self.logger.warning("Session cookie expired; paused until the account is re-authorized.")
        return False
