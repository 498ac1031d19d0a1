"""
SignalResponder: drives one rollcall to an answer.

Radar rollcalls are answered sequentially (preferred beacon, every other beacon
in table order, then a sphere-fit estimate) because beacon submissions are
rate-sensitive and a success must stop further attempts at once.

Number rollcalls are brute-forced over 0000-9999 in ascending batches of
concurrent submissions; the first accepted code wins and no later batch
starts. AuthExpired from any submission aborts the whole resolution.
"""

import threading
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass

from . import api
from .config import log
from .constants import (
    BEACON_POINTS, BRUTEFORCE_BATCH_SIZE, NUMBER_CODE_MAX, NUMBER_CODE_MIN, ON_CALL_FINE,
)
from .errors import AuthExpired, GeolocationError, ResolutionFailure, TransientFetchFailure
from .geolocation import DistanceObservation, estimate_position

_WIN_POLL_SEC = 0.02


@dataclass(frozen=True)
class RadarAnswer:
    label: str
    longitude: float
    latitude: float


def _accepted(outcome) -> bool:
    return isinstance(outcome, dict) and outcome.get("status_name") == ON_CALL_FINE


class SignalResponder:
    """Answers rollcalls for one account through its platform client."""

    def __init__(self, client, logger, beacon_key=None, beacons=None,
                 batch_size=BRUTEFORCE_BATCH_SIZE):
        self.client = client
        self.logger = logger
        self.beacons = dict(beacons if beacons is not None else BEACON_POINTS)
        self.beacon_key = beacon_key
        self.batch_size = batch_size

    # ─── Radar ───────────────────────────────────────────────

    def _try_point(self, rollcall_id, label, point, attempts):
        outcome = api.answer_radar(self.client, rollcall_id, point[0], point[1])
        if _accepted(outcome):
            return True
        attempts.append((point, api.extract_distance(outcome)))
        log.debug("Radar #%s at %s rejected: %s", rollcall_id, label, outcome)
        return False

    def answer_radar(self, rollcall_id):
        """Return the RadarAnswer the platform accepted, or raise ResolutionFailure."""
        attempts = []

        preferred = self.beacons.get(self.beacon_key) if self.beacon_key else None
        if preferred:
            if self._try_point(rollcall_id, self.beacon_key, preferred, attempts):
                self.logger.success(
                    f"Radar rollcall #{rollcall_id} answered at configured beacon {self.beacon_key}")
                return RadarAnswer(self.beacon_key, preferred[0], preferred[1])
            self.logger.info(
                f"Configured beacon {self.beacon_key} rejected for #{rollcall_id}, sweeping all beacons")

        for key, point in self.beacons.items():
            if preferred and key == self.beacon_key:
                continue
            if self._try_point(rollcall_id, key, point, attempts):
                self.logger.success(f"Radar rollcall #{rollcall_id} answered at beacon {key}")
                return RadarAnswer(key, point[0], point[1])

        observations = [
            DistanceObservation(point[0], point[1], distance)
            for point, distance in attempts
            if distance is not None
        ]
        if len(observations) < 3:
            raise ResolutionFailure(
                f"radar rollcall #{rollcall_id}: no beacon accepted and only "
                f"{len(observations)} distance readings, cannot estimate position")

        try:
            fit = estimate_position(observations)
        except GeolocationError as e:
            raise ResolutionFailure(f"radar rollcall #{rollcall_id}: {e}") from e

        self.logger.info(
            f"Estimated position ({fit.longitude:.6f}, {fit.latitude:.6f}) for #{rollcall_id} "
            f"from {len(observations)} readings, rms={fit.rms:.1f} m")
        outcome = api.answer_radar(self.client, rollcall_id, fit.longitude, fit.latitude)
        if _accepted(outcome):
            self.logger.success(
                f"Radar rollcall #{rollcall_id} answered at estimated position "
                f"({fit.longitude:.6f}, {fit.latitude:.6f})")
            return RadarAnswer("estimate", fit.longitude, fit.latitude)

        raise ResolutionFailure(
            f"radar rollcall #{rollcall_id}: estimated position rejected ({outcome})")

    # ─── Number ──────────────────────────────────────────────

    def bruteforce_number(self, rollcall_id, should_continue=None):
        """Search 0000-9999 batch by batch.

        Returns the accepted code, or None when should_continue() turned
        false between batches. Raises ResolutionFailure when every code was
        rejected and AuthExpired as soon as any submission reports it.
        """
        found = threading.Event()
        abort = threading.Event()
        lock = threading.Lock()
        result = {}

        def attempt(code):
            if found.is_set() or abort.is_set():
                return
            try:
                ok = api.answer_number(self.client, rollcall_id, code)
            except AuthExpired as e:
                with lock:
                    result.setdefault("auth", e)
                abort.set()
                return
            except TransientFetchFailure as e:
                log.debug("Number #%s code %s failed: %s", rollcall_id, code, e)
                return
            if ok:
                with lock:
                    if not found.is_set():
                        result["code"] = code
                        found.set()

        submitted = 0
        with ThreadPoolExecutor(max_workers=self.batch_size,
                                thread_name_prefix=f"number-{rollcall_id}") as pool:
            for start in range(NUMBER_CODE_MIN, NUMBER_CODE_MAX + 1, self.batch_size):
                if found.is_set() or abort.is_set():
                    break
                if should_continue is not None and not should_continue():
                    log.info("Number #%s: stop requested, not starting batch at %04d",
                             rollcall_id, start)
                    return None

                end = min(start + self.batch_size, NUMBER_CODE_MAX + 1)
                pending = {pool.submit(attempt, f"{code:04d}") for code in range(start, end)}
                submitted += end - start

                while pending and not (found.is_set() or abort.is_set()):
                    _, pending = wait(pending, timeout=_WIN_POLL_SEC, return_when=FIRST_COMPLETED)
                for future in pending:
                    future.cancel()

        if "auth" in result:
            raise result["auth"]
        if found.is_set():
            log.info("Number #%s solved with %s after %d submissions",
                     rollcall_id, result["code"], submitted)
            return result["code"]
        raise ResolutionFailure(f"number rollcall #{rollcall_id}: no code in 0000-9999 was accepted")
