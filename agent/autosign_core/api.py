"""
Course platform calls: list open rollcalls, answer radar and number rollcalls.

All functions are blocking and go through a PlatformClient, so AuthExpired
and TransientFetchFailure surface here exactly as the client raised them.
"""

import math
import uuid
from dataclasses import dataclass

from .config import log
from .constants import (
    NUMBER_ANSWER_URL, ON_CALL_STATUSES, RADAR_ACCURACY, RADAR_ANSWER_URL, ROLLCALLS_URL,
)
from .errors import TransientFetchFailure

RADAR = "radar"
NUMERIC = "numeric"
OTHER = "other"


@dataclass
class Rollcall:
    rollcall_id: int
    kind: str = OTHER
    title: str = ""
    course_title: str = ""
    created_by_name: str = ""
    department_name: str = ""
    status: str = ""
    status_name: str = ""

    @classmethod
    def from_api(cls, data):
        if data.get("is_radar"):
            kind = RADAR
        elif data.get("is_number"):
            kind = NUMERIC
        else:
            kind = OTHER
        return cls(
            rollcall_id=data.get("rollcall_id"),
            kind=kind,
            title=data.get("title") or "",
            course_title=data.get("course_title") or "",
            created_by_name=data.get("created_by_name") or "",
            department_name=data.get("department_name") or "",
            status=data.get("status") or "",
            status_name=data.get("status_name") or "",
        )

    @property
    def is_on_call(self) -> bool:
        return self.status in ON_CALL_STATUSES or self.status_name in ON_CALL_STATUSES

    def describe(self):
        return (f"#{self.rollcall_id}: {self.title} @ {self.course_title} "
                f"by {self.created_by_name} ({self.department_name})")


# ─── Rollcall list ───────────────────────────────────────────────

def fetch_rollcalls(client):
    """GET the open rollcalls for the account. Returns a list of Rollcall."""
    resp = client.request("GET", ROLLCALLS_URL)
    if resp.status_code != 200:
        raise TransientFetchFailure(f"rollcall list returned HTTP {resp.status_code}")
    try:
        payload = resp.json()
    except ValueError as e:
        raise TransientFetchFailure(
            f"rollcall list is not JSON: {resp.text[:200]!r}") from e
    return [Rollcall.from_api(rc) for rc in (payload.get("rollcalls") or [])]


# ─── Answers ─────────────────────────────────────────────────────

def answer_radar(client, rollcall_id, longitude, latitude):
    """PUT one radar position. Returns the decoded outcome dict ({} if not JSON)."""
    body = {
        "deviceId": str(uuid.uuid4()),
        "latitude": latitude,
        "longitude": longitude,
        "speed": None,
        "accuracy": RADAR_ACCURACY,
        "altitude": None,
        "altitudeAccuracy": None,
        "heading": None,
    }
    resp = client.request(
        "PUT", RADAR_ANSWER_URL.format(rid=rollcall_id), json=body,
    )
    try:
        outcome = resp.json()
    except ValueError:
        log.debug("Radar answer for #%s returned non-JSON: %s", rollcall_id, resp.text[:200])
        return {}
    return outcome if isinstance(outcome, dict) else {}


def answer_number(client, rollcall_id, number_code) -> bool:
    """PUT one 4-digit code. True only when the platform accepted it."""
    body = {
        "deviceId": str(uuid.uuid4()),
        "numberCode": number_code,
    }
    resp = client.request(
        "PUT", NUMBER_ANSWER_URL.format(rid=rollcall_id), json=body,
    )
    if resp.status_code != 200:
        return False
    try:
        data = resp.json()
    except ValueError:
        data = {}
    error_code = data.get("error_code") if isinstance(data, dict) else None
    return not (error_code and "wrong" in str(error_code))


def extract_distance(outcome):
    """Distance in metres reported by a radar outcome, or None."""
    if not isinstance(outcome, dict):
        return None
    candidates = [outcome.get("distance")]
    for key in ("data", "result"):
        nested = outcome.get(key)
        if isinstance(nested, dict):
            candidates.append(nested.get("distance"))
    for value in candidates:
        try:
            d = float(value)
        except (TypeError, ValueError):
            continue
        if math.isfinite(d) and d > 0:
            return d
    return None
