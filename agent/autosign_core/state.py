"""
Account records, schedule overrides and engine states.

AccountConfig is the persisted shape of one account; to_dict()/from_dict()
use the camelCase keys of the accounts file and fill defaults for records
written by older versions.
"""

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from .constants import DEFAULT_BEACON, DEFAULT_COOLDOWN_SEC, DEFAULT_WINDOW_END, DEFAULT_WINDOW_START

AUTH_PASSWORD = "password"
AUTH_COOKIE_ONLY = "cookie-only"
AUTH_MODES = (AUTH_PASSWORD, AUTH_COOKIE_ONLY)

_AUTH_ALIASES = {
    "password": AUTH_PASSWORD,
    "password_persist": AUTH_PASSWORD,
    "cookie-only": AUTH_COOKIE_ONLY,
    "cookie_only": AUTH_COOKIE_ONLY,
    "secure_cookie": AUTH_COOKIE_ONLY,
}


def normalize_auth_mode(mode):
    """Map current and legacy auth mode names to AUTH_MODES; None if unknown."""
    if not mode:
        return AUTH_PASSWORD
    return _AUTH_ALIASES.get(mode)


class EngineState(enum.Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"


FORCE_RUN = "force-run"
SUPPRESS_RUN = "suppress-run"


@dataclass
class ScheduleOverride:
    mode: str
    until: datetime

    def expired(self, now) -> bool:
        return now >= self.until


@dataclass
class AccountConfig:
    id: str
    username: str = ""
    auth_mode: str = AUTH_PASSWORD
    password_enc: Optional[str] = None
    cookie_enc: Optional[str] = None
    beacon_key: str = DEFAULT_BEACON
    cooldown_sec: float = DEFAULT_COOLDOWN_SEC
    enable_schedule: bool = False
    window_start: str = DEFAULT_WINDOW_START
    window_end: str = DEFAULT_WINDOW_END
    log_empty_polls: bool = False
    enabled: bool = True
    auth_expired: bool = False
    last_auth_fail_at: Optional[str] = None
    last_notify_at: Optional[str] = None
    user_token: str = ""
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    extra: dict = field(default_factory=dict, repr=False)

    _KEYS = {
        "id": "id",
        "username": "username",
        "auth_mode": "authMode",
        "password_enc": "passwordEnc",
        "cookie_enc": "cookieEnc",
        "beacon_key": "raderAt",
        "enable_schedule": "enableSchedule",
        "window_start": "windowStart",
        "window_end": "windowEnd",
        "log_empty_polls": "logEmptyRollcall",
        "enabled": "enabled",
        "auth_expired": "authExpired",
        "last_auth_fail_at": "lastAuthFailAt",
        "last_notify_at": "lastNotifyAt",
        "user_token": "userToken",
        "created_at": "createdAt",
        "updated_at": "updatedAt",
    }

    @classmethod
    def from_dict(cls, data):
        """Build from a persisted record. Unknown keys are kept in `extra`."""
        kwargs = {}
        for attr, key in cls._KEYS.items():
            if key in data and data[key] is not None:
                kwargs[attr] = data[key]
        # coldDownTime is persisted in milliseconds
        if data.get("coldDownTime") is not None:
            kwargs["cooldown_sec"] = float(data["coldDownTime"]) / 1000.0
        kwargs["auth_mode"] = normalize_auth_mode(kwargs.get("auth_mode")) or AUTH_PASSWORD
        known = set(cls._KEYS.values()) | {"coldDownTime"}
        kwargs["extra"] = {k: v for k, v in data.items() if k not in known}
        return cls(**kwargs)

    def to_dict(self):
        data = dict(self.extra)
        for attr, key in self._KEYS.items():
            data[key] = getattr(self, attr)
        data["coldDownTime"] = int(round(self.cooldown_sec * 1000))
        return data

    def public_view(self):
        """Everything a front end may show; credential material is never included."""
        return {
            "id": self.id,
            "username": self.username,
            "authMode": self.auth_mode,
            "authExpired": bool(self.auth_expired),
            "hasPassword": bool(self.password_enc),
            "hasCookie": bool(self.cookie_enc),
            "raderAt": self.beacon_key,
            "coldDownTime": int(round(self.cooldown_sec * 1000)),
            "enableSchedule": self.enable_schedule,
            "windowStart": self.window_start,
            "windowEnd": self.window_end,
            "logEmptyRollcall": self.log_empty_polls,
            "enabled": self.enabled,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "userToken": self.user_token,
        }
