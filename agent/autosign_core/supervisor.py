"""
AccountSupervisor: one engine + scheduler pair per registered account.

The supervisor is the only writer of the instance table. Replacing an
account's instance always stops the old scheduler and drains the old
engine before the new pair is created, so one account never has two
pollers. Control-surface calls return {"ok": ...} dicts; bad input raises
ConfigurationError before anything is saved.
"""

import re
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime

from .config import DEBUG, log
from .constants import (
    AUTH_NOTIFY_INTERVAL_SEC, BEACON_POINTS, SCHEDULER_TICK_SEC, TRANSITION_DELAY_SEC,
)
from .engine import AutoSignEngine
from .errors import ConfigurationError
from .http_client import CookieClient, PasswordClient
from .notifier import AccountLogger
from .scheduler import WindowScheduler, parse_hhmm
from .state import AUTH_COOKIE_ONLY, AUTH_PASSWORD, AccountConfig, normalize_auth_mode

USERNAME_RE = re.compile(r"^\d{10}$")

NOT_FOUND = {"ok": False, "message": "not found"}


def ensure_valid_username(username, required=False):
    if not username and not required:
        return
    if not username or not USERNAME_RE.match(str(username)):
        raise ConfigurationError("username must be a 10-digit student id")


def ensure_valid_beacon(key):
    if key and key not in BEACON_POINTS:
        raise ConfigurationError(f"unknown beacon {key!r}, expected one of {', '.join(BEACON_POINTS)}")


def _ensure_valid_window(value, label):
    if value and parse_hhmm(value) is None:
        raise ConfigurationError(f"{label} must be HH:MM, got {value!r}")


def _parse_ts(value):
    """ISO timestamp (naive local, or aware / 'Z' from older records) → naive local."""
    if not value:
        return None
    try:
        ts = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if ts.tzinfo is not None:
        ts = ts.astimezone().replace(tzinfo=None)
    return ts


@dataclass
class EngineInstance:
    config: AccountConfig
    engine: AutoSignEngine
    scheduler: WindowScheduler
    logger: AccountLogger


class AccountSupervisor:
    """Creates, replaces and tears down per-account engine instances."""

    def __init__(self, store, notify=None, control_notify=None, authenticator=None,
                 cookie_fetcher=None, client_factory=None, clock=None, debug=DEBUG,
                 transition_delay=TRANSITION_DELAY_SEC, tick_sec=SCHEDULER_TICK_SEC):
        self.store = store
        self.notify = notify
        self.control_notify = control_notify
        self.authenticator = authenticator
        self.cookie_fetcher = cookie_fetcher
        self.client_factory = client_factory or self._default_client
        self.debug = debug
        self.transition_delay = transition_delay
        self.tick_sec = tick_sec
        self._clock = clock or datetime.now

        self._accounts = {}        # id -> AccountConfig (every registered account)
        self._instances = {}       # id -> EngineInstance (accounts with a live pair)
        self._loggers = {}         # id -> AccountLogger, survives replacement
        self._lock = threading.RLock()
        self._account_locks = {}
        self._persist_lock = threading.RLock()   # spans every load-modify-save of the accounts file

    # ─── Startup / shutdown ──────────────────────────────────

    def init(self):
        """Load every stored account, fill legacy defaults, build instances."""
        with self._persist_lock:
            records = self.store.load_accounts()
            configs = [AccountConfig.from_dict(r) for r in records]
            normalized = [c.to_dict() for c in configs]
            if normalized != records:
                self.store.save_accounts(normalized)
                log.info("Normalized %d stored account records", len(normalized))
        for config in configs:
            self._ensure_instance(config, restart=False)
        log.info("Supervisor ready: %d accounts, %d live instances",
                 len(self._accounts), len(self._instances))

    def stop_all(self):
        with self._lock:
            ids = list(self._instances)
        for account_id in ids:
            self._teardown(account_id)

    # ─── Lookup ──────────────────────────────────────────────

    def _account_lock(self, account_id):
        with self._lock:
            return self._account_locks.setdefault(account_id, threading.Lock())

    def instance(self, account_id):
        with self._lock:
            return self._instances.get(account_id)

    def _id_for_token(self, user_token):
        if not user_token:
            return None
        with self._lock:
            for account_id, config in self._accounts.items():
                if config.user_token == user_token:
                    return account_id
        return None

    def validate_user_token(self, user_token):
        account_id = self._id_for_token(user_token)
        return self._accounts.get(account_id) if account_id else None

    def list_accounts(self):
        with self._lock:
            items = list(self._accounts.items())
        result = []
        for account_id, config in items:
            inst = self.instance(account_id)
            view = config.public_view()
            view["running"] = bool(inst and inst.engine.running)
            view["schedulerEnabled"] = bool(inst and inst.scheduler.enable_schedule)
            result.append(view)
        return result

    # ─── Registration / update ───────────────────────────────

    def upsert_account(self, data):
        """Create or update an account by internal id."""
        with self._persist_lock:
            records = self.store.load_accounts()
            index = next((i for i, r in enumerate(records) if r.get("id") == data.get("id")), None)
            now = self._now_iso()
            if index is None:
                ensure_valid_username(data.get("username"), required=True)
                config = AccountConfig(id=data.get("id") or str(uuid.uuid4()), created_at=now)
            else:
                ensure_valid_username(data.get("username"))
                config = AccountConfig.from_dict(records[index])

            if data.get("username"):
                config.username = data["username"]
            self._apply_credentials(config, data)
            self._apply_settings(config, data)
            config.user_token = config.user_token or self.store.new_user_token()
            config.updated_at = now

            if index is None:
                records.append(config.to_dict())
            else:
                records[index] = config.to_dict()
            self.store.save_accounts(records)
        # _ensure_instance joins the old poll thread; never call it under _persist_lock
        self._ensure_instance(config, restart=True)
        self._notify_control(f"[Control] account {config.username} created/updated")
        return config.public_view()

    def update_by_token(self, user_token, data):
        account_id = self._id_for_token(user_token)
        if not account_id:
            raise ConfigurationError("unknown account token")
        data = {k: v for k, v in data.items() if k not in ("id", "userToken")}
        data["id"] = account_id
        return self.upsert_account(data)

    def create_via_invite(self, invite_code, username, password, auth_mode=None):
        """Self-service registration with a one-time invite code."""
        if not invite_code or not username or not password:
            raise ConfigurationError("invite code, username and password are required")
        ensure_valid_username(username, required=True)
        now = self._now_iso()
        config = AccountConfig(id=str(uuid.uuid4()), username=username,
                               created_at=now, updated_at=now)
        config.auth_mode = None
        self._apply_credentials(config, {"authMode": auth_mode or AUTH_PASSWORD, "password": password})
        config.user_token = self.store.new_user_token()

        with self._persist_lock:
            records = self.store.load_accounts()
            if any(r.get("username") == username for r in records):
                raise ConfigurationError("username already registered")
            if not self.store.use_invite(invite_code, config.id):
                raise ConfigurationError("invite code is invalid or already used")
            records.append(config.to_dict())
            self.store.save_accounts(records)
        self._ensure_instance(config, restart=True)
        self._notify_control(f"[Control] new account {username} joined by invite ({config.auth_mode})")
        return {"user": config.public_view(), "userToken": config.user_token}

    def delete_account(self, account_id):
        if account_id not in self._accounts:
            return dict(NOT_FOUND)
        self._teardown(account_id)
        with self._persist_lock:
            records = self.store.load_accounts()
            removed = next((r for r in records if r.get("id") == account_id), None)
            self.store.save_accounts([r for r in records if r.get("id") != account_id])
        with self._lock:
            config = self._accounts.pop(account_id, None)
            self._loggers.pop(account_id, None)
        username = (removed or {}).get("username") or (config.username if config else account_id)
        self._notify_control(f"[Control] account {username} deleted")
        return {"ok": True}

    def _apply_credentials(self, config, data):
        """Auth mode + credential material. Exactly one kind of credential is kept."""
        requested = data.get("authMode")
        new_mode = normalize_auth_mode(requested) if requested else (config.auth_mode or AUTH_PASSWORD)
        if new_mode is None:
            raise ConfigurationError(f"unknown auth mode {requested!r}")
        switching = new_mode != config.auth_mode
        password = data.get("password")
        cookie = data.get("cookie")

        if new_mode == AUTH_COOKIE_ONLY:
            if password:
                cookie = self._fetch_cookie(config.username, password)
            if switching and not cookie:
                raise ConfigurationError("switching to cookie-only mode needs the password once to obtain a cookie")
            if cookie:
                config.cookie_enc = self.store.encrypt_cookie(cookie)
                config.auth_expired = False
            config.password_enc = None
            if not config.cookie_enc:
                raise ConfigurationError("cookie-only mode needs a session cookie")
        else:
            if password:
                config.password_enc = self.store.encrypt_password(password)
                config.auth_expired = False
            if not config.password_enc:
                raise ConfigurationError("password mode needs a password")
            config.cookie_enc = None
        config.auth_mode = new_mode

    def _fetch_cookie(self, username, password):
        if self.cookie_fetcher is None:
            raise ConfigurationError("cookie-only mode is not available: no cookie fetcher configured")
        log.info("Obtaining session cookie for %s; the password is not stored", username)
        try:
            cookie = self.cookie_fetcher(username, password)
        except Exception as e:
            raise ConfigurationError(f"login failed, could not obtain a cookie: {e}") from e
        if not cookie:
            raise ConfigurationError("login failed, could not obtain a cookie")
        return cookie

    def _apply_settings(self, config, data):
        if data.get("raderAt"):
            ensure_valid_beacon(data["raderAt"])
            config.beacon_key = data["raderAt"]
        if data.get("coldDownTime") is not None:
            try:
                cooldown_ms = float(data["coldDownTime"])
            except (TypeError, ValueError):
                raise ConfigurationError("coldDownTime must be a number of milliseconds")
            if cooldown_ms <= 0:
                raise ConfigurationError("coldDownTime must be positive")
            config.cooldown_sec = cooldown_ms / 1000.0
        _ensure_valid_window(data.get("windowStart"), "windowStart")
        _ensure_valid_window(data.get("windowEnd"), "windowEnd")
        if data.get("windowStart"):
            config.window_start = data["windowStart"]
        if data.get("windowEnd"):
            config.window_end = data["windowEnd"]
        for key, attr in (("enableSchedule", "enable_schedule"),
                          ("logEmptyRollcall", "log_empty_polls"),
                          ("enabled", "enabled")):
            if isinstance(data.get(key), bool):
                setattr(config, attr, data[key])

    # ─── Instances ───────────────────────────────────────────

    def _default_client(self, config, password=None, cookie=None):
        if config.auth_mode == AUTH_COOKIE_ONLY:
            return CookieClient(cookie)
        return PasswordClient(config.username, password, self.authenticator)

    def _teardown(self, account_id):
        """Stop the scheduler, then drain the engine, then forget the pair."""
        with self._account_lock(account_id):
            inst = self.instance(account_id)
            if inst is None:
                return
            inst.scheduler.stop()
            inst.engine.retire()
            with self._lock:
                self._instances.pop(account_id, None)
            log.info("[%s] Instance torn down", inst.config.username)

    def _logger_for(self, config):
        with self._lock:
            logger = self._loggers.get(config.id)
            if logger is None:
                logger = AccountLogger(config.id, config.username, notify=self.notify)
                self._loggers[config.id] = logger
            logger.username = config.username
            return logger

    def _ensure_instance(self, config, restart):
        with self._account_lock(config.id):
            existing = self.instance(config.id)
            if existing is not None and not restart:
                return existing
            if existing is not None:
                existing.scheduler.stop()
                existing.engine.retire()
                with self._lock:
                    self._instances.pop(config.id, None)

            with self._lock:
                self._accounts[config.id] = config
            logger = self._logger_for(config)

            password = cookie = None
            if config.auth_mode == AUTH_COOKIE_ONLY:
                cookie = self.store.decrypt_cookie(config.cookie_enc)
                if not cookie:
                    logger.warning("Cookie-only mode but no usable cookie; please re-authorize.")
                    self._mark_unusable(config)
                    return None
            else:
                password = self.store.decrypt_password(config.password_enc)
                if not password:
                    logger.warning("Password mode but no usable password; please update the account.")
                    self._mark_unusable(config)
                    return None

            try:
                client = self.client_factory(config, password=password, cookie=cookie)
                engine = AutoSignEngine(
                    config.id, config.username, client, logger,
                    beacon_key=config.beacon_key,
                    cooldown_sec=config.cooldown_sec,
                    log_empty_polls=config.log_empty_polls,
                    debug=self.debug,
                    on_auth_expired=lambda reason, aid=config.id: self._handle_auth_expired(aid, reason),
                    on_auth_recovered=lambda aid=config.id: self._handle_auth_recovered(aid),
                )
                scheduler = WindowScheduler(
                    engine, config.window_start, config.window_end,
                    enable_schedule=config.enable_schedule,
                    transition_delay=self.transition_delay,
                    tick_sec=self.tick_sec,
                    clock=self._clock,
                )
            except ConfigurationError as e:
                logger.error(f"Cannot start auto sign-in for {config.username}: {e}")
                self._mark_unusable(config)
                return None

            inst = EngineInstance(config, engine, scheduler, logger)
            with self._lock:
                self._instances[config.id] = inst
            scheduler.start()
            if not config.enable_schedule and config.enabled:
                engine.start()
            return inst

    def _mark_unusable(self, config):
        config.auth_expired = True
        self._persist(config)

    # ─── Manual control ──────────────────────────────────────

    def start_account(self, account_id, force_override=False):
        with self._account_lock(account_id):
            return self._start_locked(account_id, force_override)

    def stop_account(self, account_id, force_override=False):
        with self._account_lock(account_id):
            return self._stop_locked(account_id, force_override)

    def _start_locked(self, account_id, force_override):
        inst = self.instance(account_id)
        if inst is None:
            return dict(NOT_FOUND)
        scheduler = inst.scheduler
        if scheduler.schedule_active and not scheduler.is_currently_in_window():
            if not force_override:
                inst.logger.info("[manual start] outside the schedule window, confirmation needed")
                return {
                    "ok": False,
                    "needConfirm": True,
                    "message": ("Outside the scheduled window. If confirmed, auto sign-in keeps "
                                "running until the next window start, then the schedule resumes."),
                }
            scheduler.pause_until_next_window_start()
            inst.logger.info("[manual start] schedule overridden until the next window start")
        inst.engine.start()
        return {"ok": True}

    def _stop_locked(self, account_id, force_override):
        inst = self.instance(account_id)
        if inst is None:
            return dict(NOT_FOUND)
        scheduler = inst.scheduler
        if scheduler.schedule_active and scheduler.is_currently_in_window():
            if not force_override:
                inst.logger.info("[manual stop] inside the schedule window, confirmation needed")
                return {
                    "ok": False,
                    "needConfirm": True,
                    "message": ("Inside the scheduled window. If confirmed, auto sign-in stays "
                                "stopped until the next window start."),
                }
            scheduler.pause_until_tomorrow()
            inst.logger.info("[manual stop] schedule overridden until the next window start")
        inst.engine.stop()
        return {"ok": True}

    def update_window(self, account_id, start_time=None, end_time=None, enable_schedule=None):
        with self._account_lock(account_id):
            return self._update_window_locked(account_id, start_time, end_time, enable_schedule)

    def _update_window_locked(self, account_id, start_time, end_time, enable_schedule):
        inst = self.instance(account_id)
        if inst is None:
            return dict(NOT_FOUND)
        _ensure_valid_window(start_time, "startTime")
        _ensure_valid_window(end_time, "endTime")
        inst.scheduler.update_window(start_time, end_time, enable_schedule)
        config = inst.config
        if start_time:
            config.window_start = start_time
        if end_time:
            config.window_end = end_time
        if isinstance(enable_schedule, bool):
            config.enable_schedule = enable_schedule
        config.updated_at = self._now_iso()
        self._persist(config)
        return {"ok": True, "scheduler": inst.scheduler.status()}

    # ─── Status / logs ───────────────────────────────────────

    def status(self, account_id):
        config = self._accounts.get(account_id)
        if config is None:
            return dict(NOT_FOUND)
        inst = self.instance(account_id)
        return {
            "ok": True,
            "user": config.public_view(),
            "core": inst.engine.status() if inst else {"running": False, "state": "stopped"},
            "scheduler": inst.scheduler.status() if inst else None,
        }

    def logs(self, account_id):
        logger = self._loggers.get(account_id)
        if logger is None:
            return dict(NOT_FOUND)
        return {"ok": True, "logs": logger.get_recent()}

    def clear_logs(self, account_id):
        logger = self._loggers.get(account_id)
        if logger is None:
            return dict(NOT_FOUND)
        logger.clear()
        return {"ok": True}

    def _by_token(self, user_token, method, *args, **kwargs):
        account_id = self._id_for_token(user_token)
        if not account_id:
            return dict(NOT_FOUND)
        return method(account_id, *args, **kwargs)

    def status_by_token(self, user_token):
        return self._by_token(user_token, self.status)

    def start_by_token(self, user_token, force_override=False):
        return self._by_token(user_token, self.start_account, force_override=force_override)

    def stop_by_token(self, user_token, force_override=False):
        return self._by_token(user_token, self.stop_account, force_override=force_override)

    def update_window_by_token(self, user_token, start_time=None, end_time=None, enable_schedule=None):
        return self._by_token(user_token, self.update_window, start_time, end_time, enable_schedule)

    def logs_by_token(self, user_token):
        return self._by_token(user_token, self.logs)

    def clear_logs_by_token(self, user_token):
        return self._by_token(user_token, self.clear_logs)

    # ─── Auth expiry bookkeeping ─────────────────────────────

    def _handle_auth_expired(self, account_id, reason=""):
        with self._lock:
            config = self._accounts.get(account_id)
            if config is None:
                return
            now = self._clock()
            config.auth_expired = True
            config.last_auth_fail_at = now.isoformat()
            last = _parse_ts(config.last_notify_at)
            should_notify = last is None or (now - last).total_seconds() > AUTH_NOTIFY_INTERVAL_SEC
            if should_notify:
                config.last_notify_at = now.isoformat()
            logger = self._loggers.get(account_id)
        if should_notify and logger is not None:
            msg = f"Login for {config.username} has expired, please re-authorize."
            if reason:
                msg += f" Reason: {reason}"
            logger.warning(msg)
        self._persist(config)

    def _handle_auth_recovered(self, account_id):
        with self._lock:
            config = self._accounts.get(account_id)
            if config is None:
                return
            config.auth_expired = False
            config.last_auth_fail_at = None
        self._persist(config)

    # ─── Helpers ─────────────────────────────────────────────

    def _now_iso(self):
        return self._clock().isoformat()

    def _persist(self, config):
        with self._persist_lock:
            records = self.store.load_accounts()
            for i, record in enumerate(records):
                if record.get("id") == config.id:
                    merged = dict(record)
                    merged.update(config.to_dict())
                    records[i] = merged
                    self.store.save_accounts(records)
                    return

    def _notify_control(self, message):
        log.info(message)
        if self.control_notify:
            try:
                self.control_notify(message)
            except Exception as e:
                log.error("[Control notify] failed: %s", e)
