"""
Per-account logger/notifier and the webhook notification channel.

info     → service log + recent-log ring
success  → same, plus push notification
warning  → same, plus push notification
error    → same, plus push notification
"""

import threading
import time
from collections import deque

import requests

from .config import log
from .constants import API_TIMEOUT, RECENT_LOG_SIZE
from . import http_client


class AccountLogger:
    """Severity-tagged log for one account, with a bounded recent history."""

    def __init__(self, account_id, username, notify=None, capacity=RECENT_LOG_SIZE):
        self.account_id = account_id
        self.username = username
        self._notify = notify
        self._recent = deque(maxlen=capacity)
        self._lock = threading.Lock()

    def _record(self, level, message):
        with self._lock:
            self._recent.append({"ts": time.time(), "level": level, "message": message})

    def _push(self, message):
        if not self._notify:
            return
        try:
            self._notify(f"[{self.username}] {message}")
        except Exception as e:
            log.error("[%s] Notification push failed: %s", self.username, e)

    def info(self, message):
        log.info("[%s] %s", self.username, message)
        self._record("info", message)

    def success(self, message):
        log.info("[%s] SUCCESS %s", self.username, message)
        self._record("success", message)
        self._push(message)

    def warning(self, message):
        log.warning("[%s] %s", self.username, message)
        self._record("warning", message)
        self._push(message)

    def error(self, message):
        log.error("[%s] %s", self.username, message)
        self._record("error", message)
        self._push(message)

    def get_recent(self):
        with self._lock:
            return list(self._recent)

    def clear(self):
        with self._lock:
            self._recent.clear()


def webhook_notifier(url, timeout=API_TIMEOUT):
    """Build a notify(message) callable posting a text message to a chat webhook."""

    def notify(message):
        payload = {"msgtype": "text", "text": {"content": message}}
        try:
            resp = http_client.http.post(url, json=payload, timeout=timeout)
            if resp.status_code != 200:
                log.warning("Webhook push failed: HTTP %d %s", resp.status_code, resp.text[:200])
        except requests.RequestException as e:
            log.warning("Webhook push network error: %s", e)

    return notify
