"""
JSON-file account store.

File layout:

  {"users": [<account record>, ...], "invites": [{"code": ..., "usedBy": ...}]}

Credential fields pass through an injected cipher (any object with
encrypt(str) -> str and decrypt(str) -> str). Without one they are stored
as given, so deployments that need encryption at rest must supply it.
"""

import secrets
import threading
from pathlib import Path

from .config import ACCOUNTS_FILE, load_json, log, save_json


class _PassThroughCipher:
    def encrypt(self, value):
        return value

    def decrypt(self, value):
        return value


class JsonAccountStore:
    """Loads/saves account records and one-time invite codes."""

    def __init__(self, path=None, cipher=None):
        self.path = Path(path or ACCOUNTS_FILE)
        self.cipher = cipher or _PassThroughCipher()
        self._lock = threading.RLock()

    def _read(self):
        data = load_json(self.path, default=None)
        if not isinstance(data, dict):
            data = {}
        data.setdefault("users", [])
        data.setdefault("invites", [])
        return data

    # ─── Accounts ────────────────────────────────────────────

    def load_accounts(self):
        with self._lock:
            return [dict(u) for u in self._read()["users"]]

    def save_accounts(self, records):
        with self._lock:
            data = self._read()
            data["users"] = list(records)
            save_json(self.path, data)

    # ─── Credentials ─────────────────────────────────────────

    def encrypt_password(self, password):
        return self.cipher.encrypt(password)

    def decrypt_password(self, blob):
        return self._decrypt(blob, "password")

    def encrypt_cookie(self, cookie):
        return self.cipher.encrypt(cookie)

    def decrypt_cookie(self, blob):
        return self._decrypt(blob, "cookie")

    def _decrypt(self, blob, what):
        if not blob:
            return None
        try:
            return self.cipher.decrypt(blob)
        except Exception as e:
            log.warning("Could not decrypt stored %s: %s", what, e)
            return None

    # ─── Tokens & invites ────────────────────────────────────

    def new_user_token(self):
        return secrets.token_urlsafe(24)

    def add_invite(self, code=None):
        code = code or secrets.token_hex(4)
        with self._lock:
            data = self._read()
            data["invites"].append({"code": code, "usedBy": None})
            save_json(self.path, data)
        return code

    def use_invite(self, code, account_id) -> bool:
        """Consume an unused invite code. False if unknown or already used."""
        with self._lock:
            data = self._read()
            for invite in data["invites"]:
                if invite.get("code") == code and not invite.get("usedBy"):
                    invite["usedBy"] = account_id
                    save_json(self.path, data)
                    return True
        return False
