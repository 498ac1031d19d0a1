"""
Paths, logging, JSON load/save, environment flags, safe_print.
"""

import os
import sys
import json
import logging
from pathlib import Path


# ─── Paths ───────────────────────────────────────────────────────
# One data directory per deployment. Override with AUTOSIGN_HOME.

BASE_DIR = Path(os.environ.get("AUTOSIGN_HOME") or Path(__file__).parent.parent / "data")

ACCOUNTS_FILE = BASE_DIR / "accounts.json"
LOG_FILE = BASE_DIR / "autosign.log"


def env_flag(name, default=False):
    """Read a boolean environment flag ("1", "true", "yes", "on")."""
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


DEBUG = env_flag("AUTOSIGN_DEBUG")
WEBHOOK_URL = os.environ.get("AUTOSIGN_WEBHOOK", "")
CONTROL_WEBHOOK_URL = os.environ.get("AUTOSIGN_CONTROL_WEBHOOK", "")


# ─── Safe print (no crash without a console) ─────────────────────

def safe_print(*args, **kwargs):
    try:
        print(*args, **kwargs)
    except Exception:
        pass


# ─── Logging ─────────────────────────────────────────────────────

log = logging.getLogger("autosign")

_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"


def setup_logging(log_file=None, level=logging.INFO):
    """Attach a file handler and a stdout handler to the service logger.

    The log file is truncated once it grows past 1 MB.
    """
    log_file = Path(log_file or LOG_FILE)
    log_file.parent.mkdir(parents=True, exist_ok=True)
    try:
        if log_file.exists() and log_file.stat().st_size > 1_000_000:
            log_file.write_text("")
    except OSError:
        pass

    log.setLevel(logging.DEBUG if DEBUG else level)
    log.handlers.clear()

    file_handler = logging.FileHandler(str(log_file), encoding="utf-8")
    file_handler.setFormatter(logging.Formatter(_FORMAT, datefmt=_DATEFMT))
    log.addHandler(file_handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(logging.Formatter(_FORMAT))
    log.addHandler(console_handler)
    return log


# ─── JSON files ──────────────────────────────────────────────────

def load_json(path, default=None):
    """Load a JSON document. Returns default when missing or unreadable."""
    path = Path(path)
    if path.exists():
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            log.warning("Could not read %s: %s", path, e)
            return default
    return default


def save_json(path, data):
    """Write a JSON document atomically (temp file + rename)."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)
    os.replace(tmp, path)
