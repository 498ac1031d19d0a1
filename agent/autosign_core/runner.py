"""
Entry point and auto-restart wrapper.
"""

import signal
import sys
import threading
import time

from .constants import AGENT_VERSION
from .config import (
    ACCOUNTS_FILE, CONTROL_WEBHOOK_URL, DEBUG, WEBHOOK_URL, log, safe_print, setup_logging,
)
from . import http_client
from .notifier import webhook_notifier
from .store import JsonAccountStore
from .supervisor import AccountSupervisor

_shutdown = threading.Event()


def _request_shutdown(signum, frame):
    log.info("Signal %d received, shutting down", signum)
    _shutdown.set()


def install_signal_handlers():
    """SIGTERM ends main() the same way Ctrl+C does. Main thread only."""
    try:
        signal.signal(signal.SIGTERM, _request_shutdown)
    except ValueError:
        log.debug("Not in the main thread, SIGTERM handler not installed")


def build_supervisor(store=None, **kwargs):
    """Supervisor wired with the webhook channels from the environment."""
    store = store or JsonAccountStore()
    kwargs.setdefault("notify", webhook_notifier(WEBHOOK_URL) if WEBHOOK_URL else None)
    kwargs.setdefault(
        "control_notify", webhook_notifier(CONTROL_WEBHOOK_URL) if CONTROL_WEBHOOK_URL else None)
    kwargs.setdefault("debug", DEBUG)
    return AccountSupervisor(store, **kwargs)


def main():
    """Primary agent entry point."""
    setup_logging()
    safe_print("Rollcall Auto Sign-in v" + AGENT_VERSION)
    safe_print()
    log.info("Accounts file: %s", ACCOUNTS_FILE)
    if not WEBHOOK_URL:
        log.warning("AUTOSIGN_WEBHOOK not set; account notifications go to the log only")

    _shutdown.clear()
    install_signal_handlers()
    supervisor = build_supervisor()
    supervisor.init()

    try:
        while not _shutdown.wait(1.0):
            pass
    finally:
        log.info("Shutting down all accounts...")
        supervisor.stop_all()


def run_with_auto_restart():
    """
    Wrapper that auto-restarts on crash. Never gives up.
    Crash counter resets if the agent ran for 2+ minutes (not a boot-loop).
    """
    crash_count = 0
    crash_window = 120
    max_rapid_crashes = 10

    while True:
        start_time = time.time()
        try:
            main()
            break
        except KeyboardInterrupt:
            safe_print("\nAgent stopped by user.")
            break
        except SystemExit as e:
            if str(e) == "0":
                break
            log.error("Agent SystemExit: %s", e)
        except Exception as e:
            elapsed = time.time() - start_time
            log.error("Agent crashed after %.0fs: %s", elapsed, e, exc_info=True)

            if elapsed > crash_window:
                crash_count = 0
            crash_count += 1

            if crash_count >= max_rapid_crashes:
                wait = 120
                log.warning("Many rapid crashes (%d). Waiting %ds...", crash_count, wait)
            else:
                wait = min(10 * crash_count, 60)

            log.info("Restarting in %ds (crash %d)...", wait, crash_count)
            time.sleep(wait)

            http_client.http = http_client.reset_session(http_client.http)


if __name__ == "__main__":
    sys.exit(run_with_auto_restart())
