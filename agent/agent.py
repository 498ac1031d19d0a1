"""
Rollcall Auto Sign-in — service launcher
========================================
Keeps registered accounts signed in to classroom rollcalls: polls each
account's open rollcalls and answers radar (location) and number ones.

Accounts live in $AUTOSIGN_HOME/accounts.json (default: ./data).

Usage:
    python agent.py
"""

from autosign_core.runner import run_with_auto_restart

if __name__ == "__main__":
    run_with_auto_restart()
