"""
autosign_core — Rollcall Auto Sign-in Service v1.3
==================================================
Architecture: one poll thread per account, one scheduler timer per
account, short-lived resolver threads per open rollcall.

  constants.py    → Version, cadences, endpoints, beacon table
  config.py       → Paths, env flags, logging, JSON load/save
  errors.py       → Exception hierarchy
  http_client.py  → HTTP session with retry/pooling, auth-aware clients
  api.py          → Rollcall list and answer endpoints
  geolocation.py  → Position estimate from distance observations
  responder.py    → Radar resolution and numeric brute force
  engine.py       → AutoSignEngine (poll loop + dispatch)
  scheduler.py    → WindowScheduler (daily window + overrides)
  state.py        → AccountConfig, auth modes, engine states
  notifier.py     → AccountLogger + webhook push
  store.py        → JSON account store and invite codes
  supervisor.py   → AccountSupervisor (instances + control surface)
  runner.py       → main() + auto-restart wrapper
"""

from .constants import AGENT_VERSION

__version__ = AGENT_VERSION
