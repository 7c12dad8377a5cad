"""Project configuration constants.

Centralizes defaults shared by the runner, the countdown timer and the
persistence layer. Keeping these in one place avoids duplication and makes
it easier to evolve defaults.
"""
from __future__ import annotations

DEFAULT_DAY_STRUCTURE = ["Morning", "Afternoon", "Evening", "Night"]

# Observed upper bound on a single generation call (3.5 minutes).
DEFAULT_STAGE_TIMEOUT_SECONDS = 210.0

DEFAULT_SUCCESS_COUNTDOWN_SECONDS = 3
DEFAULT_ERROR_COUNTDOWN_SECONDS = 5
DEFAULT_TIMEOUT_COUNTDOWN_SECONDS = 30

# A tab lock whose heartbeat is older than this is considered abandoned.
DEFAULT_TAB_LOCK_STALE_SECONDS = 15.0

SAVE_FORMAT_VERSION = 2

# Sentinel message for a stage that exceeded its time bound.
TIMEOUT_SENTINEL = "API_ERROR_TIMEOUT"

# Remote context-cache handles that never survive a move to another device.
STALE_CACHE_FIELDS = ("cache_name", "cache_model", "cache_created_at")
