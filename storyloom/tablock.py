"""Cross-session exclusion for a campaign.

Two copies of the game writing the same campaign files corrupt each other.
Each session claims ``tab.lock`` next to the campaign file with its own id
and keeps a heartbeat in it. A claim succeeds when the lock is absent,
already ours, or its heartbeat is stale; otherwise the session is blocked.

The lock is advisory. A running session refreshes its heartbeat in the
background and claims again before every write, so a session that lost the
lock stops instead of overwriting the holder's state.
"""
from __future__ import annotations

import json
import time
import uuid
from pathlib import Path
from typing import Callable, Optional

from .env import get_state_dir, tab_lock_stale_seconds
from .logging import log_run as _log_run
from .utils import write_json_atomic

LOCK_FILE = "tab.lock"


class TabGuard:
    """Interface the runner consults before the first stage of a run."""

    session_id: str = ""

    def claim(self) -> bool:
        raise NotImplementedError

    def release(self) -> None:
        raise NotImplementedError

    def holder(self) -> Optional[str]:
        raise NotImplementedError


class NullTabGuard(TabGuard):
    """Single-session setups (tests, one-off CLI calls) that never contend."""

    session_id = "local"

    def claim(self) -> bool:
        return True

    def release(self) -> None:
        return None

    def holder(self) -> Optional[str]:
        return self.session_id


class FileTabLock(TabGuard):
    def __init__(
        self,
        state_dir: Optional[Path] = None,
        *,
        session_id: Optional[str] = None,
        stale_after: Optional[float] = None,
        now: Callable[[], float] = time.time,
    ):
        self.path = (Path(state_dir) if state_dir is not None else get_state_dir()) / LOCK_FILE
        self.session_id = session_id or uuid.uuid4().hex
        self.stale_after = stale_after if stale_after is not None else tab_lock_stale_seconds()
        self._now = now

    def _read(self) -> Optional[dict]:
        if not self.path.exists():
            return None
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            # A torn or unreadable lock is treated as abandoned.
            return None
        return raw if isinstance(raw, dict) else None

    def holder(self) -> Optional[str]:
        raw = self._read()
        if raw is None or self._is_stale(raw):
            return None
        return str(raw.get("session_id") or "") or None

    def _is_stale(self, raw: dict) -> bool:
        try:
            beat = float(raw.get("heartbeat", 0))
        except (TypeError, ValueError):
            return True
        return (self._now() - beat) > self.stale_after

    def claim(self) -> bool:
        """Take or refresh the lock; False when a live foreign session holds it."""
        raw = self._read()
        if raw is not None and not self._is_stale(raw) and raw.get("session_id") != self.session_id:
            _log_run(f"TABLOCK blocked | ours={self.session_id} holder={raw.get('session_id')}")
            return False
        write_json_atomic(self.path, {"session_id": self.session_id, "heartbeat": self._now()})
        return True

    def release(self) -> None:
        raw = self._read()
        if raw is not None and raw.get("session_id") == self.session_id:
            self.path.unlink(missing_ok=True)
            _log_run(f"TABLOCK released | ours={self.session_id}")
