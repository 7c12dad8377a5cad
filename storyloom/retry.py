"""Manual retry, the advisory countdown, and error display helpers.

The countdown is cosmetic: it paces auto-advance between stages and tells
the player how long a stalled step has left. It never changes what the
runner executes. Time comes from an injected Clock so tests can drive it
without waiting on the wall clock.

Public API:
- SystemClock, CountdownTimer
- RetryCoordinator(runner).retry(kind, step, ctx, resume=False)
- classify_error(message) -> ErrorAdvice
- format_api_error(message) -> str
"""
from __future__ import annotations

import asyncio
import json
import math
import time
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Optional, Tuple

from .config import TIMEOUT_SENTINEL
from .context import RunContext
from .logging import log_run as _log_run
from .state import Countdown, CountdownKind
from .steps import PipelineKind

if TYPE_CHECKING:  # pragma: no cover
    from .runner import Outcome, PipelineRunner


class SystemClock:
    def now(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class CountdownTimer:
    """Idle -> Counting(step_key, seconds_remaining, kind) -> Idle."""

    def __init__(self, clock=None):
        self.clock = clock or SystemClock()
        self.current: Optional[Countdown] = None
        self._deadline = 0.0

    @property
    def is_idle(self) -> bool:
        return self.current is None

    def start(self, step_key: str, seconds: int, kind: CountdownKind) -> Optional[Countdown]:
        if seconds <= 0:
            self.cancel()
            return None
        self._deadline = self.clock.now() + seconds
        self.current = Countdown(step_key=step_key, seconds_remaining=int(seconds), kind=kind)
        return self.current

    def tick(self) -> Optional[Countdown]:
        if self.current is None:
            return None
        left = self._deadline - self.clock.now()
        if left <= 0:
            self.current = None
        else:
            self.current.seconds_remaining = int(math.ceil(left))
        return self.current

    def cancel(self) -> None:
        self.current = None

    async def wait(self) -> None:
        """Return once the countdown reaches zero or is cancelled."""
        while self.tick() is not None:
            await self.clock.sleep(min(1.0, max(self._deadline - self.clock.now(), 0.0)))


class RetryCoordinator:
    def __init__(self, runner: "PipelineRunner"):
        self.runner = runner

    async def retry(self, kind: PipelineKind, step: int, ctx: RunContext, *, resume: bool = False) -> "Outcome":
        """Re-run exactly ``step``; with ``resume`` continue the pipeline if it succeeded."""
        from .runner import OutcomeStatus

        self.cancel_countdown(kind)
        _log_run(f"RETRY requested | kind={PipelineKind(kind).value} step={int(step)} resume={resume}")
        outcome = await self.runner.run_stage(kind, step, ctx)
        if resume and outcome.status is OutcomeStatus.ADVANCED:
            return await self.runner.run(kind, ctx)
        return outcome

    def countdown(self, kind: PipelineKind) -> Optional[Countdown]:
        return self.runner.timer(kind).tick()

    def cancel_countdown(self, kind: PipelineKind) -> None:
        """Called when the player acts (retry, switch model, navigate away)."""
        self.runner.timer(kind).cancel()


# ---------------------------
# Error display helpers
# ---------------------------

class ErrorCategory(str, Enum):
    QUOTA = "quota"
    AUTH = "auth"
    SAFETY = "safety"
    TIMEOUT = "timeout"
    SERVER = "server"
    GENERIC = "generic"


class RemedialAction(str, Enum):
    RETRY = "retry"
    SWITCH_MODEL = "switch_model"
    CHECK_API_KEY = "check_api_key"
    EXPORT_SAVE = "export_save"


@dataclass(frozen=True)
class ErrorAdvice:
    category: ErrorCategory
    title: str
    actions: Tuple[RemedialAction, ...]


_QUOTA_PHRASES = ("quota", "limit reached", "daily", "exhausted", "too many requests", "rate limit", "429")
_AUTH_PHRASES = ("api key", "invalid", "authentication", "unauthorized", "permission", "401", "403",
                 "tier 1", "free tier", "not available", "not supported")
_SAFETY_PHRASES = ("safety", "blocked", "content policy", "prohibited")
_TIMEOUT_PHRASES = ("timeout", "timed out", TIMEOUT_SENTINEL.lower())
_SERVER_PHRASES = ("500", "502", "503", "504", "server error", "unavailable", "overloaded")


def classify_error(message: str) -> ErrorAdvice:
    """Bucket raw error text to pick which remedial buttons to offer. Display only."""
    low = (message or "").lower()
    if any(p in low for p in _QUOTA_PHRASES):
        return ErrorAdvice(ErrorCategory.QUOTA, "Quota Exhausted",
                           (RemedialAction.SWITCH_MODEL, RemedialAction.RETRY, RemedialAction.EXPORT_SAVE))
    if any(p in low for p in _AUTH_PHRASES):
        return ErrorAdvice(ErrorCategory.AUTH, "API Key Issue",
                           (RemedialAction.CHECK_API_KEY, RemedialAction.RETRY))
    if any(p in low for p in _SAFETY_PHRASES):
        # Usually an overloaded backend rather than real content.
        return ErrorAdvice(ErrorCategory.SAFETY, "Safety Filter",
                           (RemedialAction.RETRY, RemedialAction.SWITCH_MODEL, RemedialAction.CHECK_API_KEY, RemedialAction.EXPORT_SAVE))
    if any(p in low for p in _TIMEOUT_PHRASES):
        return ErrorAdvice(ErrorCategory.TIMEOUT, "Request Timeout", (RemedialAction.RETRY,))
    if any(p in low for p in _SERVER_PHRASES):
        return ErrorAdvice(ErrorCategory.SERVER, "Server Overloaded",
                           (RemedialAction.RETRY, RemedialAction.SWITCH_MODEL, RemedialAction.EXPORT_SAVE))
    return ErrorAdvice(ErrorCategory.GENERIC, "Error", (RemedialAction.RETRY, RemedialAction.SWITCH_MODEL))


def format_api_error(message: str) -> str:
    """Short one-line form of a raw error for progress lists."""
    if not message:
        return ""
    if message == TIMEOUT_SENTINEL:
        return "Request timed out (3.5 min)"
    start = message.find("{")
    if start != -1:
        try:
            parsed = json.loads(message[start:])
        except json.JSONDecodeError:
            parsed = None
        err = parsed.get("error") if isinstance(parsed, dict) else None
        if isinstance(err, dict) and err.get("code") and err.get("status"):
            return f"{err['code']} - {err['status']}"
    if len(message) > 50:
        return message[:47] + "..."
    return message
