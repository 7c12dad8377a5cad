"""Environment helpers for storyloom.

Centralizes reading environment variables, resolving model/token settings
per stage, resolving the state and log directories, and capturing a masked
environment snapshot for diagnostics.
"""
from __future__ import annotations

import os
from typing import Optional, Dict, Any, List, Tuple
from pathlib import Path

from dotenv import load_dotenv

from .config import (
    DEFAULT_STAGE_TIMEOUT_SECONDS,
    DEFAULT_SUCCESS_COUNTDOWN_SECONDS,
    DEFAULT_ERROR_COUNTDOWN_SECONDS,
    DEFAULT_TIMEOUT_COUNTDOWN_SECONDS,
    DEFAULT_TAB_LOCK_STALE_SECONDS,
)


def load_env() -> None:
    """Load environment variables from a local .env file if present.

    override=True so the local .env takes precedence over shell state
    during development, which avoids confusion from lingering env values.
    """
    load_dotenv(override=True)


def env_str(name: str) -> Optional[str]:
    val = os.getenv(name)
    if val is None or str(val).strip() == "":
        return None
    return val


def env_int(name: str, default: int) -> int:
    try:
        v = int(os.getenv(name, str(default)))
        if v <= 0:
            return default
        return v
    except ValueError:
        return default


def env_float(name: str, default: float) -> float:
    """Non-negative float from env; 0 is allowed (disables countdowns)."""
    try:
        v = float(os.getenv(name, str(default)))
        return v if v >= 0 else default
    except ValueError:
        return default


def resolve_temp(step_key: str, default_temp: float) -> float:
    """Resolve temperature with precedence: SL_TEMP_{STEP} -> SL_TEMP_DEFAULT -> default_temp."""
    for name in (f"SL_TEMP_{step_key}", "SL_TEMP_DEFAULT"):
        val = env_str(name)
        if val is not None:
            try:
                return float(val)
            except ValueError:
                continue
    return float(default_temp)


def resolve_max_tokens(step_key: str, default_max_tokens: int) -> int:
    """Resolve max tokens with precedence: SL_MAX_TOKENS_{STEP} -> SL_MAX_TOKENS_DEFAULT -> default."""
    for name in (f"SL_MAX_TOKENS_{step_key}", "SL_MAX_TOKENS_DEFAULT"):
        val = env_str(name)
        if val is not None:
            try:
                v = int(val)
            except ValueError:
                continue
            return v if v > 0 else default_max_tokens
    return int(default_max_tokens)


def get_default_model() -> str:
    return os.getenv("SL_MODEL_DEFAULT") or os.getenv("OPENAI_MODEL", "gpt-4o-mini")


def env_for(step_key: str, *, default_temp: float = 0.7, default_max_tokens: int = 4000) -> Tuple[str, float, int]:
    """Resolve (model, temperature, max_tokens) for a stage.

    Precedence:
    - SL_MODEL_{STEP}, SL_TEMP_{STEP}, SL_MAX_TOKENS_{STEP}
    - SL_MODEL_DEFAULT / OPENAI_MODEL, SL_TEMP_DEFAULT, SL_MAX_TOKENS_DEFAULT
    - Provided defaults
    """
    model = env_str(f"SL_MODEL_{step_key}") or get_default_model()
    return model, resolve_temp(step_key, default_temp), resolve_max_tokens(step_key, default_max_tokens)


# ---------------------------
# Path resolution
# ---------------------------

def _as_path(val: Optional[str]) -> Optional[Path]:
    if val is None or str(val).strip() == "":
        return None
    return Path(val)


def get_base_dir() -> Path:
    """Resolve the base working directory for a campaign.

    Env: SL_BASE_DIR
    Default: current working directory
    """
    base = env_str("SL_BASE_DIR")
    if base:
        p = Path(base)
        return p if p.is_absolute() else (Path.cwd() / p)
    return Path(".")


def get_state_dir() -> Path:
    """Resolve the persisted-state directory.

    Env: SL_STATE_DIR (relative to base if not absolute)
    Default: <base>/state
    """
    base = get_base_dir()
    p = _as_path(env_str("SL_STATE_DIR"))
    if p is None:
        return base / "state"
    return p if p.is_absolute() else (base / p)


def get_story_path() -> Path:
    """Resolve the story configuration YAML (day structure, roster).

    Env: SL_STORY_PATH (relative to base if not absolute)
    Default: <base>/STORY.yaml
    """
    base = get_base_dir()
    p = _as_path(env_str("SL_STORY_PATH"))
    if p is None:
        return base / "STORY.yaml"
    return p if p.is_absolute() else (base / p)


def get_prompts_dir() -> Path:
    base = get_base_dir()
    p = _as_path(env_str("SL_PROMPTS_DIR"))
    if p is None:
        return base / "prompts"
    return p if p.is_absolute() else (base / p)


# ---------------------------
# Timing knobs
# ---------------------------

def stage_timeout_seconds() -> float:
    return env_float("SL_STAGE_TIMEOUT", DEFAULT_STAGE_TIMEOUT_SECONDS) or DEFAULT_STAGE_TIMEOUT_SECONDS


def success_countdown_seconds() -> int:
    return int(env_float("SL_SUCCESS_COUNTDOWN", DEFAULT_SUCCESS_COUNTDOWN_SECONDS))


def error_countdown_seconds() -> int:
    return int(env_float("SL_ERROR_COUNTDOWN", DEFAULT_ERROR_COUNTDOWN_SECONDS))


def timeout_countdown_seconds() -> int:
    return int(env_float("SL_TIMEOUT_COUNTDOWN", DEFAULT_TIMEOUT_COUNTDOWN_SECONDS))


def tab_lock_stale_seconds() -> float:
    return env_float("SL_TAB_LOCK_STALE", DEFAULT_TAB_LOCK_STALE_SECONDS) or DEFAULT_TAB_LOCK_STALE_SECONDS


def tab_lock_heartbeat_seconds() -> float:
    """How often a running session refreshes its tab lock (a third of the stale window)."""
    return env_float("SL_TAB_LOCK_HEARTBEAT", 0.0) or tab_lock_stale_seconds() / 3


# ---------------------------
# Diagnostics
# ---------------------------

def mask_env_value(k: str, v: Optional[str]) -> str:
    """Mask secrets in environment values while retaining a minimal suffix for debugging.
    Masks keys containing key/secret/token/password regardless of prefix.
    """
    if v is None:
        return ""
    kl = (k or "").lower()
    if any(s in kl for s in ("key", "secret", "token", "password")):
        s = str(v)
        if len(s) <= 8:
            return "***"
        return ("*" * (len(s) - 4)) + s[-4:]
    return str(v)


def collect_program_env_snapshot() -> Dict[str, Any]:
    """Collect program-relevant environment settings for diagnostics.
    Includes SL_* and OPENAI_* variables with secret masking, plus derived paths.
    """
    prefixes = ("SL_", "OPENAI_")
    env_items: List[Tuple[str, str]] = []
    for k, v in os.environ.items():
        if any(k.startswith(p) for p in prefixes):
            env_items.append((k, mask_env_value(k, v)))
    env_items.sort(key=lambda kv: kv[0])
    derived: Dict[str, Any] = {
        "base_dir": str(get_base_dir()),
        "state_dir": str(get_state_dir()),
        "story_path": str(get_story_path()),
        "model_default": get_default_model(),
        "stage_timeout_seconds": stage_timeout_seconds(),
    }
    return {"env": dict(env_items), "derived": derived}
