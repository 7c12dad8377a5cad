"""Export and import of whole-campaign save files.

An exported save holds every pipeline's state (step, errors, outputs, the
unshown flag) plus the gameplay slice (archive, live dialogue, day
structure, settings), so another device can resume exactly where this one
stopped. Imports run through the same defaulting as a fresh load.

Migration rules on import:
- a bare game snapshot with no ``pipelines`` (older saves) resets every
  pipeline to NOT_STARTED with no errors
- ``history`` / ``full_history`` are read as the live committed lines and
  the archive
- remote context-cache handles are dropped; they never survive a move
- API keys are never exported and are ignored on import
"""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Tuple

from .config import DEFAULT_DAY_STRUCTURE, SAVE_FORMAT_VERSION, STALE_CACHE_FIELDS
from .context import InvalidSaveError
from .history import GameSnapshot
from .logging import log_run as _log_run, log_warning as _log_warning
from .persistence import StateStore
from .state import PipelineState
from .steps import PipelineKind
from .utils import write_json_atomic


def _is_api_key(name: str) -> bool:
    n = str(name).lower().replace("-", "_")
    return n.endswith("api_key") or n.endswith("apikey")


def strip_api_keys(settings: Any) -> Dict[str, Any]:
    if not isinstance(settings, dict):
        return {}
    return {k: v for k, v in settings.items() if not _is_api_key(k)}


def drop_cache_refs(obj: Any) -> Any:
    """Remove stale remote cache handles at any depth."""
    if isinstance(obj, dict):
        return {k: drop_cache_refs(v) for k, v in obj.items() if k not in STALE_CACHE_FIELDS}
    if isinstance(obj, list):
        return [drop_cache_refs(v) for v in obj]
    return obj


# ---------------------------
# Export
# ---------------------------

def export_snapshot(store: StateStore) -> Dict[str, Any]:
    game = store.load_game()
    body = game.to_dict()
    body["settings"] = strip_api_keys(body.get("settings"))
    body["day"] = game.live.day
    body["segment"] = game.live.segment
    return {
        "version": SAVE_FORMAT_VERSION,
        "pipelines": {k.value: s.to_dict() for k, s in store.load_all_pipelines().items()},
        "game": body,
    }


def export_to_file(store: StateStore, path: str | Path) -> Path:
    p = Path(path)
    doc = export_snapshot(store)
    write_json_atomic(p, doc)
    _log_run(f"SAVE exported | path={p}")
    return p


# ---------------------------
# Import
# ---------------------------

def _normalize_game(raw: Any) -> Dict[str, Any]:
    g = dict(raw) if isinstance(raw, dict) else {}
    live = dict(g["live"]) if isinstance(g.get("live"), dict) else {}
    if "archive" not in g and "full_history" in g:
        g["archive"] = g.pop("full_history")
    if not live.get("committed") and "history" in g:
        live["committed"] = g.pop("history")
    for k in ("day", "segment"):
        if k in g and k not in live:
            live[k] = g[k]
    if "segment_order" not in g and "day_structure" in g:
        g["segment_order"] = g["day_structure"]
    g["live"] = live
    g["settings"] = strip_api_keys(g.get("settings"))
    return drop_cache_refs(g)


def migrate(raw: Any, *, fallback_order: Optional[Sequence[str]] = None) -> Tuple[Dict[PipelineKind, PipelineState], GameSnapshot]:
    """Turn any supported save document into (pipeline states, game snapshot)."""
    if not isinstance(raw, dict):
        raise InvalidSaveError(f"Save file must contain a JSON object, got {type(raw).__name__}")
    version = raw.get("version", 1)
    if isinstance(version, int) and version > SAVE_FORMAT_VERSION:
        raise InvalidSaveError(f"Save format {version} is newer than supported ({SAVE_FORMAT_VERSION})")

    raw_pipelines = raw.get("pipelines")
    if isinstance(raw_pipelines, dict):
        game_raw = raw.get("game")
    else:
        # Older saves: the document itself is the game snapshot.
        game_raw = raw.get("game", raw)
        _log_warning("Save has no pipeline state; all pipelines restart from the beginning")
        raw_pipelines = {}

    pipelines: Dict[PipelineKind, PipelineState] = {}
    for kind in PipelineKind:
        entry = raw_pipelines.get(kind.value)
        if isinstance(entry, dict):
            pipelines[kind] = PipelineState.from_dict(drop_cache_refs(entry), kind=kind)
        else:
            pipelines[kind] = PipelineState.initial(kind)

    order = list(fallback_order) if fallback_order else list(DEFAULT_DAY_STRUCTURE)
    snapshot = GameSnapshot.from_dict(_normalize_game(game_raw), fallback_order=order)
    return pipelines, snapshot


def read_save_file(path: str | Path) -> Any:
    p = Path(path)
    try:
        return json.loads(p.read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise InvalidSaveError(f"Save file not found: {p}")
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise InvalidSaveError(f"Unreadable save file {p}: {e}")


def import_snapshot(store: StateStore, raw: Any, *, runner=None, fallback_order: Optional[Sequence[str]] = None) -> GameSnapshot:
    """Replace the campaign with ``raw`` in one atomic write.

    With a ``runner`` the import needs its session to hold the campaign, and
    any in-flight run is invalidated first so it cannot write over the
    imported state when its stage finishes.
    """
    pipelines, snapshot = migrate(raw, fallback_order=fallback_order)
    if runner is not None:
        runner.require_claim("import a save")
        runner.invalidate()
    store.replace_all(pipelines, snapshot)
    _log_run(
        "SAVE imported | "
        + " ".join(f"{k.value}={s.current_step}" for k, s in pipelines.items())
        + f" archived_days={len(snapshot.archive)}"
    )
    return snapshot
