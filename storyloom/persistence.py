"""Campaign persistence.

All persisted state lives in one JSON document (``campaign.json`` under the
state directory) that is rewritten through ``write_json_atomic``. A stage
commit replaces the pipeline's whole record in one file swap, so a reload
sees either the old step with the old data or the new step with the new
data, never one without the other.

Layout:
    {"version": 2,
     "pipelines": {"new_game": {...}, "end_of_day": {...}, "segment_transition": {...}},
     "game": {"archive": [...], "live": {...}, "segment_order": [...], "settings": {...}}}
"""
from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional

from .config import SAVE_FORMAT_VERSION
from .env import get_state_dir
from .history import GameSnapshot
from .logging import log_run as _log_run
from .state import PipelineState
from .steps import PipelineKind
from .utils import read_json, write_json_atomic

CAMPAIGN_FILE = "campaign.json"


class StateStore:
    def __init__(self, state_dir: Optional[Path] = None):
        self.state_dir = Path(state_dir) if state_dir is not None else get_state_dir()
        self.path = self.state_dir / CAMPAIGN_FILE

    # ---------------------------
    # Raw document
    # ---------------------------

    def _load_doc(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {"version": SAVE_FORMAT_VERSION, "pipelines": {}, "game": {}}
        doc = read_json(self.path)
        if not isinstance(doc, dict):
            doc = {}
        doc.setdefault("version", SAVE_FORMAT_VERSION)
        if not isinstance(doc.get("pipelines"), dict):
            doc["pipelines"] = {}
        if not isinstance(doc.get("game"), dict):
            doc["game"] = {}
        return doc

    def _write_doc(self, doc: Dict[str, Any]) -> None:
        write_json_atomic(self.path, doc)

    # ---------------------------
    # Pipeline state
    # ---------------------------

    def load_pipeline_state(self, kind: PipelineKind) -> Optional[PipelineState]:
        kind = PipelineKind(kind)
        raw = self._load_doc()["pipelines"].get(kind.value)
        if raw is None:
            return None
        return PipelineState.from_dict(raw, kind=kind)

    def load_or_initial(self, kind: PipelineKind) -> PipelineState:
        return self.load_pipeline_state(kind) or PipelineState.initial(kind)

    def save_pipeline_state(self, kind: PipelineKind, state: PipelineState) -> None:
        kind = PipelineKind(kind)
        doc = self._load_doc()
        doc["pipelines"][kind.value] = state.to_dict()
        self._write_doc(doc)
        _log_run(f"STATE saved | kind={kind.value} step={state.current_step} errors={sorted(state.errors)} unshown={state.generated_but_unshown}")

    def load_all_pipelines(self) -> Dict[PipelineKind, PipelineState]:
        return {k: self.load_or_initial(k) for k in PipelineKind}

    # ---------------------------
    # Game snapshot
    # ---------------------------

    def has_game(self) -> bool:
        return bool(self._load_doc()["game"])

    def load_game(self) -> GameSnapshot:
        return GameSnapshot.from_dict(self._load_doc()["game"])

    def save_game(self, snapshot: GameSnapshot) -> None:
        doc = self._load_doc()
        doc["game"] = snapshot.to_dict()
        self._write_doc(doc)

    def save_game_and_pipeline(self, snapshot: GameSnapshot, kind: PipelineKind, state: PipelineState) -> None:
        """Write gameplay state and a pipeline record in one swap (used when accepting results)."""
        doc = self._load_doc()
        doc["game"] = snapshot.to_dict()
        doc["pipelines"][PipelineKind(kind).value] = state.to_dict()
        self._write_doc(doc)

    def replace_all(self, pipelines: Dict[PipelineKind, PipelineState], snapshot: GameSnapshot) -> None:
        doc = {
            "version": SAVE_FORMAT_VERSION,
            "pipelines": {PipelineKind(k).value: s.to_dict() for k, s in pipelines.items()},
            "game": snapshot.to_dict(),
        }
        self._write_doc(doc)
        _log_run(f"STATE replaced | pipelines={sorted(doc['pipelines'])}")
