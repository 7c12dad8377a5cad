"""GameSession: the seam between gameplay state and the pipeline runner.

The session builds the explicit RunContext every stage reads, starts and
retries pipelines, and folds accepted results into gameplay state (archive,
live dialogue, day and segment) in the same atomic write that discards the
finished pipeline.
"""
from __future__ import annotations

from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from .context import PipelineError, RunContext
from .history import (
    DayLog,
    DialogueEntry,
    GameSnapshot,
    LiveDialogue,
    parse_day,
    reconcile_imported,
    reconcile_live,
    reconcile_session,
)
from .logging import log_run as _log_run
from .persistence import StateStore
from .pipelines import end_of_day, new_game, segment_transition
from .retry import RetryCoordinator
from .runner import Outcome, PipelineRunner
from .savefile import export_to_file, import_snapshot, migrate, read_save_file
from .state import PipelineState
from .steps import PipelineKind


def _in_progress(state: PipelineState) -> bool:
    return state.current_step > 0 or state.has_errors or state.generated_but_unshown


def _lines(scene: Any) -> List[DialogueEntry]:
    if not isinstance(scene, dict):
        return []
    day = parse_day(scene.get("day"), 0)
    segment = str(scene.get("segment", ""))
    return [DialogueEntry.from_dict(d, day=day, segment=segment) for d in scene.get("dialogue") or [] if isinstance(d, dict)]


class GameSession:
    def __init__(
        self,
        store: Optional[StateStore] = None,
        runner: Optional[PipelineRunner] = None,
        *,
        story: Optional[RunContext] = None,
        story_path: Optional[str] = None,
        **runner_kwargs: Any,
    ):
        self.store = store or StateStore()
        self.runner = runner or PipelineRunner(self.store, **runner_kwargs)
        self.retries = RetryCoordinator(self.runner)
        self._story = story
        self._story_path = story_path

    # ---------------------------
    # Context
    # ---------------------------

    def story(self) -> RunContext:
        if self._story is None:
            self._story = RunContext.from_story(story_path=self._story_path)
        return self._story

    def segment_order(self) -> List[str]:
        if self.store.has_game():
            return list(self.store.load_game().segment_order)
        return list(self.story().segment_order)

    def context(self, kind: Optional[PipelineKind] = None) -> RunContext:
        """Explicit context for a run: position, day structure, cast and today's transcript.

        A new game always starts from the story configuration, whatever game
        is currently stored.
        """
        base = self.story()
        if kind == PipelineKind.NEW_GAME or not self.store.has_game():
            return base.with_position(1, base.segment_order[0])
        game = self.store.load_game()
        today = next((d for d in reconcile_session(game) if d.day == game.live.day), None)
        transcript = [ln.to_dict() for seg in (today.segments if today else []) for ln in seg.dialogue]
        return replace(
            base,
            day=game.live.day,
            segment=game.live.segment,
            segment_order=list(game.segment_order),
            transcript=transcript,
        )

    # ---------------------------
    # Running
    # ---------------------------

    async def run(self, kind: PipelineKind, from_step: Optional[int] = None) -> Outcome:
        return await self.runner.run(kind, self.context(kind), from_step)

    async def retry(self, kind: PipelineKind, step: int, *, resume: bool = False) -> Outcome:
        return await self.retries.retry(kind, step, self.context(kind), resume=resume)

    def status(self, kind: PipelineKind) -> PipelineState:
        return self.runner.status(kind)

    def find_interrupted(self) -> Optional[PipelineKind]:
        """Which pipeline a reload should resume, if any."""
        states = self.store.load_all_pipelines()
        if _in_progress(states[PipelineKind.END_OF_DAY]):
            return PipelineKind.END_OF_DAY
        if _in_progress(states[PipelineKind.SEGMENT_TRANSITION]):
            return PipelineKind.SEGMENT_TRANSITION
        ng = states[PipelineKind.NEW_GAME]
        # A failed new game goes back to setup instead of resuming.
        if _in_progress(ng) and not ng.has_errors:
            return PipelineKind.NEW_GAME
        return None

    # ---------------------------
    # Acceptance
    # ---------------------------

    def accept(self, kind: PipelineKind) -> GameSnapshot:
        kind = PipelineKind(kind)
        state = self.store.load_or_initial(kind)
        if not state.generated_but_unshown:
            raise PipelineError(f"{kind.value} has no finished result to accept (step {state.current_step})")
        game = self.store.load_game() if self.store.has_game() else None
        snapshot = self._apply(kind, state.data, game)
        self.runner.accept(kind, snapshot)
        _log_run(f"SESSION accepted | kind={kind.value} day={snapshot.live.day} segment={snapshot.live.segment}")
        return snapshot

    def _apply(self, kind: PipelineKind, data: Dict[str, Any], game: Optional[GameSnapshot]) -> GameSnapshot:
        if kind is PipelineKind.NEW_GAME:
            order = list(self.story().segment_order)
            scene = data.get(new_game.FIRST_SCENE)
            return GameSnapshot(
                archive=[],
                live=LiveDialogue(day=1, segment=order[0], queued=_lines(scene)),
                segment_order=order,
                settings=dict(game.settings) if game else {},
            )
        if game is None:
            raise PipelineError(f"Cannot accept {kind.value} without a game in progress")
        archive = reconcile_live(game.archive, game.live, game.segment_order)
        if kind is PipelineKind.SEGMENT_TRANSITION:
            scene = data.get(segment_transition.SCENE_GENERATION) or {}
            live = LiveDialogue(day=game.live.day, segment=str(scene.get("segment") or game.live.segment), queued=_lines(scene))
        else:
            scene = data.get(end_of_day.SCENE_GENERATION) or {}
            live = LiveDialogue(
                day=parse_day(scene.get("day"), game.live.day + 1),
                segment=str(scene.get("segment") or game.segment_order[0]),
                queued=_lines(scene),
            )
        return GameSnapshot(archive=archive, live=live, segment_order=list(game.segment_order), settings=dict(game.settings))

    # ---------------------------
    # History and save files
    # ---------------------------

    def history(self) -> List[DayLog]:
        return reconcile_session(self.store.load_game())

    def imported_history(self, raw: Any) -> List[DayLog]:
        """Timeline of a foreign save, ordered by its own day structure (or ours if it has none)."""
        order: Sequence[str] = self.segment_order()
        _, snapshot = migrate(raw, fallback_order=order)
        return reconcile_imported(snapshot, order)

    def export(self, path: str | Path) -> Path:
        return export_to_file(self.store, path)

    def import_save(self, path: str | Path) -> GameSnapshot:
        return import_snapshot(self.store, read_save_file(path), runner=self.runner, fallback_order=self.segment_order())

    def close(self) -> None:
        self.runner.guard.release()
