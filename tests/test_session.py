import asyncio

import pytest

from storyloom.context import PipelineError, ServiceError
from storyloom.history import DialogueEntry, GameSnapshot, LiveDialogue
from storyloom.runner import OutcomeStatus
from storyloom.session import GameSession
from storyloom.state import ErrorDetail, ErrorKind, PipelineState
from storyloom.steps import PipelineKind


@pytest.fixture()
def session(store, runner, ctx):
    return GameSession(store, runner, story=ctx)


def _line(i: int, day: int, segment: str) -> DialogueEntry:
    return DialogueEntry(id=f"x{i}", day=day, segment=segment, speaker="Aiko", dialogue=f"line {i}")


def test_context_reads_the_story_file(store, runner, story_file):
    s = GameSession(store, runner, story_path=str(story_file))
    c = s.context(PipelineKind.NEW_GAME)
    assert (c.day, c.segment) == (1, "Morning")
    assert c.character_names == ["Aiko", "Ren"]
    assert c.player_name == "Kai"


def test_new_game_then_accept_starts_day_one(session, store):
    out = asyncio.run(session.run(PipelineKind.NEW_GAME))
    assert out.status is OutcomeStatus.READY

    snap = session.accept(PipelineKind.NEW_GAME)
    assert (snap.live.day, snap.live.segment) == (1, "Morning")
    assert [d.id for d in snap.live.queued] == ["d1-morning-001", "d1-morning-002"]
    assert snap.archive == []
    # The pipeline record is discarded in the same write.
    assert store.load_or_initial(PipelineKind.NEW_GAME).current_step == 0
    assert store.load_game().live.queued[0].speaker == "Aiko"


def test_accept_twice_is_rejected(session):
    asyncio.run(session.run(PipelineKind.NEW_GAME))
    session.accept(PipelineKind.NEW_GAME)
    with pytest.raises(PipelineError):
        session.accept(PipelineKind.NEW_GAME)


def test_segment_transition_sees_transcript_and_folds_segment_into_archive(session, service, store):
    asyncio.run(session.run(PipelineKind.NEW_GAME))
    session.accept(PipelineKind.NEW_GAME)

    c = session.context(PipelineKind.SEGMENT_TRANSITION)
    assert [ln["id"] for ln in c.transcript] == ["d1-morning-001", "d1-morning-002"]

    out = asyncio.run(session.run(PipelineKind.SEGMENT_TRANSITION))
    assert out.status is OutcomeStatus.READY
    analysis_prompt = dict(service.calls)["segment_transition.analysis"]["user"]
    assert "Aiko says hello" in analysis_prompt

    snap = session.accept(PipelineKind.SEGMENT_TRANSITION)
    assert (snap.live.day, snap.live.segment) == (1, "Afternoon")
    assert [d.id for d in snap.live.queued] == ["d1-afternoon-001"]
    assert [s.segment for s in snap.archive[0].segments] == ["Morning"]
    assert [d.id for d in session.history()[0].segments[1].dialogue] == ["d1-afternoon-001"]


def test_end_of_day_accept_moves_to_next_morning(session, store):
    store.save_game(GameSnapshot(live=LiveDialogue(day=3, segment="Night", committed=[_line(1, 3, "Night")])))
    out = asyncio.run(session.run(PipelineKind.END_OF_DAY))
    assert out.status is OutcomeStatus.READY

    snap = session.accept(PipelineKind.END_OF_DAY)
    assert (snap.live.day, snap.live.segment) == (4, "Morning")
    assert [d.day for d in snap.archive] == [3]
    assert [d.id for d in snap.live.queued] == ["d4-morning-001"]


def test_accepting_without_a_game_is_rejected(session, store):
    store.save_pipeline_state(
        PipelineKind.SEGMENT_TRANSITION,
        PipelineState(PipelineKind.SEGMENT_TRANSITION, current_step=3, generated_but_unshown=True),
    )
    with pytest.raises(PipelineError):
        session.accept(PipelineKind.SEGMENT_TRANSITION)


def test_find_interrupted_prefers_end_of_day_then_segment(session, store):
    assert session.find_interrupted() is None

    store.save_pipeline_state(PipelineKind.NEW_GAME, PipelineState(PipelineKind.NEW_GAME, current_step=2))
    assert session.find_interrupted() is PipelineKind.NEW_GAME

    seg = PipelineState(PipelineKind.SEGMENT_TRANSITION)
    seg.errors[1] = ErrorDetail(ErrorKind.SERVICE_ERROR, "boom")
    store.save_pipeline_state(PipelineKind.SEGMENT_TRANSITION, seg)
    assert session.find_interrupted() is PipelineKind.SEGMENT_TRANSITION

    store.save_pipeline_state(PipelineKind.END_OF_DAY, PipelineState(PipelineKind.END_OF_DAY, current_step=1))
    assert session.find_interrupted() is PipelineKind.END_OF_DAY


def test_failed_new_game_is_not_resumed(session, store):
    ng = PipelineState(PipelineKind.NEW_GAME, current_step=1)
    ng.errors[2] = ErrorDetail(ErrorKind.TIMEOUT, "API_ERROR_TIMEOUT")
    store.save_pipeline_state(PipelineKind.NEW_GAME, ng)
    assert session.find_interrupted() is None


def test_retry_through_session_resumes(session, service):
    service.fail("new_game.foundation", ServiceError("503 unavailable"))
    first = asyncio.run(session.run(PipelineKind.NEW_GAME))
    assert first.status is OutcomeStatus.FAILED

    out = asyncio.run(session.retry(PipelineKind.NEW_GAME, 1, resume=True))
    assert out.status is OutcomeStatus.READY
    assert session.status(PipelineKind.NEW_GAME).errors == {}


def test_imported_history_uses_the_save_day_structure(session):
    raw = {
        "day": 2,
        "segment": "Dusk",
        "day_structure": ["Dawn", "Dusk"],
        "history": [{"id": "b", "speaker": "Ren", "dialogue": "late"}],
        "full_history": [{"day": 2, "segments": [{"segment": "Dawn", "dialogue": [{"id": "a", "speaker": "Ren", "dialogue": "early"}]}]}],
    }
    days = session.imported_history(raw)
    assert [d.day for d in days] == [2]
    assert [s.segment for s in days[0].segments] == ["Dawn", "Dusk"]


def test_export_then_import_through_session(session, store, tmp_path):
    store.save_game(GameSnapshot(live=LiveDialogue(day=2, segment="Evening", committed=[_line(1, 2, "Evening")])))
    path = session.export(tmp_path / "save.json")
    store.save_game(GameSnapshot())

    epoch = session.runner.epoch
    snap = session.import_save(path)
    assert (snap.live.day, snap.live.segment) == (2, "Evening")
    assert session.runner.epoch == epoch + 1
