import asyncio
from pathlib import Path
from typing import Any, Dict, List, Tuple

import pytest
from dotenv import load_dotenv

from storyloom.config import DEFAULT_DAY_STRUCTURE
from storyloom.context import RunContext
from storyloom.llm import AIService
from storyloom.persistence import StateStore
from storyloom.runner import PipelineRunner

# Load a test-specific environment file so pytest runs are consistent locally and in CI
_env_test = Path(__file__).resolve().parents[1] / ".env.test"
if _env_test.exists():
    load_dotenv(dotenv_path=_env_test, override=True)


def _scene(*speakers: str) -> Dict[str, Any]:
    return {"dialogue": [{"speaker": s, "dialogue": f"{s} says hello", "motivation": "greet"} for s in speakers]}


def _plan() -> Dict[str, Any]:
    return {"segments": [{"segment": s, "summary": f"{s} plans"} for s in DEFAULT_DAY_STRUCTURE]}


DEFAULT_RESPONSES: Dict[str, Any] = {
    "new_game.foundation": {"premise": "A new term begins", "setting": "A seaside school"},
    "new_game.relationship_dynamics": {"relationships": [{"from": "Aiko", "to": "Ren", "dynamic": "rivals"}]},
    "new_game.character_traits": {"characters": [{"name": "Aiko", "traits": ["bold"]}]},
    "new_game.day_one_itinerary": _plan(),
    "new_game.first_scene": _scene("Aiko", "Ren"),
    "end_of_day.relationship_analysis": {"relationships": [{"character": "Aiko", "change": "warmer"}]},
    "end_of_day.casting_analysis": {"cast": [{"character": "Ren", "presence": "low"}]},
    "end_of_day.player_analysis": {"player": {"tendencies": ["curious"]}},
    "end_of_day.novel_chapter": {"title": "Day one", "chapter": "The day went by."},
    "end_of_day.archivist": {"memories": [{"about": "Aiko", "fact": "likes tea"}]},
    "end_of_day.arc_manager": {"arcs": [{"name": "rivalry", "status": "open"}]},
    "end_of_day.character_developer": {"characters": [{"name": "Ren", "development": "opens up"}]},
    "end_of_day.planner": _plan(),
    "end_of_day.scene_generation": _scene("Ren"),
    "segment_transition.analysis": {"summary": "They talked"},
    "segment_transition.scene_generation": _scene("Aiko"),
    "segment_transition.state_update": {"state": {"mood": "calm"}},
}


class FakeService(AIService):
    """Scripted AI service: canned responses per stage, queued failures, optional gates."""

    def __init__(self, responses: Dict[str, Any] = None):
        self.responses = dict(DEFAULT_RESPONSES)
        if responses:
            self.responses.update(responses)
        self.calls: List[Tuple[str, Dict[str, Any]]] = []
        self.failures: Dict[str, List[BaseException]] = {}
        self.gates: Dict[str, asyncio.Event] = {}

    def fail(self, stage_key: str, exc: BaseException, times: int = 1) -> None:
        self.failures.setdefault(stage_key, []).extend([exc] * times)

    def called(self) -> List[str]:
        return [k for k, _ in self.calls]

    async def invoke(self, stage_key: str, prompt_context: Dict[str, Any]) -> Dict[str, Any]:
        self.calls.append((stage_key, prompt_context))
        gate = self.gates.get(stage_key)
        if gate is not None:
            await gate.wait()
        pending = self.failures.get(stage_key)
        if pending:
            raise pending.pop(0)
        resp = self.responses[stage_key]
        return resp() if callable(resp) else resp


class FakeClock:
    """Monotonic clock whose sleep advances time instantly."""

    def __init__(self, start: float = 1000.0):
        self.t = start
        self.slept: List[float] = []

    def now(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += seconds

    async def sleep(self, seconds: float) -> None:
        self.slept.append(seconds)
        self.t += seconds
        await asyncio.sleep(0)


@pytest.fixture()
def base_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    # Point the program at a sandboxed campaign directory
    monkeypatch.setenv("SL_BASE_DIR", str(tmp_path))
    for k in (
        "SL_STATE_DIR", "SL_STORY_PATH", "SL_PROMPTS_DIR", "SL_STAGE_TIMEOUT",
        "SL_SUCCESS_COUNTDOWN", "SL_ERROR_COUNTDOWN", "SL_TIMEOUT_COUNTDOWN", "SL_CRASH_TRACE_FILE",
    ):
        monkeypatch.delenv(k, raising=False)
    return tmp_path


@pytest.fixture()
def store(base_dir: Path) -> StateStore:
    return StateStore(base_dir / "state")


@pytest.fixture()
def service() -> FakeService:
    return FakeService()


@pytest.fixture()
def make_service():
    return FakeService


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def runner(store: StateStore, service: FakeService, clock: FakeClock) -> PipelineRunner:
    return PipelineRunner(store, service, clock=clock, timeout=5.0)


@pytest.fixture()
def ctx() -> RunContext:
    return RunContext(
        day=1,
        segment="Morning",
        segment_order=list(DEFAULT_DAY_STRUCTURE),
        roster=[{"name": "Aiko"}, {"name": "Ren"}],
        player_name="Kai",
    )


@pytest.fixture()
def story_file(base_dir: Path) -> Path:
    path = base_dir / "STORY.yaml"
    path.write_text(
        "player_name: Kai\n"
        "language: English\n"
        "day_structure: [Morning, Afternoon, Evening, Night]\n"
        "characters:\n"
        "  - name: Aiko\n"
        "    role: classmate\n"
        "  - Ren\n",
        encoding="utf-8",
    )
    return path
