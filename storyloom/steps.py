"""Pipeline kinds, step enumerations and the stage tables.

Each pipeline owns its own small IntEnum. Value 0 is NOT_STARTED and every
other member is a *completion* step: "this unit of work and everything
before it is done". The stage table maps each completion step to the stable
key of the stage that produces it, and the key back to the step, so resume
and retry never infer one from the position of the other.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Dict, Iterable, List, Optional, Tuple, Type


class PipelineKind(str, Enum):
    NEW_GAME = "new_game"
    END_OF_DAY = "end_of_day"
    SEGMENT_TRANSITION = "segment_transition"


class NewGameStep(IntEnum):
    NOT_STARTED = 0
    FOUNDATION = 1
    RELATIONSHIP_DYNAMICS = 2
    CHARACTER_TRAITS = 3
    DAY_ONE_ITINERARY = 4
    FIRST_SCENE = 5


class EndOfDayStep(IntEnum):
    NOT_STARTED = 0
    RELATIONSHIP_ANALYSIS = 1
    CASTING_ANALYSIS = 2
    PLAYER_ANALYSIS = 3
    NOVEL_CHAPTER = 4
    ARCHIVIST = 5
    ARC_MANAGER = 6
    CHARACTER_DEVELOPER = 7
    PLANNER = 8
    SCENE_GENERATION = 9


class SegmentTransitionStep(IntEnum):
    NOT_STARTED = 0
    ANALYSIS = 1
    SCENE_GENERATION = 2
    STATE_UPDATE = 3


@dataclass(frozen=True)
class Stage:
    step: IntEnum
    key: str
    label: str

    @property
    def order(self) -> int:
        return int(self.step)


class PipelineSpec:
    """Ordered, validated stage table for one pipeline kind."""

    def __init__(self, kind: PipelineKind, steps: Type[IntEnum], stages: Iterable[Stage]):
        self.kind = kind
        self.steps = steps
        self.stages: Tuple[Stage, ...] = tuple(stages)
        self.by_step: Dict[int, Stage] = {}
        self.by_key: Dict[str, Stage] = {}
        last = 0
        for st in self.stages:
            if not isinstance(st.step, steps):
                raise ValueError(f"{kind.value}: stage {st.key} uses a foreign step enum")
            if st.order <= last:
                raise ValueError(f"{kind.value}: stage {st.key} is out of order ({st.order} <= {last})")
            if st.key in self.by_key:
                raise ValueError(f"{kind.value}: duplicate stage key {st.key}")
            last = st.order
            self.by_step[st.order] = st
            self.by_key[st.key] = st
        missing = [m.name for m in steps if m.value != 0 and m.value not in self.by_step]
        if missing:
            raise ValueError(f"{kind.value}: steps without a stage: {', '.join(missing)}")

    @property
    def initial(self) -> int:
        return 0

    @property
    def final(self) -> int:
        return self.stages[-1].order

    def stage_for(self, step: int) -> Stage:
        try:
            return self.by_step[int(step)]
        except KeyError:
            raise KeyError(f"{self.kind.value}: no stage completes step {step}")

    def stage_by_key(self, key: str) -> Stage:
        try:
            return self.by_key[key]
        except KeyError:
            raise KeyError(f"{self.kind.value}: unknown stage key {key}")

    def remaining(self, current_step: int) -> List[Stage]:
        return [s for s in self.stages if s.order > int(current_step)]

    def step_name(self, step: int) -> str:
        try:
            return self.steps(int(step)).name
        except ValueError:
            return str(step)

    def next_after(self, step: int) -> Optional[Stage]:
        rest = self.remaining(step)
        return rest[0] if rest else None


def _stages(prefix: str, steps: Type[IntEnum], labels: Dict[str, str]) -> List[Stage]:
    return [Stage(m, f"{prefix}.{m.name.lower()}", labels[m.name]) for m in steps if m.value != 0]


PIPELINES: Dict[PipelineKind, PipelineSpec] = {
    PipelineKind.NEW_GAME: PipelineSpec(PipelineKind.NEW_GAME, NewGameStep, _stages("new_game", NewGameStep, {
        "FOUNDATION": "Building narrative foundation",
        "RELATIONSHIP_DYNAMICS": "Generating relationship dynamics",
        "CHARACTER_TRAITS": "Developing traits",
        "DAY_ONE_ITINERARY": "Planning day one",
        "FIRST_SCENE": "Setting the first scene",
    })),
    PipelineKind.END_OF_DAY: PipelineSpec(PipelineKind.END_OF_DAY, EndOfDayStep, _stages("end_of_day", EndOfDayStep, {
        "RELATIONSHIP_ANALYSIS": "Analyzing relationships",
        "CASTING_ANALYSIS": "Reviewing the cast",
        "PLAYER_ANALYSIS": "Analyzing the player",
        "NOVEL_CHAPTER": "Writing the day's chapter",
        "ARCHIVIST": "Archiving long-term memories",
        "ARC_MANAGER": "Updating story arcs",
        "CHARACTER_DEVELOPER": "Developing characters",
        "PLANNER": "Planning tomorrow",
        "SCENE_GENERATION": "Generating the opening scene",
    })),
    PipelineKind.SEGMENT_TRANSITION: PipelineSpec(PipelineKind.SEGMENT_TRANSITION, SegmentTransitionStep, _stages("segment_transition", SegmentTransitionStep, {
        "ANALYSIS": "Analyzing the segment",
        "SCENE_GENERATION": "Generating the next scene",
        "STATE_UPDATE": "Updating story state",
    })),
}


def pipeline_for(kind: PipelineKind) -> PipelineSpec:
    return PIPELINES[PipelineKind(kind)]
