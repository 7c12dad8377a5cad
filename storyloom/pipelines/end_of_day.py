"""End-of-day pipeline.

Runs after the last segment of a day. The analysis stages read the day's
transcript; the later stages turn that analysis into long-term memory,
updated arcs and characters, a plan for tomorrow, and tomorrow's opening
scene. The session folds the day into the archive when the result is
accepted.
"""
from __future__ import annotations

from typing import Any, Dict

from ..llm import AIService
from ..steps import EndOfDayStep, PipelineKind, pipeline_for
from ..utils import to_text
from ..validation import validate_itinerary, validate_mapping, validate_scene, validate_text
from .common import Handler, StageInput, call_and_validate, scene_lines

_SPEC = pipeline_for(PipelineKind.END_OF_DAY)
RELATIONSHIP_ANALYSIS = _SPEC.stage_for(EndOfDayStep.RELATIONSHIP_ANALYSIS).key
CASTING_ANALYSIS = _SPEC.stage_for(EndOfDayStep.CASTING_ANALYSIS).key
PLAYER_ANALYSIS = _SPEC.stage_for(EndOfDayStep.PLAYER_ANALYSIS).key
NOVEL_CHAPTER = _SPEC.stage_for(EndOfDayStep.NOVEL_CHAPTER).key
ARCHIVIST = _SPEC.stage_for(EndOfDayStep.ARCHIVIST).key
ARC_MANAGER = _SPEC.stage_for(EndOfDayStep.ARC_MANAGER).key
CHARACTER_DEVELOPER = _SPEC.stage_for(EndOfDayStep.CHARACTER_DEVELOPER).key
PLANNER = _SPEC.stage_for(EndOfDayStep.PLANNER).key
SCENE_GENERATION = _SPEC.stage_for(EndOfDayStep.SCENE_GENERATION).key

_ANALYSIS_HEADER = """Day [DAY] has ended. Transcript of the day:
[TRANSCRIPT]

Cast:
[CHARACTERS]
"""

RELATIONSHIP_TEMPLATE = _ANALYSIS_HEADER + """
How did each relationship with [PLAYER_NAME] change today?
Return JSON: {"relationships": [{"character": "...", "change": "...", "score_delta": 0}]}
"""

CASTING_TEMPLATE = _ANALYSIS_HEADER + """
Which characters were under-used or over-used today, and who should appear tomorrow?
Return JSON: {"cast": [{"character": "...", "presence": "...", "recommendation": "..."}]}
"""

PLAYER_TEMPLATE = _ANALYSIS_HEADER + """
Describe [PLAYER_NAME]'s choices and apparent preferences today.
Return JSON: {"player": {"tendencies": ["..."], "preferences": ["..."]}}
"""

CHAPTER_TEMPLATE = _ANALYSIS_HEADER + """
Write the events of the day as a short novel chapter in [LANGUAGE].
Return JSON: {"title": "...", "chapter": "..."}
"""

ARCHIVIST_TEMPLATE = """Chapter for day [DAY]:
[CHAPTER]

Relationship changes:
[RELATIONSHIPS]

Extract the facts worth remembering for the rest of the story.
Return JSON: {"memories": [{"about": "...", "fact": "..."}]}
"""

ARC_TEMPLATE = """Earlier analysis of day [DAY]:
[PRIOR_OUTPUTS]

Update the running story arcs: advance, resolve or open them.
Return JSON: {"arcs": [{"name": "...", "status": "...", "next_beat": "..."}]}
"""

DEVELOPER_TEMPLATE = """Earlier analysis of day [DAY]:
[PRIOR_OUTPUTS]

Cast:
[CHARACTERS]

Describe how each character develops overnight.
Return JSON: {"characters": [{"name": "...", "development": "..."}]}
"""

PLANNER_TEMPLATE = """Plan day [NEXT_DAY]. The day is divided into: [DAY_STRUCTURE].

Arcs:
[ARCS]

Casting notes:
[CAST]

Return JSON: {"segments": [{"segment": "<name, in order>", "location": "...", "summary": "...", "cast": ["..."]}]}
"""

SCENE_TEMPLATE = """Write the opening scene of day [NEXT_DAY], [SEGMENT], in [LANGUAGE].

Plan for this segment:
[SEGMENT_PLAN]

Character developments:
[DEVELOPMENTS]

Return JSON: {"dialogue": [{"speaker": "...", "dialogue": "...", "motivation": "..."}]}
"""


def _requires(*keys: str):
    return lambda out: validate_mapping(out, keys)


async def relationship_analysis(service: AIService, inp: StageInput) -> Dict[str, Any]:
    return await call_and_validate(service, inp, RELATIONSHIP_TEMPLATE, _requires("relationships"))


async def casting_analysis(service: AIService, inp: StageInput) -> Dict[str, Any]:
    return await call_and_validate(service, inp, CASTING_TEMPLATE, _requires("cast"))


async def player_analysis(service: AIService, inp: StageInput) -> Dict[str, Any]:
    return await call_and_validate(service, inp, PLAYER_TEMPLATE, _requires("player"))


async def novel_chapter(service: AIService, inp: StageInput) -> Dict[str, Any]:
    def _check(out: Any):
        ok, reason = validate_mapping(out, ("chapter",))
        return (ok, reason) if not ok else validate_text(out["chapter"])

    return await call_and_validate(service, inp, CHAPTER_TEMPLATE, _check)


async def archivist(service: AIService, inp: StageInput) -> Dict[str, Any]:
    return await call_and_validate(
        service, inp, ARCHIVIST_TEMPLATE, _requires("memories"),
        extra={
            "[CHAPTER]": str(inp.output_of(NOVEL_CHAPTER).get("chapter", "")),
            "[RELATIONSHIPS]": to_text(inp.output_of(RELATIONSHIP_ANALYSIS)),
        },
    )


async def arc_manager(service: AIService, inp: StageInput) -> Dict[str, Any]:
    return await call_and_validate(service, inp, ARC_TEMPLATE, _requires("arcs"))


async def character_developer(service: AIService, inp: StageInput) -> Dict[str, Any]:
    return await call_and_validate(service, inp, DEVELOPER_TEMPLATE, _requires("characters"))


async def planner(service: AIService, inp: StageInput) -> Dict[str, Any]:
    order = inp.ctx.segment_order
    return await call_and_validate(
        service, inp, PLANNER_TEMPLATE, lambda out: validate_itinerary(out, order),
        extra={
            "[NEXT_DAY]": str(inp.ctx.day + 1),
            "[ARCS]": to_text(inp.output_of(ARC_MANAGER)),
            "[CAST]": to_text(inp.output_of(CASTING_ANALYSIS)),
        },
    )


async def scene_generation(service: AIService, inp: StageInput) -> Dict[str, Any]:
    day = inp.ctx.day + 1
    segment = inp.ctx.segment_order[0]
    plan = inp.output_of(PLANNER).get("segments") or []
    out = await call_and_validate(
        service, inp, SCENE_TEMPLATE, validate_scene,
        extra={
            "[NEXT_DAY]": str(day),
            "[SEGMENT]": segment,
            "[SEGMENT_PLAN]": to_text(plan[0] if plan else {}),
            "[DEVELOPMENTS]": to_text(inp.output_of(CHARACTER_DEVELOPER)),
        },
    )
    return {"day": day, "segment": segment, "dialogue": scene_lines(out, day, segment)}


HANDLERS: Dict[str, Handler] = {
    RELATIONSHIP_ANALYSIS: relationship_analysis,
    CASTING_ANALYSIS: casting_analysis,
    PLAYER_ANALYSIS: player_analysis,
    NOVEL_CHAPTER: novel_chapter,
    ARCHIVIST: archivist,
    ARC_MANAGER: arc_manager,
    CHARACTER_DEVELOPER: character_developer,
    PLANNER: planner,
    SCENE_GENERATION: scene_generation,
}
