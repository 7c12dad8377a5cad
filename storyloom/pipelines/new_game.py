"""New game pipeline.

Five stages build a campaign from the story configuration: the narrative
foundation, relationship dynamics between the cast, per-character traits,
the plan for day one, and the opening scene. Nothing becomes visible to
gameplay until the session accepts the finished result.
"""
from __future__ import annotations

from typing import Any, Dict

from ..llm import AIService
from ..steps import NewGameStep, PipelineKind, pipeline_for
from ..utils import to_text
from ..validation import validate_itinerary, validate_mapping, validate_scene
from .common import Handler, StageInput, call_and_validate, scene_lines

_SPEC = pipeline_for(PipelineKind.NEW_GAME)
FOUNDATION = _SPEC.stage_for(NewGameStep.FOUNDATION).key
RELATIONSHIP_DYNAMICS = _SPEC.stage_for(NewGameStep.RELATIONSHIP_DYNAMICS).key
CHARACTER_TRAITS = _SPEC.stage_for(NewGameStep.CHARACTER_TRAITS).key
DAY_ONE_ITINERARY = _SPEC.stage_for(NewGameStep.DAY_ONE_ITINERARY).key
FIRST_SCENE = _SPEC.stage_for(NewGameStep.FIRST_SCENE).key

FOUNDATION_TEMPLATE = """Create the foundation of a new story for [PLAYER_NAME].
Write in [LANGUAGE].

Cast:
[CHARACTERS]

Return JSON: {"premise": "...", "setting": "...", "themes": ["..."]}
"""

RELATIONSHIPS_TEMPLATE = """Given this foundation:
[FOUNDATION]

Describe how every cast member relates to [PLAYER_NAME] and to each other.
Cast:
[CHARACTERS]

Return JSON: {"relationships": [{"from": "...", "to": "...", "dynamic": "..."}]}
"""

TRAITS_TEMPLATE = """Foundation:
[FOUNDATION]

Relationships:
[RELATIONSHIPS]

Give each cast member traits, a goal and a secret.
Return JSON: {"characters": [{"name": "...", "traits": ["..."], "goal": "...", "secret": "..."}]}
"""

ITINERARY_TEMPLATE = """Plan day [DAY] of the story. The day is divided into: [DAY_STRUCTURE].

Foundation:
[FOUNDATION]

Characters:
[TRAITS]

Return JSON: {"segments": [{"segment": "<name, in order>", "location": "...", "summary": "...", "cast": ["..."]}]}
"""

FIRST_SCENE_TEMPLATE = """Write the opening scene of day [DAY], [SEGMENT], in [LANGUAGE].

Plan for this segment:
[SEGMENT_PLAN]

Characters:
[TRAITS]

Return JSON: {"dialogue": [{"speaker": "...", "dialogue": "...", "motivation": "..."}]}
"""


async def foundation(service: AIService, inp: StageInput) -> Dict[str, Any]:
    return await call_and_validate(
        service, inp, FOUNDATION_TEMPLATE, lambda out: validate_mapping(out, ("premise", "setting"))
    )


async def relationship_dynamics(service: AIService, inp: StageInput) -> Dict[str, Any]:
    return await call_and_validate(
        service, inp, RELATIONSHIPS_TEMPLATE, lambda out: validate_mapping(out, ("relationships",)),
        extra={"[FOUNDATION]": to_text(inp.output_of(FOUNDATION))},
    )


async def character_traits(service: AIService, inp: StageInput) -> Dict[str, Any]:
    return await call_and_validate(
        service, inp, TRAITS_TEMPLATE, lambda out: validate_mapping(out, ("characters",)),
        extra={
            "[FOUNDATION]": to_text(inp.output_of(FOUNDATION)),
            "[RELATIONSHIPS]": to_text(inp.output_of(RELATIONSHIP_DYNAMICS)),
        },
    )


async def day_one_itinerary(service: AIService, inp: StageInput) -> Dict[str, Any]:
    order = inp.ctx.segment_order
    return await call_and_validate(
        service, inp, ITINERARY_TEMPLATE, lambda out: validate_itinerary(out, order),
        extra={
            "[FOUNDATION]": to_text(inp.output_of(FOUNDATION)),
            "[TRAITS]": to_text(inp.output_of(CHARACTER_TRAITS)),
        },
    )


async def first_scene(service: AIService, inp: StageInput) -> Dict[str, Any]:
    segment = inp.ctx.segment_order[0]
    plan = inp.output_of(DAY_ONE_ITINERARY).get("segments") or []
    out = await call_and_validate(
        service, inp, FIRST_SCENE_TEMPLATE, validate_scene,
        extra={
            "[DAY]": "1",
            "[SEGMENT]": segment,
            "[SEGMENT_PLAN]": to_text(plan[0] if plan else {}),
            "[TRAITS]": to_text(inp.output_of(CHARACTER_TRAITS)),
        },
    )
    return {"day": 1, "segment": segment, "dialogue": scene_lines(out, 1, segment)}


HANDLERS: Dict[str, Handler] = {
    FOUNDATION: foundation,
    RELATIONSHIP_DYNAMICS: relationship_dynamics,
    CHARACTER_TRAITS: character_traits,
    DAY_ONE_ITINERARY: day_one_itinerary,
    FIRST_SCENE: first_scene,
}
