"""Segment transition pipeline: analyse the segment just played, write the
next segment's scene, then record the story-state changes."""
from __future__ import annotations

from typing import Any, Dict

from ..context import ValidationError
from ..llm import AIService
from ..steps import PipelineKind, SegmentTransitionStep, pipeline_for
from ..utils import to_text
from ..validation import validate_mapping, validate_scene
from .common import Handler, StageInput, call_and_validate, scene_lines

_SPEC = pipeline_for(PipelineKind.SEGMENT_TRANSITION)
ANALYSIS = _SPEC.stage_for(SegmentTransitionStep.ANALYSIS).key
SCENE_GENERATION = _SPEC.stage_for(SegmentTransitionStep.SCENE_GENERATION).key
STATE_UPDATE = _SPEC.stage_for(SegmentTransitionStep.STATE_UPDATE).key

ANALYSIS_TEMPLATE = """Day [DAY], [SEGMENT] has just ended. Transcript of the day so far:
[TRANSCRIPT]

Summarize what happened and what is unresolved.
Return JSON: {"summary": "...", "open_threads": ["..."]}
"""

SCENE_TEMPLATE = """Write the scene for day [DAY], [NEXT_SEGMENT], in [LANGUAGE].

What just happened:
[ANALYSIS]

Cast:
[CHARACTERS]

Return JSON: {"dialogue": [{"speaker": "...", "dialogue": "...", "motivation": "..."}]}
"""

STATE_TEMPLATE = """Segment analysis:
[ANALYSIS]

New scene:
[SCENE]

List the changes to story state (locations, items, moods, flags).
Return JSON: {"state": {"...": "..."}}
"""


def _next_segment(inp: StageInput) -> str:
    nxt = inp.ctx.next_segment()
    if nxt is None:
        raise ValidationError(f"No segment after {inp.ctx.segment}; the day has to end instead")
    return nxt


async def analysis(service: AIService, inp: StageInput) -> Dict[str, Any]:
    _next_segment(inp)
    return await call_and_validate(service, inp, ANALYSIS_TEMPLATE, lambda out: validate_mapping(out, ("summary",)))


async def scene_generation(service: AIService, inp: StageInput) -> Dict[str, Any]:
    segment = _next_segment(inp)
    out = await call_and_validate(
        service, inp, SCENE_TEMPLATE, validate_scene,
        extra={"[NEXT_SEGMENT]": segment, "[ANALYSIS]": to_text(inp.output_of(ANALYSIS))},
    )
    return {"day": inp.ctx.day, "segment": segment, "dialogue": scene_lines(out, inp.ctx.day, segment)}


async def state_update(service: AIService, inp: StageInput) -> Dict[str, Any]:
    return await call_and_validate(
        service, inp, STATE_TEMPLATE, lambda out: validate_mapping(out, ("state",)),
        extra={
            "[ANALYSIS]": to_text(inp.output_of(ANALYSIS)),
            "[SCENE]": to_text(inp.output_of(SCENE_GENERATION)),
        },
    )


HANDLERS: Dict[str, Handler] = {
    ANALYSIS: analysis,
    SCENE_GENERATION: scene_generation,
    STATE_UPDATE: state_update,
}
