"""Shared helpers for stage handlers.

A handler is ``async def handler(service, inp: StageInput) -> dict``. It
builds a prompt from the explicit RunContext and the earlier outputs of its
own pipeline, makes exactly one service call, validates the result and
returns a JSON-serializable dict. Handlers never touch persisted state.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from ..context import RunContext, ValidationError
from ..llm import AIService
from ..logging import log_run as _log_run
from ..steps import Stage
from ..templates import build_prompt
from ..utils import to_text

Validator = Callable[[Any], Tuple[bool, str]]
Handler = Callable[[AIService, "StageInput"], Awaitable[Dict[str, Any]]]

__all__ = [
    "StageInput",
    "Handler",
    "Validator",
    "common_replacements",
    "call_and_validate",
    "scene_lines",
]


@dataclass(frozen=True)
class StageInput:
    ctx: RunContext
    stage: Stage
    # Outputs of the earlier stages of the same pipeline, keyed by stage key.
    prior: Dict[str, Any] = field(default_factory=dict)

    def output_of(self, stage_key: str) -> Dict[str, Any]:
        out = self.prior.get(stage_key)
        return out if isinstance(out, dict) else {}


def common_replacements(inp: StageInput) -> Dict[str, str]:
    ctx = inp.ctx
    return {
        "[PLAYER_NAME]": ctx.player_name or "the player",
        "[LANGUAGE]": ctx.language,
        "[DAY]": str(ctx.day),
        "[SEGMENT]": ctx.segment,
        "[DAY_STRUCTURE]": ", ".join(ctx.segment_order),
        "[CHARACTERS]": to_text(ctx.roster),
        "[TRANSCRIPT]": to_text(ctx.transcript),
        "[PRIOR_OUTPUTS]": to_text(inp.prior),
    }


async def call_and_validate(
    service: AIService,
    inp: StageInput,
    default_template: str,
    validator: Validator,
    *,
    extra: Optional[Dict[str, str]] = None,
    system: Optional[str] = None,
) -> Dict[str, Any]:
    reps = common_replacements(inp)
    if extra:
        reps.update(extra)
    prompt = build_prompt(inp.stage, default_template, reps)
    context: Dict[str, Any] = {"user": prompt}
    if system:
        context["system"] = system
    out = await service.invoke(inp.stage.key, context)
    ok, reason = validator(out)
    if not ok:
        _log_run(f"VALIDATION failed | stage={inp.stage.key} reason={reason}")
        raise ValidationError(f"{inp.stage.label}: {reason}")
    return out


def scene_lines(scene: Dict[str, Any], day: int, segment: str) -> List[Dict[str, Any]]:
    """Stamp generated lines with day, segment and a stable id."""
    lines: List[Dict[str, Any]] = []
    for i, raw in enumerate(scene.get("dialogue") or []):
        line = dict(raw)
        line["id"] = f"d{day}-{segment.lower()}-{i + 1:03d}"
        line["day"] = day
        line["segment"] = segment
        line.setdefault("motivation", "")
        lines.append(line)
    return lines
