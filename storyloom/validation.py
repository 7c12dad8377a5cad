"""Validation utilities used by pipelines.

Every validator returns ``(ok, reason)``. A stage that fails validation
raises ValidationError with the reason; it never marks itself complete on
partial output.
"""
from __future__ import annotations

from typing import Any, Iterable, Sequence, Tuple


def validate_text(output: Any) -> Tuple[bool, str]:
    """Text must be non-empty (after stripping). Used for prose-like fields."""
    if output is None:
        return False, "No output returned (None)"
    if str(output).strip() == "":
        return False, "Empty output not allowed"
    return True, "ok"


def validate_mapping(output: Any, required: Iterable[str] = ()) -> Tuple[bool, str]:
    if not isinstance(output, dict):
        return False, f"Expected a JSON object, got {type(output).__name__}"
    missing = [k for k in required if output.get(k) in (None, "", [], {})]
    if missing:
        return False, f"Missing or empty fields: {', '.join(missing)}"
    return True, "ok"


def validate_scene(output: Any) -> Tuple[bool, str]:
    """A scene is {"dialogue": [{"speaker": ..., "dialogue": ...}, ...]} with at least one line."""
    ok, reason = validate_mapping(output, ("dialogue",))
    if not ok:
        return ok, reason
    lines = output["dialogue"]
    if not isinstance(lines, list):
        return False, "Field 'dialogue' must be a list"
    for i, ln in enumerate(lines):
        if not isinstance(ln, dict):
            return False, f"Dialogue line {i} is not an object"
        if not str(ln.get("speaker") or "").strip():
            return False, f"Dialogue line {i} has no speaker"
        if not str(ln.get("dialogue") or "").strip():
            return False, f"Dialogue line {i} is empty"
    return True, "ok"


def validate_itinerary(output: Any, segment_order: Sequence[str]) -> Tuple[bool, str]:
    """Plan for a day: one entry per configured segment, in order."""
    ok, reason = validate_mapping(output, ("segments",))
    if not ok:
        return ok, reason
    segs = output["segments"]
    if not isinstance(segs, list):
        return False, "Field 'segments' must be a list"
    if len(segs) != len(segment_order):
        return False, f"Expected {len(segment_order)} segments, got {len(segs)}"
    names = [str(s.get("segment", "")) if isinstance(s, dict) else "" for s in segs]
    if names != list(segment_order):
        return False, f"Segment names {names} do not match day structure {list(segment_order)}"
    return True, "ok"
