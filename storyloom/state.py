"""Persisted pipeline state and its dict form.

A PipelineState is the StepTracker and ErrorRegistry for one pipeline kind:
the furthest completed step, the last error per attempted step, the stage
outputs produced so far, and the generated-but-unshown gate. Loading always
goes through ``from_dict`` so missing fields default instead of failing.
"""
from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from .steps import PipelineKind


class ErrorKind(str, Enum):
    SERVICE_ERROR = "service_error"
    TIMEOUT = "timeout"
    VALIDATION_ERROR = "validation_error"
    BLOCKED_BY_OTHER_TAB = "blocked_by_other_tab"


class CountdownKind(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    TIMEOUT = "timeout"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class ErrorDetail:
    kind: ErrorKind
    message: str
    stage_key: str = ""
    at: str = field(default_factory=_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "message": self.message, "stage_key": self.stage_key, "at": self.at}

    @classmethod
    def from_dict(cls, raw: Any) -> "ErrorDetail":
        # Older saves stored the bare message string.
        if isinstance(raw, str):
            return cls(kind=ErrorKind.SERVICE_ERROR, message=raw)
        if not isinstance(raw, dict):
            return cls(kind=ErrorKind.SERVICE_ERROR, message=str(raw))
        try:
            kind = ErrorKind(raw.get("kind", ErrorKind.SERVICE_ERROR.value))
        except ValueError:
            kind = ErrorKind.SERVICE_ERROR
        return cls(
            kind=kind,
            message=str(raw.get("message", "")),
            stage_key=str(raw.get("stage_key", "")),
            at=str(raw.get("at") or _now_iso()),
        )


@dataclass
class Countdown:
    step_key: str
    seconds_remaining: int
    kind: CountdownKind


@dataclass
class PipelineState:
    kind: PipelineKind
    current_step: int = 0
    errors: Dict[int, ErrorDetail] = field(default_factory=dict)
    data: Dict[str, Any] = field(default_factory=dict)
    generated_but_unshown: bool = False
    # Transient; never persisted.
    countdown: Optional[Countdown] = None

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    def copy(self) -> "PipelineState":
        return PipelineState.from_dict(copy.deepcopy(self.to_dict()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "current_step": int(self.current_step),
            "errors": {str(k): v.to_dict() for k, v in sorted(self.errors.items())},
            "data": self.data,
            "generated_but_unshown": bool(self.generated_but_unshown),
        }

    @classmethod
    def initial(cls, kind: PipelineKind) -> "PipelineState":
        return cls(kind=PipelineKind(kind))

    @classmethod
    def from_dict(cls, raw: Any, kind: Optional[PipelineKind] = None) -> "PipelineState":
        if not isinstance(raw, dict):
            raw = {}
        k = PipelineKind(kind if kind is not None else raw.get("kind"))
        errors: Dict[int, ErrorDetail] = {}
        raw_errors = raw.get("errors") or {}
        if isinstance(raw_errors, dict):
            for step, detail in raw_errors.items():
                try:
                    step_num = int(step)
                except (TypeError, ValueError):
                    continue
                if detail is None:
                    continue
                errors[step_num] = ErrorDetail.from_dict(detail)
        try:
            current = int(raw.get("current_step", raw.get("step", 0)) or 0)
        except (TypeError, ValueError):
            current = 0
        data = raw.get("data")
        return cls(
            kind=k,
            current_step=max(current, 0),
            errors=errors,
            data=dict(data) if isinstance(data, dict) else {},
            generated_but_unshown=bool(raw.get("generated_but_unshown", False)),
        )
