"""Stage handlers for the three pipelines, keyed by kind then stage key."""

from typing import Dict

from ..steps import PipelineKind
from .common import Handler, StageInput
from . import end_of_day, new_game, segment_transition

HANDLERS: Dict[PipelineKind, Dict[str, Handler]] = {
    PipelineKind.NEW_GAME: new_game.HANDLERS,
    PipelineKind.END_OF_DAY: end_of_day.HANDLERS,
    PipelineKind.SEGMENT_TRANSITION: segment_transition.HANDLERS,
}

__all__ = [
    "HANDLERS",
    "Handler",
    "StageInput",
]
