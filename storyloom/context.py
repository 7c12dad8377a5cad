"""RunContext, error types and YAML loading.

Contract:
- RunContext.from_story(day, segment, story_path=None) -> RunContext
- load_yaml(path: str) -> dict | list | scalar

This is the only module that performs YAML reads. Other modules accept a
RunContext instance instead of reading module-level game state.
"""
from __future__ import annotations
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import List, Any, Optional, Dict

import yaml

from .config import DEFAULT_DAY_STRUCTURE
from .env import get_story_path
from .logging import breadcrumb as _breadcrumb


class SLError(Exception):
    pass


class MissingFileError(SLError):
    pass


class InvalidYAMLError(SLError):
    pass


class InvalidSaveError(SLError):
    """Raised when an imported save file cannot be parsed at all."""
    pass


class PipelineError(SLError):
    """Raised for misuse of the runner (bad step, accepting an unfinished pipeline)."""
    pass


class BlockedByOtherTab(SLError):
    """Another session holds the campaign. Never retried automatically."""
    pass


class StageFailure(SLError):
    """Base class for failures of a single stage; always recoverable by retry."""
    pass


class ServiceError(StageFailure):
    pass


class StageTimeout(StageFailure):
    pass


class ValidationError(StageFailure):
    pass


def load_yaml(path: str):
    try:
        with open(path, "r", encoding="utf-8") as f:
            content = f.read()
    except FileNotFoundError:
        _breadcrumb(f"yaml:error:not_found:{path}")
        raise MissingFileError(f"Required file not found: {path}")
    except OSError as e:
        _breadcrumb(f"yaml:error:read_failure:{path}")
        raise SLError(f"Unable to read file {path}: {e}")
    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        _breadcrumb(f"yaml:error:invalid_yaml:{path}")
        raise InvalidYAMLError(f"Invalid YAML in {path}: {e}")
    _breadcrumb(f"yaml:parsed_ok:{path}")
    return data


def _roster_from(story: Dict[str, Any]) -> List[dict]:
    chars = story.get("characters") or story.get("Characters") or []
    if not isinstance(chars, list):
        return []
    roster: List[dict] = []
    for c in chars:
        if isinstance(c, dict) and c.get("name"):
            roster.append(c)
        elif isinstance(c, str) and c.strip():
            roster.append({"name": c.strip()})
    return roster


def _day_structure_from(story: Dict[str, Any]) -> List[str]:
    seq = story.get("day_structure") or story.get("daySegments")
    if isinstance(seq, list):
        names = [str(s).strip() for s in seq if str(s).strip()]
        if names:
            return names
    return list(DEFAULT_DAY_STRUCTURE)


@dataclass(frozen=True)
class RunContext:
    """Everything a pipeline stage may read about the game, passed explicitly."""

    day: int
    segment: str
    segment_order: List[str] = field(default_factory=lambda: list(DEFAULT_DAY_STRUCTURE))
    roster: List[dict] = field(default_factory=list)
    player_name: str = ""
    language: str = "English"
    # Dialogue of the current day so far, as plain dicts.
    transcript: List[dict] = field(default_factory=list)
    extras: Dict[str, Any] = field(default_factory=dict)

    @property
    def character_names(self) -> List[str]:
        return [str(c.get("name")) for c in self.roster]

    def next_segment(self) -> Optional[str]:
        """Segment after the current one, or None at the end of the day."""
        try:
            idx = self.segment_order.index(self.segment)
        except ValueError:
            return None
        if idx + 1 < len(self.segment_order):
            return self.segment_order[idx + 1]
        return None

    def with_position(self, day: int, segment: str) -> "RunContext":
        return replace(self, day=day, segment=segment)

    def with_transcript(self, lines: List[dict]) -> "RunContext":
        return replace(self, transcript=list(lines))

    @classmethod
    def from_story(cls, *, day: int = 1, segment: Optional[str] = None, story_path: Optional[str] = None) -> "RunContext":
        path = Path(story_path) if story_path else get_story_path()
        if not path.exists():
            raise MissingFileError(f"Missing story configuration: {path}")
        story = load_yaml(str(path))
        if not isinstance(story, dict):
            raise InvalidYAMLError(f"Story configuration must be a mapping: {path}")
        order = _day_structure_from(story)
        return cls(
            day=day,
            segment=segment or order[0],
            segment_order=order,
            roster=_roster_from(story),
            player_name=str(story.get("player_name") or ""),
            language=str(story.get("language") or "English"),
            extras={k: v for k, v in story.items() if k not in ("characters", "Characters", "day_structure", "daySegments", "player_name", "language")},
        )
