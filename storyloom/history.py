"""Transcript types and history reconciliation.

Archived days are immutable DayLogs. The segment being played lives in
three buffers (committed lines, queued lines, the line mid-display). The
reconciler folds the live buffers into the archive to produce one
chronological transcript for display, export and replay.

Public API:
- reconcile(archive, live_day, live_segment, committed, queued, in_flight, segment_order) -> List[DayLog]
- reconcile_session(snapshot) -> List[DayLog]
- reconcile_imported(snapshot, fallback_order) -> List[DayLog]
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .config import DEFAULT_DAY_STRUCTURE

_ENTRY_FIELDS = (
    "id", "day", "segment", "speaker", "dialogue", "dialogue_translated",
    "motivation", "motivation_translated",
)


def parse_day(value: Any, default: int) -> int:
    """Day number from a save; anything non-numeric falls back to ``default``."""
    try:
        return int(value) or default
    except (TypeError, ValueError):
        return default


@dataclass(frozen=True)
class DialogueEntry:
    id: str
    day: int
    segment: str
    speaker: str
    dialogue: str
    dialogue_translated: Optional[str] = None
    motivation: str = ""
    motivation_translated: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = dict(self.extra)
        out.update({
            "id": self.id,
            "day": self.day,
            "segment": self.segment,
            "speaker": self.speaker,
            "dialogue": self.dialogue,
            "motivation": self.motivation,
        })
        if self.dialogue_translated is not None:
            out["dialogue_translated"] = self.dialogue_translated
        if self.motivation_translated is not None:
            out["motivation_translated"] = self.motivation_translated
        return out

    @classmethod
    def from_dict(cls, raw: Dict[str, Any], *, day: int = 0, segment: str = "") -> "DialogueEntry":
        return cls(
            id=str(raw.get("id", "")),
            day=parse_day(raw.get("day"), day),
            segment=str(raw.get("segment") or segment),
            speaker=str(raw.get("speaker", "")),
            dialogue=str(raw.get("dialogue", "")),
            dialogue_translated=raw.get("dialogue_translated", raw.get("dialogueTranslated")),
            motivation=str(raw.get("motivation", "") or ""),
            motivation_translated=raw.get("motivation_translated", raw.get("motivationTranslated")),
            extra={k: v for k, v in raw.items() if k not in _ENTRY_FIELDS and k not in ("dialogueTranslated", "motivationTranslated")},
        )


@dataclass(frozen=True)
class SegmentLog:
    segment: str
    dialogue: List[DialogueEntry]

    def to_dict(self) -> Dict[str, Any]:
        return {"segment": self.segment, "dialogue": [d.to_dict() for d in self.dialogue]}

    @classmethod
    def from_dict(cls, raw: Dict[str, Any], *, day: int = 0) -> "SegmentLog":
        seg = str(raw.get("segment", ""))
        lines = raw.get("dialogue") or []
        return cls(segment=seg, dialogue=[DialogueEntry.from_dict(d, day=day, segment=seg) for d in lines if isinstance(d, dict)])


@dataclass(frozen=True)
class DayLog:
    day: int
    segments: List[SegmentLog]

    def to_dict(self) -> Dict[str, Any]:
        return {"day": self.day, "segments": [s.to_dict() for s in self.segments]}

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "DayLog":
        day = parse_day(raw.get("day"), 0)
        segs = raw.get("segments") or []
        return cls(day=day, segments=[SegmentLog.from_dict(s, day=day) for s in segs if isinstance(s, dict)])


def archive_from_list(raw: Any) -> List[DayLog]:
    if not isinstance(raw, list):
        return []
    return [DayLog.from_dict(d) for d in raw if isinstance(d, dict)]


def archive_to_list(archive: Iterable[DayLog]) -> List[Dict[str, Any]]:
    return [d.to_dict() for d in archive]


def _entries(raw: Any, day: int, segment: str) -> List[DialogueEntry]:
    if not isinstance(raw, list):
        return []
    return [DialogueEntry.from_dict(d, day=day, segment=segment) for d in raw if isinstance(d, dict)]


@dataclass
class LiveDialogue:
    """The open segment: committed lines, queued lines and the line mid-display."""

    day: int = 1
    segment: str = DEFAULT_DAY_STRUCTURE[0]
    committed: List[DialogueEntry] = field(default_factory=list)
    queued: List[DialogueEntry] = field(default_factory=list)
    in_flight: Optional[DialogueEntry] = None

    @property
    def is_empty(self) -> bool:
        return not self.committed and not self.queued and self.in_flight is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "day": self.day,
            "segment": self.segment,
            "committed": [d.to_dict() for d in self.committed],
            "queued": [d.to_dict() for d in self.queued],
            "in_flight": self.in_flight.to_dict() if self.in_flight else None,
        }

    @classmethod
    def from_dict(cls, raw: Any) -> "LiveDialogue":
        if not isinstance(raw, dict):
            return cls()
        day = parse_day(raw.get("day"), 1)
        segment = str(raw.get("segment") or DEFAULT_DAY_STRUCTURE[0])
        in_flight = raw.get("in_flight")
        return cls(
            day=day,
            segment=segment,
            committed=_entries(raw.get("committed"), day, segment),
            queued=_entries(raw.get("queued"), day, segment),
            in_flight=DialogueEntry.from_dict(in_flight, day=day, segment=segment) if isinstance(in_flight, dict) else None,
        )


@dataclass
class GameSnapshot:
    """The slice of gameplay state the pipeline layer reads and updates."""

    archive: List[DayLog] = field(default_factory=list)
    live: LiveDialogue = field(default_factory=LiveDialogue)
    segment_order: List[str] = field(default_factory=lambda: list(DEFAULT_DAY_STRUCTURE))
    settings: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "archive": archive_to_list(self.archive),
            "live": self.live.to_dict(),
            "segment_order": list(self.segment_order),
            "settings": dict(self.settings),
        }

    @classmethod
    def from_dict(cls, raw: Any, *, fallback_order: Optional[Sequence[str]] = None) -> "GameSnapshot":
        if not isinstance(raw, dict):
            raw = {}
        order = raw.get("segment_order")
        if not (isinstance(order, list) and order):
            order = list(fallback_order) if fallback_order else list(DEFAULT_DAY_STRUCTURE)
        settings = raw.get("settings")
        return cls(
            archive=archive_from_list(raw.get("archive")),
            live=LiveDialogue.from_dict(raw.get("live")),
            segment_order=[str(s) for s in order],
            settings=dict(settings) if isinstance(settings, dict) else {},
        )


# ---------------------------
# Reconciliation
# ---------------------------

def _dedupe(lines: Iterable[DialogueEntry]) -> List[DialogueEntry]:
    seen = set()
    out: List[DialogueEntry] = []
    for d in lines:
        if d.id:
            if d.id in seen:
                continue
            seen.add(d.id)
        out.append(d)
    return out


def _segment_sort_key(segment_order: Sequence[str]):
    rank = {name: i for i, name in enumerate(segment_order)}
    unknown = len(rank)
    return lambda seg: rank.get(seg.segment, unknown)


def reconcile(
    archive: Sequence[DayLog],
    live_day: int,
    live_segment: str,
    committed: Sequence[DialogueEntry],
    queued: Sequence[DialogueEntry],
    in_flight: Optional[DialogueEntry],
    segment_order: Sequence[str],
) -> List[DayLog]:
    """Merge the open segment into the archive; the live copy of a segment replaces any archived one."""
    live_dialogue = _dedupe(list(committed) + list(queued) + ([in_flight] if in_flight is not None else []))
    if not live_dialogue:
        return list(archive)

    live_log = SegmentLog(segment=live_segment, dialogue=live_dialogue)
    existing = next((d for d in archive if d.day == live_day), None)
    others = [s for s in existing.segments if s.segment != live_segment] if existing else []
    # sorted() is stable, so unknown segments keep their relative order at the end.
    merged = sorted(others + [live_log], key=_segment_sort_key(segment_order))
    # Never empty here: the live segment itself has dialogue.
    non_empty = [s for s in merged if s.dialogue]
    today = DayLog(day=live_day, segments=non_empty)
    result = [d for d in archive if d.day != live_day] + [today]
    return sorted(result, key=lambda d: d.day)


def reconcile_live(archive: Sequence[DayLog], live: LiveDialogue, segment_order: Sequence[str]) -> List[DayLog]:
    return reconcile(archive, live.day, live.segment, live.committed, live.queued, live.in_flight, segment_order)


def reconcile_session(snapshot: GameSnapshot) -> List[DayLog]:
    return reconcile_live(snapshot.archive, snapshot.live, snapshot.segment_order)


def reconcile_imported(snapshot: Any, fallback_order: Sequence[str]) -> List[DayLog]:
    """Same merge for a foreign save, using its own day structure when it has one.

    ``snapshot`` may be the raw game dict of the foreign save, in which case a
    missing day structure falls back to ``fallback_order`` (the active game's).
    """
    if not isinstance(snapshot, GameSnapshot):
        snapshot = GameSnapshot.from_dict(snapshot, fallback_order=fallback_order)
    order = snapshot.segment_order or list(fallback_order)
    return reconcile_live(snapshot.archive, snapshot.live, order)
