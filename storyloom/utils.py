"""Utility helpers: file I/O, atomic JSON writes, and safe JSON text rendering.

Public helpers:
- read_text(path)
- to_text(obj)
- write_json_atomic(path, obj)
- read_json(path)
"""
from __future__ import annotations
from pathlib import Path
from typing import Any
import json
import os
import tempfile

from .context import SLError, MissingFileError


def read_text(path: str | Path) -> str:
    p = Path(path)
    if not p.exists():
        raise MissingFileError(f"Required file not found: {path}")
    return p.read_text(encoding="utf-8")


def to_text(obj: Any) -> str:
    try:
        return json.dumps(obj, ensure_ascii=False, indent=2, default=str)
    except (TypeError, ValueError):
        return str(obj)


def write_json_atomic(path: str | Path, obj: Any) -> None:
    """Write JSON so readers see either the old file or the new one, never a torn mix.

    The payload goes to a temp file in the same directory, is fsynced, then
    swapped in with os.replace.
    """
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    payload = json.dumps(obj, ensure_ascii=False, indent=2, default=str)
    fd, tmp = tempfile.mkstemp(prefix=f".{p.name}.", suffix=".tmp", dir=str(p.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, p)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


def read_json(path: str | Path) -> Any:
    p = Path(path)
    if not p.exists():
        raise MissingFileError(f"Required file not found: {path}")
    try:
        return json.loads(p.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise SLError(f"Invalid JSON in {path}: {e}")
