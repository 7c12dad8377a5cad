"""Template application, prompt keys and prompt building.

Prompts are plain text with ``[PLACEHOLDER]`` markers. A campaign may ship
its own templates under the prompts directory (``<stage name>_prompt.md``);
otherwise the default template passed by the stage handler is used.
"""
from __future__ import annotations

import re
from pathlib import Path
from typing import Dict

from .env import get_prompts_dir
from .logging import breadcrumb as _breadcrumb
from .steps import Stage
from .utils import read_text


def apply_template(template_path: str | Path, replacements: Dict[str, str]) -> str:
    return apply_text(read_text(template_path), replacements)


def apply_text(template: str, replacements: Dict[str, str]) -> str:
    for k, v in replacements.items():
        template = template.replace(k, v)
    return template


def prompt_key_from_filename(filename: str) -> str:
    base = Path(filename).name
    if base.lower().endswith(".md"):
        base = base[:-3]
    if base.lower().endswith("_prompt"):
        base = base[:-7]
    key = re.sub(r"[^A-Za-z0-9]+", "_", base).strip("_").upper()
    return key


def template_path_for(stage: Stage) -> Path:
    """prompts/<pipeline>/<name>_prompt.md for stage key "<pipeline>.<name>"."""
    pipeline, _, name = stage.key.partition(".")
    return get_prompts_dir() / pipeline / f"{name}_prompt.md"


def build_prompt(stage: Stage, default_template: str, replacements: Dict[str, str]) -> str:
    path = template_path_for(stage)
    if path.exists():
        _breadcrumb(f"prompt:custom:{path}")
        return apply_template(path, replacements)
    return apply_text(default_template, replacements)
