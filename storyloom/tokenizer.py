"""Token counting helpers using tiktoken.

- count_text_tokens(text: str, model: str) -> int
- count_chat_tokens(messages: list[dict], model: str) -> int

Models tiktoken does not know fall back to o200k_base, then cl100k_base.
If no encoding can be loaded at all (offline, no cached BPE files) a rough
chars-per-token estimate controlled by SL_CHARS_PER_TOKEN (default 4) is used.
"""
from __future__ import annotations

import os
from typing import Dict, List

import tiktoken


def _encoding_for_model(model: str):
    try:
        return tiktoken.encoding_for_model(model)
    except Exception:
        pass
    for name in ("o200k_base", "cl100k_base"):
        try:
            return tiktoken.get_encoding(name)
        except Exception:
            continue
    return None


def _chars_per_token() -> float:
    try:
        return float(os.getenv("SL_CHARS_PER_TOKEN", "4") or "4")
    except ValueError:
        return 4.0


def count_text_tokens(text: str, model: str) -> int:
    enc = _encoding_for_model(model)
    if enc is None:
        return int((len(text or "") / _chars_per_token()) + 0.5)
    return len(enc.encode(text or ""))


def count_chat_tokens(messages: List[Dict[str, str]], model: str) -> int:
    """Approximate tokens for chat messages according to ChatML-like rules.

    Each message carries an overhead of 3 tokens, a name 1 more, plus 3 for
    assistant priming.
    """
    enc = _encoding_for_model(model)
    if enc is None:
        total = 0
        for m in messages:
            total += count_text_tokens(str(m.get("role", "")), model)
            total += count_text_tokens(str(m.get("content", "")), model)
        return total + 6
    tokens_per_message = 3
    tokens_per_name = 1
    total = 0
    for m in messages:
        total += tokens_per_message
        total += len(enc.encode(str(m.get("role", ""))))
        total += len(enc.encode(str(m.get("content", ""))))
        if m.get("name"):
            total += tokens_per_name
            total += len(enc.encode(str(m.get("name"))))
    # Every reply is primed with <im_start>assistant
    total += 3
    return total
