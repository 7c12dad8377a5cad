"""storyloom package.

Resumable generation pipelines (new game, end of day, segment transition)
and history reconciliation for a long-running interactive story.
"""

__all__ = [
    "context",
    "env",
    "history",
    "llm",
    "persistence",
    "retry",
    "runner",
    "savefile",
    "session",
    "state",
    "steps",
    "tablock",
    "utils",
    "validation",
    "templates",
]
