"""Logging helpers: run log, crash tracing breadcrumbs and warnings.

This module centralizes lightweight logging utilities used across the project.

Public API:
- crash_trace_file() -> Optional[str]
- breadcrumb(label: str) -> None
- log_warning(msg: str) -> None
- log_error_base(msg: str) -> None
- log_run(msg: str) -> None
- init_run_logs(max_lines: int) -> None
"""
from __future__ import annotations
from typing import Optional
import os
import sys
import time
import threading


def crash_trace_file() -> Optional[str]:
    return os.getenv("SL_CRASH_TRACE_FILE")


def _stamp() -> str:
    return time.strftime("%Y-%m-%d %H:%M:%S", time.localtime())


def breadcrumb(label: str) -> None:
    path = crash_trace_file()
    try:
        line = f"{_stamp()} pid={os.getpid()} tid={threading.get_ident()} | {label}\n"
        if path:
            with open(path, "a", encoding="utf-8") as f:
                f.write(line)
                f.flush()
        log_run(f"BREADCRUMB | {label}")
        if os.getenv("SL_CRUMBS_STDERR", "0") == "1":
            sys.stderr.write(f"[crumb] {label}\n")
            sys.stderr.flush()
    except Exception:
        pass


def log_warning(msg: str) -> None:
    """Log a warning message to stdout and the base run.log."""
    try:
        text = f"WARNING: {msg}"
        print(text)
        log_run(text)
    except Exception:
        pass


def log_error_base(msg: str) -> None:
    """Append an error message to the base directory (run_error.log) and run.log."""
    try:
        from .env import get_base_dir  # lazy import to avoid cycles
        base = get_base_dir()
        base.mkdir(parents=True, exist_ok=True)
        with (base / "run_error.log").open("a", encoding="utf-8") as f:
            f.write(f"[{_stamp()}] {msg}\n")
        log_run(f"ERROR: {msg}")
    except Exception:
        try:
            print(f"ERROR: {msg}")
        except Exception:
            pass


def log_run(msg: str) -> None:
    """Append a message to the unified base run.log file."""
    try:
        from .env import get_base_dir  # lazy import
        base = get_base_dir()
        base.mkdir(parents=True, exist_ok=True)
        with (base / "run.log").open("a", encoding="utf-8") as f:
            f.write(f"[{_stamp()}] {msg}\n")
    except Exception:
        pass


def init_run_logs(max_lines: int = 5000) -> None:
    """Trim run.log to its last ``max_lines`` lines so long campaigns do not grow it forever."""
    try:
        from .env import get_base_dir
        path = get_base_dir() / "run.log"
        if not path.exists():
            return
        lines = path.read_text(encoding="utf-8").splitlines(keepends=True)
        if len(lines) > max_lines:
            path.write_text("".join(lines[-max_lines:]), encoding="utf-8")
    except Exception:
        pass
