"""storyloom CLI entrypoint.

Usage:
  storyloom run <new_game|end_of_day|segment_transition> [--from-step N]
  storyloom retry <kind> <step> [--resume]
  storyloom resume
  storyloom status [kind]
  storyloom accept <kind>
  storyloom reset <kind>
  storyloom export <path>
  storyloom import <path>
  storyloom history [--from-save PATH]
  storyloom env

Every command accepts --base-dir to override SL_BASE_DIR.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from typing import Any, Dict, List, Optional

from .context import BlockedByOtherTab, SLError
from .env import collect_program_env_snapshot, get_base_dir, load_env
from .logging import breadcrumb as _breadcrumb
from .logging import init_run_logs as _init_run_logs, log_run as _log_run
from .history import DayLog
from .retry import classify_error, format_api_error
from .runner import Outcome, OutcomeStatus
from .savefile import read_save_file
from .session import GameSession
from .steps import PipelineKind, pipeline_for
from .tablock import FileTabLock

_KINDS = [k.value for k in PipelineKind]

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2
EXIT_BLOCKED = 3


def _parse_args(argv: List[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="storyloom", description="storyloom pipeline runner")
    parser.add_argument("--base-dir", dest="base_dir", help="Override SL_BASE_DIR for this invocation")
    sub = parser.add_subparsers(dest="cmd")

    p_run = sub.add_parser("run", help="Run (or resume) a pipeline")
    p_run.add_argument("kind", choices=_KINDS)
    p_run.add_argument("--from-step", dest="from_step", type=int, help="Rerun every stage after this completed step")

    p_retry = sub.add_parser("retry", help="Retry one failed stage")
    p_retry.add_argument("kind", choices=_KINDS)
    p_retry.add_argument("step", type=int)
    p_retry.add_argument("--resume", action="store_true", help="Continue the pipeline after a successful retry")

    sub.add_parser("resume", help="Resume whichever pipeline was interrupted")

    p_status = sub.add_parser("status", help="Show pipeline progress and errors")
    p_status.add_argument("kind", nargs="?", choices=_KINDS)

    p_accept = sub.add_parser("accept", help="Apply a finished pipeline to the game")
    p_accept.add_argument("kind", choices=_KINDS)

    p_reset = sub.add_parser("reset", help="Restart a pipeline from the beginning")
    p_reset.add_argument("kind", choices=_KINDS)

    p_export = sub.add_parser("export", help="Write a save file")
    p_export.add_argument("path")

    p_import = sub.add_parser("import", help="Replace the campaign with a save file")
    p_import.add_argument("path")

    p_hist = sub.add_parser("history", help="Print the reconciled transcript")
    p_hist.add_argument("--from-save", dest="from_save", help="Show the timeline of a save file instead")

    sub.add_parser("env", help="Print the effective configuration (secrets masked)")

    return parser.parse_args(argv)


def _print_state(session: GameSession, kind: PipelineKind) -> None:
    spec = pipeline_for(kind)
    state = session.status(kind)
    flag = " (ready to accept)" if state.generated_but_unshown else ""
    print(f"{kind.value}: {spec.step_name(state.current_step)} [{state.current_step}/{spec.final}]{flag}")
    for step, detail in sorted(state.errors.items()):
        advice = classify_error(detail.message)
        actions = ", ".join(a.value for a in advice.actions)
        print(f"  step {step} {spec.step_name(step)}: {detail.kind.value} - {format_api_error(detail.message)}")
        print(f"    {advice.title}; try: {actions}")
    if state.countdown is not None:
        cd = state.countdown
        print(f"  countdown: {cd.kind.value} {cd.seconds_remaining}s ({cd.step_key})")


def _report(session: GameSession, outcome: Outcome) -> int:
    spec = pipeline_for(outcome.kind)
    print(f"{outcome.kind.value}: {outcome.status.value} at {spec.step_name(outcome.step)}")
    if outcome.error is not None:
        print(f"  {format_api_error(outcome.error.message)}")
    if outcome.status is OutcomeStatus.READY:
        print(f"  run `storyloom accept {outcome.kind.value}` to apply the result")
    if outcome.status is OutcomeStatus.BLOCKED:
        return EXIT_BLOCKED
    return EXIT_OK if outcome.ok else EXIT_FAILED


def _print_history(days: List[DayLog]) -> None:
    for day in days:
        print(f"=== Day {day.day} ===")
        for seg in day.segments:
            print(f"--- {seg.segment} ---")
            for line in seg.dialogue:
                print(f"{line.speaker}: {line.dialogue}")


def _dispatch(ns: argparse.Namespace, session: GameSession) -> int:
    if ns.cmd == "run":
        return _report(session, asyncio.run(session.run(PipelineKind(ns.kind), ns.from_step)))
    if ns.cmd == "retry":
        return _report(session, asyncio.run(session.retry(PipelineKind(ns.kind), ns.step, resume=ns.resume)))
    if ns.cmd == "resume":
        kind = session.find_interrupted()
        if kind is None:
            print("Nothing to resume")
            return EXIT_OK
        return _report(session, asyncio.run(session.run(kind)))
    if ns.cmd == "status":
        for kind in ([PipelineKind(ns.kind)] if ns.kind else list(PipelineKind)):
            _print_state(session, kind)
        return EXIT_OK
    if ns.cmd == "accept":
        snap = session.accept(PipelineKind(ns.kind))
        print(f"Accepted {ns.kind}: day {snap.live.day}, {snap.live.segment}")
        return EXIT_OK
    if ns.cmd == "reset":
        session.runner.reset(PipelineKind(ns.kind))
        print(f"Reset {ns.kind}")
        return EXIT_OK
    if ns.cmd == "export":
        print(f"Exported to {session.export(ns.path)}")
        return EXIT_OK
    if ns.cmd == "import":
        snap = session.import_save(ns.path)
        print(f"Imported: day {snap.live.day}, {snap.live.segment}, {len(snap.archive)} archived day(s)")
        return EXIT_OK
    if ns.cmd == "history":
        if ns.from_save:
            _print_history(session.imported_history(read_save_file(ns.from_save)))
        else:
            _print_history(session.history())
        return EXIT_OK
    if ns.cmd == "env":
        snapshot: Dict[str, Any] = collect_program_env_snapshot()
        print(json.dumps(snapshot, indent=2))
        return EXIT_OK
    print("Usage: storyloom <run|retry|resume|status|accept|reset|export|import|history|env> ...")
    return EXIT_USAGE


def main(argv: Optional[List[str]] = None) -> int:
    load_env()
    ns = _parse_args(list(sys.argv[1:] if argv is None else argv))
    if ns.base_dir:
        os.environ["SL_BASE_DIR"] = str(ns.base_dir)
    _init_run_logs()
    _log_run(f"=== START === cmd={ns.cmd} base={get_base_dir()}")
    _breadcrumb(f"cli:{ns.cmd}")

    session = GameSession(guard=FileTabLock())
    try:
        return _dispatch(ns, session)
    except BlockedByOtherTab as e:
        print(f"BLOCKED: {e}", file=sys.stderr)
        _log_run(f"CLI blocked | {e}")
        return EXIT_BLOCKED
    except SLError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        _log_run(f"CLI error | {e.__class__.__name__}: {e}")
        return EXIT_FAILED
    finally:
        session.close()


if __name__ == "__main__":
    sys.exit(main())
