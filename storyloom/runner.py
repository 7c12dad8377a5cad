"""Pipeline runner: ordered stages, resumable, one run in flight per kind.

Contract:
- run(kind, ctx, from_step=None) -> Outcome
- run_stage(kind, step, ctx) -> Outcome
- accept(kind, snapshot=None) -> dict
- reset(kind), invalidate(), status(kind)

Each stage makes one service call under a time bound. A success commits the
stage output, the advanced step and the cleared error entry in one atomic
write before the next stage starts. A failure records ``errors[step]`` and
halts the run. The caller's await is shielded: if the caller stops waiting
the stage still finishes and persists its outcome.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

from .config import TIMEOUT_SENTINEL
from .context import (
    BlockedByOtherTab,
    PipelineError,
    RunContext,
    StageFailure,
    StageTimeout,
    ValidationError,
)
from .env import (
    error_countdown_seconds,
    stage_timeout_seconds,
    success_countdown_seconds,
    tab_lock_heartbeat_seconds,
    timeout_countdown_seconds,
)
from .history import GameSnapshot
from .llm import AIService, default_service
from .logging import log_error_base as _log_error_base, log_run as _log_run
from .persistence import StateStore
from .pipelines import HANDLERS, StageInput
from .retry import CountdownTimer, SystemClock
from .state import CountdownKind, ErrorDetail, ErrorKind, PipelineState
from .steps import PipelineKind, Stage, pipeline_for
from .tablock import NullTabGuard, TabGuard


class OutcomeStatus(str, Enum):
    READY = "ready"
    ADVANCED = "advanced"
    FAILED = "failed"
    BLOCKED = "blocked"
    BUSY = "busy"
    SUPERSEDED = "superseded"


@dataclass
class Outcome:
    status: OutcomeStatus
    kind: PipelineKind
    step: int
    error: Optional[ErrorDetail] = None
    attempted: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.status in (OutcomeStatus.READY, OutcomeStatus.ADVANCED)


def error_kind_for(exc: BaseException) -> ErrorKind:
    if isinstance(exc, (StageTimeout, asyncio.TimeoutError)):
        return ErrorKind.TIMEOUT
    if isinstance(exc, ValidationError):
        return ErrorKind.VALIDATION_ERROR
    if isinstance(exc, BlockedByOtherTab):
        return ErrorKind.BLOCKED_BY_OTHER_TAB
    return ErrorKind.SERVICE_ERROR


class PipelineRunner:
    def __init__(
        self,
        store: Optional[StateStore] = None,
        service: Optional[AIService] = None,
        *,
        guard: Optional[TabGuard] = None,
        clock=None,
        handlers: Optional[Dict[PipelineKind, Dict[str, Callable]]] = None,
        timeout: Optional[float] = None,
        heartbeat_interval: Optional[float] = None,
    ):
        self.store = store or StateStore()
        self.service = service or default_service()
        self.guard = guard or NullTabGuard()
        self.clock = clock or SystemClock()
        self.handlers = handlers if handlers is not None else HANDLERS
        self.timeout = timeout if timeout is not None else stage_timeout_seconds()
        self.heartbeat_interval = heartbeat_interval if heartbeat_interval is not None else tab_lock_heartbeat_seconds()
        self._in_flight: Dict[PipelineKind, asyncio.Future] = {}
        self._timers: Dict[PipelineKind, CountdownTimer] = {}
        self._epoch = 0

    # ---------------------------
    # Observation
    # ---------------------------

    @property
    def epoch(self) -> int:
        return self._epoch

    def timer(self, kind: PipelineKind) -> CountdownTimer:
        kind = PipelineKind(kind)
        if kind not in self._timers:
            self._timers[kind] = CountdownTimer(self.clock)
        return self._timers[kind]

    def is_running(self, kind: PipelineKind) -> bool:
        return PipelineKind(kind) in self._in_flight

    def status(self, kind: PipelineKind) -> PipelineState:
        state = self.store.load_or_initial(kind)
        state.countdown = self.timer(kind).tick()
        return state

    def invalidate(self) -> None:
        """Make every in-flight stage's eventual write a no-op (after import or reset)."""
        self._epoch += 1
        for t in self._timers.values():
            t.cancel()
        _log_run(f"RUNNER invalidated | epoch={self._epoch} in_flight={sorted(k.value for k in self._in_flight)}")

    # ---------------------------
    # Entry points
    # ---------------------------

    async def run(self, kind: PipelineKind, ctx: RunContext, from_step: Optional[int] = None) -> Outcome:
        kind = PipelineKind(kind)
        return await self._single_flight(kind, self._run, kind, ctx, from_step)

    async def run_stage(self, kind: PipelineKind, step: int, ctx: RunContext) -> Outcome:
        kind = PipelineKind(kind)
        return await self._single_flight(kind, self._run_stage, kind, int(step), ctx)

    def accept(self, kind: PipelineKind, snapshot: Optional[GameSnapshot] = None) -> Dict[str, Any]:
        """Hand over the finished outputs and discard the pipeline state.

        With ``snapshot`` the updated gameplay state is written in the same
        swap as the reset, so a crash cannot apply a result twice.
        """
        kind = PipelineKind(kind)
        if self.is_running(kind):
            raise PipelineError(f"{kind.value} is still running")
        state = self.store.load_or_initial(kind)
        if not state.generated_but_unshown:
            raise PipelineError(f"{kind.value} has no finished result to accept (step {state.current_step})")
        self.require_claim(f"accept {kind.value}")
        outputs = dict(state.data)
        fresh = PipelineState.initial(kind)
        if snapshot is not None:
            self.store.save_game_and_pipeline(snapshot, kind, fresh)
        else:
            self.store.save_pipeline_state(kind, fresh)
        self.timer(kind).cancel()
        _log_run(f"RUN accepted | kind={kind.value} stages={sorted(outputs)}")
        return outputs

    def reset(self, kind: PipelineKind) -> PipelineState:
        kind = PipelineKind(kind)
        self.require_claim(f"reset {kind.value}")
        self.invalidate()
        fresh = PipelineState.initial(kind)
        self.store.save_pipeline_state(kind, fresh)
        _log_run(f"RUN reset | kind={kind.value}")
        return fresh

    def require_claim(self, action: str) -> None:
        """Raise BlockedByOtherTab unless this session holds the campaign."""
        if not self.guard.claim():
            holder = self.guard.holder() or "unknown"
            _log_run(f"RUN blocked | action={action} holder={holder}")
            raise BlockedByOtherTab(f"Cannot {action}: campaign is open in another session ({holder})")

    # ---------------------------
    # Single flight
    # ---------------------------

    async def _single_flight(self, kind: PipelineKind, fn, *args) -> Outcome:
        if kind in self._in_flight:
            step = self.store.load_or_initial(kind).current_step
            _log_run(f"RUN rejected | kind={kind.value} reason=busy step={step}")
            return Outcome(OutcomeStatus.BUSY, kind, step)
        task = asyncio.ensure_future(self._tracked(kind, fn, *args))
        self._in_flight[kind] = task
        # The caller may stop waiting; the stage still completes and persists.
        return await asyncio.shield(task)

    async def _tracked(self, kind: PipelineKind, fn, *args) -> Outcome:
        try:
            return await fn(*args)
        finally:
            self._in_flight.pop(kind, None)

    # ---------------------------
    # Execution
    # ---------------------------

    async def _run(self, kind: PipelineKind, ctx: RunContext, from_step: Optional[int]) -> Outcome:
        state = self.store.load_or_initial(kind)
        if from_step is not None:
            # Rewinding writes, so the lock comes first.
            blocked = self._claim(kind, state)
            if blocked is not None:
                return blocked
            state = self._rewind(kind, state, int(from_step))
        if state.generated_but_unshown:
            _log_run(f"RUN ready | kind={kind.value} step={state.current_step} (awaiting accept)")
            return Outcome(OutcomeStatus.READY, kind, state.current_step)
        blocked = self._claim(kind, state)
        if blocked is not None:
            return blocked
        return await self._holding_lock(kind, self._run_stages(kind, state, ctx))

    async def _run_stages(self, kind: PipelineKind, state: PipelineState, ctx: RunContext) -> Outcome:
        spec = pipeline_for(kind)
        epoch = self._epoch
        _log_run(f"RUN start | kind={kind.value} from={spec.step_name(state.current_step)} epoch={epoch}")
        for stage in spec.remaining(state.current_step):
            if state.current_step >= stage.order:
                continue
            if epoch != self._epoch:
                return self._superseded(kind, stage)
            blocked = self._claim(kind, state)
            if blocked is not None:
                return blocked
            state, outcome = await self._execute(kind, stage, state, ctx, epoch)
            if outcome.status is not OutcomeStatus.ADVANCED:
                return outcome
            # Auto-advance once the success countdown runs out (or is cancelled).
            await self.timer(kind).wait()
        _log_run(f"RUN ready | kind={kind.value} step={state.current_step}")
        return Outcome(OutcomeStatus.READY, kind, state.current_step)

    async def _run_stage(self, kind: PipelineKind, step: int, ctx: RunContext) -> Outcome:
        spec = pipeline_for(kind)
        try:
            stage = spec.stage_for(step)
        except KeyError as e:
            raise PipelineError(str(e))
        state = self.store.load_or_initial(kind)
        if state.current_step >= stage.order:
            _log_run(f"STAGE skipped | kind={kind.value} step={stage.order} already done")
            done = state.generated_but_unshown or state.current_step >= spec.final
            return Outcome(OutcomeStatus.READY if done else OutcomeStatus.ADVANCED, kind, state.current_step)
        if state.current_step != stage.order - 1:
            raise PipelineError(
                f"{kind.value}: cannot run {stage.key} before {spec.step_name(stage.order - 1)} is done "
                f"(at {spec.step_name(state.current_step)})"
            )
        blocked = self._claim(kind, state)
        if blocked is not None:
            return blocked
        _, outcome = await self._holding_lock(kind, self._execute(kind, stage, state, ctx, self._epoch))
        return outcome

    async def _execute(
        self, kind: PipelineKind, stage: Stage, state: PipelineState, ctx: RunContext, epoch: int
    ):
        """Run one stage and commit its outcome. Returns (state after commit, Outcome)."""
        spec = pipeline_for(kind)
        handler = self.handlers.get(kind, {}).get(stage.key)
        if handler is None:
            raise PipelineError(f"No handler registered for {stage.key}")
        timer = self.timer(kind)
        timer.cancel()
        inp = StageInput(ctx=ctx, stage=stage, prior=dict(state.data))
        _log_run(f"STAGE start | kind={kind.value} step={stage.order} key={stage.key}")
        try:
            output = await asyncio.wait_for(handler(self.service, inp), timeout=self.timeout)
            if not isinstance(output, dict):
                raise ValidationError(f"{stage.label}: stage returned {type(output).__name__}, expected an object")
        except asyncio.TimeoutError:
            return state, self._fail(kind, stage, state, ErrorDetail(ErrorKind.TIMEOUT, TIMEOUT_SENTINEL, stage.key), epoch)
        except Exception as e:
            kind_of = error_kind_for(e)
            if not isinstance(e, (StageFailure, BlockedByOtherTab)):
                _log_error_base(f"stage {stage.key} raised {e.__class__.__name__}: {e}")
            message = TIMEOUT_SENTINEL if kind_of is ErrorKind.TIMEOUT else (str(e) or e.__class__.__name__)
            return state, self._fail(kind, stage, state, ErrorDetail(kind_of, message, stage.key), epoch)

        if epoch != self._epoch:
            return state, self._superseded(kind, stage)
        blocked = self._claim(kind, state)
        if blocked is not None:
            # Another session took the campaign while the stage ran; its file wins.
            return state, blocked
        new = state.copy()
        new.current_step = stage.order
        new.data[stage.key] = output
        new.errors.pop(stage.order, None)
        final = stage.order >= spec.final
        if final:
            new.generated_but_unshown = True
        self.store.save_pipeline_state(kind, new)
        _log_run(f"STAGE ok | kind={kind.value} step={stage.order} key={stage.key}")
        if final:
            return new, Outcome(OutcomeStatus.READY, kind, new.current_step, attempted=stage.order)
        timer.start(stage.key, success_countdown_seconds(), CountdownKind.SUCCESS)
        return new, Outcome(OutcomeStatus.ADVANCED, kind, new.current_step, attempted=stage.order)

    def _fail(self, kind: PipelineKind, stage: Stage, state: PipelineState, detail: ErrorDetail, epoch: int) -> Outcome:
        if epoch != self._epoch:
            return self._superseded(kind, stage)
        blocked = self._claim(kind, state)
        if blocked is not None:
            return blocked
        new = state.copy()
        new.errors[stage.order] = detail
        self.store.save_pipeline_state(kind, new)
        if detail.kind is ErrorKind.TIMEOUT:
            self.timer(kind).start(stage.key, timeout_countdown_seconds(), CountdownKind.TIMEOUT)
        else:
            self.timer(kind).start(stage.key, error_countdown_seconds(), CountdownKind.ERROR)
        _log_run(
            f"STAGE failed | kind={kind.value} step={stage.order} key={stage.key} "
            f"error={detail.kind.value} message={detail.message}"
        )
        return Outcome(OutcomeStatus.FAILED, kind, new.current_step, error=detail, attempted=stage.order)

    def _superseded(self, kind: PipelineKind, stage: Stage) -> Outcome:
        _log_run(f"STAGE discarded | kind={kind.value} key={stage.key} reason=stale epoch")
        step = self.store.load_or_initial(kind).current_step
        return Outcome(OutcomeStatus.SUPERSEDED, kind, step, attempted=stage.order)

    async def _holding_lock(self, kind: PipelineKind, work) -> Any:
        """Await ``work`` while a background task keeps the tab lock fresh."""
        beat = asyncio.ensure_future(self._heartbeat(kind))
        try:
            return await work
        finally:
            beat.cancel()

    async def _heartbeat(self, kind: PipelineKind) -> None:
        # Wall-clock cadence: the lock file stores wall-clock heartbeats.
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            if not self.guard.claim():
                _log_run(f"TABLOCK lost | kind={kind.value} holder={self.guard.holder()}")

    def _claim(self, kind: PipelineKind, state: PipelineState) -> Optional[Outcome]:
        if self.guard.claim():
            return None
        detail = ErrorDetail(
            ErrorKind.BLOCKED_BY_OTHER_TAB,
            f"Campaign is open in another session ({self.guard.holder() or 'unknown'}); close it to continue",
        )
        _log_run(f"RUN blocked | kind={kind.value} holder={self.guard.holder()}")
        return Outcome(OutcomeStatus.BLOCKED, kind, state.current_step, error=detail)

    def _rewind(self, kind: PipelineKind, state: PipelineState, from_step: int) -> PipelineState:
        if from_step > state.current_step:
            raise PipelineError(
                f"{kind.value}: cannot resume from step {from_step}, only {state.current_step} is done"
            )
        if from_step < 0:
            raise PipelineError(f"{kind.value}: invalid step {from_step}")
        if from_step == state.current_step:
            return state
        spec = pipeline_for(kind)
        new = state.copy()
        new.current_step = from_step
        new.data = {k: v for k, v in state.data.items() if k in spec.by_key and spec.by_key[k].order <= from_step}
        new.errors = {s: d for s, d in state.errors.items() if s <= from_step}
        new.generated_but_unshown = False
        self.store.save_pipeline_state(kind, new)
        _log_run(f"RUN rewound | kind={kind.value} from={state.current_step} to={from_step}")
        return new
