from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from .engine import Transition, TransitionEngine
from .errors import OutOfOrderWarning, PhaseFailedError, TransitionError, UnrecoverableBlockError
from .models import (
    AdvancePhase,
    AdvanceWithExceptions,
    BlockPhase,
    Blocked,
    Completed,
    DecisionAction,
    DecisionKind,
    Failed,
    ForceAdvance,
    HaltPipeline,
    HumanDecision,
    LoopBack,
    PhaseName,
    PhaseOutcome,
    PipelineState,
    RerunPhase,
    ResolveDecision,
    SuspendedAwaitingDecision,
    TransitionEvent,
)
from .utils import utcnow

logger = logging.getLogger(__name__)

DEFAULT_RETRY_THRESHOLD = 2


@dataclass(frozen=True)
class ControllerResult:
    """What one outcome or decision did to the state.

    ``state`` is the input state when nothing was applied (an error, or a
    replayed decision). ``error`` may be set alongside ``suspension`` when the
    controller converted the failure into a human decision point.
    """

    state: PipelineState
    events: tuple[TransitionEvent, ...] = ()
    error: TransitionError | None = None
    suspension: SuspendedAwaitingDecision | None = None
    warnings: tuple[OutOfOrderWarning, ...] = ()
    replayed: bool = False

    @property
    def changed(self) -> bool:
        return bool(self.events) and not self.replayed

    @property
    def requires_human_decision(self) -> bool:
        return self.suspension is not None and self.suspension.requires_human_decision


class _Chain:
    """Applies several events in sequence; all of them or none of them."""

    def __init__(self, engine: TransitionEngine, state: PipelineState, at: datetime) -> None:
        self.engine = engine
        self.origin = state
        self.state = state
        self.at = at
        self.events: list[TransitionEvent] = []
        self.warnings: list[OutOfOrderWarning] = []

    def apply(self, event_type: type, **fields: Any) -> Transition | TransitionError:
        event = event_type(based_on_version=self.state.version, occurred_at=self.at, **fields)
        step = self.engine.transition(self.state, event)
        if isinstance(step, Transition) and not step.replayed:
            self.state = step.state
            self.events.append(step.event)
            self.warnings.extend(step.warnings)
        return step

    def abort(self, error: TransitionError) -> ControllerResult:
        return ControllerResult(state=self.origin, error=error)

    def finish(self, error: TransitionError | None = None) -> ControllerResult:
        return ControllerResult(
            state=self.state,
            events=tuple(self.events),
            error=error,
            suspension=self.state.awaiting_decision,
            warnings=tuple(self.warnings),
        )

    def replayed(self) -> ControllerResult:
        return ControllerResult(
            state=self.origin,
            suspension=self.origin.awaiting_decision,
            replayed=True,
        )


class RetryLoopController:
    """Turns phase outcomes and human decisions into engine events.

    A phase that blocks is looped back to its recovery target automatically
    until its block streak exceeds ``threshold``; from then on the pipeline
    halts with a ``requires_human_decision`` suspension instead. With
    ``offer_skip_on_block`` a phase that allows skip-with-record halts on
    every block, so a human chooses between looping back and skipping.
    """

    def __init__(
        self,
        engine: TransitionEngine | None = None,
        *,
        threshold: int = DEFAULT_RETRY_THRESHOLD,
        offer_skip_on_block: bool = False,
    ) -> None:
        if threshold < 0:
            raise ValueError(f"retry threshold must be >= 0, got: {threshold}")
        self.engine = engine or TransitionEngine()
        self.registry = self.engine.registry
        self.threshold = threshold
        self.offer_skip_on_block = offer_skip_on_block

    def decision_options(self, phase: PhaseName, kind: DecisionKind) -> list[DecisionAction]:
        if kind is DecisionKind.CONFIRM_NEXT_PHASE:
            return [DecisionAction.PROCEED]
        if kind is DecisionKind.UNRECOVERABLE_BLOCK:
            return [DecisionAction.RERUN, DecisionAction.FORCE_ADVANCE]
        options = [DecisionAction.RETRY]
        if self.registry.get(phase).allows_skip:
            options.append(DecisionAction.SKIP)
        options.extend([DecisionAction.RERUN, DecisionAction.FORCE_ADVANCE])
        return options

    def apply_outcome(
        self,
        state: PipelineState,
        phase: PhaseName,
        outcome: PhaseOutcome,
        *,
        confirm_next: bool = False,
        at: datetime | None = None,
    ) -> ControllerResult:
        chain = _Chain(self.engine, state, at or utcnow())

        if isinstance(outcome, Failed):
            logger.error("%s failed: %s", phase.value, outcome.fatal_error)
            return chain.abort(
                PhaseFailedError(
                    message=f"{phase.value} failed: {outcome.fatal_error}",
                    phase=phase,
                    fatal_error=outcome.fatal_error,
                )
            )

        if isinstance(outcome, Completed):
            step = chain.apply(AdvancePhase, phase=phase, outputs=outcome.outputs)
            if isinstance(step, TransitionError):
                return chain.abort(step)
            if step.replayed:
                return chain.replayed()
            if confirm_next:
                halted = self._confirm_next(chain, phase)
                if isinstance(halted, TransitionError):
                    return chain.abort(halted)
            return chain.finish()

        return self._apply_block(chain, phase, outcome)

    def _confirm_next(self, chain: _Chain, completed: PhaseName) -> Transition | TransitionError | None:
        """Suspend before the phase after *completed*; nothing to confirm once the pipeline is done."""
        upcoming = chain.state.current_phase
        if upcoming is None:
            return None
        return chain.apply(
            HaltPipeline,
            phase=upcoming,
            decision_kind=DecisionKind.CONFIRM_NEXT_PHASE,
            reason=f"{completed.value} completed; confirm before starting {upcoming.value}",
            options=self.decision_options(upcoming, DecisionKind.CONFIRM_NEXT_PHASE),
        )

    def _apply_block(self, chain: _Chain, phase: PhaseName, outcome: Blocked) -> ControllerResult:
        step = chain.apply(
            BlockPhase,
            phase=phase,
            reason=outcome.reason,
            recovery_artifact=outcome.recovery_artifact,
        )
        if isinstance(step, UnrecoverableBlockError):
            halted = chain.apply(
                HaltPipeline,
                phase=phase,
                decision_kind=DecisionKind.UNRECOVERABLE_BLOCK,
                reason=outcome.reason,
                options=self.decision_options(phase, DecisionKind.UNRECOVERABLE_BLOCK),
            )
            if isinstance(halted, TransitionError):
                return chain.abort(halted)
            logger.warning("%s blocked with no recovery target: %s", phase.value, outcome.reason)
            return chain.finish(error=step)
        if isinstance(step, TransitionError):
            return chain.abort(step)
        if step.replayed:
            return chain.replayed()

        streak = chain.state.phases[phase].block_streak
        if streak > self.threshold:
            logger.warning(
                "%s blocked %d consecutive time(s), above threshold %d; halting for a human decision",
                phase.value,
                streak,
                self.threshold,
            )
            halted = chain.apply(
                HaltPipeline,
                phase=phase,
                decision_kind=DecisionKind.REQUIRES_HUMAN_DECISION,
                reason=(
                    f"{phase.value} blocked {streak} consecutive time(s); "
                    f"automatic loop-back stops after {self.threshold}"
                ),
                options=self.decision_options(phase, DecisionKind.REQUIRES_HUMAN_DECISION),
            )
            if isinstance(halted, TransitionError):
                return chain.abort(halted)
            return chain.finish()

        spec = self.registry.get(phase)
        if self.offer_skip_on_block and spec.allows_skip:
            target = spec.recovery_target.value if spec.recovery_target is not None else "its recovery target"
            logger.info("%s blocked; asking whether to loop back to %s or skip", phase.value, target)
            halted = chain.apply(
                HaltPipeline,
                phase=phase,
                decision_kind=DecisionKind.REQUIRES_HUMAN_DECISION,
                reason=(
                    f"{phase.value} blocked: {outcome.reason}; "
                    f"retry loops back to {target}, skip records exceptions"
                ),
                options=self.decision_options(phase, DecisionKind.REQUIRES_HUMAN_DECISION),
            )
            if isinstance(halted, TransitionError):
                return chain.abort(halted)
            return chain.finish()

        looped = chain.apply(LoopBack, phase=phase)
        if isinstance(looped, TransitionError):
            return chain.abort(looped)
        return chain.finish()

    def resolve(
        self,
        state: PipelineState,
        decision: HumanDecision,
        *,
        confirm_next: bool = False,
        at: datetime | None = None,
    ) -> ControllerResult:
        """Record *decision* and apply the transition it authorizes.

        A ``skip`` or ``force_advance`` completes the suspended phase; with
        *confirm_next* the pipeline then suspends again before the next phase,
        as it does after a phase completes on its own.
        """
        chain = _Chain(self.engine, state, at or utcnow())
        pending = state.awaiting_decision
        step = chain.apply(ResolveDecision, decision=decision)
        if isinstance(step, TransitionError):
            return chain.abort(step)
        if step.replayed:
            logger.warning("Decision %s was already applied", decision.decision_id)
            return chain.replayed()

        kind = pending.kind.value if pending is not None else "decision"
        phase = pending.phase if pending is not None else None
        action = decision.action
        follow_up: Transition | TransitionError | None = None
        completes_phase = action in (DecisionAction.SKIP, DecisionAction.FORCE_ADVANCE)
        if phase is not None:
            if action is DecisionAction.RETRY:
                follow_up = chain.apply(LoopBack, phase=phase)
            elif action is DecisionAction.RERUN:
                follow_up = chain.apply(RerunPhase, phase=phase)
            elif action is DecisionAction.SKIP:
                follow_up = chain.apply(
                    AdvanceWithExceptions,
                    phase=phase,
                    exceptions=decision.exceptions,
                    outputs=decision.outputs,
                )
            elif action is DecisionAction.FORCE_ADVANCE:
                follow_up = chain.apply(
                    ForceAdvance,
                    phase=phase,
                    reason=decision.note or "forced by human decision",
                )
            if confirm_next and completes_phase and not isinstance(follow_up, TransitionError):
                follow_up = self._confirm_next(chain, phase)
        if isinstance(follow_up, TransitionError):
            return chain.abort(follow_up)
        logger.info(
            "Resolved %s for %s with %s",
            kind,
            phase.value if phase is not None else "pipeline",
            action.value,
        )
        return chain.finish()
