from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Union

from .errors import (
    DecisionRejectedError,
    IllegalTransitionError,
    IncompleteOutputError,
    OutOfOrderWarning,
    StaleEventError,
    TransitionError,
    UnrecoverableBlockError,
)
from .models import (
    AdvancePhase,
    AdvanceWithExceptions,
    BlockPhase,
    DecisionAction,
    DecisionKind,
    EventKind,
    ForceAdvance,
    HaltPipeline,
    LoopBack,
    PhaseName,
    PhaseRecord,
    PhaseStatus,
    PipelineEvent,
    PipelineState,
    RecoveryContext,
    RerunPhase,
    ResetPipeline,
    ResolveDecision,
    StartPhase,
    SuspendedAwaitingDecision,
    TransitionEvent,
)
from .registry import DEFAULT_REGISTRY, PhaseRegistry

logger = logging.getLogger(__name__)

_Warnings = tuple[OutOfOrderWarning, ...]
_HandlerResult = Union[_Warnings, TransitionError]


@dataclass(frozen=True)
class Transition:
    """A successfully applied event.

    ``replayed`` is set when the event was already in the state's history; the
    state is then returned unchanged and ``event`` is the original record.
    """

    state: PipelineState
    event: TransitionEvent
    warnings: _Warnings = ()
    replayed: bool = False


class TransitionEngine:
    """Pure state machine over ``PipelineState``.

    ``transition`` never mutates its input and never raises for a rejected
    event; it returns either a ``Transition`` or a ``TransitionError``.
    """

    def __init__(self, registry: PhaseRegistry | None = None) -> None:
        self.registry = registry or DEFAULT_REGISTRY
        self._handlers: dict[EventKind, Callable[[PipelineState, PipelineEvent], _HandlerResult]] = {
            EventKind.START: self._start,
            EventKind.ADVANCE: self._advance,
            EventKind.BLOCK: self._block,
            EventKind.LOOP_BACK: self._loop_back,
            EventKind.ADVANCE_WITH_EXCEPTIONS: self._advance_with_exceptions,
            EventKind.HALT: self._halt,
            EventKind.RESOLVE: self._resolve,
            EventKind.RERUN: self._rerun,
            EventKind.FORCE_ADVANCE: self._force_advance,
            EventKind.RESET: self._reset,
        }

    def transition(self, state: PipelineState, event: PipelineEvent) -> Transition | TransitionError:
        event_id = event.fingerprint()
        recorded = state.find_event(event_id)
        if recorded is not None:
            logger.warning(
                "Ignoring replayed %s event for %s at version %s",
                event.kind,
                state.project_id,
                state.version,
            )
            return Transition(state=state, event=recorded, replayed=True)

        if event.based_on_version != state.version:
            return StaleEventError(
                message=(
                    f"{event.kind} event was built on version {event.based_on_version}, "
                    f"state is at version {state.version}"
                ),
                phase=getattr(event, "phase", None),
                expected_version=event.based_on_version,
                actual_version=state.version,
            )

        draft = state.model_copy(deep=True)
        handled = self._handlers[EventKind(event.kind)](draft, event)
        if isinstance(handled, TransitionError):
            logger.info("Rejected %s event for %s: %s", event.kind, state.project_id, handled.message)
            return handled

        draft.version = state.version + 1
        draft.updated_at = event.occurred_at
        record = TransitionEvent(
            event_id=event_id,
            kind=EventKind(event.kind),
            phase=getattr(event, "phase", None),
            from_state=state.summary(),
            to_state=draft.summary(),
            outcome=event.describe(),
            detail=_event_detail(event),
            timestamp=event.occurred_at,
        )
        draft.history.append(record)
        logger.info(
            "%s: %s (version %s -> %s, current %s -> %s)",
            state.project_id,
            record.outcome,
            state.version,
            draft.version,
            _label(state.current_phase),
            _label(draft.current_phase),
        )
        for warning in handled:
            logger.warning("%s: %s", state.project_id, warning)
        return Transition(state=draft, event=record, warnings=handled)

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------

    def _no_pending_decision(self, draft: PipelineState, phase: PhaseName | None) -> TransitionError | None:
        if draft.awaiting_decision is not None:
            return IllegalTransitionError(
                message=f"pipeline is awaiting a {draft.awaiting_decision.kind.value} decision",
                phase=phase,
            )
        return None

    def _current(
        self,
        draft: PipelineState,
        phase: PhaseName,
        *allowed: PhaseStatus,
    ) -> PhaseRecord | TransitionError:
        if draft.current_phase is not phase:
            return IllegalTransitionError(
                message=f"{phase.value} is not the current phase (current: {_label(draft.current_phase)})",
                phase=phase,
            )
        record = draft.phases[phase]
        if allowed and record.status not in allowed:
            expected = ", ".join(status.value for status in allowed)
            return IllegalTransitionError(
                message=f"{phase.value} is {record.status.value}; expected {expected}",
                phase=phase,
            )
        return record

    def _out_of_order(self, draft: PipelineState, phase: PhaseName) -> _Warnings:
        later = tuple(
            name for name in self.registry.after(phase) if draft.phases[name].status is PhaseStatus.COMPLETED
        )
        if not later:
            return ()
        warning = OutOfOrderWarning(phase=phase, later_phases=later)
        draft.warnings.append(str(warning))
        return (warning,)

    def _complete(self, draft: PipelineState, phase: PhaseName, at: datetime) -> _Warnings:
        record = draft.phases[phase]
        record.status = PhaseStatus.COMPLETED
        record.completed_at = at
        record.blocked_reason = None
        record.block_reasons = []
        record.recovery_artifact = None
        if draft.recovery is not None and draft.recovery.blocked_phase is phase:
            draft.recovery = None
        warnings = self._out_of_order(draft, phase)
        draft.current_phase = self.registry.next_phase(phase)
        return warnings

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _start(self, draft: PipelineState, event: StartPhase) -> _HandlerResult:
        rejected = self._no_pending_decision(draft, event.phase)
        if rejected is not None:
            return rejected
        record = self._current(
            draft, event.phase, PhaseStatus.PENDING, PhaseStatus.COMPLETED, PhaseStatus.BLOCKED
        )
        if isinstance(record, TransitionError):
            return record
        recovery = draft.recovery
        if record.status is PhaseStatus.BLOCKED:
            if recovery is None or recovery.blocked_phase is not event.phase:
                return IllegalTransitionError(
                    message=f"{event.phase.value} is blocked; it needs a loop-back or a human decision",
                    phase=event.phase,
                )
            draft.recovery = None
        record.status = PhaseStatus.IN_PROGRESS
        record.started_at = event.occurred_at
        record.completed_at = None
        record.blocked_reason = None
        return ()

    def _advance(self, draft: PipelineState, event: AdvancePhase) -> _HandlerResult:
        rejected = self._no_pending_decision(draft, event.phase)
        if rejected is not None:
            return rejected
        record = self._current(draft, event.phase, PhaseStatus.IN_PROGRESS)
        if isinstance(record, TransitionError):
            return record
        reported = list(dict.fromkeys(event.outputs))
        missing = tuple(
            name for name in self.registry.get(event.phase).produced_outputs if name not in reported
        )
        if missing:
            return IncompleteOutputError(
                message=f"{event.phase.value} did not report required output(s): {', '.join(missing)}",
                phase=event.phase,
                missing=missing,
            )
        record.outputs = reported
        record.exceptions = []
        record.forced = False
        return self._complete(draft, event.phase, event.occurred_at)

    def _block(self, draft: PipelineState, event: BlockPhase) -> _HandlerResult:
        rejected = self._no_pending_decision(draft, event.phase)
        if rejected is not None:
            return rejected
        record = self._current(draft, event.phase, PhaseStatus.IN_PROGRESS)
        if isinstance(record, TransitionError):
            return record
        if self.registry.get(event.phase).recovery_target is None:
            return UnrecoverableBlockError(
                message=(
                    f"{event.phase.value} blocked but has no recovery target; "
                    "start over or repair its inputs by hand"
                ),
                phase=event.phase,
                reason=event.reason,
            )
        record.status = PhaseStatus.BLOCKED
        record.blocked_reason = event.reason
        record.block_reasons.append(event.reason)
        record.recovery_artifact = event.recovery_artifact
        return ()

    def _loop_back(self, draft: PipelineState, event: LoopBack) -> _HandlerResult:
        rejected = self._no_pending_decision(draft, event.phase)
        if rejected is not None:
            return rejected
        record = self._current(draft, event.phase, PhaseStatus.BLOCKED)
        if isinstance(record, TransitionError):
            return record
        target = self.registry.get(event.phase).recovery_target
        if target is None:
            return UnrecoverableBlockError(
                message=f"{event.phase.value} has no recovery target to loop back to",
                phase=event.phase,
                reason=record.blocked_reason or "",
            )

        # An earlier recovery still waiting downstream is superseded; that phase re-runs in order.
        previous = draft.recovery
        if previous is not None and previous.blocked_phase is not event.phase:
            superseded = draft.phases[previous.blocked_phase]
            superseded.status = PhaseStatus.PENDING
            superseded.blocked_reason = None

        for name in self.registry.between(target, event.phase):
            between = draft.phases[name]
            between.status = PhaseStatus.PENDING
            between.outputs = []
            between.started_at = None
            between.completed_at = None
            between.blocked_reason = None

        target_record = draft.phases[target]
        target_record.status = PhaseStatus.IN_PROGRESS
        target_record.retry_count += 1
        target_record.started_at = event.occurred_at
        target_record.completed_at = None
        target_record.blocked_reason = None

        draft.recovery = RecoveryContext(
            blocked_phase=event.phase,
            target=target,
            reason=record.blocked_reason or "",
            recovery_artifact=record.recovery_artifact,
        )
        draft.current_phase = target
        return ()

    def _advance_with_exceptions(self, draft: PipelineState, event: AdvanceWithExceptions) -> _HandlerResult:
        rejected = self._no_pending_decision(draft, event.phase)
        if rejected is not None:
            return rejected
        if not self.registry.get(event.phase).allows_skip:
            return IllegalTransitionError(
                message=f"{event.phase.value} cannot be skipped with recorded exceptions",
                phase=event.phase,
            )
        record = self._current(draft, event.phase, PhaseStatus.BLOCKED)
        if isinstance(record, TransitionError):
            return record
        exceptions = [item.strip() for item in event.exceptions if item.strip()]
        if not exceptions:
            return IllegalTransitionError(
                message=f"skipping {event.phase.value} requires at least one recorded exception",
                phase=event.phase,
            )
        record.exceptions = exceptions
        record.outputs = list(dict.fromkeys(event.outputs)) or record.outputs
        record.forced = False
        return self._complete(draft, event.phase, event.occurred_at)

    def _halt(self, draft: PipelineState, event: HaltPipeline) -> _HandlerResult:
        rejected = self._no_pending_decision(draft, event.phase)
        if rejected is not None:
            return rejected
        if event.decision_kind is DecisionKind.CONFIRM_NEXT_PHASE:
            record = self._current(draft, event.phase)
        else:
            record = self._current(draft, event.phase, PhaseStatus.IN_PROGRESS, PhaseStatus.BLOCKED)
        if isinstance(record, TransitionError):
            return record
        if event.decision_kind is not DecisionKind.CONFIRM_NEXT_PHASE and record.status is PhaseStatus.IN_PROGRESS:
            record.status = PhaseStatus.BLOCKED
            record.blocked_reason = event.reason
            record.block_reasons.append(event.reason)
        draft.awaiting_decision = SuspendedAwaitingDecision(
            kind=event.decision_kind,
            phase=event.phase,
            reason=event.reason,
            options=list(event.options),
            block_reasons=list(record.block_reasons),
            created_at=event.occurred_at,
        )
        return ()

    def _resolve(self, draft: PipelineState, event: ResolveDecision) -> _HandlerResult:
        pending = draft.awaiting_decision
        action = event.decision.action
        if pending is None:
            return DecisionRejectedError(message="no decision is pending", action=action)
        if action not in pending.options:
            offered = ", ".join(option.value for option in pending.options)
            return DecisionRejectedError(
                message=f"{action.value} is not an option for {pending.kind.value}; choose one of: {offered}",
                phase=pending.phase,
                action=action,
            )
        if action is DecisionAction.SKIP and not any(item.strip() for item in event.decision.exceptions):
            return DecisionRejectedError(
                message="skip requires at least one recorded exception",
                phase=pending.phase,
                action=action,
            )
        draft.awaiting_decision = None
        return ()

    def _rerun(self, draft: PipelineState, event: RerunPhase) -> _HandlerResult:
        rejected = self._no_pending_decision(draft, event.phase)
        if rejected is not None:
            return rejected
        record = self._current(draft, event.phase, PhaseStatus.BLOCKED)
        if isinstance(record, TransitionError):
            return record
        record.status = PhaseStatus.IN_PROGRESS
        record.blocked_reason = None
        record.started_at = event.occurred_at
        return ()

    def _force_advance(self, draft: PipelineState, event: ForceAdvance) -> _HandlerResult:
        rejected = self._no_pending_decision(draft, event.phase)
        if rejected is not None:
            return rejected
        record = self._current(
            draft, event.phase, PhaseStatus.PENDING, PhaseStatus.IN_PROGRESS, PhaseStatus.BLOCKED
        )
        if isinstance(record, TransitionError):
            return record
        record.forced = True
        draft.warnings.append(f"{event.phase.value} force-advanced: {event.reason}")
        return self._complete(draft, event.phase, event.occurred_at)

    def _reset(self, draft: PipelineState, event: ResetPipeline) -> _HandlerResult:
        fresh = self.registry.new_state(draft.project_id, run_id=event.new_run_id, at=event.occurred_at)
        draft.run_id = fresh.run_id
        draft.current_phase = fresh.current_phase
        draft.phases = fresh.phases
        draft.recovery = None
        draft.awaiting_decision = None
        draft.warnings = []
        draft.history = []
        draft.created_at = fresh.created_at
        return ()


def _label(phase: PhaseName | None) -> str:
    return phase.value if phase is not None else "none"


def _event_detail(event: PipelineEvent) -> dict[str, object]:
    return event.model_dump(
        mode="json",
        by_alias=True,
        exclude={"kind", "phase", "based_on_version", "occurred_at"},
        exclude_none=True,
    )
