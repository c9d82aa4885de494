from __future__ import annotations

from helpers import applied, finish, run_through, start

from phaseflow.engine import Transition, TransitionEngine
from phaseflow.errors import (
    IllegalTransitionError,
    IncompleteOutputError,
    OutOfOrderWarning,
    StaleEventError,
    UnrecoverableBlockError,
)
from phaseflow.models import (
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
    PhaseStatus,
    PipelineState,
    ResetPipeline,
    Severity,
    StartPhase,
)
from phaseflow.validation import validate_state


def _block_review(engine: TransitionEngine, state: PipelineState, reason: str = "2 critical findings") -> PipelineState:
    state = start(engine, state, PhaseName.CODE_REVIEW)
    state = applied(
        engine.transition(
            state,
            BlockPhase(
                based_on_version=state.version,
                phase=PhaseName.CODE_REVIEW,
                reason=reason,
                recovery_artifact="fix-plan.md",
            ),
        )
    )
    return applied(engine.transition(state, LoopBack(based_on_version=state.version, phase=PhaseName.CODE_REVIEW)))


def test_fresh_state_starts_at_brainstorm(fresh_state: PipelineState) -> None:
    assert fresh_state.version == 1
    assert fresh_state.current_phase is PhaseName.BRAINSTORM
    assert list(fresh_state.phases) == list(PhaseName)
    assert all(record.status is PhaseStatus.PENDING for record in fresh_state.phases.values())
    assert validate_state(fresh_state) == []


def test_happy_path_walks_all_phases_in_order(engine: TransitionEngine, fresh_state: PipelineState) -> None:
    state = run_through(engine, fresh_state, PhaseName.DOCUMENTATION)

    assert state.current_phase is None
    assert state.is_complete
    assert all(record.status is PhaseStatus.COMPLETED for record in state.phases.values())
    assert state.version == 1 + 2 * len(PhaseName)
    assert [event.kind for event in state.history[:2]] == [EventKind.START, EventKind.ADVANCE]
    assert state.phase(PhaseName.CODE_REVIEW).outputs == ["review.md"]
    assert validate_state(state) == []


def test_review_block_loops_back_to_implementation(engine: TransitionEngine, fresh_state: PipelineState) -> None:
    state = run_through(engine, fresh_state, PhaseName.IMPLEMENTATION)
    assert state.current_phase is PhaseName.CODE_REVIEW

    state = _block_review(engine, state)

    review = state.phase(PhaseName.CODE_REVIEW)
    implementation = state.phase(PhaseName.IMPLEMENTATION)
    assert review.status is PhaseStatus.BLOCKED
    assert review.blocked_reason == "2 critical findings"
    assert state.current_phase is PhaseName.IMPLEMENTATION
    assert implementation.status is PhaseStatus.IN_PROGRESS
    assert implementation.retry_count == 1
    assert state.recovery is not None
    assert state.recovery.blocked_phase is PhaseName.CODE_REVIEW
    assert state.recovery.target is PhaseName.IMPLEMENTATION
    assert state.recovery.recovery_artifact == "fix-plan.md"
    assert validate_state(state) == []


def test_review_passes_after_rework_and_only_target_retry_count_moves(
    engine: TransitionEngine, fresh_state: PipelineState
) -> None:
    state = _block_review(engine, run_through(engine, fresh_state, PhaseName.IMPLEMENTATION))

    state = finish(engine, state, PhaseName.IMPLEMENTATION)
    assert state.current_phase is PhaseName.CODE_REVIEW
    assert validate_state(state) == []

    state = finish(engine, start(engine, state, PhaseName.CODE_REVIEW), PhaseName.CODE_REVIEW)

    assert state.current_phase is PhaseName.TESTING
    assert state.recovery is None
    assert state.phase(PhaseName.CODE_REVIEW).status is PhaseStatus.COMPLETED
    assert state.phase(PhaseName.CODE_REVIEW).retry_count == 0
    assert state.phase(PhaseName.CODE_REVIEW).block_reasons == []
    assert state.phase(PhaseName.IMPLEMENTATION).retry_count == 1
    assert state.warnings == []


def test_loop_back_resets_phases_between_target_and_blocker(
    engine: TransitionEngine, fresh_state: PipelineState
) -> None:
    state = run_through(engine, fresh_state, PhaseName.CODE_REVIEW)
    state = start(engine, state, PhaseName.TESTING)
    state = applied(
        engine.transition(
            state,
            BlockPhase(based_on_version=state.version, phase=PhaseName.TESTING, reason="3 failing tests"),
        )
    )
    state = applied(engine.transition(state, LoopBack(based_on_version=state.version, phase=PhaseName.TESTING)))

    review = state.phase(PhaseName.CODE_REVIEW)
    assert review.status is PhaseStatus.PENDING
    assert review.outputs == []
    assert review.completed_at is None
    assert state.phase(PhaseName.TESTING).status is PhaseStatus.BLOCKED
    assert state.current_phase is PhaseName.IMPLEMENTATION
    assert validate_state(state) == []


def test_retry_count_survives_repeated_loop_backs(engine: TransitionEngine, fresh_state: PipelineState) -> None:
    state = _block_review(engine, run_through(engine, fresh_state, PhaseName.IMPLEMENTATION))
    state = finish(engine, state, PhaseName.IMPLEMENTATION)
    state = _block_review(engine, state, reason="still 1 critical finding")

    assert state.phase(PhaseName.IMPLEMENTATION).retry_count == 2
    assert state.phase(PhaseName.CODE_REVIEW).block_reasons == ["2 critical findings", "still 1 critical finding"]


def test_replayed_event_is_a_no_op(engine: TransitionEngine, fresh_state: PipelineState) -> None:
    state = start(engine, fresh_state, PhaseName.BRAINSTORM)
    event = AdvancePhase(based_on_version=state.version, phase=PhaseName.BRAINSTORM, outputs=["spec.md"])

    first = engine.transition(state, event)
    assert isinstance(first, Transition)
    second = engine.transition(first.state, event)

    assert isinstance(second, Transition)
    assert second.replayed
    assert second.state is first.state
    assert second.event == first.event
    assert len(second.state.history) == len(first.state.history)


def test_stale_event_is_rejected(engine: TransitionEngine, fresh_state: PipelineState) -> None:
    state = start(engine, fresh_state, PhaseName.BRAINSTORM)

    result = engine.transition(state, ForceAdvance(based_on_version=1, phase=PhaseName.BRAINSTORM, reason="late"))

    assert isinstance(result, StaleEventError)
    assert result.expected_version == 1
    assert result.actual_version == state.version


def test_advance_requires_declared_outputs(engine: TransitionEngine, fresh_state: PipelineState) -> None:
    state = start(engine, fresh_state, PhaseName.BRAINSTORM)

    result = engine.transition(
        state, AdvancePhase(based_on_version=state.version, phase=PhaseName.BRAINSTORM, outputs=["notes.md"])
    )

    assert isinstance(result, IncompleteOutputError)
    assert result.missing == ("spec.md",)
    assert state.phase(PhaseName.BRAINSTORM).status is PhaseStatus.IN_PROGRESS
    assert state.current_phase is PhaseName.BRAINSTORM


def test_block_without_recovery_target_is_unrecoverable(engine: TransitionEngine, fresh_state: PipelineState) -> None:
    state = run_through(engine, fresh_state, PhaseName.PLANNING)
    state = start(engine, state, PhaseName.IMPLEMENTATION)
    version = state.version

    result = engine.transition(
        state,
        BlockPhase(based_on_version=version, phase=PhaseName.IMPLEMENTATION, reason="plan is contradictory"),
    )

    assert isinstance(result, UnrecoverableBlockError)
    assert result.reason == "plan is contradictory"
    assert state.version == version
    assert state.phase(PhaseName.IMPLEMENTATION).status is PhaseStatus.IN_PROGRESS


def test_only_current_phase_may_start(engine: TransitionEngine, fresh_state: PipelineState) -> None:
    result = engine.transition(fresh_state, StartPhase(based_on_version=1, phase=PhaseName.PLANNING))

    assert isinstance(result, IllegalTransitionError)
    assert fresh_state.phase(PhaseName.PLANNING).status is PhaseStatus.PENDING


def test_skip_with_exceptions_is_limited_to_testing(engine: TransitionEngine, fresh_state: PipelineState) -> None:
    state = run_through(engine, fresh_state, PhaseName.IMPLEMENTATION)
    state = start(engine, state, PhaseName.CODE_REVIEW)
    state = applied(
        engine.transition(
            state, BlockPhase(based_on_version=state.version, phase=PhaseName.CODE_REVIEW, reason="style")
        )
    )

    result = engine.transition(
        state,
        AdvanceWithExceptions(
            based_on_version=state.version,
            phase=PhaseName.CODE_REVIEW,
            exceptions=["accepted style debt"],
        ),
    )

    assert isinstance(result, IllegalTransitionError)


def test_halt_rejects_other_events_until_resolved(engine: TransitionEngine, fresh_state: PipelineState) -> None:
    state = applied(
        engine.transition(
            fresh_state,
            HaltPipeline(
                based_on_version=1,
                phase=PhaseName.BRAINSTORM,
                decision_kind=DecisionKind.CONFIRM_NEXT_PHASE,
                reason="confirm start",
                options=[DecisionAction.PROCEED],
            ),
        )
    )
    assert state.awaiting_decision is not None

    result = engine.transition(state, StartPhase(based_on_version=state.version, phase=PhaseName.BRAINSTORM))

    assert isinstance(result, IllegalTransitionError)
    assert "awaiting" in result.message


def test_rework_of_earlier_phase_warns_about_later_completed_phases(
    engine: TransitionEngine, fresh_state: PipelineState
) -> None:
    done = run_through(engine, fresh_state, PhaseName.DOCUMENTATION)
    reopened = done.model_copy(deep=True)
    reopened.current_phase = PhaseName.IMPLEMENTATION
    reopened.phases[PhaseName.IMPLEMENTATION].status = PhaseStatus.PENDING

    issues = validate_state(reopened)
    assert issues
    assert all(issue.severity is Severity.WARNING for issue in issues)

    state = start(engine, reopened, PhaseName.IMPLEMENTATION)
    result = engine.transition(
        state,
        AdvancePhase(
            based_on_version=state.version,
            phase=PhaseName.IMPLEMENTATION,
            outputs=["implementation-notes.md"],
        ),
    )

    assert isinstance(result, Transition)
    assert result.warnings == (
        OutOfOrderWarning(
            phase=PhaseName.IMPLEMENTATION,
            later_phases=(PhaseName.CODE_REVIEW, PhaseName.TESTING, PhaseName.DOCUMENTATION),
        ),
    )
    assert result.state.warnings == [str(result.warnings[0])]
    assert result.state.current_phase is PhaseName.CODE_REVIEW
    assert result.state.phase(PhaseName.CODE_REVIEW).status is PhaseStatus.COMPLETED


def test_force_advance_marks_phase_forced(engine: TransitionEngine, fresh_state: PipelineState) -> None:
    state = start(engine, fresh_state, PhaseName.BRAINSTORM)

    state = applied(
        engine.transition(
            state,
            ForceAdvance(based_on_version=state.version, phase=PhaseName.BRAINSTORM, reason="spec written by hand"),
        )
    )

    brainstorm = state.phase(PhaseName.BRAINSTORM)
    assert brainstorm.status is PhaseStatus.COMPLETED
    assert brainstorm.forced
    assert state.current_phase is PhaseName.PLANNING
    assert state.warnings == ["brainstorm force-advanced: spec written by hand"]


def test_reset_starts_a_new_run(engine: TransitionEngine, fresh_state: PipelineState) -> None:
    state = run_through(engine, fresh_state, PhaseName.PLANNING)
    old_run = state.run_id

    state = applied(engine.transition(state, ResetPipeline(based_on_version=state.version, new_run_id="run-2")))

    assert state.run_id == "run-2" != old_run
    assert state.version == 6
    assert state.current_phase is PhaseName.BRAINSTORM
    assert all(record.status is PhaseStatus.PENDING for record in state.phases.values())
    assert [event.kind for event in state.history] == [EventKind.RESET]
    assert validate_state(state) == []


def test_engine_never_mutates_its_input(engine: TransitionEngine, fresh_state: PipelineState) -> None:
    before = fresh_state.model_dump()

    start(engine, fresh_state, PhaseName.BRAINSTORM)

    assert fresh_state.model_dump() == before
