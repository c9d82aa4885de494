from __future__ import annotations

from .models import DecisionKind, PhaseStatus, PipelineState, Severity, ValidationIssue
from .registry import DEFAULT_REGISTRY, PhaseRegistry


def _error(location: str, message: str) -> ValidationIssue:
    return ValidationIssue(severity=Severity.ERROR, location=location, message=message)


def _warning(location: str, message: str) -> ValidationIssue:
    return ValidationIssue(severity=Severity.WARNING, location=location, message=message)


def validate_state(
    state: PipelineState,
    registry: PhaseRegistry | None = None,
) -> list[ValidationIssue]:
    """Check a pipeline state against the ordering and recovery invariants.

    Errors mean the record cannot be driven safely. Warnings flag states the
    engine can reach on its own but that usually deserve a look, such as later
    phases left completed by an earlier run.
    """
    registry = registry or DEFAULT_REGISTRY
    issues: list[ValidationIssue] = []

    expected = registry.names()
    actual = list(state.phases)
    if set(actual) != set(expected):
        missing = sorted(name.value for name in set(expected) - set(actual))
        return [_error("phases", f"phase set does not match the registry; missing {missing}")]
    if actual != expected:
        issues.append(_error("phases", "phases are not stored in pipeline order"))

    for name, record in state.phases.items():
        location = f"phases.{name.value}"
        if record.name is not name:
            issues.append(_error(location, f"record is named {record.name.value}"))
        if record.status is PhaseStatus.BLOCKED and not record.blocked_reason:
            issues.append(_error(location, "blocked phase has no blocked reason"))
        if record.status is not PhaseStatus.BLOCKED and record.blocked_reason:
            issues.append(_error(location, f"{record.status.value} phase carries a blocked reason"))

    recovery = state.recovery
    current = state.current_phase

    if current is None:
        for name, record in state.phases.items():
            if record.status is not PhaseStatus.COMPLETED:
                issues.append(
                    _error(
                        f"phases.{name.value}",
                        f"pipeline is complete but phase is {record.status.value}",
                    )
                )
        if recovery is not None:
            issues.append(_error("recovery", "pipeline is complete but a recovery is in flight"))
        if state.awaiting_decision is not None:
            issues.append(_error("awaitingDecision", "pipeline is complete but awaits a decision"))
        return issues + _history_issues(state)

    for name in registry.before(current):
        record = state.phases[name]
        if record.status is not PhaseStatus.COMPLETED:
            issues.append(
                _error(
                    f"phases.{name.value}",
                    f"precedes current phase {current.value} but is {record.status.value}",
                )
            )

    current_record = state.phases[current]
    if current_record.status is PhaseStatus.COMPLETED:
        issues.append(
            _warning(
                f"phases.{current.value}",
                "current phase was already completed by an earlier run",
            )
        )

    for name in registry.after(current):
        record = state.phases[name]
        location = f"phases.{name.value}"
        if record.status is PhaseStatus.PENDING:
            continue
        if recovery is not None and name is recovery.blocked_phase and record.status is PhaseStatus.BLOCKED:
            continue
        if record.status is PhaseStatus.COMPLETED:
            issues.append(
                _warning(location, f"completed out of order ahead of current phase {current.value}")
            )
            continue
        issues.append(
            _error(location, f"follows current phase {current.value} but is {record.status.value}")
        )

    if recovery is not None:
        spec = registry.get(recovery.blocked_phase)
        if spec.recovery_target is not recovery.target:
            issues.append(
                _error(
                    "recovery.target",
                    f"{recovery.blocked_phase.value} recovers to "
                    f"{spec.recovery_target.value if spec.recovery_target else 'nothing'}, "
                    f"not {recovery.target.value}",
                )
            )
        if state.phases[recovery.blocked_phase].status is not PhaseStatus.BLOCKED:
            issues.append(_error("recovery.blockedPhase", f"{recovery.blocked_phase.value} is not blocked"))
        position = registry.index(current)
        if not registry.index(recovery.target) <= position <= registry.index(recovery.blocked_phase):
            issues.append(
                _error(
                    "recovery",
                    f"current phase {current.value} lies outside the recovery span "
                    f"{recovery.target.value}..{recovery.blocked_phase.value}",
                )
            )

    pending = state.awaiting_decision
    if pending is not None:
        if pending.phase is not current:
            issues.append(
                _error(
                    "awaitingDecision.phase",
                    f"decision is for {pending.phase.value if pending.phase else 'no phase'} "
                    f"but current phase is {current.value}",
                )
            )
        elif pending.kind is not DecisionKind.CONFIRM_NEXT_PHASE and current_record.status is not PhaseStatus.BLOCKED:
            issues.append(
                _error("awaitingDecision.kind", f"{pending.kind.value} requires {current.value} to be blocked")
            )

    return issues + _history_issues(state)


def _history_issues(state: PipelineState) -> list[ValidationIssue]:
    if not state.history:
        return []
    last = state.history[-1]
    if last.to_state.version != state.version:
        return [
            _warning(
                "history",
                f"last recorded transition ends at version {last.to_state.version}, "
                f"state is at version {state.version}",
            )
        ]
    return []


def has_errors(issues: list[ValidationIssue]) -> bool:
    return any(issue.severity is Severity.ERROR for issue in issues)
