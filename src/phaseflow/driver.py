from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, TypedDict

from langgraph.graph import END, START, StateGraph

from .artifacts import ArtifactFreshness, ArtifactStore
from .engine import TransitionEngine
from .errors import (
    DecisionRejectedError,
    IllegalTransitionError,
    IncompleteOutputError,
    ManifestCorruptedError,
    MissingInputError,
    StateCorruptedError,
    StateNotFoundError,
    StaleWriteError,
    TransitionError,
)
from .executor import CancellationToken, PhaseCancelledError, PhaseExecutor, invoke_executor
from .models import (
    ArtifactRef,
    Blocked,
    Completed,
    HumanDecision,
    PhaseName,
    PhaseOutcome,
    PhaseStatus,
    PipelineState,
    ResetPipeline,
    StartPhase,
    SuspendedAwaitingDecision,
    ValidationIssue,
)
from .registry import DEFAULT_REGISTRY, PhaseRegistry
from .retry import RetryLoopController
from .settings import RuntimeSettings
from .state_store import PipelineStateStore
from .utils import sanitize_project_id
from .validation import has_errors

logger = logging.getLogger(__name__)


class ResultCode(str, Enum):
    SUCCESS = "success"
    SUSPENDED = "suspended"
    VALIDATION_ERROR = "validation_error"
    NOT_FOUND = "not_found"
    FAILED = "failed"
    CONFLICT = "conflict"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


@dataclass(frozen=True)
class DriverResult:
    code: ResultCode
    project_id: str
    state: PipelineState | None = None
    phases_run: tuple[PhaseName, ...] = ()
    suspension: SuspendedAwaitingDecision | None = None
    error: TransitionError | None = None
    issues: tuple[ValidationIssue, ...] = ()
    warnings: tuple[str, ...] = ()
    message: str = ""

    @property
    def complete(self) -> bool:
        return self.state is not None and self.state.current_phase is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code.value,
            "projectId": self.project_id,
            "message": self.message,
            "phasesRun": [phase.value for phase in self.phases_run],
            "complete": self.complete,
            "suspension": self.suspension.model_dump(mode="json", by_alias=True) if self.suspension else None,
            "error": self.error.to_dict() if self.error else None,
            "issues": [
                {"severity": issue.severity.value, "location": issue.location, "message": issue.message}
                for issue in self.issues
            ],
            "warnings": list(self.warnings),
            "state": self.state.model_dump(mode="json", by_alias=True) if self.state else None,
        }


class DriverGraphState(TypedDict, total=False):
    project_id: str
    max_runs: int
    cancel_token: CancellationToken | None
    state: PipelineState
    phase: PhaseName | None
    working: PipelineState | None
    inputs: list[ArtifactRef]
    outcome: PhaseOutcome | None
    phases_run: list[PhaseName]
    warnings: list[str]
    issues: list[ValidationIssue]
    result: DriverResult | None


class PipelineDriver:
    """Load-dispatch-execute-apply cycle over a persisted pipeline, as a LangGraph StateGraph.

    ``advance`` runs at most one phase; ``run`` keeps going until the pipeline
    completes, suspends for a decision, fails, or hits ``max_phase_runs``.
    Every state change is persisted with a compare-and-set on the version
    before the next phase is dispatched.
    """

    def __init__(
        self,
        executor: PhaseExecutor | None = None,
        *,
        store: PipelineStateStore | None = None,
        settings: RuntimeSettings | None = None,
        registry: PhaseRegistry | None = None,
    ) -> None:
        self.settings = settings if settings is not None else RuntimeSettings.from_env()
        self.registry = registry or DEFAULT_REGISTRY
        self.store = store if store is not None else PipelineStateStore(
            self.settings.state_root_path(), registry=self.registry
        )
        self.engine = TransitionEngine(self.registry)
        self.controller = RetryLoopController(
            self.engine,
            threshold=self.settings.retry_threshold,
            offer_skip_on_block=self.settings.offer_skip_on_block,
        )
        self.executor = executor
        self.graph = self._build_graph().compile()

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(DriverGraphState)
        graph.add_node("load", self._load_node)
        graph.add_node("dispatch", self._dispatch_node)
        graph.add_node("execute", self._execute_node)
        graph.add_node("apply", self._apply_node)

        graph.add_edge(START, "load")
        graph.add_conditional_edges("load", self._continue_route, {"next": "dispatch", "end": END})
        graph.add_conditional_edges("dispatch", self._continue_route, {"next": "execute", "end": END})
        graph.add_conditional_edges("execute", self._continue_route, {"next": "apply", "end": END})
        graph.add_conditional_edges("apply", self._continue_route, {"next": "dispatch", "end": END})
        return graph

    def artifact_store(self, project_id: str) -> ArtifactStore:
        shared = self.settings.artifacts_root_path()
        directory = (
            shared / sanitize_project_id(project_id)
            if shared is not None
            else self.store.artifacts_dir(project_id)
        )
        return ArtifactStore(directory, self.store.manifest_path(project_id), registry=self.registry)

    # ------------------------------------------------------------------
    # Graph nodes
    # ------------------------------------------------------------------

    def _continue_route(self, state: DriverGraphState) -> str:
        return "end" if state.get("result") is not None else "next"

    def _manifest_failure(self, graph_state: DriverGraphState, exc: ManifestCorruptedError) -> dict[str, Any]:
        logger.error("%s", exc)
        return {"result": self._result(graph_state, ResultCode.VALIDATION_ERROR, message=str(exc))}

    def _result(self, graph_state: DriverGraphState, code: ResultCode, **fields: Any) -> DriverResult:
        fields.setdefault("state", graph_state.get("state"))
        return DriverResult(
            code=code,
            project_id=graph_state["project_id"],
            phases_run=tuple(graph_state.get("phases_run", [])),
            issues=tuple(graph_state.get("issues", [])),
            warnings=tuple(graph_state.get("warnings", [])),
            **fields,
        )

    def _load_node(self, state: DriverGraphState) -> dict[str, Any]:
        project_id = state["project_id"]
        try:
            pipeline, issues = self.store.load_with_issues(project_id)
        except StateNotFoundError:
            try:
                pipeline = self.store.create(self.registry.new_state(project_id))
            except StaleWriteError as exc:
                return {"result": self._result(state, ResultCode.CONFLICT, message=str(exc))}
            issues = []
        except StateCorruptedError as exc:
            logger.error("%s", exc)
            return {"result": self._result(state, ResultCode.VALIDATION_ERROR, message=str(exc))}

        update: dict[str, Any] = {
            "state": pipeline,
            "issues": issues,
            "warnings": [f"{issue.location}: {issue.message}" for issue in issues],
        }
        if has_errors(issues) or (issues and self.settings.halt_on_warnings):
            message = f"pipeline state for {project_id} failed validation with {len(issues)} issue(s)"
            update["result"] = self._result(
                {**state, **update}, ResultCode.VALIDATION_ERROR, message=message
            )
        return update

    def _dispatch_node(self, state: DriverGraphState) -> dict[str, Any]:
        pipeline = state["state"]
        phases_run = state.get("phases_run", [])
        if pipeline.awaiting_decision is not None:
            pending = pipeline.awaiting_decision
            return {
                "result": self._result(
                    state,
                    ResultCode.SUSPENDED,
                    suspension=pending,
                    message=f"awaiting {pending.kind.value}: {pending.reason}",
                )
            }
        if pipeline.current_phase is None:
            return {"result": self._result(state, ResultCode.SUCCESS, message="pipeline complete")}
        if len(phases_run) >= state["max_runs"]:
            return {
                "result": self._result(
                    state,
                    ResultCode.SUCCESS,
                    message=f"stopped after {len(phases_run)} phase run(s); next is {pipeline.current_phase.value}",
                )
            }
        token = state.get("cancel_token")
        if token is not None and token.cancelled:
            return {"result": self._result(state, ResultCode.CANCELLED, message="cancelled before dispatch")}

        phase = pipeline.current_phase
        spec = self.registry.get(phase)
        artifacts = self.artifact_store(pipeline.project_id)
        missing = artifacts.missing(spec.required_inputs)
        if missing:
            error = MissingInputError(
                message=f"{phase.value} is missing input artifact(s): {', '.join(missing)}",
                phase=phase,
                missing=tuple(missing),
            )
            return {"result": self._result(state, ResultCode.FAILED, error=error, message=error.message)}

        warnings = list(state.get("warnings", []))
        try:
            for name in spec.required_inputs:
                if artifacts.check(name) is ArtifactFreshness.MODIFIED:
                    warnings.append(f"input {name} changed on disk since it was registered")
                    logger.warning("Input %s for %s changed on disk since it was registered", name, phase.value)
            working = pipeline
            if pipeline.phases[phase].status is not PhaseStatus.IN_PROGRESS:
                started = self.engine.transition(
                    pipeline, StartPhase(based_on_version=pipeline.version, phase=phase)
                )
                if isinstance(started, TransitionError):
                    return {
                        "result": self._result(state, ResultCode.FAILED, error=started, message=started.message)
                    }
                working = started.state
            inputs = self._inputs_for(working, phase, artifacts)
        except ManifestCorruptedError as exc:
            return self._manifest_failure(state, exc)

        return {
            "phase": phase,
            "working": working,
            "inputs": inputs,
            "warnings": warnings,
        }

    def _inputs_for(self, pipeline: PipelineState, phase: PhaseName, artifacts: ArtifactStore) -> list[ArtifactRef]:
        names = list(self.registry.get(phase).required_inputs)
        recovery = pipeline.recovery
        if (
            recovery is not None
            and recovery.target is phase
            and recovery.recovery_artifact
            and artifacts.exists(recovery.recovery_artifact)
        ):
            names.append(recovery.recovery_artifact)
        return artifacts.refs_for(names)

    def _execute_node(self, state: DriverGraphState) -> dict[str, Any]:
        if self.executor is None:
            raise ValueError("PipelineDriver needs an executor to run phases")
        phase = state.get("phase")
        if phase is None:
            raise RuntimeError("execute reached without a dispatched phase")
        try:
            outcome = invoke_executor(self.executor, phase, state.get("inputs", []))
        except PhaseCancelledError as exc:
            return {
                "result": self._result(state, ResultCode.CANCELLED, message=str(exc) or f"{phase.value} cancelled")
            }
        return {"outcome": outcome}

    def _apply_node(self, state: DriverGraphState) -> dict[str, Any]:
        persisted = state["state"]
        working = state.get("working")
        phase = state.get("phase")
        outcome = state.get("outcome")
        if working is None or phase is None or outcome is None:
            raise RuntimeError("apply reached without an executed phase")
        artifacts = self.artifact_store(persisted.project_id)

        produced: list[str] = []
        try:
            if isinstance(outcome, Completed):
                produced = list(outcome.outputs)
                absent = artifacts.missing(produced)
                if absent:
                    error = IncompleteOutputError(
                        message=f"{phase.value} reported output(s) not found on disk: {', '.join(absent)}",
                        phase=phase,
                        missing=tuple(absent),
                    )
                    return {"result": self._result(state, ResultCode.FAILED, error=error, message=error.message)}
            elif isinstance(outcome, Blocked) and outcome.recovery_artifact:
                if artifacts.exists(outcome.recovery_artifact):
                    produced = [outcome.recovery_artifact]
                else:
                    logger.warning(
                        "%s named recovery artifact %s but did not write it",
                        phase.value,
                        outcome.recovery_artifact,
                    )
            foreign = artifacts.foreign(produced, phase)
        except ManifestCorruptedError as exc:
            return self._manifest_failure(state, exc)
        if foreign:
            error = IllegalTransitionError(
                message=f"{phase.value} may not produce artifact(s) owned by other phases: {', '.join(foreign)}",
                phase=phase,
            )
            return {"result": self._result(state, ResultCode.FAILED, error=error, message=error.message)}

        result = self.controller.apply_outcome(
            working,
            phase,
            outcome,
            confirm_next=self.settings.confirm_between_phases,
        )
        if result.error is not None and result.suspension is None:
            return {
                "result": self._result(state, ResultCode.FAILED, error=result.error, message=result.error.message)
            }

        try:
            saved = self.store.save(result.state, expected_version=persisted.version)
        except StaleWriteError as exc:
            logger.warning("%s", exc)
            return {"result": self._result(state, ResultCode.CONFLICT, message=str(exc))}
        try:
            artifacts.register(produced, phase=phase)
        except ManifestCorruptedError as exc:
            return self._manifest_failure({**state, "state": saved}, exc)

        update: dict[str, Any] = {
            "state": saved,
            "phases_run": [*state.get("phases_run", []), phase],
            "warnings": [*state.get("warnings", []), *(str(warning) for warning in result.warnings)],
            "phase": None,
            "working": None,
            "outcome": None,
            "inputs": [],
        }
        if result.suspension is not None:
            pending = result.suspension
            update["result"] = self._result(
                {**state, **update},
                ResultCode.SUSPENDED,
                suspension=pending,
                error=result.error,
                message=f"awaiting {pending.kind.value}: {pending.reason}",
            )
        return update

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def _invoke(self, project_id: str, *, max_runs: int, cancel_token: CancellationToken | None) -> DriverResult:
        initial_state: DriverGraphState = {
            "project_id": project_id,
            "max_runs": max_runs,
            "cancel_token": cancel_token,
            "phases_run": [],
            "warnings": [],
            "issues": [],
            "result": None,
        }
        final = self.graph.invoke(initial_state, config={"recursion_limit": self.settings.recursion_limit})
        result = final["result"]
        logger.info("%s: %s (%s)", project_id, result.code.value, result.message)
        return result

    def advance(self, project_id: str, *, cancel_token: CancellationToken | None = None) -> DriverResult:
        """Run the current phase once and persist the outcome."""
        return self._invoke(project_id, max_runs=1, cancel_token=cancel_token)

    def run(
        self,
        project_id: str,
        *,
        cancel_token: CancellationToken | None = None,
        max_runs: int | None = None,
    ) -> DriverResult:
        """Advance repeatedly until completion, suspension, failure or the run cap."""
        return self._invoke(
            project_id,
            max_runs=max_runs if max_runs is not None else self.settings.max_phase_runs,
            cancel_token=cancel_token,
        )

    def status(self, project_id: str) -> DriverResult:
        """Read-only view of the persisted state with its validation issues."""
        try:
            pipeline, issues = self.store.load_with_issues(project_id)
        except StateNotFoundError as exc:
            return DriverResult(code=ResultCode.NOT_FOUND, project_id=project_id, message=str(exc))
        except StateCorruptedError as exc:
            return DriverResult(code=ResultCode.VALIDATION_ERROR, project_id=project_id, message=str(exc))
        if has_errors(issues):
            code = ResultCode.VALIDATION_ERROR
            message = f"{len(issues)} validation issue(s)"
        elif pipeline.awaiting_decision is not None:
            code = ResultCode.SUSPENDED
            message = f"awaiting {pipeline.awaiting_decision.kind.value}: {pipeline.awaiting_decision.reason}"
        else:
            code = ResultCode.SUCCESS
            message = "pipeline complete" if pipeline.is_complete else f"current phase {pipeline.current_phase.value}"
        return DriverResult(
            code=code,
            project_id=project_id,
            state=pipeline,
            suspension=pipeline.awaiting_decision,
            issues=tuple(issues),
            warnings=tuple(f"{issue.location}: {issue.message}" for issue in issues),
            message=message,
        )

    def resolve(self, project_id: str, decision: HumanDecision) -> DriverResult:
        """Apply a human decision to a suspended pipeline and persist the result."""
        try:
            pipeline, issues = self.store.load_with_issues(project_id)
        except StateNotFoundError as exc:
            return DriverResult(code=ResultCode.NOT_FOUND, project_id=project_id, message=str(exc))
        except StateCorruptedError as exc:
            return DriverResult(code=ResultCode.VALIDATION_ERROR, project_id=project_id, message=str(exc))
        if has_errors(issues):
            return DriverResult(
                code=ResultCode.VALIDATION_ERROR,
                project_id=project_id,
                state=pipeline,
                issues=tuple(issues),
                message=f"pipeline state for {project_id} failed validation",
            )

        result = self.controller.resolve(pipeline, decision, confirm_next=self.settings.confirm_between_phases)
        if result.replayed:
            return DriverResult(
                code=ResultCode.SUSPENDED if pipeline.awaiting_decision else ResultCode.SUCCESS,
                project_id=project_id,
                state=pipeline,
                suspension=pipeline.awaiting_decision,
                message=f"decision {decision.decision_id} was already applied",
            )
        if result.error is not None:
            code = ResultCode.REJECTED if isinstance(result.error, DecisionRejectedError) else ResultCode.FAILED
            return DriverResult(
                code=code,
                project_id=project_id,
                state=pipeline,
                suspension=pipeline.awaiting_decision,
                error=result.error,
                message=result.error.message,
            )

        artifacts = self.artifact_store(project_id)
        phase = pipeline.awaiting_decision.phase if pipeline.awaiting_decision else None
        try:
            recorded = [name for name in decision.outputs if artifacts.exists(name)] if phase is not None else []
            foreign = artifacts.foreign(recorded, phase) if phase is not None else []
        except ManifestCorruptedError as exc:
            logger.error("%s", exc)
            return DriverResult(
                code=ResultCode.VALIDATION_ERROR, project_id=project_id, state=pipeline, message=str(exc)
            )
        if foreign:
            error = IllegalTransitionError(
                message=f"decision lists outputs owned by other phases: {', '.join(foreign)}",
                phase=phase,
            )
            return DriverResult(
                code=ResultCode.REJECTED,
                project_id=project_id,
                state=pipeline,
                suspension=pipeline.awaiting_decision,
                error=error,
                message=error.message,
            )

        try:
            saved = self.store.save(result.state, expected_version=pipeline.version)
        except StaleWriteError as exc:
            return DriverResult(code=ResultCode.CONFLICT, project_id=project_id, state=pipeline, message=str(exc))
        if phase is not None:
            try:
                artifacts.register(recorded, phase=phase)
            except ManifestCorruptedError as exc:
                logger.error("%s", exc)
                return DriverResult(
                    code=ResultCode.VALIDATION_ERROR, project_id=project_id, state=saved, message=str(exc)
                )
        return DriverResult(
            code=ResultCode.SUSPENDED if saved.awaiting_decision else ResultCode.SUCCESS,
            project_id=project_id,
            state=saved,
            suspension=saved.awaiting_decision,
            warnings=tuple(str(warning) for warning in result.warnings),
            message=f"applied {decision.action.value}",
        )

    def reset(self, project_id: str) -> DriverResult:
        """Start a fresh run; the previous run's history is archived first."""
        try:
            pipeline = self.store.load(project_id)
        except StateNotFoundError as exc:
            return DriverResult(code=ResultCode.NOT_FOUND, project_id=project_id, message=str(exc))
        except StateCorruptedError:
            quarantined = self.store.quarantine(project_id)
            fresh = self.store.create(self.registry.new_state(project_id))
            return DriverResult(
                code=ResultCode.SUCCESS,
                project_id=project_id,
                state=fresh,
                message=f"unreadable state moved to {quarantined}; started a fresh run",
            )

        transition = self.engine.transition(pipeline, ResetPipeline(based_on_version=pipeline.version))
        if isinstance(transition, TransitionError):
            return DriverResult(
                code=ResultCode.FAILED,
                project_id=project_id,
                state=pipeline,
                error=transition,
                message=transition.message,
            )
        archive = self.store.archive_history(pipeline)
        try:
            saved = self.store.save(transition.state, expected_version=pipeline.version)
        except StaleWriteError as exc:
            return DriverResult(code=ResultCode.CONFLICT, project_id=project_id, state=pipeline, message=str(exc))
        return DriverResult(
            code=ResultCode.SUCCESS,
            project_id=project_id,
            state=saved,
            message=f"reset to run {saved.run_id}; previous history archived at {archive}",
        )
