from __future__ import annotations

from collections import defaultdict
from typing import Any

from phaseflow.artifacts import ArtifactStore
from phaseflow.engine import Transition, TransitionEngine
from phaseflow.errors import TransitionError
from phaseflow.models import (
    AdvancePhase,
    ArtifactRef,
    Blocked,
    Completed,
    PhaseName,
    PipelineState,
    StartPhase,
)
from phaseflow.registry import DEFAULT_REGISTRY


def applied(result: Transition | TransitionError) -> PipelineState:
    assert isinstance(result, Transition), f"expected a transition, got {result!r}"
    return result.state


def start(engine: TransitionEngine, state: PipelineState, phase: PhaseName) -> PipelineState:
    return applied(engine.transition(state, StartPhase(based_on_version=state.version, phase=phase)))


def finish(engine: TransitionEngine, state: PipelineState, phase: PhaseName) -> PipelineState:
    outputs = list(DEFAULT_REGISTRY.get(phase).produced_outputs)
    return applied(
        engine.transition(state, AdvancePhase(based_on_version=state.version, phase=phase, outputs=outputs))
    )


def run_through(engine: TransitionEngine, state: PipelineState, last: PhaseName) -> PipelineState:
    """Start and complete every phase from the current one up to and including *last*."""
    while state.current_phase is not None:
        phase = state.current_phase
        state = finish(engine, start(engine, state, phase), phase)
        if phase is last:
            break
    return state


class ScriptedExecutor:
    """Executor driven by per-phase scripts of outcomes.

    Each script entry is ``"complete"``, ``("block", reason)``, a mapping or
    outcome returned verbatim, or a callable. Phases without a script complete.
    Files are written through *artifacts*, so ownership is enforced the same
    way a real executor would see it.
    """

    def __init__(self, artifacts: ArtifactStore, scripts: dict[PhaseName, list[Any]] | None = None) -> None:
        self.artifacts = artifacts
        self.scripts: dict[PhaseName, list[Any]] = defaultdict(list, scripts or {})
        self.calls: list[tuple[PhaseName, list[str]]] = []

    def execute(self, phase: PhaseName, inputs: list[ArtifactRef]) -> Any:
        self.calls.append((phase, [ref.name for ref in inputs]))
        step = self.scripts[phase].pop(0) if self.scripts[phase] else "complete"
        if callable(step):
            return step(phase, inputs)
        if step == "complete":
            return self._complete(phase)
        if isinstance(step, tuple) and step[0] == "block":
            spec = DEFAULT_REGISTRY.get(phase)
            artifact = spec.recovery_artifacts[0] if spec.recovery_artifacts else None
            if artifact is not None:
                self.artifacts.write_text(artifact, f"# {step[1]}\n", phase=phase)
            return Blocked(reason=step[1], recovery_artifact=artifact)
        return step

    def _complete(self, phase: PhaseName) -> Completed:
        outputs = list(DEFAULT_REGISTRY.get(phase).produced_outputs)
        for name in outputs:
            self.artifacts.write_text(name, f"# {name} from {phase.value}\n", phase=phase)
        return Completed(outputs=outputs)

    def phases_called(self) -> list[PhaseName]:
        return [phase for phase, _ in self.calls]
