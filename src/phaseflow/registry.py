from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from types import MappingProxyType
from typing import Iterable

from .models import PhaseName, PhaseRecord, PipelineState
from .utils import utcnow


@dataclass(frozen=True)
class PhaseSpec:
    """Static definition of one phase.

    ``recovery_artifacts`` are the files the phase may write when it blocks;
    they are handed to ``recovery_target`` as extra input on the loop-back.
    """

    name: PhaseName
    required_inputs: tuple[str, ...] = ()
    produced_outputs: tuple[str, ...] = ()
    recovery_target: PhaseName | None = None
    recovery_artifacts: tuple[str, ...] = ()
    allows_skip: bool = False

    def owns(self, artifact: str) -> bool:
        return artifact in self.produced_outputs or artifact in self.recovery_artifacts


class PhaseRegistry:
    def __init__(self, specs: Iterable[PhaseSpec]) -> None:
        ordered = tuple(specs)
        names = [spec.name for spec in ordered]
        if sorted(names, key=lambda n: n.value) != sorted(PhaseName, key=lambda n: n.value):
            raise ValueError(
                "Phase registry must define every phase exactly once; got "
                + ", ".join(name.value for name in names)
            )
        index = {spec.name: position for position, spec in enumerate(ordered)}
        owners: dict[str, PhaseName] = {}
        for spec in ordered:
            if spec.recovery_target is not None and index[spec.recovery_target] >= index[spec.name]:
                raise ValueError(
                    f"Recovery target {spec.recovery_target.value} must precede {spec.name.value}"
                )
            for artifact in (*spec.produced_outputs, *spec.recovery_artifacts):
                if artifact in owners:
                    raise ValueError(
                        f"Artifact {artifact!r} is claimed by both {owners[artifact].value} "
                        f"and {spec.name.value}"
                    )
                owners[artifact] = spec.name
        self._specs = ordered
        self._index = MappingProxyType(index)
        self._by_name = MappingProxyType({spec.name: spec for spec in ordered})
        self._owners = MappingProxyType(owners)

    def phases_in_order(self) -> list[PhaseSpec]:
        return list(self._specs)

    def names(self) -> list[PhaseName]:
        return [spec.name for spec in self._specs]

    def get(self, name: PhaseName | str) -> PhaseSpec:
        return self._by_name[PhaseName(name)]

    def index(self, name: PhaseName | str) -> int:
        return self._index[PhaseName(name)]

    def first(self) -> PhaseName:
        return self._specs[0].name

    def next_phase(self, name: PhaseName) -> PhaseName | None:
        position = self.index(name) + 1
        return self._specs[position].name if position < len(self._specs) else None

    def before(self, name: PhaseName) -> list[PhaseName]:
        return [spec.name for spec in self._specs[: self.index(name)]]

    def after(self, name: PhaseName) -> list[PhaseName]:
        return [spec.name for spec in self._specs[self.index(name) + 1 :]]

    def between(self, start: PhaseName, end: PhaseName) -> list[PhaseName]:
        """Phases strictly between *start* and *end* in pipeline order."""
        return [spec.name for spec in self._specs[self.index(start) + 1 : self.index(end)]]

    def owner_of(self, artifact: str) -> PhaseName | None:
        return self._owners.get(artifact)

    def new_state(
        self,
        project_id: str,
        *,
        run_id: str | None = None,
        at: datetime | None = None,
    ) -> PipelineState:
        """Fresh state: every phase pending, the first phase current, version 1."""
        now = at or utcnow()
        fields: dict[str, object] = {
            "project_id": project_id,
            "current_phase": self.first(),
            "phases": {spec.name: PhaseRecord(name=spec.name) for spec in self._specs},
            "created_at": now,
            "updated_at": now,
        }
        if run_id is not None:
            fields["run_id"] = run_id
        return PipelineState(**fields)


DEFAULT_REGISTRY = PhaseRegistry(
    [
        PhaseSpec(
            name=PhaseName.BRAINSTORM,
            produced_outputs=("spec.md",),
        ),
        PhaseSpec(
            name=PhaseName.PLANNING,
            required_inputs=("spec.md",),
            produced_outputs=("plan.md",),
        ),
        PhaseSpec(
            name=PhaseName.IMPLEMENTATION,
            required_inputs=("spec.md", "plan.md"),
            produced_outputs=("implementation-notes.md",),
        ),
        PhaseSpec(
            name=PhaseName.CODE_REVIEW,
            required_inputs=("plan.md", "implementation-notes.md"),
            produced_outputs=("review.md",),
            recovery_target=PhaseName.IMPLEMENTATION,
            recovery_artifacts=("fix-plan.md",),
        ),
        PhaseSpec(
            name=PhaseName.TESTING,
            required_inputs=("spec.md", "implementation-notes.md"),
            produced_outputs=("test-report.md",),
            recovery_target=PhaseName.IMPLEMENTATION,
            recovery_artifacts=("test-failures.md",),
            allows_skip=True,
        ),
        PhaseSpec(
            name=PhaseName.DOCUMENTATION,
            required_inputs=("spec.md", "plan.md", "implementation-notes.md"),
            produced_outputs=("docs.md",),
        ),
    ]
)


def phases_in_order() -> list[PhaseSpec]:
    return DEFAULT_REGISTRY.phases_in_order()
