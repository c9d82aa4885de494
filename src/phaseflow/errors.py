"""Failure types.

Transition failures are plain values returned by the engine and controller,
never raised. Storage failures are exceptions raised by the stores.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import ClassVar

from .models import DecisionAction, PhaseName


@dataclass(frozen=True, kw_only=True)
class TransitionError:
    code: ClassVar[str] = "transition_error"

    message: str
    phase: PhaseName | None = None

    def __str__(self) -> str:
        return self.message

    def to_dict(self) -> dict[str, object]:
        return {
            "code": self.code,
            "message": self.message,
            "phase": self.phase.value if self.phase is not None else None,
        }


@dataclass(frozen=True, kw_only=True)
class IncompleteOutputError(TransitionError):
    code: ClassVar[str] = "incomplete_output"

    missing: tuple[str, ...]


@dataclass(frozen=True, kw_only=True)
class UnrecoverableBlockError(TransitionError):
    code: ClassVar[str] = "unrecoverable_block"

    reason: str


@dataclass(frozen=True, kw_only=True)
class IllegalTransitionError(TransitionError):
    code: ClassVar[str] = "illegal_transition"


@dataclass(frozen=True, kw_only=True)
class StaleEventError(TransitionError):
    code: ClassVar[str] = "stale_event"

    expected_version: int
    actual_version: int


@dataclass(frozen=True, kw_only=True)
class DecisionRejectedError(TransitionError):
    code: ClassVar[str] = "decision_rejected"

    action: DecisionAction | None = None


@dataclass(frozen=True, kw_only=True)
class MissingInputError(TransitionError):
    code: ClassVar[str] = "missing_input"

    missing: tuple[str, ...]


@dataclass(frozen=True, kw_only=True)
class PhaseFailedError(TransitionError):
    code: ClassVar[str] = "phase_failed"

    fatal_error: str


@dataclass(frozen=True)
class OutOfOrderWarning:
    """A phase completed while phases after it were already completed by an earlier run."""

    phase: PhaseName
    later_phases: tuple[PhaseName, ...]

    def __str__(self) -> str:
        later = ", ".join(name.value for name in self.later_phases)
        return f"{self.phase.value} completed after later phase(s) {later}; their outputs may be stale"


class StateNotFoundError(FileNotFoundError):
    def __init__(self, project_id: str) -> None:
        super().__init__(f"No pipeline state for project {project_id!r}")
        self.project_id = project_id


class StaleWriteError(Exception):
    """Compare-and-set failure: the persisted version moved since the caller loaded it."""

    def __init__(self, project_id: str, expected_version: int | None, actual_version: int) -> None:
        super().__init__(
            f"Stale write for project {project_id!r}: expected version {expected_version}, "
            f"found {actual_version}"
        )
        self.project_id = project_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class StateCorruptedError(ValueError):
    def __init__(self, path: str, detail: str) -> None:
        super().__init__(f"Pipeline state at {path} is unreadable: {detail}")
        self.path = path
        self.detail = detail


class ManifestCorruptedError(ValueError):
    def __init__(self, path: str, detail: str) -> None:
        super().__init__(f"Artifact manifest at {path} is unreadable: {detail}")
        self.path = path
        self.detail = detail


class ArtifactOwnershipError(ValueError):
    def __init__(self, name: str, owner: PhaseName, writer: PhaseName) -> None:
        super().__init__(
            f"Artifact {name!r} is owned by {owner.value}; {writer.value} may not produce it"
        )
        self.name = name
        self.owner = owner
        self.writer = writer
