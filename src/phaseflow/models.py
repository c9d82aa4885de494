from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .canonical import fingerprint
from .utils import utcnow


def _new_id() -> str:
    return uuid.uuid4().hex


def check_artifact_name(name: str) -> str:
    """Return *name* if it is a plain file name; artifacts live flat in one directory.

    Raises:
        ValueError: For empty names, surrounding whitespace, path separators, ``.`` or ``..``.
    """
    if not name or name != name.strip() or "/" in name or "\\" in name or name in {".", ".."}:
        raise ValueError(f"Invalid artifact name: {name!r}")
    return name


class PhaseName(str, Enum):
    BRAINSTORM = "brainstorm"
    PLANNING = "planning"
    IMPLEMENTATION = "implementation"
    CODE_REVIEW = "code-review"
    TESTING = "testing"
    DOCUMENTATION = "documentation"


class PhaseStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    BLOCKED = "blocked"


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


class DecisionKind(str, Enum):
    CONFIRM_NEXT_PHASE = "confirm_next_phase"
    REQUIRES_HUMAN_DECISION = "requires_human_decision"
    UNRECOVERABLE_BLOCK = "unrecoverable_block"


class DecisionAction(str, Enum):
    PROCEED = "proceed"
    RETRY = "retry"
    RERUN = "rerun"
    SKIP = "skip"
    FORCE_ADVANCE = "force_advance"


class EventKind(str, Enum):
    START = "start"
    ADVANCE = "advance"
    BLOCK = "block"
    LOOP_BACK = "loop_back"
    ADVANCE_WITH_EXCEPTIONS = "advance_with_exceptions"
    HALT = "halt"
    RESOLVE = "resolve"
    RERUN = "rerun"
    FORCE_ADVANCE = "force_advance"
    RESET = "reset"


class CamelModel(BaseModel):
    """Base for every persisted model: camelCase on disk, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


@dataclass(frozen=True)
class ValidationIssue:
    severity: Severity
    location: str
    message: str

    def __str__(self) -> str:
        return f"[{self.severity.value}] {self.location}: {self.message}"


class PhaseRecord(CamelModel):
    name: PhaseName
    status: PhaseStatus = PhaseStatus.PENDING
    outputs: list[str] = Field(default_factory=list)
    retry_count: int = Field(default=0, ge=0)
    blocked_reason: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    block_reasons: list[str] = Field(
        default_factory=list,
        description="Reasons from consecutive blocks without an intervening completion.",
    )
    recovery_artifact: str | None = None
    exceptions: list[str] = Field(
        default_factory=list,
        description="Recorded exceptions when the phase was skipped by a human decision.",
    )
    forced: bool = False

    @property
    def block_streak(self) -> int:
        return len(self.block_reasons)


class RecoveryContext(CamelModel):
    """Bookkeeping for a loop-back in flight: which phase blocked and where it was routed."""

    blocked_phase: PhaseName
    target: PhaseName
    reason: str
    recovery_artifact: str | None = None


class SuspendedAwaitingDecision(CamelModel):
    kind: DecisionKind
    phase: PhaseName | None
    reason: str
    options: list[DecisionAction] = Field(min_length=1)
    block_reasons: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def requires_human_decision(self) -> bool:
        return self.kind is DecisionKind.REQUIRES_HUMAN_DECISION


class StateSummary(CamelModel):
    version: int
    current_phase: PhaseName | None
    statuses: dict[PhaseName, PhaseStatus]


class TransitionEvent(CamelModel):
    """One applied transition, as recorded in ``PipelineState.history``."""

    model_config = ConfigDict(frozen=True)

    event_id: str
    kind: EventKind
    phase: PhaseName | None = None
    from_state: StateSummary
    to_state: StateSummary
    outcome: str
    detail: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime


class PipelineState(CamelModel):
    version: int = Field(default=1, ge=1)
    project_id: str = Field(min_length=1)
    run_id: str = Field(default_factory=_new_id)
    current_phase: PhaseName | None = None
    phases: dict[PhaseName, PhaseRecord]
    recovery: RecoveryContext | None = None
    awaiting_decision: SuspendedAwaitingDecision | None = None
    warnings: list[str] = Field(default_factory=list)
    history: list[TransitionEvent] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def phase(self, name: PhaseName | str) -> PhaseRecord:
        return self.phases[PhaseName(name)]

    @property
    def current_record(self) -> PhaseRecord | None:
        if self.current_phase is None:
            return None
        return self.phases[self.current_phase]

    @property
    def is_complete(self) -> bool:
        return self.current_phase is None

    def summary(self) -> StateSummary:
        return StateSummary(
            version=self.version,
            current_phase=self.current_phase,
            statuses={name: record.status for name, record in self.phases.items()},
        )

    def find_event(self, event_id: str) -> TransitionEvent | None:
        for event in reversed(self.history):
            if event.event_id == event_id:
                return event
        return None


class HumanDecision(CamelModel):
    decision_id: str = Field(default_factory=_new_id)
    action: DecisionAction
    exceptions: list[str] = Field(default_factory=list)
    outputs: list[str] = Field(default_factory=list)
    note: str | None = None
    decided_by: str | None = None

    @field_validator("outputs")
    @classmethod
    def _check_outputs(cls, value: list[str]) -> list[str]:
        return [check_artifact_name(item.strip()) for item in value if item.strip()]


class _EngineEvent(CamelModel):
    """Common shape of every event the transition engine accepts.

    ``based_on_version`` is the state version the event was computed against;
    the engine rejects events built on anything but the current version.
    """

    model_config = ConfigDict(frozen=True)

    based_on_version: int = Field(ge=1)
    occurred_at: datetime = Field(default_factory=utcnow)

    def fingerprint(self) -> str:
        payload = self.model_dump(mode="json", by_alias=True, exclude={"occurred_at"})
        return fingerprint(payload)

    def describe(self) -> str:
        return str(getattr(self, "kind"))


class StartPhase(_EngineEvent):
    kind: Literal["start"] = "start"
    phase: PhaseName

    def describe(self) -> str:
        return f"started {self.phase.value}"


class AdvancePhase(_EngineEvent):
    kind: Literal["advance"] = "advance"
    phase: PhaseName
    outputs: list[str] = Field(default_factory=list)

    def describe(self) -> str:
        return f"completed {self.phase.value}"


class BlockPhase(_EngineEvent):
    kind: Literal["block"] = "block"
    phase: PhaseName
    reason: str = Field(min_length=1)
    recovery_artifact: str | None = None

    def describe(self) -> str:
        return f"blocked {self.phase.value}: {self.reason}"


class LoopBack(_EngineEvent):
    kind: Literal["loop_back"] = "loop_back"
    phase: PhaseName

    def describe(self) -> str:
        return f"looped back from {self.phase.value}"


class AdvanceWithExceptions(_EngineEvent):
    kind: Literal["advance_with_exceptions"] = "advance_with_exceptions"
    phase: PhaseName
    exceptions: list[str]
    outputs: list[str] = Field(default_factory=list)

    def describe(self) -> str:
        return f"advanced {self.phase.value} with {len(self.exceptions)} recorded exception(s)"


class HaltPipeline(_EngineEvent):
    kind: Literal["halt"] = "halt"
    phase: PhaseName
    decision_kind: DecisionKind
    reason: str = Field(min_length=1)
    options: list[DecisionAction] = Field(min_length=1)

    def describe(self) -> str:
        return f"halted for {self.decision_kind.value} at {self.phase.value}"


class ResolveDecision(_EngineEvent):
    kind: Literal["resolve"] = "resolve"
    decision: HumanDecision

    def fingerprint(self) -> str:
        # A decision is applied at most once, whatever version it was built against.
        return fingerprint({"kind": self.kind, "decisionId": self.decision.decision_id})

    def describe(self) -> str:
        return f"resolved with {self.decision.action.value}"


class RerunPhase(_EngineEvent):
    kind: Literal["rerun"] = "rerun"
    phase: PhaseName

    def describe(self) -> str:
        return f"rerunning {self.phase.value}"


class ForceAdvance(_EngineEvent):
    kind: Literal["force_advance"] = "force_advance"
    phase: PhaseName
    reason: str = Field(min_length=1)

    def describe(self) -> str:
        return f"force-advanced {self.phase.value}"


class ResetPipeline(_EngineEvent):
    kind: Literal["reset"] = "reset"
    new_run_id: str = Field(default_factory=_new_id)

    def describe(self) -> str:
        return "reset pipeline"


PipelineEvent = Annotated[
    Union[
        StartPhase,
        AdvancePhase,
        BlockPhase,
        LoopBack,
        AdvanceWithExceptions,
        HaltPipeline,
        ResolveDecision,
        RerunPhase,
        ForceAdvance,
        ResetPipeline,
    ],
    Field(discriminator="kind"),
]


class Artifact(CamelModel):
    name: str
    produced_by_phase: PhaseName
    logical_version: int = Field(default=0, ge=0)
    digest: str | None = None
    updated_at: datetime = Field(default_factory=utcnow)


class ArtifactRef(CamelModel):
    model_config = ConfigDict(frozen=True)

    name: str
    path: str
    expected_version: int = Field(ge=0)


class Completed(CamelModel):
    status: Literal["completed"] = "completed"
    outputs: list[str] = Field(default_factory=list)

    @field_validator("outputs")
    @classmethod
    def _check_outputs(cls, value: list[str]) -> list[str]:
        return [check_artifact_name(item.strip()) for item in value if item.strip()]


class Blocked(CamelModel):
    status: Literal["blocked"] = "blocked"
    reason: str = Field(min_length=1)
    recovery_artifact: str | None = None

    @field_validator("recovery_artifact")
    @classmethod
    def _check_recovery_artifact(cls, value: str | None) -> str | None:
        return check_artifact_name(value) if value is not None else None


class Failed(CamelModel):
    status: Literal["failed"] = "failed"
    fatal_error: str = Field(min_length=1)


PhaseOutcome = Annotated[Union[Completed, Blocked, Failed], Field(discriminator="status")]
