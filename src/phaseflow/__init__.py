from importlib.metadata import version

from .artifacts import ArtifactFreshness, ArtifactStore
from .driver import DriverResult, PipelineDriver, ResultCode
from .engine import Transition, TransitionEngine
from .errors import (
    ArtifactOwnershipError,
    DecisionRejectedError,
    IllegalTransitionError,
    IncompleteOutputError,
    ManifestCorruptedError,
    MissingInputError,
    OutOfOrderWarning,
    PhaseFailedError,
    StaleEventError,
    StaleWriteError,
    StateCorruptedError,
    StateNotFoundError,
    TransitionError,
    UnrecoverableBlockError,
)
from .executor import CancellationToken, PhaseCancelledError, PhaseExecutor, load_executor
from .models import (
    Artifact,
    ArtifactRef,
    Blocked,
    Completed,
    DecisionAction,
    DecisionKind,
    Failed,
    HumanDecision,
    PhaseName,
    PhaseRecord,
    PhaseStatus,
    PipelineState,
    RecoveryContext,
    SuspendedAwaitingDecision,
    TransitionEvent,
    ValidationIssue,
)
from .registry import DEFAULT_REGISTRY, PhaseRegistry, PhaseSpec, phases_in_order
from .retry import ControllerResult, RetryLoopController
from .settings import RuntimeSettings
from .state_store import PipelineStateStore, new_pipeline_state
from .utils import project_scoped_root, sanitize_project_id
from .validation import validate_state


def get_version() -> str:
    try:
        return version(__name__)
    except Exception:
        return "0.0.0"


__all__ = [
    "Artifact",
    "ArtifactFreshness",
    "ArtifactOwnershipError",
    "ArtifactRef",
    "ArtifactStore",
    "Blocked",
    "CancellationToken",
    "Completed",
    "ControllerResult",
    "DecisionAction",
    "DecisionKind",
    "DecisionRejectedError",
    "DriverResult",
    "Failed",
    "HumanDecision",
    "IllegalTransitionError",
    "IncompleteOutputError",
    "ManifestCorruptedError",
    "MissingInputError",
    "OutOfOrderWarning",
    "PhaseCancelledError",
    "PhaseExecutor",
    "PhaseFailedError",
    "PhaseName",
    "PhaseRecord",
    "PhaseRegistry",
    "PhaseSpec",
    "PhaseStatus",
    "PipelineDriver",
    "PipelineState",
    "PipelineStateStore",
    "RecoveryContext",
    "ResultCode",
    "RetryLoopController",
    "RuntimeSettings",
    "StaleEventError",
    "StaleWriteError",
    "StateCorruptedError",
    "StateNotFoundError",
    "SuspendedAwaitingDecision",
    "Transition",
    "TransitionEngine",
    "TransitionError",
    "TransitionEvent",
    "UnrecoverableBlockError",
    "ValidationIssue",
    "DEFAULT_REGISTRY",
    "get_version",
    "load_executor",
    "new_pipeline_state",
    "phases_in_order",
    "project_scoped_root",
    "sanitize_project_id",
    "validate_state",
]
