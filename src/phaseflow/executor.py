from __future__ import annotations

import importlib
import logging
import threading
from collections.abc import Mapping
from typing import Any, Protocol, runtime_checkable

from pydantic import TypeAdapter, ValidationError

from .models import ArtifactRef, Blocked, Completed, Failed, PhaseName, PhaseOutcome

logger = logging.getLogger(__name__)

_OUTCOME_ADAPTER: TypeAdapter[PhaseOutcome] = TypeAdapter(PhaseOutcome)


@runtime_checkable
class PhaseExecutor(Protocol):
    """Runs one phase against its input artifacts.

    Implementations write their output files into the artifact directory and
    return a ``Completed``, ``Blocked`` or ``Failed`` outcome (or an equivalent
    mapping with a ``status`` key). Anything else is treated as a failure.
    """

    def execute(self, phase: PhaseName, inputs: list[ArtifactRef]) -> Any:
        ...


class PhaseCancelledError(Exception):
    """Raised by an executor to abandon the current phase without recording an outcome."""


class CancellationToken:
    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, phase: PhaseName | None = None) -> None:
        if self._event.is_set():
            label = phase.value if phase is not None else "pipeline"
            raise PhaseCancelledError(f"{label} cancelled")


def coerce_outcome(raw: Any) -> PhaseOutcome:
    """Normalize whatever an executor returned into a typed outcome, failing closed."""
    if isinstance(raw, (Completed, Blocked, Failed)):
        return raw
    if isinstance(raw, Mapping):
        try:
            return _OUTCOME_ADAPTER.validate_python(dict(raw))
        except ValidationError as exc:
            return Failed(fatal_error=f"malformed phase outcome ({exc.error_count()} validation error(s)): {exc}")
    return Failed(fatal_error=f"executor returned unsupported outcome type {type(raw).__name__}")


def invoke_executor(executor: PhaseExecutor, phase: PhaseName, inputs: list[ArtifactRef]) -> PhaseOutcome:
    """Run *executor* for *phase*; exceptions become ``Failed`` except cancellation."""
    logger.info("Executing %s with %d input artifact(s)", phase.value, len(inputs))
    try:
        raw = executor.execute(phase, inputs)
    except PhaseCancelledError:
        logger.info("Execution of %s was cancelled", phase.value)
        raise
    except Exception as exc:  # noqa: BLE001
        logger.exception("Executor raised while running %s", phase.value)
        return Failed(fatal_error=f"{type(exc).__name__}: {exc}")
    outcome = coerce_outcome(raw)
    if isinstance(outcome, Failed):
        logger.warning("%s failed: %s", phase.value, outcome.fatal_error)
    return outcome


def load_executor(target: str) -> PhaseExecutor:
    """Import an executor from a ``module:attribute`` reference.

    Classes and zero-argument factories are called to produce the instance.

    Raises:
        ValueError: If *target* is not of the form ``module:attribute``.
        TypeError: If the resolved object has no ``execute`` method.
    """
    module_name, _, attribute = target.partition(":")
    if not module_name.strip() or not attribute.strip():
        raise ValueError(f"executor must be given as module:attribute, got: {target!r}")
    module = importlib.import_module(module_name.strip())
    obj = module
    for part in attribute.strip().split("."):
        obj = getattr(obj, part)
    if isinstance(obj, type) or (callable(obj) and not hasattr(obj, "execute")):
        obj = obj()
    if not isinstance(obj, PhaseExecutor):
        raise TypeError(f"{target} does not provide an execute(phase, inputs) method")
    return obj
