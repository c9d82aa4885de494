from __future__ import annotations

import json
import logging
from pathlib import Path

from pydantic import ValidationError

from .canonical import to_canonical_json
from .errors import StateCorruptedError, StateNotFoundError, StaleWriteError
from .models import PipelineState, ValidationIssue
from .registry import DEFAULT_REGISTRY, PhaseRegistry
from .utils import atomic_write_text, locked_file, project_scoped_root, read_json_text, utcnow
from .validation import validate_state

logger = logging.getLogger(__name__)

STATE_FILENAME = "pipeline-state.json"
MANIFEST_FILENAME = "artifacts.json"
ARTIFACTS_DIRNAME = "artifacts"
HISTORY_DIRNAME = "history"


def _dump(state: PipelineState) -> str:
    return state.model_dump_json(indent=2, by_alias=True)


def _canonical(state: PipelineState) -> str:
    return to_canonical_json(state.model_dump(mode="json", by_alias=True))


class PipelineStateStore:
    """Filesystem store for one pipeline state record per project.

    Layout under *root*::

        projects/<project>/pipeline-state.json
        projects/<project>/pipeline-state.json.lock
        projects/<project>/artifacts.json
        projects/<project>/artifacts/
        projects/<project>/history/<run_id>.json

    Every read and write of the state record holds an exclusive ``fcntl``
    lock on the ``.lock`` sidecar, and every write replaces the file
    atomically. ``save`` is a compare-and-set on the persisted version.
    """

    def __init__(self, root: Path, *, registry: PhaseRegistry | None = None) -> None:
        self.root = Path(root)
        self.registry = registry or DEFAULT_REGISTRY
        (self.root / "projects").mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def project_root(self, project_id: str) -> Path:
        return project_scoped_root(self.root, project_id)

    def state_path(self, project_id: str) -> Path:
        return self.project_root(project_id) / STATE_FILENAME

    def manifest_path(self, project_id: str) -> Path:
        return self.project_root(project_id) / MANIFEST_FILENAME

    def artifacts_dir(self, project_id: str) -> Path:
        return self.project_root(project_id) / ARTIFACTS_DIRNAME

    def exists(self, project_id: str) -> bool:
        return self.state_path(project_id).is_file()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _read(self, project_id: str, path: Path) -> PipelineState:
        try:
            text = read_json_text(path, "pipeline state")
        except FileNotFoundError as exc:
            raise StateNotFoundError(project_id) from exc
        except ValueError as exc:
            raise StateCorruptedError(str(path), str(exc)) from exc
        try:
            return PipelineState.model_validate_json(text)
        except ValidationError as exc:
            raise StateCorruptedError(str(path), f"{exc.error_count()} validation error(s): {exc}") from exc

    def load(self, project_id: str) -> PipelineState:
        """Read and validate the persisted state for *project_id*.

        Raises:
            StateNotFoundError: If no state has been created for the project.
            StateCorruptedError: If the file is empty, not JSON, or fails schema validation.
        """
        path = self.state_path(project_id)
        if not path.is_file():
            raise StateNotFoundError(project_id)
        with locked_file(path):
            return self._read(project_id, path)

    def validate_on_load(self, state: PipelineState) -> list[ValidationIssue]:
        issues = validate_state(state, self.registry)
        for issue in issues:
            logger.warning("Pipeline state %s: %s", state.project_id, issue)
        return issues

    def load_with_issues(self, project_id: str) -> tuple[PipelineState, list[ValidationIssue]]:
        """Load the state and run invariant checks; issues are returned, never raised."""
        state = self.load(project_id)
        return state, self.validate_on_load(state)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(self, state: PipelineState) -> PipelineState:
        """Persist a brand-new state record.

        Raises:
            StaleWriteError: If a record already exists for the project.
        """
        path = self.state_path(state.project_id)
        with locked_file(path):
            if path.is_file():
                existing = self._read(state.project_id, path)
                raise StaleWriteError(state.project_id, None, existing.version)
            atomic_write_text(path, _dump(state))
        logger.info("Created pipeline state for %s (run %s)", state.project_id, state.run_id)
        return state

    def save(self, state: PipelineState, *, expected_version: int) -> PipelineState:
        """Compare-and-set write of *state*.

        The write succeeds only when the persisted version equals
        *expected_version*. Saving an unchanged state at the same version is a
        no-op, so ``save(load(p), expected_version=v)`` round-trips cleanly.

        Raises:
            StateNotFoundError: If the project has no persisted record.
            StaleWriteError: If the persisted version is not *expected_version*.
            ValueError: If *state* changed without a version bump, or regressed.
        """
        path = self.state_path(state.project_id)
        with locked_file(path):
            if not path.is_file():
                raise StateNotFoundError(state.project_id)
            current = self._read(state.project_id, path)
            if current.version != expected_version:
                raise StaleWriteError(state.project_id, expected_version, current.version)
            if state.version == current.version:
                if _canonical(state) == _canonical(current):
                    return current
                raise ValueError(
                    f"State for {state.project_id} changed without a version bump (version {state.version})"
                )
            if state.version < current.version:
                raise ValueError(
                    f"State version for {state.project_id} regressed from {current.version} to {state.version}"
                )
            atomic_write_text(path, _dump(state))
        logger.debug(
            "Saved pipeline state %s: version %s -> %s",
            state.project_id,
            expected_version,
            state.version,
        )
        return state

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def archive_history(self, state: PipelineState) -> Path:
        """Write the run's transition history to ``history/<run_id>.json``."""
        path = self.project_root(state.project_id) / HISTORY_DIRNAME / f"{state.run_id}.json"
        payload = {
            "projectId": state.project_id,
            "runId": state.run_id,
            "finalVersion": state.version,
            "archivedAt": utcnow().isoformat(),
            "history": [event.model_dump(mode="json", by_alias=True) for event in state.history],
        }
        atomic_write_text(path, json.dumps(payload, indent=2))
        logger.info("Archived %d transition(s) for run %s", len(state.history), state.run_id)
        return path

    def quarantine(self, project_id: str) -> Path | None:
        """Move an unreadable state file aside as ``pipeline-state.json.corrupt-<timestamp>``."""
        path = self.state_path(project_id)
        with locked_file(path):
            if not path.is_file():
                return None
            stamp = utcnow().strftime("%Y%m%dT%H%M%S%fZ")
            target = path.with_name(f"{path.name}.corrupt-{stamp}")
            path.replace(target)
        logger.warning("Quarantined unreadable pipeline state for %s at %s", project_id, target)
        return target


def new_pipeline_state(project_id: str, registry: PhaseRegistry | None = None) -> PipelineState:
    return (registry or DEFAULT_REGISTRY).new_state(project_id)
