from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from .utils import sanitize_project_id

# One phase run costs dispatch, execute and apply supersteps in the driver graph.
_STEPS_PER_PHASE_RUN = 3


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    state_root: str = ".phaseflow"
    artifacts_root: str = ""
    project_id: str = "default"
    retry_threshold: int = 2
    confirm_between_phases: bool = True
    halt_on_warnings: bool = False
    offer_skip_on_block: bool = True
    max_phase_runs: int = 50
    recursion_limit: int = 500

    @classmethod
    def from_env(cls, env_file: Path | None = None) -> "RuntimeSettings":
        """Build settings from ``PHASEFLOW_*`` variables.

        When *env_file* exists it is loaded first with python-dotenv; variables
        already present in the process environment win.
        """
        if env_file is not None and env_file.is_file():
            load_dotenv(env_file, override=False)
        return cls(
            state_root=os.getenv("PHASEFLOW_STATE_ROOT", ".phaseflow"),
            artifacts_root=os.getenv("PHASEFLOW_ARTIFACTS_ROOT", ""),
            project_id=os.getenv("PHASEFLOW_PROJECT_ID", "default"),
            retry_threshold=_get_env_int("PHASEFLOW_RETRY_THRESHOLD", default=2, minimum=0, maximum=20),
            confirm_between_phases=_get_env_bool("PHASEFLOW_CONFIRM_BETWEEN_PHASES", default=True),
            halt_on_warnings=_get_env_bool("PHASEFLOW_HALT_ON_WARNINGS", default=False),
            offer_skip_on_block=_get_env_bool("PHASEFLOW_OFFER_SKIP_ON_BLOCK", default=True),
            max_phase_runs=_get_env_int("PHASEFLOW_MAX_PHASE_RUNS", default=50, minimum=1, maximum=1_000),
            recursion_limit=_get_env_int("PHASEFLOW_RECURSION_LIMIT", default=500, minimum=10),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        state_root = self.state_root.strip()
        if not state_root:
            raise ValueError("PHASEFLOW_STATE_ROOT must be non-empty")
        project_id = self.project_id.strip()
        if not project_id:
            raise ValueError("PHASEFLOW_PROJECT_ID must be non-empty")
        sanitize_project_id(project_id)

        if not 0 <= self.retry_threshold <= 20:
            raise ValueError(f"PHASEFLOW_RETRY_THRESHOLD must be within 0..20, got: {self.retry_threshold}")
        if self.max_phase_runs < 1:
            raise ValueError(f"PHASEFLOW_MAX_PHASE_RUNS must be >= 1, got: {self.max_phase_runs}")
        needed = self.max_phase_runs * _STEPS_PER_PHASE_RUN + 2
        if self.recursion_limit < needed:
            raise ValueError(
                f"PHASEFLOW_RECURSION_LIMIT must be >= {needed} to allow "
                f"{self.max_phase_runs} phase runs, got: {self.recursion_limit}"
            )
        return RuntimeSettings(
            state_root=state_root,
            artifacts_root=self.artifacts_root.strip(),
            project_id=project_id,
            retry_threshold=self.retry_threshold,
            confirm_between_phases=self.confirm_between_phases,
            halt_on_warnings=self.halt_on_warnings,
            offer_skip_on_block=self.offer_skip_on_block,
            max_phase_runs=self.max_phase_runs,
            recursion_limit=self.recursion_limit,
        )

    def state_root_path(self, repo_root: Path | None = None) -> Path:
        path = Path(self.state_root)
        if path.is_absolute():
            return path
        return (repo_root if repo_root is not None else Path.cwd()) / path

    def artifacts_root_path(self, repo_root: Path | None = None) -> Path | None:
        """Shared artifacts directory, or None to keep artifacts under each project's state root."""
        if not self.artifacts_root:
            return None
        path = Path(self.artifacts_root)
        if path.is_absolute():
            return path
        return (repo_root if repo_root is not None else Path.cwd()) / path


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Raises:
        ValueError: If the value is not an integer or is outside ``[minimum, maximum]``.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _get_env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ValueError(f"{name} must be a boolean (true/false), got: {raw!r}")
