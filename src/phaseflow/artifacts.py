from __future__ import annotations

import hashlib
import logging
from enum import Enum
from pathlib import Path
from typing import Iterable

from pydantic import Field, ValidationError

from .errors import ArtifactOwnershipError, ManifestCorruptedError
from .models import Artifact, ArtifactRef, CamelModel, PhaseName, check_artifact_name
from .registry import DEFAULT_REGISTRY, PhaseRegistry
from .utils import atomic_write_text, locked_file, read_json_text, utcnow

logger = logging.getLogger(__name__)


class ArtifactFreshness(str, Enum):
    MISSING = "missing"
    UNREGISTERED = "unregistered"
    FRESH = "fresh"
    MODIFIED = "modified"


class ArtifactManifest(CamelModel):
    artifacts: dict[str, Artifact] = Field(default_factory=dict)


def _digest(path: Path) -> str:
    return hashlib.sha256(path.read_bytes()).hexdigest()


class ArtifactStore:
    """Named artifact files plus a manifest of who produced each one.

    Files live flat in *directory*. The manifest tracks the producing phase,
    a logical version bumped on every registration, and the sha256 digest
    recorded at registration so later edits can be detected.
    """

    def __init__(
        self,
        directory: Path,
        manifest_path: Path,
        *,
        registry: PhaseRegistry | None = None,
    ) -> None:
        self.directory = Path(directory)
        self.manifest_path = Path(manifest_path)
        self.registry = registry or DEFAULT_REGISTRY
        self.directory.mkdir(parents=True, exist_ok=True)

    def path_for(self, name: str) -> Path:
        return self.directory / check_artifact_name(name)

    def exists(self, name: str) -> bool:
        return self.path_for(name).is_file()

    def missing(self, names: Iterable[str]) -> list[str]:
        return [name for name in names if not self.exists(name)]

    def read_text(self, name: str) -> str:
        return self.path_for(name).read_text(encoding="utf-8")

    def owner_of(self, name: str) -> PhaseName | None:
        owner = self.registry.owner_of(name)
        if owner is not None:
            return owner
        recorded = self.get(name)
        return recorded.produced_by_phase if recorded is not None else None

    def foreign(self, names: Iterable[str], phase: PhaseName) -> list[str]:
        """Names in *names* that belong to a phase other than *phase*."""
        result = []
        for name in names:
            owner = self.owner_of(name)
            if owner is not None and owner is not phase:
                result.append(name)
        return result

    def write_text(self, name: str, content: str, *, phase: PhaseName) -> Path:
        """Write an artifact file on behalf of *phase*.

        Raises:
            ArtifactOwnershipError: If the artifact belongs to another phase.
        """
        owner = self.owner_of(name)
        if owner is not None and owner is not phase:
            raise ArtifactOwnershipError(name, owner, phase)
        path = self.path_for(name)
        atomic_write_text(path, content)
        return path

    # ------------------------------------------------------------------
    # Manifest
    # ------------------------------------------------------------------

    def _read_manifest(self) -> ArtifactManifest:
        """Parsed manifest, empty when the file does not exist yet.

        Raises:
            ManifestCorruptedError: If the file is empty, not UTF-8, or fails validation.
        """
        if not self.manifest_path.is_file():
            return ArtifactManifest()
        try:
            text = read_json_text(self.manifest_path, "artifact manifest")
            return ArtifactManifest.model_validate_json(text)
        except ValidationError as exc:
            detail = f"{exc.error_count()} validation error(s)"
            raise ManifestCorruptedError(str(self.manifest_path), detail) from exc
        except ValueError as exc:
            raise ManifestCorruptedError(str(self.manifest_path), str(exc)) from exc

    def get(self, name: str) -> Artifact | None:
        return self._read_manifest().artifacts.get(name)

    def list_artifacts(self) -> list[Artifact]:
        return sorted(self._read_manifest().artifacts.values(), key=lambda item: item.name)

    def register(self, names: Iterable[str], *, phase: PhaseName) -> list[Artifact]:
        """Record *names* as produced by *phase*, bumping each logical version.

        Raises:
            ArtifactOwnershipError: If any artifact belongs to another phase.
            FileNotFoundError: If any artifact file is missing.
        """
        wanted = list(dict.fromkeys(names))
        if not wanted:
            return []
        registered: list[Artifact] = []
        with locked_file(self.manifest_path):
            manifest = self._read_manifest()
            for name in wanted:
                owner = self.registry.owner_of(name)
                if owner is None and name in manifest.artifacts:
                    owner = manifest.artifacts[name].produced_by_phase
                if owner is not None and owner is not phase:
                    raise ArtifactOwnershipError(name, owner, phase)
                path = self.path_for(name)
                if not path.is_file():
                    raise FileNotFoundError(f"artifact {name!r} not found at {path}")
                previous = manifest.artifacts.get(name)
                artifact = Artifact(
                    name=name,
                    produced_by_phase=phase,
                    logical_version=(previous.logical_version if previous else 0) + 1,
                    digest=_digest(path),
                    updated_at=utcnow(),
                )
                manifest.artifacts[name] = artifact
                registered.append(artifact)
            atomic_write_text(self.manifest_path, manifest.model_dump_json(indent=2, by_alias=True))
        logger.debug("Registered %s for %s", ", ".join(wanted), phase.value)
        return registered

    def check(self, name: str) -> ArtifactFreshness:
        path = self.path_for(name)
        if not path.is_file():
            return ArtifactFreshness.MISSING
        recorded = self.get(name)
        if recorded is None or recorded.digest is None:
            return ArtifactFreshness.UNREGISTERED
        if recorded.digest != _digest(path):
            return ArtifactFreshness.MODIFIED
        return ArtifactFreshness.FRESH

    def refs_for(self, names: Iterable[str]) -> list[ArtifactRef]:
        manifest = self._read_manifest()
        refs = []
        for name in names:
            recorded = manifest.artifacts.get(name)
            refs.append(
                ArtifactRef(
                    name=name,
                    path=str(self.path_for(name)),
                    expected_version=recorded.logical_version if recorded else 0,
                )
            )
        return refs
