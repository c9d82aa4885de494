from __future__ import annotations

from pathlib import Path

import pytest

from phaseflow.artifacts import ArtifactFreshness, ArtifactStore
from phaseflow.errors import ArtifactOwnershipError, ManifestCorruptedError
from phaseflow.models import PhaseName


def _store(tmp_path: Path) -> ArtifactStore:
    return ArtifactStore(tmp_path / "artifacts", tmp_path / "artifacts.json")


def test_register_bumps_logical_version_and_records_digest(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.write_text("spec.md", "# Spec v1\n", phase=PhaseName.BRAINSTORM)

    first = store.register(["spec.md"], phase=PhaseName.BRAINSTORM)
    store.write_text("spec.md", "# Spec v2\n", phase=PhaseName.BRAINSTORM)
    second = store.register(["spec.md"], phase=PhaseName.BRAINSTORM)

    assert first[0].logical_version == 1
    assert second[0].logical_version == 2
    assert first[0].digest != second[0].digest
    assert store.get("spec.md") == second[0]
    assert [artifact.name for artifact in store.list_artifacts()] == ["spec.md"]


def test_artifacts_can_only_be_produced_by_their_owner(tmp_path: Path) -> None:
    store = _store(tmp_path)

    with pytest.raises(ArtifactOwnershipError) as excinfo:
        store.write_text("plan.md", "# Plan\n", phase=PhaseName.IMPLEMENTATION)

    assert excinfo.value.owner is PhaseName.PLANNING
    assert not store.exists("plan.md")


def test_registering_a_missing_file_fails(tmp_path: Path) -> None:
    store = _store(tmp_path)

    with pytest.raises(FileNotFoundError):
        store.register(["spec.md"], phase=PhaseName.BRAINSTORM)


def test_unlisted_artifact_is_owned_by_its_first_producer(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.write_text("diagram.svg", "<svg/>", phase=PhaseName.PLANNING)
    store.register(["diagram.svg"], phase=PhaseName.PLANNING)

    assert store.foreign(["diagram.svg", "spec.md"], PhaseName.PLANNING) == ["spec.md"]
    with pytest.raises(ArtifactOwnershipError):
        store.register(["diagram.svg"], phase=PhaseName.DOCUMENTATION)


def test_freshness_tracks_edits_after_registration(tmp_path: Path) -> None:
    store = _store(tmp_path)
    assert store.check("spec.md") is ArtifactFreshness.MISSING

    path = store.write_text("spec.md", "# Spec\n", phase=PhaseName.BRAINSTORM)
    assert store.check("spec.md") is ArtifactFreshness.UNREGISTERED

    store.register(["spec.md"], phase=PhaseName.BRAINSTORM)
    assert store.check("spec.md") is ArtifactFreshness.FRESH

    path.write_text("# Spec, edited by hand\n", encoding="utf-8")
    assert store.check("spec.md") is ArtifactFreshness.MODIFIED


def test_refs_carry_path_and_expected_version(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.write_text("spec.md", "# Spec\n", phase=PhaseName.BRAINSTORM)
    store.register(["spec.md"], phase=PhaseName.BRAINSTORM)

    refs = store.refs_for(["spec.md", "plan.md"])

    assert [(ref.name, ref.expected_version) for ref in refs] == [("spec.md", 1), ("plan.md", 0)]
    assert refs[0].path == str(tmp_path / "artifacts" / "spec.md")
    assert store.missing(["spec.md", "plan.md"]) == ["plan.md"]


@pytest.mark.parametrize("name", ["", "../spec.md", "nested/spec.md", ".."])
def test_artifact_names_must_be_plain_file_names(tmp_path: Path, name: str) -> None:
    with pytest.raises(ValueError):
        _store(tmp_path).path_for(name)


@pytest.mark.parametrize("content", ["{broken", "", '{"artifacts": {"spec.md": {"name": "spec.md"}}}'])
def test_unreadable_manifest_raises_manifest_error(tmp_path: Path, content: str) -> None:
    store = _store(tmp_path)
    store.write_text("spec.md", "# Spec\n", phase=PhaseName.BRAINSTORM)
    store.manifest_path.write_text(content, encoding="utf-8")

    with pytest.raises(ManifestCorruptedError, match="artifacts.json"):
        store.check("spec.md")
    with pytest.raises(ManifestCorruptedError):
        store.register(["spec.md"], phase=PhaseName.BRAINSTORM)


def test_missing_manifest_reads_as_empty(tmp_path: Path) -> None:
    store = _store(tmp_path)

    assert store.list_artifacts() == []
    assert store.get("spec.md") is None
