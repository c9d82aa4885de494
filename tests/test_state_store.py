from __future__ import annotations

import json
from pathlib import Path

import pytest
from helpers import run_through, start

from phaseflow.engine import TransitionEngine
from phaseflow.errors import StateCorruptedError, StateNotFoundError, StaleWriteError
from phaseflow.models import PhaseName, PhaseStatus, Severity
from phaseflow.state_store import PipelineStateStore, new_pipeline_state


def test_create_then_load_round_trips(tmp_path: Path) -> None:
    store = PipelineStateStore(tmp_path)
    state = store.create(new_pipeline_state("alpha"))

    loaded = store.load("alpha")

    assert loaded == state
    assert store.exists("alpha")
    assert store.state_path("alpha") == tmp_path / "projects" / "alpha" / "pipeline-state.json"


def test_persisted_record_uses_camel_case_keys(tmp_path: Path, engine: TransitionEngine) -> None:
    store = PipelineStateStore(tmp_path)
    store.create(new_pipeline_state("alpha"))
    state = start(engine, store.load("alpha"), PhaseName.BRAINSTORM)
    store.save(state, expected_version=1)

    payload = json.loads(store.state_path("alpha").read_text(encoding="utf-8"))

    assert payload["version"] == 2
    assert payload["projectId"] == "alpha"
    assert payload["currentPhase"] == "brainstorm"
    assert list(payload["phases"]) == [name.value for name in PhaseName]
    assert payload["phases"]["brainstorm"]["status"] == "in-progress"
    assert payload["phases"]["brainstorm"]["retryCount"] == 0
    assert payload["history"][0]["kind"] == "start"


def test_saving_an_unchanged_state_is_a_no_op(tmp_path: Path) -> None:
    store = PipelineStateStore(tmp_path)
    store.create(new_pipeline_state("alpha"))
    before = store.state_path("alpha").read_text(encoding="utf-8")

    loaded = store.load("alpha")
    store.save(loaded, expected_version=loaded.version)

    assert store.state_path("alpha").read_text(encoding="utf-8") == before


def test_stale_write_leaves_disk_unchanged(tmp_path: Path, engine: TransitionEngine) -> None:
    store = PipelineStateStore(tmp_path)
    store.create(new_pipeline_state("alpha"))
    first = run_through(engine, store.load("alpha"), PhaseName.BRAINSTORM)
    store.save(first, expected_version=1)
    on_disk = store.state_path("alpha").read_text(encoding="utf-8")

    competing = start(engine, new_pipeline_state("alpha"), PhaseName.BRAINSTORM)
    with pytest.raises(StaleWriteError) as excinfo:
        store.save(competing, expected_version=1)

    assert excinfo.value.expected_version == 1
    assert excinfo.value.actual_version == 3
    assert store.state_path("alpha").read_text(encoding="utf-8") == on_disk


def test_changed_state_without_version_bump_is_refused(tmp_path: Path) -> None:
    store = PipelineStateStore(tmp_path)
    store.create(new_pipeline_state("alpha"))
    state = store.load("alpha")
    state.warnings.append("edited by hand")

    with pytest.raises(ValueError):
        store.save(state, expected_version=1)


def test_create_refuses_to_overwrite(tmp_path: Path) -> None:
    store = PipelineStateStore(tmp_path)
    store.create(new_pipeline_state("alpha"))

    with pytest.raises(StaleWriteError):
        store.create(new_pipeline_state("alpha"))


def test_missing_project_raises_not_found(tmp_path: Path) -> None:
    store = PipelineStateStore(tmp_path)

    with pytest.raises(StateNotFoundError):
        store.load("ghost")
    with pytest.raises(FileNotFoundError):
        store.load("ghost")


@pytest.mark.parametrize("content", ["", "{not json", '{"version": 1}'])
def test_unreadable_state_raises_corrupted(tmp_path: Path, content: str) -> None:
    store = PipelineStateStore(tmp_path)
    path = store.state_path("alpha")
    path.parent.mkdir(parents=True)
    path.write_text(content, encoding="utf-8")

    with pytest.raises(StateCorruptedError):
        store.load("alpha")


def test_load_reports_invariant_violations(tmp_path: Path) -> None:
    store = PipelineStateStore(tmp_path)
    store.create(new_pipeline_state("alpha"))
    path = store.state_path("alpha")
    payload = json.loads(path.read_text(encoding="utf-8"))
    payload["phases"]["testing"]["status"] = "in-progress"
    path.write_text(json.dumps(payload), encoding="utf-8")

    state, issues = store.load_with_issues("alpha")

    assert state.phase(PhaseName.TESTING).status is PhaseStatus.IN_PROGRESS
    assert [issue.severity for issue in issues] == [Severity.ERROR]
    assert issues[0].location == "phases.testing"


def test_archive_history_and_quarantine(tmp_path: Path, engine: TransitionEngine) -> None:
    store = PipelineStateStore(tmp_path)
    store.create(new_pipeline_state("alpha"))
    state = run_through(engine, store.load("alpha"), PhaseName.PLANNING)
    store.save(state, expected_version=1)

    archive = store.archive_history(state)
    archived = json.loads(archive.read_text(encoding="utf-8"))
    assert archive.parent == tmp_path / "projects" / "alpha" / "history"
    assert archived["runId"] == state.run_id
    assert len(archived["history"]) == 4

    moved = store.quarantine("alpha")
    assert moved is not None
    assert moved.name.startswith("pipeline-state.json.corrupt-")
    assert not store.exists("alpha")
    assert store.quarantine("alpha") is None


def test_project_ids_are_sanitized_into_one_directory(tmp_path: Path) -> None:
    store = PipelineStateStore(tmp_path)

    assert store.project_root("../Team Alpha!") == tmp_path / "projects" / "..-Team-Alpha"
    with pytest.raises(ValueError):
        store.project_root("   ")
