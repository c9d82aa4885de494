from __future__ import annotations

from pathlib import Path
from typing import Any, Callable

import pytest

from phaseflow.engine import TransitionEngine
from phaseflow.models import PipelineState
from phaseflow.registry import DEFAULT_REGISTRY
from phaseflow.settings import RuntimeSettings


@pytest.fixture
def engine() -> TransitionEngine:
    return TransitionEngine()


@pytest.fixture
def fresh_state() -> PipelineState:
    return DEFAULT_REGISTRY.new_state("demo")


@pytest.fixture
def make_settings(tmp_path: Path) -> Callable[..., RuntimeSettings]:
    def _make(**overrides: Any) -> RuntimeSettings:
        values: dict[str, Any] = {
            "state_root": str(tmp_path / "state"),
            "confirm_between_phases": False,
        }
        values.update(overrides)
        return RuntimeSettings(**values).normalized()

    return _make
