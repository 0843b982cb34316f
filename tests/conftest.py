"""Shared fixtures: every test builds its own resolver, engine and workflow manager."""

from __future__ import annotations

from pathlib import Path

import pytest

from agent_taskboard.config import Settings
from agent_taskboard.projects import MappingRootsProvider, ProjectResolver, ProjectSession
from agent_taskboard.task_engine import TaskEngine
from agent_taskboard.workflows import WorkflowManager


class FakeClock:
    """Millisecond clock advanced by hand."""

    def __init__(self, start: float = 1_700_000_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


@pytest.fixture
def roots(tmp_path: Path) -> dict[str, Path]:
    alpha = tmp_path / "alpha"
    beta = tmp_path / "beta"
    alpha.mkdir()
    beta.mkdir()
    return {"alpha": alpha, "beta": beta}


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(fallback_root=tmp_path / "fallback", lock_timeout_seconds=5.0)


@pytest.fixture
def session(roots: dict[str, Path], settings: Settings) -> ProjectSession:
    provider = MappingRootsProvider({name: path.as_uri() for name, path in roots.items()})
    return ProjectSession(ProjectResolver(provider, settings))


@pytest.fixture
def engine(session: ProjectSession) -> TaskEngine:
    return TaskEngine(session)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def manager(clock: FakeClock) -> WorkflowManager:
    return WorkflowManager(clock=clock)
