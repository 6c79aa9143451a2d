import os
import sys
from pathlib import Path

import pytest

from coderunner.config.environment import Environment
from coderunner.runners.backends import MockBackend, SubprocessBackend
from coderunner.runners.engine import ExecutionEngine
from coderunner.runners.profiles import LanguageProfileRegistry
from coderunner.runners.workspace import WorkspaceManager


@pytest.fixture(autouse=True)
def _isolated_config(tmp_path, monkeypatch):
    """Keep tests away from the user's settings file and CODERUNNER_* variables."""
    for key in list(os.environ):
        if key.startswith("CODERUNNER_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("CODERUNNER_CONFIG_DIR", str(tmp_path / "config"))
    Environment.reset()
    yield
    Environment.reset()


@pytest.fixture
def workspace_root(tmp_path) -> Path:
    return tmp_path / "workspaces"


@pytest.fixture
def registry() -> LanguageProfileRegistry:
    return LanguageProfileRegistry.default()


@pytest.fixture
def engine(registry, workspace_root) -> ExecutionEngine:
    """Engine running python snippets with the current interpreter, without isolation."""
    return ExecutionEngine(
        registry=registry,
        backend=SubprocessBackend(executables={"python": sys.executable}),
        workspaces=WorkspaceManager(workspace_root),
        termination_grace=2.0,
    )


@pytest.fixture
def mock_engine(registry, workspace_root) -> ExecutionEngine:
    return ExecutionEngine(
        registry=registry,
        backend=MockBackend(),
        workspaces=WorkspaceManager(workspace_root),
    )
