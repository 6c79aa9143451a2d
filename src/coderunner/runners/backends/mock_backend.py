"""Mock backend that echoes the staged source back without running anything."""

from __future__ import annotations

from coderunner.runners.backends.base import IsolationBackend, RunningProcess
from coderunner.runners.output import STDERR, STDOUT, OutputSource
from coderunner.runners.profiles import ExecutionProfile
from coderunner.runners.workspace import Workspace


class MockProcess(RunningProcess):
    def __init__(self, stdout: bytes, stderr: bytes, exit_code: int) -> None:
        self._stdout = stdout
        self._stderr = stderr
        self._exit_code = exit_code
        self.terminated = False

    def output_sources(self) -> list[OutputSource]:
        return [[(STDOUT, self._stdout), (STDERR, self._stderr)]]

    def wait(self, timeout: float) -> int | None:
        return self._exit_code

    def terminate(self) -> None:
        self.terminated = True


class MockBackend(IsolationBackend):
    name = "mock"
    isolated = False

    def __init__(self, prefix: str = "Mock Output: ", stderr: str = "", exit_code: int = 0) -> None:
        self.prefix = prefix
        self.stderr = stderr
        self.exit_code = exit_code

    def launch(self, profile: ExecutionProfile, workspace: Workspace) -> RunningProcess:
        code = workspace.staged_file.read_text(encoding="utf-8")
        return MockProcess(
            stdout=(self.prefix + code).encode("utf-8"),
            stderr=self.stderr.encode("utf-8"),
            exit_code=self.exit_code,
        )
