"""
Local subprocess backend (no isolation).

Runs the profile's command directly on the host with the workspace as the
working directory. It keeps the engine's contract (deadline, bounded
capture, cleanup) but provides no network or filesystem isolation, so it
is meant for development and tests only.

The child starts a new session and so leads its own process group. Termination
signals the whole group, which also reaches anything the program forked.
"""

from __future__ import annotations

import os
import re
import signal
import subprocess
import sys
from typing import Mapping

from coderunner.config.logging_config import get_logger
from coderunner.runners.backends.base import IsolationBackend, RunningProcess
from coderunner.runners.errors import LaunchError
from coderunner.runners.output import STDERR, STDOUT, OutputSource, pipe_source
from coderunner.runners.profiles import ExecutionProfile
from coderunner.runners.workspace import Workspace

log = get_logger(__name__)

DEFAULT_EXECUTABLES: Mapping[str, str] = {"python": sys.executable}

_MEMORY_UNITS = {"": 1, "b": 1, "k": 1024, "m": 1024**2, "g": 1024**3}
_MEMORY_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([bkmg]?)(?:i?b)?\s*$", re.IGNORECASE)


def parse_memory_limit(value: str | int) -> int:
    """Return a Docker-style memory limit (``128m``, ``1g``, ``512kb``) in bytes."""
    if isinstance(value, int):
        return value
    match = _MEMORY_PATTERN.match(str(value))
    if match is None:
        raise ValueError(f"invalid memory limit: {value!r}")
    number, unit = match.groups()
    return int(float(number) * _MEMORY_UNITS[unit.lower()])


class LocalProcess(RunningProcess):
    def __init__(self, proc: subprocess.Popen[bytes]) -> None:
        self._proc = proc
        self._released = False

    @property
    def pid(self) -> int:
        return self._proc.pid

    def output_sources(self) -> list[OutputSource]:
        sources: list[OutputSource] = []
        if self._proc.stdout is not None:
            sources.append(pipe_source(self._proc.stdout, STDOUT))
        if self._proc.stderr is not None:
            sources.append(pipe_source(self._proc.stderr, STDERR))
        return sources

    def wait(self, timeout: float) -> int | None:
        try:
            return self._proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return None

    def terminate(self) -> None:
        # The group can outlive its leader, so signal it even after the leader exited
        if os.name == "nt":
            if self._proc.poll() is None:
                self._proc.kill()
            return
        try:
            os.killpg(self._proc.pid, signal.SIGKILL)
            log.debug("killed process group %s", self._proc.pid)
        except ProcessLookupError:
            pass
        except PermissionError as e:
            log.warning("could not kill process group %s: %s", self._proc.pid, e)

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self.terminate()
        try:
            self._proc.wait(timeout=5)
        except subprocess.TimeoutExpired:
            log.warning("process %s did not exit after SIGKILL", self._proc.pid)


class SubprocessBackend(IsolationBackend):
    """Runs programs as local child processes in their own process group."""

    name = "subprocess"
    isolated = False

    def __init__(
        self,
        executables: Mapping[str, str] | None = None,
        memory_limit_bytes: int | None = None,
        cpu_time_seconds: int | None = None,
    ) -> None:
        """Initialize the backend.

        Args:
            executables: Replacements for the first word of a profile command,
                e.g. ``{"python": "/usr/bin/python3"}``. Defaults to running
                ``python`` with the current interpreter.
            memory_limit_bytes: Optional ``RLIMIT_AS`` applied to the child.
            cpu_time_seconds: Optional ``RLIMIT_CPU`` applied to the child.
        """
        self.executables = dict(DEFAULT_EXECUTABLES if executables is None else executables)
        self.memory_limit_bytes = memory_limit_bytes
        self.cpu_time_seconds = cpu_time_seconds

    def build_command(self, profile: ExecutionProfile) -> list[str]:
        command = list(profile.invocation_command)
        command[0] = self.executables.get(command[0], command[0])
        return command

    def build_environment(self, workspace: Workspace) -> dict[str, str]:
        """Minimal environment: nothing from the host besides PATH."""
        return {
            "PATH": os.environ.get("PATH", os.defpath),
            "HOME": str(workspace.path),
            "LANG": "C.UTF-8",
            "PYTHONDONTWRITEBYTECODE": "1",
        }

    def launch(self, profile: ExecutionProfile, workspace: Workspace) -> RunningProcess:
        command = self.build_command(profile)
        log.debug("starting local subprocess: cmd=%s cwd=%s", command, workspace.path)
        try:
            proc = subprocess.Popen(
                command,
                cwd=workspace.path,
                env=self.build_environment(workspace),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                bufsize=0,
                start_new_session=os.name != "nt",
                preexec_fn=self._set_process_limits if self._has_limits() else None,
            )
        except (OSError, ValueError, subprocess.SubprocessError) as e:
            raise LaunchError(f"could not start {command[0]}: {e}") from e
        return LocalProcess(proc)

    def _has_limits(self) -> bool:
        return os.name == "posix" and (
            self.memory_limit_bytes is not None or self.cpu_time_seconds is not None
        )

    def _set_process_limits(self) -> None:
        """Set rlimits in the child before exec (POSIX only)."""
        import resource

        if self.memory_limit_bytes is not None:
            resource.setrlimit(
                resource.RLIMIT_AS, (self.memory_limit_bytes, self.memory_limit_bytes)
            )
        if self.cpu_time_seconds is not None:
            resource.setrlimit(
                resource.RLIMIT_CPU, (self.cpu_time_seconds, self.cpu_time_seconds)
            )
