"""
Isolation backend contract.

A backend turns a staged workspace into a running program and hands back a
:class:`RunningProcess` handle. The engine drives every backend the same way:
start readers on ``output_sources()``, ``wait()`` in slices until the program
exits or the deadline fires, ``terminate()`` on expiry, and always
``release()`` at the end.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Iterable

from coderunner.runners.output import OutputSource
from coderunner.runners.profiles import ExecutionProfile
from coderunner.runners.workspace import Workspace


class RunningProcess(ABC):
    """Handle on one launched program and everything it spawned."""

    @abstractmethod
    def output_sources(self) -> list[OutputSource]:
        """Return the iterables that yield ``(slot, chunk)`` output pairs."""

    @abstractmethod
    def wait(self, timeout: float) -> int | None:
        """Wait up to ``timeout`` seconds; return the exit code, or None if still running."""

    @abstractmethod
    def terminate(self) -> None:
        """Kill the program together with all of its descendants. Safe to call repeatedly."""

    def release(self) -> None:
        """Free backend resources. Terminates first if the program is still alive."""
        self.terminate()

    @property
    def oom_killed(self) -> bool:
        return False


class IsolationBackend(ABC):
    """Capability interface implemented by every execution backend."""

    name: str = "base"
    isolated: bool = True

    @abstractmethod
    def launch(self, profile: ExecutionProfile, workspace: Workspace) -> RunningProcess:
        """Start ``profile``'s command against ``workspace``.

        Raises:
            LaunchError: If the runtime could not be started.
        """

    def prepare(self, profiles: Iterable[ExecutionProfile]) -> None:
        """Warm up whatever the profiles need (e.g. pull images). No-op by default."""
        return None

    def check_health(self) -> tuple[bool, str]:
        """Return ``(healthy, detail)`` for this backend."""
        return True, f"{self.name} backend ready"
