"""
Execution engine: runs one untrusted snippet to completion or deadline.

``execute`` is the single entry point. It looks up the language profile,
stages a private workspace, launches the program through the configured
isolation backend, captures output concurrently while racing process exit
against the deadline, classifies the outcome, and releases every resource
before returning.

Engine failures (unknown language, staging, launch) are raised as
``ExecutionError`` subclasses. A program that fails or runs out of time is a
normal result and comes back as data.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from datetime import timedelta
from typing import Any

from coderunner.config.logging_config import get_logger
from coderunner.runners.backends import IsolationBackend, RunningProcess, create_backend
from coderunner.runners.classifier import (
    ExecutionResult,
    ExecutionState,
    ExecutionTracker,
    Outcome,
    classify,
    describe,
)
from coderunner.runners.deadline import Deadline
from coderunner.runners.errors import BackendError, LaunchError
from coderunner.runners.output import OutputCollector
from coderunner.runners.profiles import ExecutionProfile, LanguageProfileRegistry
from coderunner.runners.workspace import Workspace, WorkspaceManager

log = get_logger(__name__)

DEFAULT_MAX_OUTPUT_BYTES = 64 * 1024
DEFAULT_TERMINATION_GRACE = 2.0

DeadlineLike = Deadline | float | int | timedelta


class ExecutionEngine:
    """Runs snippets through an :class:`IsolationBackend`.

    The engine holds only read-only collaborators. Every call builds its own
    workspace, process handle and output buffers, so any number of calls may
    run concurrently from different threads or tasks.
    """

    def __init__(
        self,
        registry: LanguageProfileRegistry,
        backend: IsolationBackend,
        workspaces: WorkspaceManager | None = None,
        max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
        termination_grace: float = DEFAULT_TERMINATION_GRACE,
        poll_interval: float = 0.05,
    ) -> None:
        self.registry = registry
        self.backend = backend
        self.workspaces = workspaces or WorkspaceManager()
        self.max_output_bytes = max_output_bytes
        self.termination_grace = termination_grace
        self.poll_interval = poll_interval

    # ---- Public API ----
    def execute(
        self, source_code: str, language_id: str, deadline: DeadlineLike
    ) -> ExecutionResult:
        """Run ``source_code`` as ``language_id`` until it exits or ``deadline`` passes.

        Args:
            source_code: Program text to stage and run.
            language_id: Key of a registered language profile.
            deadline: A :class:`Deadline`, or a timeout in seconds / ``timedelta``.

        Returns:
            The captured output and outcome.

        Raises:
            UnsupportedLanguageError: Before anything is allocated.
            WorkspaceError: If staging failed; nothing was started.
            LaunchError: If the backend could not start the program.
            BackendError: If the backend lost track of the running program.
        """
        profile = self.registry.lookup(language_id)
        deadline = Deadline.coerce(deadline)
        tracker = ExecutionTracker(uuid.uuid4().hex[:12])
        started = time.monotonic()
        log.debug("%s: executing %s snippet (%d chars)", tracker.execution_id, language_id, len(source_code))

        try:
            with self.workspaces.staged(profile, source_code) as workspace:
                result = self._run(profile, language_id, workspace, deadline, tracker, started)
        finally:
            tracker.advance(ExecutionState.RELEASED)

        log.info(
            "%s: %s finished: outcome=%s exit_code=%s duration=%.2fs",
            tracker.execution_id,
            language_id,
            result.outcome.value,
            result.exit_code,
            result.duration_seconds,
        )
        return result

    async def execute_async(
        self, source_code: str, language_id: str, deadline: DeadlineLike
    ) -> ExecutionResult:
        """Asyncio wrapper around :meth:`execute`.

        The blocking run happens in a worker thread. If the awaiting task is
        cancelled, the deadline is cancelled too, and teardown finishes before
        ``CancelledError`` propagates.
        """
        deadline = Deadline.coerce(deadline)
        task = asyncio.ensure_future(
            asyncio.to_thread(self.execute, source_code, language_id, deadline)
        )
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            deadline.cancel()
            await asyncio.gather(task, return_exceptions=True)
            raise

    # ---- Internals ----
    def _run(
        self,
        profile: ExecutionProfile,
        language_id: str,
        workspace: Workspace,
        deadline: Deadline,
        tracker: ExecutionTracker,
        started: float,
    ) -> ExecutionResult:
        if deadline.expired():
            log.warning("%s: deadline passed before launch", tracker.execution_id)
            tracker.advance(ExecutionState.TIMED_OUT)
            return self._build_result(language_id, None, True, OutputCollector(0), started)

        try:
            process = self.backend.launch(profile, workspace)
        except LaunchError as e:
            tracker.advance(ExecutionState.LAUNCH_FAILED)
            e.language_id = language_id
            log.exception("%s: launch failed for %s: %s", tracker.execution_id, language_id, e)
            raise
        tracker.advance(ExecutionState.LAUNCHED)

        collector = OutputCollector(self.max_output_bytes)
        exit_code: int | None = None
        oom_killed = False
        try:
            collector.start(process.output_sources())
            try:
                exit_code = self._wait_for_exit(process, deadline)
            except BackendError as e:
                e.language_id = language_id
                log.error("%s: %s backend failed: %s", tracker.execution_id, self.backend.name, e)
                raise
            if exit_code is None:
                # Deadline won the race: freeze output, then tear the sandbox down
                collector.close()
                log.warning(
                    "%s: deadline reached, terminating %s sandbox",
                    tracker.execution_id,
                    self.backend.name,
                )
                process.terminate()
                try:
                    process.wait(self.termination_grace)
                except BackendError as e:
                    log.debug("%s: wait after terminate failed: %s", tracker.execution_id, e)
                tracker.advance(ExecutionState.TIMED_OUT)
            else:
                tracker.advance(ExecutionState.COMPLETED)
                collector.join(self.termination_grace)
                if exit_code != 0:
                    oom_killed = process.oom_killed
        finally:
            process.release()
            collector.close()
            collector.join(self.termination_grace)

        return self._build_result(
            language_id, exit_code, exit_code is None, collector, started, oom_killed
        )

    def _wait_for_exit(self, process: RunningProcess, deadline: Deadline) -> int | None:
        """Return the exit code, or None once the deadline has passed or been cancelled."""
        while True:
            remaining = deadline.remaining()
            if remaining <= 0:
                return None
            exit_code = process.wait(min(remaining, self.poll_interval))
            if exit_code is not None:
                return exit_code

    def _build_result(
        self,
        language_id: str,
        exit_code: int | None,
        timed_out: bool,
        collector: OutputCollector,
        started: float,
        oom_killed: bool = False,
    ) -> ExecutionResult:
        outcome = classify(exit_code, timed_out)
        return ExecutionResult(
            stdout=collector.stdout.getvalue(),
            stderr=collector.stderr.getvalue(),
            outcome=outcome,
            exit_code=None if outcome is Outcome.TIMED_OUT else exit_code,
            message=describe(outcome, exit_code, oom_killed),
            language=language_id,
            duration_seconds=round(time.monotonic() - started, 4),
            stdout_truncated=collector.stdout.truncated,
            stderr_truncated=collector.stderr.truncated,
        )


def build_registry(settings: Any) -> LanguageProfileRegistry:
    """Load profiles from the configured YAML file, or use the built-in set."""
    profiles_file = getattr(settings, "profiles_file", None)
    if profiles_file:
        return LanguageProfileRegistry.from_yaml(profiles_file)
    return LanguageProfileRegistry.default()


def build_engine(settings: Any) -> ExecutionEngine:
    """Compose the engine from an ``EngineSettings`` object.

    Called once at startup; the registry and backend it builds are never
    reloaded.
    """
    registry = build_registry(settings)
    backend = create_backend(getattr(settings, "backend", "docker"), settings)
    log.info(
        "Execution engine ready: backend=%s languages=%s",
        backend.name,
        ", ".join(registry.languages()),
    )
    if not backend.isolated:
        log.warning("Backend '%s' provides no isolation; do not run untrusted code", backend.name)
    return ExecutionEngine(
        registry=registry,
        backend=backend,
        workspaces=WorkspaceManager(getattr(settings, "workspace_root", None)),
        max_output_bytes=int(getattr(settings, "max_output_bytes", DEFAULT_MAX_OUTPUT_BYTES)),
        termination_grace=float(
            getattr(settings, "termination_grace", DEFAULT_TERMINATION_GRACE)
        ),
    )
