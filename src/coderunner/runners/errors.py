"""
Exception classes for the execution engine.

These cover failures of the engine or its environment. A program that runs and
fails is not an error: it comes back as an ``ExecutionResult`` whose outcome is
``RUNTIME_FAILURE`` or ``TIMED_OUT``.
"""


class ExecutionError(Exception):
    """Base exception for engine-level failures."""

    def __init__(self, message: str, language_id: str | None = None):
        self.language_id = language_id
        super().__init__(message)


class UnsupportedLanguageError(ExecutionError):
    """Raised when a language id has no registered profile."""

    def __init__(self, language_id: str, supported: list[str] | None = None):
        self.supported = sorted(supported or [])
        message = f"unsupported language: {language_id}"
        if self.supported:
            message += f" (supported: {', '.join(self.supported)})"
        super().__init__(message, language_id)


class WorkspaceError(ExecutionError):
    """Raised when the source could not be staged on disk."""

    pass


class LaunchError(ExecutionError):
    """Raised when the isolated runtime could not be started."""

    pass


class BackendError(ExecutionError):
    """Raised when the isolation runtime fails while the program is running."""

    pass
