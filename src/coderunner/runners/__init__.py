from .backends import (
    DockerBackend,
    IsolationBackend,
    MockBackend,
    RunningProcess,
    SubprocessBackend,
    create_backend,
)
from .classifier import ExecutionResult, ExecutionState, Outcome, classify
from .deadline import Deadline
from .engine import ExecutionEngine, build_engine
from .errors import (
    BackendError,
    ExecutionError,
    LaunchError,
    UnsupportedLanguageError,
    WorkspaceError,
)
from .output import BoundedOutputBuffer, OutputCollector
from .profiles import DEFAULT_PROFILES, ExecutionProfile, LanguageProfileRegistry
from .workspace import Workspace, WorkspaceManager

__all__ = [
    "BackendError",
    "BoundedOutputBuffer",
    "DEFAULT_PROFILES",
    "Deadline",
    "DockerBackend",
    "ExecutionEngine",
    "ExecutionError",
    "ExecutionProfile",
    "ExecutionResult",
    "ExecutionState",
    "IsolationBackend",
    "LanguageProfileRegistry",
    "LaunchError",
    "MockBackend",
    "Outcome",
    "OutputCollector",
    "RunningProcess",
    "SubprocessBackend",
    "UnsupportedLanguageError",
    "Workspace",
    "WorkspaceError",
    "WorkspaceManager",
    "build_engine",
    "classify",
    "create_backend",
]
