"""
Isolation backends.
"""

import math
from typing import Any

from .base import IsolationBackend, RunningProcess
from .docker_backend import DockerBackend
from .mock_backend import MockBackend
from .subprocess_backend import SubprocessBackend, parse_memory_limit

SUPPORTED_BACKENDS = {"docker", "subprocess", "mock"}


def create_backend(backend_name: str, settings: Any = None) -> IsolationBackend:
    """Create a backend from its configured name.

    ``settings`` is an ``EngineSettings``-like object; missing attributes fall
    back to each backend's defaults.
    """
    normalized = (backend_name or "docker").strip().lower()
    if normalized not in SUPPORTED_BACKENDS:
        raise ValueError(
            f"Unsupported backend '{backend_name}'. Supported: {', '.join(sorted(SUPPORTED_BACKENDS))}"
        )

    if normalized == "mock":
        return MockBackend()

    if normalized == "subprocess":
        if settings is None:
            return SubprocessBackend()
        # Same memory ceiling as a container; CPU time capped at the default deadline
        timeout = getattr(settings, "timeout_seconds", None)
        return SubprocessBackend(
            memory_limit_bytes=parse_memory_limit(getattr(settings, "memory_limit", "128m") or "128m"),
            cpu_time_seconds=math.ceil(timeout) if timeout else None,
        )

    return DockerBackend(
        mem_limit=str(getattr(settings, "memory_limit", "128m") or "128m"),
        nano_cpus=int(float(getattr(settings, "cpus", 0.5) or 0.5) * 1_000_000_000),
        pids_limit=int(getattr(settings, "pids_limit", 64) or 64),
    )


__all__ = [
    "SUPPORTED_BACKENDS",
    "DockerBackend",
    "IsolationBackend",
    "MockBackend",
    "RunningProcess",
    "SubprocessBackend",
    "create_backend",
    "parse_memory_limit",
]
