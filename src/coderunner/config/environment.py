import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from coderunner.config.logging_config import get_logger
from coderunner.config.settings import get_system_file_path, get_value, load_settings, SETTINGS_FILE

"""
Environment Configuration Management Module

Resolves coderunner configuration from, in order of precedence:

- the settings file (settings.yaml)
- environment variables (after .env files are loaded)
- the defaults in ``DEFAULT_ENV``

The resolved values are exposed through the ``Environment`` class and
collected into an immutable ``EngineSettings`` object, which is built once at
startup and handed to the engine factory.
"""

log = get_logger(__name__)

DEFAULT_ENV: Dict[str, Any] = {
    "ENV": "development",
    "CODERUNNER_BACKEND": "docker",  # docker, subprocess, mock
    "CODERUNNER_MEMORY_LIMIT": "128m",
    "CODERUNNER_CPUS": "0.5",
    "CODERUNNER_PIDS_LIMIT": "64",
    "CODERUNNER_MAX_OUTPUT_BYTES": str(64 * 1024),
    "CODERUNNER_TIMEOUT": "10",
    "CODERUNNER_TERMINATION_GRACE": "2.0",
    "CODERUNNER_WORKSPACE_ROOT": None,
    "CODERUNNER_PROFILES_FILE": None,
    "CODERUNNER_LOG_LEVEL": "INFO",
}


def load_dotenv_files(project_root: Path | None = None) -> None:
    """Load environment variables from .env files based on the current environment."""
    from dotenv import load_dotenv

    root = project_root or Path.cwd()
    env_name = os.environ.get("ENV", "development")

    # Most specific first: with override=False the first file to set a key wins,
    # and the process environment beats every file
    env_files = [
        root / f".env.{env_name}.local",
        root / f".env.{env_name}",
        root / ".env",
    ]

    for env_file in env_files:
        if env_file.exists():
            load_dotenv(env_file, override=False)


class EngineSettings(BaseModel):
    """Resolved engine configuration. Built once, never mutated."""

    model_config = ConfigDict(frozen=True)

    backend: str = "docker"
    memory_limit: str = "128m"
    cpus: float = Field(default=0.5, gt=0)
    pids_limit: int = Field(default=64, gt=0)
    max_output_bytes: int = Field(default=64 * 1024, ge=0)
    timeout_seconds: float = Field(default=10.0, gt=0)
    termination_grace: float = Field(default=2.0, ge=0)
    workspace_root: Optional[str] = None
    profiles_file: Optional[str] = None


class Environment(object):
    """
    Central access point for coderunner configuration.

    Values are looked up in the settings file, then the process environment,
    then ``DEFAULT_ENV``. Settings are loaded lazily on first access.
    """

    settings: Optional[Dict[str, Any]] = None

    @classmethod
    def load_settings(cls):
        load_dotenv_files()
        cls.settings = load_settings()

    @classmethod
    def get_settings(cls):
        if cls.settings is None:
            cls.load_settings()
        assert cls.settings is not None
        return cls.settings

    @classmethod
    def reset(cls):
        """Forget loaded settings so the next access reloads them."""
        cls.settings = None

    @classmethod
    def get(cls, key: str, default: Any = None):
        return get_value(key, cls.get_settings(), DEFAULT_ENV, default)

    @classmethod
    def has_settings(cls):
        return get_system_file_path(SETTINGS_FILE).exists()

    @classmethod
    def get_env(cls):
        """
        The environment is either "development", "production" or "test".
        """
        return cls.get("ENV")

    @classmethod
    def get_backend(cls) -> str:
        """
        The isolation backend: "docker" in production, "subprocess" or "mock" for development.
        """
        return str(cls.get("CODERUNNER_BACKEND")).strip().lower()

    @classmethod
    def get_timeout_seconds(cls) -> float:
        """
        Default deadline applied to a run when the caller does not supply one.
        """
        return float(cls.get("CODERUNNER_TIMEOUT"))

    @classmethod
    def get_log_level(cls) -> str:
        return str(cls.get("CODERUNNER_LOG_LEVEL")).upper()

    @classmethod
    def get_engine_settings(cls) -> EngineSettings:
        """Collect every engine-related value into an ``EngineSettings``."""
        return EngineSettings(
            backend=cls.get_backend(),
            memory_limit=str(cls.get("CODERUNNER_MEMORY_LIMIT")),
            cpus=float(cls.get("CODERUNNER_CPUS")),
            pids_limit=int(cls.get("CODERUNNER_PIDS_LIMIT")),
            max_output_bytes=int(cls.get("CODERUNNER_MAX_OUTPUT_BYTES")),
            timeout_seconds=cls.get_timeout_seconds(),
            termination_grace=float(cls.get("CODERUNNER_TERMINATION_GRACE")),
            workspace_root=cls.get("CODERUNNER_WORKSPACE_ROOT") or None,
            profiles_file=cls.get("CODERUNNER_PROFILES_FILE") or None,
        )
