"""Utility functions for reading configuration files and registering settings."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List

import yaml

# Constants
SETTINGS_FILE = "settings.yaml"
MISSING_MESSAGE = "Missing required configuration value: {}"
NOT_GIVEN = object()


@dataclass
class Setting:
    env_var: str
    group: str
    description: str
    enum: List[str] | None = None


_registry: List[Setting] = []


def register_setting(
    env_var: str,
    group: str,
    description: str,
    enum: List[str] | None = None,
) -> List[Setting]:
    """Register a new setting.

    Parameters
    ----------
    env_var: str
        The environment variable name.
    group: str
        Group the setting belongs to.
    description: str
        Human readable description of the setting.
    enum: List[str] | None
        List of possible values for the setting.

    Returns
    -------
    List[Setting]
        The list of all registered settings.
    """
    setting = Setting(env_var=env_var, group=group, description=description, enum=enum)
    _registry.append(setting)
    return list(_registry)


def get_settings_registry() -> List[Setting]:
    """Return the list of all registered settings."""
    return list(_registry)


register_setting(
    env_var="CODERUNNER_BACKEND",
    group="Execution",
    description="Isolation backend used to run snippets",
    enum=["docker", "subprocess", "mock"],
)
register_setting(
    env_var="CODERUNNER_MEMORY_LIMIT",
    group="Execution",
    description="Memory ceiling for one sandbox in Docker notation (e.g. 128m, 1g). Swap is disabled.",
)
register_setting(
    env_var="CODERUNNER_CPUS",
    group="Execution",
    description="CPU ceiling for one sandbox, in CPUs (0.5 = half a core)",
)
register_setting(
    env_var="CODERUNNER_PIDS_LIMIT",
    group="Execution",
    description="Maximum number of processes a sandboxed program may create",
)
register_setting(
    env_var="CODERUNNER_MAX_OUTPUT_BYTES",
    group="Execution",
    description="Bytes captured per output stream before truncation",
)
register_setting(
    env_var="CODERUNNER_TIMEOUT",
    group="Execution",
    description="Default deadline in seconds for one execution",
)
register_setting(
    env_var="CODERUNNER_TERMINATION_GRACE",
    group="Execution",
    description="Seconds allowed for sandbox teardown once a run is killed",
)
register_setting(
    env_var="CODERUNNER_WORKSPACE_ROOT",
    group="Folders",
    description="Directory under which per-execution workspaces are created. Defaults to the system temp dir.",
)
register_setting(
    env_var="CODERUNNER_PROFILES_FILE",
    group="Folders",
    description="YAML file with language profiles replacing the built-in python/ruby/javascript set",
)
register_setting(
    env_var="CODERUNNER_LOG_LEVEL",
    group="Logging",
    description="Log level (DEBUG, INFO, WARNING, ERROR)",
)


# ---------------------------------------------------------------------------
# Path helpers
# ---------------------------------------------------------------------------


def get_system_file_path(filename: str) -> Path:
    """Return the path to the configuration file for the current OS."""
    import platform

    override = os.getenv("CODERUNNER_CONFIG_DIR")
    if override:
        return Path(override) / filename

    os_name = platform.system()
    if os_name in {"Linux", "Darwin"}:
        return Path.home() / ".config" / "coderunner" / filename
    elif os_name == "Windows":
        appdata = os.getenv("APPDATA")
        if appdata is not None:
            return Path(appdata) / "coderunner" / filename
        return Path("data") / filename
    return Path("data") / filename


# ---------------------------------------------------------------------------
# Settings helpers
# ---------------------------------------------------------------------------


def load_settings() -> Dict[str, Any]:
    """Load settings from the YAML settings file."""
    settings_file = get_system_file_path(SETTINGS_FILE)

    settings: Dict[str, Any] = {}
    if settings_file.exists():
        with open(settings_file, "r") as f:
            settings = yaml.safe_load(f) or {}

    return settings


def save_settings(settings: Dict[str, Any]) -> None:
    """Save settings to the YAML settings file."""
    settings_file = get_system_file_path(SETTINGS_FILE)
    os.makedirs(os.path.dirname(settings_file), exist_ok=True)

    with open(settings_file, "w") as f:
        yaml.dump(settings, f)


def get_value(
    key: str,
    settings: Dict[str, Any],
    default_env: Dict[str, Any],
    default: Any = NOT_GIVEN,
) -> Any:
    """Retrieve a configuration value from settings, the environment, or defaults."""
    value = settings.get(key)
    if value is None or str(value) == "":
        value = os.environ.get(key)

    if value is None:
        value = default_env.get(key, default)

    if value is not NOT_GIVEN:
        return value
    raise KeyError(MISSING_MESSAGE.format(key))
