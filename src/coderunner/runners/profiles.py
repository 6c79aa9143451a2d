"""
Language profiles and the read-only registry that maps language ids to them.

A profile says how to run one language: which runtime image to start, which
file name the source is staged under, and the command that executes it from
the working directory the file is mounted into.
"""

from __future__ import annotations

from pathlib import Path
from types import MappingProxyType
from typing import Any, Iterator, Mapping

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from coderunner.config.logging_config import get_logger
from coderunner.runners.errors import UnsupportedLanguageError

log = get_logger(__name__)


class ExecutionProfile(BaseModel):
    """Static description of how to execute one language."""

    model_config = ConfigDict(frozen=True)

    runtime_identity: str = Field(
        ..., description="Image (or runtime) the program runs in, e.g. python:alpine"
    )
    staged_file_name: str = Field(..., description="Name the source is written under")
    invocation_command: tuple[str, ...] = Field(
        ..., description="Command run from the working directory holding the file"
    )

    @field_validator("staged_file_name")
    @classmethod
    def _plain_file_name(cls, value: str) -> str:
        if not value or Path(value).name != value or value in {".", ".."}:
            raise ValueError("staged_file_name must be a bare file name")
        return value

    @field_validator("invocation_command")
    @classmethod
    def _non_empty_command(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        if not value:
            raise ValueError("invocation_command must not be empty")
        return value


DEFAULT_PROFILES: Mapping[str, ExecutionProfile] = MappingProxyType(
    {
        "python": ExecutionProfile(
            runtime_identity="python:alpine",
            staged_file_name="main.py",
            invocation_command=("python", "main.py"),
        ),
        "ruby": ExecutionProfile(
            runtime_identity="ruby:alpine",
            staged_file_name="main.rb",
            invocation_command=("ruby", "main.rb"),
        ),
        "javascript": ExecutionProfile(
            runtime_identity="node:alpine",
            staged_file_name="index.js",
            invocation_command=("node", "index.js"),
        ),
    }
)


class LanguageProfileRegistry:
    """Immutable mapping from language id to :class:`ExecutionProfile`.

    Built once at startup and passed by reference to the engine. Nothing
    mutates it afterwards, so concurrent lookups need no locking.
    """

    def __init__(self, profiles: Mapping[str, ExecutionProfile]) -> None:
        self._profiles: Mapping[str, ExecutionProfile] = MappingProxyType(dict(profiles))

    @classmethod
    def default(cls) -> "LanguageProfileRegistry":
        return cls(DEFAULT_PROFILES)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Mapping[str, Any]]) -> "LanguageProfileRegistry":
        """Build a registry from plain data.

        Each entry accepts either the field names of :class:`ExecutionProfile`
        or the shorter ``image`` / ``file_name`` / ``command`` keys used in
        profile files.
        """
        profiles: dict[str, ExecutionProfile] = {}
        for language_id, raw in data.items():
            if not isinstance(raw, Mapping):
                raise ValueError(f"profile for {language_id!r} must be a mapping")
            command = raw.get("invocation_command", raw.get("command"))
            if isinstance(command, str):
                command = command.split()
            profiles[str(language_id)] = ExecutionProfile(
                runtime_identity=raw.get("runtime_identity", raw.get("image")),
                staged_file_name=raw.get("staged_file_name", raw.get("file_name")),
                invocation_command=tuple(command or ()),
            )
        return cls(profiles)

    @classmethod
    def from_yaml(cls, path: str | Path) -> "LanguageProfileRegistry":
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, Mapping):
            raise ValueError(f"profiles file {path} must contain a mapping")
        registry = cls.from_mapping(data)
        log.info("Loaded %d language profiles from %s", len(registry), path)
        return registry

    def lookup(self, language_id: str) -> ExecutionProfile:
        """Return the profile for ``language_id``.

        Raises:
            UnsupportedLanguageError: If the id is not registered.
        """
        try:
            return self._profiles[language_id]
        except KeyError:
            raise UnsupportedLanguageError(language_id, list(self._profiles)) from None

    def languages(self) -> list[str]:
        return sorted(self._profiles)

    def items(self) -> Iterator[tuple[str, ExecutionProfile]]:
        for language_id in self.languages():
            yield language_id, self._profiles[language_id]

    def __contains__(self, language_id: object) -> bool:
        return language_id in self._profiles

    def __len__(self) -> int:
        return len(self._profiles)

    def __repr__(self) -> str:
        return f"LanguageProfileRegistry({self.languages()!r})"
