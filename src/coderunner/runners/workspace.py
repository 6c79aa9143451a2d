"""
Ephemeral per-execution workspaces.

Every execution gets its own directory created with :func:`tempfile.mkdtemp`,
which guarantees a fresh name even under concurrent calls. The directory holds
exactly one file: the staged source.
"""

from __future__ import annotations

import os
import shutil
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator

from coderunner.config.logging_config import get_logger
from coderunner.runners.errors import WorkspaceError
from coderunner.runners.profiles import ExecutionProfile

log = get_logger(__name__)

WORKSPACE_PREFIX = "coderunner-"
STAGED_FILE_MODE = 0o644


@dataclass
class Workspace:
    """A staged workspace owned by exactly one execution."""

    path: Path
    staged_file: Path
    released: bool = field(default=False, compare=False)


class WorkspaceManager:
    """Creates and removes workspaces under ``root`` (the system temp dir by default)."""

    def __init__(self, root: str | Path | None = None) -> None:
        self.root = Path(root) if root is not None else None

    def stage(self, profile: ExecutionProfile, source_code: str) -> Workspace:
        """Create a unique directory and write ``source_code`` into it.

        The file is created exclusively with mode ``0o644``: readable by the
        sandboxed runtime, which only ever sees it through a read-only mount.

        Raises:
            WorkspaceError: If the directory or file could not be created. Any
                partially created directory is removed before raising.
        """
        try:
            if self.root is not None:
                self.root.mkdir(parents=True, exist_ok=True)
            path = Path(tempfile.mkdtemp(prefix=WORKSPACE_PREFIX, dir=self.root))
        except OSError as e:
            raise WorkspaceError(f"failed to create workspace: {e}") from e

        staged_file = path / profile.staged_file_name
        try:
            fd = os.open(
                staged_file, os.O_WRONLY | os.O_CREAT | os.O_EXCL, STAGED_FILE_MODE
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(source_code)
            # umask may have narrowed the mode requested above
            os.chmod(staged_file, STAGED_FILE_MODE)
        except (OSError, UnicodeError) as e:
            shutil.rmtree(path, ignore_errors=True)
            raise WorkspaceError(f"failed to write source file: {e}") from e

        log.debug("staged workspace: %s", path)
        return Workspace(path=path, staged_file=staged_file)

    def release(self, workspace: Workspace) -> None:
        """Remove the workspace directory. Calling it twice is a no-op."""
        if workspace.released:
            log.debug("workspace already released: %s", workspace.path)
            return
        workspace.released = True
        try:
            shutil.rmtree(workspace.path)
        except FileNotFoundError:
            pass
        except OSError as e:
            log.warning("could not remove workspace %s: %s", workspace.path, e)
            return
        log.debug("released workspace: %s", workspace.path)

    @contextmanager
    def staged(self, profile: ExecutionProfile, source_code: str) -> Iterator[Workspace]:
        """Stage a workspace for the duration of the ``with`` block.

        Release runs however the block exits, including on exceptions.
        """
        workspace = self.stage(profile, source_code)
        try:
            yield workspace
        finally:
            self.release(workspace)
