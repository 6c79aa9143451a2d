import os
import stat
import threading

import pytest

from coderunner.runners.errors import WorkspaceError
from coderunner.runners.profiles import LanguageProfileRegistry
from coderunner.runners.workspace import WORKSPACE_PREFIX, WorkspaceManager


@pytest.fixture
def python_profile():
    return LanguageProfileRegistry.default().lookup("python")


def test_stage_writes_source_under_profile_file_name(workspace_root, python_profile):
    manager = WorkspaceManager(workspace_root)

    workspace = manager.stage(python_profile, "print('héllo')\n")

    assert workspace.path.parent == workspace_root
    assert workspace.path.name.startswith(WORKSPACE_PREFIX)
    assert workspace.staged_file == workspace.path / "main.py"
    assert workspace.staged_file.read_text(encoding="utf-8") == "print('héllo')\n"
    assert os.listdir(workspace.path) == ["main.py"]
    manager.release(workspace)


@pytest.mark.skipif(os.name != "posix", reason="POSIX permissions")
def test_staged_file_is_world_readable(workspace_root, python_profile):
    manager = WorkspaceManager(workspace_root)
    workspace = manager.stage(python_profile, "pass")

    mode = stat.S_IMODE(os.stat(workspace.staged_file).st_mode)

    assert mode == 0o644
    manager.release(workspace)


def test_release_removes_directory_and_is_idempotent(workspace_root, python_profile):
    manager = WorkspaceManager(workspace_root)
    workspace = manager.stage(python_profile, "pass")

    manager.release(workspace)
    manager.release(workspace)

    assert workspace.released
    assert not workspace.path.exists()


def test_release_tolerates_directory_removed_externally(workspace_root, python_profile):
    manager = WorkspaceManager(workspace_root)
    workspace = manager.stage(python_profile, "pass")
    workspace.staged_file.unlink()
    workspace.path.rmdir()

    manager.release(workspace)

    assert workspace.released


def test_staged_context_releases_on_error(workspace_root, python_profile):
    manager = WorkspaceManager(workspace_root)

    with pytest.raises(RuntimeError):
        with manager.staged(python_profile, "pass") as workspace:
            assert workspace.path.exists()
            raise RuntimeError("boom")

    assert not workspace.path.exists()
    assert os.listdir(workspace_root) == []


def test_stage_failure_raises_workspace_error(tmp_path, python_profile):
    not_a_dir = tmp_path / "occupied"
    not_a_dir.write_text("")
    manager = WorkspaceManager(not_a_dir)

    with pytest.raises(WorkspaceError):
        manager.stage(python_profile, "pass")


def test_concurrent_stages_get_distinct_directories(workspace_root, python_profile):
    manager = WorkspaceManager(workspace_root)
    staged = []
    lock = threading.Lock()

    def worker(i: int) -> None:
        workspace = manager.stage(python_profile, f"print({i})")
        with lock:
            staged.append((i, workspace))

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(32)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len({w.path for _, w in staged}) == 32
    for i, workspace in staged:
        assert workspace.staged_file.read_text() == f"print({i})"
        manager.release(workspace)
    assert os.listdir(workspace_root) == []
