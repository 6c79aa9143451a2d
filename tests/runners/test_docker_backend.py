from __future__ import annotations

import threading
from unittest.mock import MagicMock

import docker.errors
import pytest
import requests.exceptions

from coderunner.runners.backends import DockerBackend, create_backend
from coderunner.runners.classifier import OOM_MESSAGE, Outcome
from coderunner.runners.docker_ws import DockerStreamDemuxer
from coderunner.runners.engine import ExecutionEngine
from coderunner.runners.errors import BackendError, LaunchError
from coderunner.runners.workspace import Workspace, WorkspaceManager


def frame(stream: int, payload: bytes) -> bytes:
    return bytes([stream, 0, 0, 0]) + len(payload).to_bytes(4, "big") + payload


class FakeSocket:
    """Replays recorded chunks, then blocks on ``gate`` (if any) before EOF."""

    def __init__(self, chunks: list[bytes], gate: threading.Event | None = None) -> None:
        self._chunks = list(chunks)
        self._gate = gate
        self.closed = False

    def recv(self, size: int) -> bytes:
        if self._chunks:
            return self._chunks.pop(0)
        if self._gate is not None:
            self._gate.wait(10)
        return b""

    def close(self) -> None:
        self.closed = True


def _client(container) -> MagicMock:
    client = MagicMock()
    client.containers.create.return_value = container
    return client


def _container(chunks: list[bytes], status: int = 0) -> MagicMock:
    container = MagicMock()
    container.id = "0123456789abcdef"
    container.attach_socket.return_value = FakeSocket(chunks)
    container.wait.return_value = {"StatusCode": status}
    container.attrs = {"State": {"OOMKilled": False}}
    return container


def _engine(registry, workspace_root, client, **backend_kwargs) -> ExecutionEngine:
    backend = DockerBackend(client_factory=lambda: client, **backend_kwargs)
    return ExecutionEngine(registry, backend, WorkspaceManager(workspace_root))


# ---- Demuxer ----


def test_demuxer_reassembles_split_frames():
    data = frame(1, b"hello ") + frame(2, b"oops") + frame(1, b"world") + frame(0, b"stdin")
    chunks = [data[:3], data[3:11], data[11:20], data[20:]]

    messages = list(DockerStreamDemuxer(FakeSocket(chunks)).iter_messages())

    assert messages == [("stdout", b"hello "), ("stderr", b"oops"), ("stdout", b"world")]


def test_demuxer_drops_incomplete_trailing_frame():
    data = frame(1, b"done") + frame(1, b"cut off")[:6]

    messages = list(DockerStreamDemuxer(FakeSocket([data])).iter_messages())

    assert messages == [("stdout", b"done")]


# ---- Container configuration ----


def test_container_options_lock_down_the_sandbox(tmp_path, registry):
    profile = registry.lookup("python")
    workspace = Workspace(path=tmp_path, staged_file=tmp_path / "main.py")
    backend = DockerBackend(mem_limit="256m", nano_cpus=1_000_000_000, pids_limit=32)

    options = backend.container_options(profile, workspace)

    assert options["image"] == "python:alpine"
    assert options["command"] == ["python", "main.py"]
    assert options["network_disabled"] is True
    assert options["network_mode"] == "none"
    assert options["mem_limit"] == options["memswap_limit"] == "256m"
    assert options["nano_cpus"] == 1_000_000_000
    assert options["pids_limit"] == 32
    assert options["cap_drop"] == ["ALL"]
    assert options["read_only"] is True
    assert options["working_dir"] == "/app"
    assert options["volumes"] == {
        str(tmp_path / "main.py"): {"bind": "/app/main.py", "mode": "ro"}
    }
    assert options["tty"] is False and options["stdin_open"] is False


def test_create_backend_maps_cpus_to_nano_cpus():
    settings = MagicMock(memory_limit="64m", cpus=1.5, pids_limit=16)

    backend = create_backend("docker", settings)

    assert isinstance(backend, DockerBackend)
    assert backend.mem_limit == "64m"
    assert backend.nano_cpus == 1_500_000_000
    assert backend.pids_limit == 16


# ---- Launch and lifecycle ----


def test_successful_run_captures_output_and_removes_container(registry, workspace_root):
    container = _container([frame(1, b"hi from docker\n"), frame(2, b"warn\n")])
    client = _client(container)

    result = _engine(registry, workspace_root, client).execute("print('hi')", "python", 10)

    assert result.outcome is Outcome.SUCCESS
    assert result.stdout == "hi from docker\n"
    assert result.stderr == "warn\n"
    container.start.assert_called_once()
    container.kill.assert_not_called()
    container.remove.assert_called_once_with(force=True)
    client.close.assert_called()
    assert list(workspace_root.iterdir()) == []


def test_missing_image_is_pulled(registry, workspace_root):
    container = _container([])
    client = _client(container)
    client.images.get.side_effect = docker.errors.ImageNotFound("no such image")

    _engine(registry, workspace_root, client).execute("puts 1", "ruby", 10)

    client.images.pull.assert_called_once_with("ruby:alpine")


def test_nonzero_exit_with_oom_flag(registry, workspace_root):
    container = _container([], status=137)
    container.attrs = {"State": {"OOMKilled": True}}
    client = _client(container)

    result = _engine(registry, workspace_root, client).execute("x = 'a' * 10**9", "python", 10)

    assert result.outcome is Outcome.RUNTIME_FAILURE
    assert result.exit_code == 137
    assert result.message == OOM_MESSAGE


def test_deadline_kills_and_removes_container(registry, workspace_root):
    killed = threading.Event()
    container = MagicMock()
    container.id = "feedfacecafe"
    container.attach_socket.return_value = FakeSocket([frame(1, b"tick\n")], gate=killed)
    container.kill.side_effect = lambda: killed.set()

    def _wait(timeout=None):
        if killed.wait(timeout):
            return {"StatusCode": 137}
        raise requests.exceptions.ReadTimeout("long poll expired")

    container.wait.side_effect = _wait
    client = _client(container)

    engine = _engine(registry, workspace_root, client, wait_poll_seconds=0.2)
    result = engine.execute("while True: pass", "python", 1.0)

    assert result.outcome is Outcome.TIMED_OUT
    assert result.exit_code is None
    assert result.stdout == "tick\n"
    container.kill.assert_called_once()
    container.remove.assert_called_once_with(force=True)
    assert list(workspace_root.iterdir()) == []


def test_lost_container_is_backend_error_not_program_failure(registry, workspace_root, caplog):
    container = _container([frame(1, b"started\n")])
    container.wait.side_effect = docker.errors.APIError("daemon gone")
    client = _client(container)

    with caplog.at_level("WARNING", logger="coderunner"):
        with pytest.raises(BackendError) as exc_info:
            _engine(registry, workspace_root, client).execute("print(1)", "python", 5)

    assert "lost track of container" in str(exc_info.value)
    assert exc_info.value.language_id == "python"
    assert "container wait failed" in caplog.text
    container.remove.assert_called_once_with(force=True)
    client.close.assert_called()
    assert list(workspace_root.iterdir()) == []


def test_unreachable_daemon_is_launch_error(registry, workspace_root):
    client = MagicMock()
    client.ping.side_effect = docker.errors.DockerException("connection refused")

    with pytest.raises(LaunchError):
        _engine(registry, workspace_root, client).execute("print(1)", "python", 5)

    client.close.assert_called_once()
    assert list(workspace_root.iterdir()) == []


def test_create_failure_is_launch_error(registry, workspace_root):
    client = MagicMock()
    client.containers.create.side_effect = docker.errors.APIError("invalid mount")

    with pytest.raises(LaunchError):
        _engine(registry, workspace_root, client).execute("print(1)", "python", 5)

    client.close.assert_called_once()
    assert list(workspace_root.iterdir()) == []


def test_check_health_reports_server_version():
    client = MagicMock()
    client.version.return_value = {"Version": "27.1.0"}

    healthy, detail = DockerBackend(client_factory=lambda: client).check_health()

    assert healthy
    assert "27.1.0" in detail


def test_check_health_without_daemon():
    def _unavailable():
        raise docker.errors.DockerException("socket not found")

    healthy, detail = DockerBackend(client_factory=_unavailable).check_health()

    assert not healthy
    assert "not available" in detail
