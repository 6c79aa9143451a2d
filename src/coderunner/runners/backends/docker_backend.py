"""
Docker isolation backend.

Each execution runs in a fresh container created from the profile's image:

- networking disabled (``network_mode="none"``)
- hard memory ceiling with swap disabled, CPU quota, process-count limit
- all capabilities dropped, ``no-new-privileges``, read-only root filesystem
  with a small ``/tmp`` tmpfs
- the staged source bind-mounted read-only as the only host input,
  working directory pinned to ``/app``

The container is its own PID namespace. Killing and force-removing it takes
down every process the program spawned in one step. That removal is how a
run is terminated, and it always happens on release.
"""

from __future__ import annotations

import threading
from typing import Any, Callable, Iterable

import docker
import docker.errors
import requests.exceptions

from coderunner.config.logging_config import get_logger
from coderunner.runners.backends.base import IsolationBackend, RunningProcess
from coderunner.runners.docker_ws import DockerStreamDemuxer
from coderunner.runners.errors import BackendError, LaunchError
from coderunner.runners.output import OutputSource
from coderunner.runners.profiles import ExecutionProfile
from coderunner.runners.workspace import Workspace

log = get_logger(__name__)

CONTAINER_WORKDIR = "/app"
MANAGED_LABEL = "coderunner.managed"

_DOCKER_FAILURES = (docker.errors.DockerException, OSError)


class DockerProcess(RunningProcess):
    """A started container plus the threads watching it."""

    def __init__(self, client: Any, container: Any, wait_poll_seconds: float = 30.0) -> None:
        self._client = client
        self._container = container
        self._wait_poll_seconds = wait_poll_seconds
        self._demuxer: DockerStreamDemuxer | None = None
        self._exit_code: int | None = None
        self._exited = threading.Event()
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._removed = False
        self._released = False
        self._wait_error: str | None = None

    @property
    def container_id(self) -> str | None:
        return getattr(self._container, "id", None)

    def attach_and_start(self) -> None:
        """Attach to the output streams, then start the container.

        Attaching first guarantees no early output is missed.
        """
        sock = self._container.attach_socket(
            params={"stdout": True, "stderr": True, "stream": True, "logs": True},
        )
        self._demuxer = DockerStreamDemuxer(getattr(sock, "_sock", sock))
        self._container.start()
        log.debug("container started: id=%s", self.container_id)
        threading.Thread(
            target=self._wait_for_exit,
            name=f"coderunner-wait-{(self.container_id or '')[:12]}",
            daemon=True,
        ).start()

    def output_sources(self) -> list[OutputSource]:
        if self._demuxer is None:
            return []
        return [self._demuxer.iter_messages()]

    def wait(self, timeout: float) -> int | None:
        if self._exited.wait(timeout):
            if self._wait_error is not None:
                raise BackendError(
                    f"lost track of container {self.container_id}: {self._wait_error}"
                )
            return self._exit_code
        return None

    def terminate(self) -> None:
        with self._lock:
            if self._removed:
                return
            self._removed = True
        self._stop.set()
        if not self._exited.is_set():
            log.debug("killing container: id=%s", self.container_id)
            try:
                self._container.kill()
            except _DOCKER_FAILURES as e:
                log.debug("container kill failed: %s", e)
        try:
            self._container.remove(force=True)
            log.debug("removed container: id=%s", self.container_id)
        except docker.errors.NotFound:
            pass
        except _DOCKER_FAILURES as e:
            log.warning("could not remove container %s: %s", self.container_id, e)

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self.terminate()
        if self._demuxer is not None:
            self._demuxer.close()
        try:
            self._client.close()
        except _DOCKER_FAILURES as e:
            log.debug("closing docker client failed: %s", e)

    @property
    def oom_killed(self) -> bool:
        if self._removed:
            return False
        try:
            self._container.reload()
            return bool(self._container.attrs.get("State", {}).get("OOMKilled", False))
        except _DOCKER_FAILURES as e:
            log.debug("could not inspect container state: %s", e)
            return False

    def _wait_for_exit(self) -> None:
        status = -1
        while not self._stop.is_set():
            try:
                res = self._container.wait(timeout=self._wait_poll_seconds)
            except requests.exceptions.RequestException as e:
                # Long-poll expired or the connection dropped; try again unless torn down
                log.debug("container wait interrupted: %s", e)
                if self._stop.wait(0.1):
                    break
                continue
            except docker.errors.DockerException as e:
                if self._stop.is_set():
                    log.debug("container wait ended by teardown: %s", e)
                else:
                    log.warning("container wait failed: id=%s: %s", self.container_id, e)
                    self._wait_error = str(e)
                break
            # Docker SDK returns {"StatusCode": int, ...}
            if isinstance(res, dict):
                status = int(res.get("StatusCode", -1))
            else:
                status = int(res)
            log.debug("container exit status: %s", status)
            break
        self._exit_code = status
        self._exited.set()


class DockerBackend(IsolationBackend):
    """Runs each execution in an ephemeral, locked-down Docker container."""

    name = "docker"
    isolated = True

    def __init__(
        self,
        mem_limit: str = "128m",
        nano_cpus: int = 500_000_000,
        pids_limit: int = 64,
        tmpfs_size: str = "16m",
        user: str | None = None,
        client_factory: Callable[[], Any] | None = None,
        wait_poll_seconds: float = 30.0,
    ) -> None:
        """Initialize the backend.

        Args:
            mem_limit: Docker memory limit (e.g. ``"128m"``, ``"1g"``). Swap is
                capped to the same value, so no extra swap is available.
            nano_cpus: CPU quota in Docker nano-CPUs (1e9 = 1 CPU).
            pids_limit: Maximum number of processes inside the container.
            tmpfs_size: Size of the writable ``/tmp`` tmpfs.
            user: Optional user to run as inside the container.
            client_factory: Callable returning a Docker client; defaults to
                ``docker.from_env``.
            wait_poll_seconds: Long-poll timeout for a single container wait call.
        """
        self.mem_limit = mem_limit
        self.nano_cpus = nano_cpus
        self.pids_limit = pids_limit
        self.tmpfs_size = tmpfs_size
        self.user = user
        self.client_factory = client_factory or docker.from_env
        self.wait_poll_seconds = wait_poll_seconds

    def launch(self, profile: ExecutionProfile, workspace: Workspace) -> RunningProcess:
        client = self._get_docker_client()
        try:
            self._ensure_image(client, profile.runtime_identity)
            container = self._create_container(client, profile, workspace)
        except _DOCKER_FAILURES as e:
            client.close()
            raise LaunchError(
                f"could not create container from {profile.runtime_identity}: {e}"
            ) from e

        process = DockerProcess(client, container, self.wait_poll_seconds)
        try:
            process.attach_and_start()
        except _DOCKER_FAILURES as e:
            process.release()
            raise LaunchError(f"could not start container: {e}") from e
        return process

    def prepare(self, profiles: Iterable[ExecutionProfile]) -> None:
        client = self._get_docker_client()
        try:
            for image in sorted({p.runtime_identity for p in profiles}):
                self._ensure_image(client, image)
        except _DOCKER_FAILURES as e:
            raise LaunchError(f"could not prepare images: {e}") from e
        finally:
            client.close()

    def check_health(self) -> tuple[bool, str]:
        try:
            client = self._get_docker_client()
        except LaunchError as e:
            return False, str(e)
        try:
            version = client.version().get("Version") or "unknown"
        except _DOCKER_FAILURES as e:
            return False, f"docker version check failed: {e}"
        finally:
            client.close()
        return True, f"docker daemon ready (server {version})"

    def container_options(self, profile: ExecutionProfile, workspace: Workspace) -> dict[str, Any]:
        """Return the keyword arguments passed to ``containers.create``."""
        return {
            "image": profile.runtime_identity,
            "command": list(profile.invocation_command),
            "network_disabled": True,
            "network_mode": "none",
            "mem_limit": self.mem_limit,
            "memswap_limit": self.mem_limit,
            "nano_cpus": self.nano_cpus,
            "pids_limit": self.pids_limit,
            "cap_drop": ["ALL"],
            "security_opt": ["no-new-privileges"],
            "read_only": True,
            "tmpfs": {"/tmp": f"rw,size={self.tmpfs_size},mode=1777"},
            "volumes": {
                str(workspace.staged_file): {
                    "bind": f"{CONTAINER_WORKDIR}/{profile.staged_file_name}",
                    "mode": "ro",
                }
            },
            "working_dir": CONTAINER_WORKDIR,
            "user": self.user,
            "labels": {MANAGED_LABEL: "true"},
            "stdin_open": False,
            "tty": False,
            "detach": True,
        }

    # ---- Helpers ----
    def _get_docker_client(self) -> Any:
        """Create and validate a Docker client.

        Raises:
            LaunchError: If the Docker daemon is unreachable.
        """
        try:
            client = self.client_factory()
        except _DOCKER_FAILURES as e:
            raise LaunchError(f"Docker daemon is not available: {e}") from e
        try:
            client.ping()
        except _DOCKER_FAILURES as e:
            client.close()
            raise LaunchError(f"Docker daemon is not available: {e}") from e
        return client

    def _ensure_image(self, client: Any, image: str) -> None:
        try:
            client.images.get(image)
        except docker.errors.ImageNotFound:
            log.info("pulling image: %s", image)
            client.images.pull(image)
            log.info("downloaded image: %s", image)

    def _create_container(
        self, client: Any, profile: ExecutionProfile, workspace: Workspace
    ) -> Any:
        options = self.container_options(profile, workspace)
        log.debug(
            "creating container: image=%s mem=%s cpus=%s pids=%s cmd=%s",
            options["image"],
            self.mem_limit,
            self.nano_cpus,
            self.pids_limit,
            options["command"],
        )
        container = client.containers.create(**options)
        log.debug("container created: id=%s", getattr(container, "id", "<no-id>"))
        return container
