from __future__ import annotations

# Container execution backend.
#
# - One short-lived container per test case; only the evaluation's own
#   workspace is bind-mounted, at /workspace.
# - No network, read-only rootfs, all capabilities dropped, memory/cpu/pids capped.
# - Containers run as host uid:gid so capture files written into the
#   workspace stay removable by the workspace manager.

import logging
import os
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import docker
from docker.types import Ulimit
from requests.exceptions import ConnectionError as RequestsConnectionError
from requests.exceptions import ReadTimeout

from ..utils.errors import ProcessSpawnError
from .models import RunLimits, Workspace
from .program_runner import MAX_OPEN_FILES, ProgramRun

logger = logging.getLogger(__name__)

CONTAINER_WORKDIR = "/workspace"
# Redirections use positional parameters; no submission text is ever part of the script.
REDIRECT_SCRIPT = 'exec "$0" < "$1" > "$2" 2> "$3"'

_IMAGE_PULL_LOCK = threading.Lock()
_READY_IMAGES: set[str] = set()


@dataclass(frozen=True)
class DockerSandboxConfig:
    image: str
    api_timeout_seconds: int = 120


def docker_client(config: DockerSandboxConfig) -> docker.DockerClient:
    return docker.from_env(timeout=config.api_timeout_seconds)


def ensure_image_ready(*, client: Any, image: str) -> None:
    # Pull-once per process.
    if image in _READY_IMAGES:
        return

    with _IMAGE_PULL_LOCK:
        if image in _READY_IMAGES:
            return
        try:
            client.images.get(image)
        except docker.errors.ImageNotFound:
            client.images.pull(image)
        _READY_IMAGES.add(image)


def container_path(workspace: Workspace, host_path: Path) -> str:
    return f"{CONTAINER_WORKDIR}/{host_path.relative_to(workspace.root).as_posix()}"


def build_run_command(workspace: Workspace, *, artifact: Path, index: int) -> list[str]:
    return [
        "sh",
        "-c",
        REDIRECT_SCRIPT,
        container_path(workspace, artifact),
        container_path(workspace, workspace.input_path(index)),
        container_path(workspace, workspace.stdout_path(index)),
        container_path(workspace, workspace.stderr_path(index)),
    ]


def create_test_container(*, client: Any, image: str, workspace: Workspace, command: list[str], limits: RunLimits, index: int) -> Any:
    ensure_image_ready(client=client, image=image)
    user = f"{os.getuid()}:{os.getgid()}"
    return client.containers.create(
        image=image,
        name=f"codecoach_{workspace.id}_t{index}",
        command=command,
        working_dir=CONTAINER_WORKDIR,
        user=user,
        volumes={str(workspace.root.resolve()): {"bind": CONTAINER_WORKDIR, "mode": "rw"}},
        # No network access for submissions.
        network_mode="none",
        read_only=True,
        tmpfs={"/tmp": "rw,size=16m,noexec"},
        nano_cpus=int(limits.cpus * 1_000_000_000),
        mem_limit=f"{limits.memory_limit_mb}m",
        memswap_limit=f"{limits.memory_limit_mb}m",
        pids_limit=limits.pids_limit,
        cap_drop=["ALL"],
        security_opt=["no-new-privileges"],
        ulimits=[
            Ulimit(name="nofile", soft=MAX_OPEN_FILES, hard=MAX_OPEN_FILES),
            Ulimit(name="fsize", soft=limits.max_output_bytes, hard=limits.max_output_bytes),
            Ulimit(name="cpu", soft=limits.cpu_time_limit_s, hard=limits.cpu_time_limit_s + 1),
            Ulimit(name="core", soft=0, hard=0),
        ],
        labels={"codecoach.workspace_id": workspace.id, "codecoach.test_case": str(index)},
        detach=True,
    )


def remove_container(container: Any) -> None:
    try:
        container.remove(force=True)
    except docker.errors.APIError as exc:
        logger.warning("remove container failed id=%s: %s", getattr(container, "id", "?"), exc)


def container_oom_killed(container: Any) -> bool:
    try:
        container.reload()
    except docker.errors.APIError:
        return False
    state = (getattr(container, "attrs", None) or {}).get("State") or {}
    return bool(state.get("OOMKilled"))


class DockerExecutor:
    """Run one test case inside a throwaway container."""

    def __init__(self, config: DockerSandboxConfig, *, client: Any | None = None):
        self.config = config
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = docker_client(self.config)
        return self._client

    def execute(self, *, workspace: Workspace, artifact: Path, index: int, limits: RunLimits) -> ProgramRun:
        command = build_run_command(workspace, artifact=artifact, index=index)
        try:
            container = create_test_container(
                client=self.client,
                image=self.config.image,
                workspace=workspace,
                command=command,
                limits=limits,
                index=index,
            )
        except docker.errors.DockerException as exc:
            raise ProcessSpawnError(f"container_create_failed: {exc}") from exc

        timeout = False
        exit_code: int | None = None
        try:
            start = time.monotonic()
            try:
                container.start()
            except docker.errors.APIError as exc:
                raise ProcessSpawnError(f"container_start_failed: {exc}") from exc
            try:
                result = container.wait(timeout=max(0.001, limits.time_limit_ms / 1000.0))
                exit_code = int((result or {}).get("StatusCode", 0))
            except (ReadTimeout, RequestsConnectionError):
                timeout = True
                try:
                    container.kill()
                except docker.errors.APIError as exc:
                    logger.warning("kill container failed workspace=%s: %s", workspace.id, exc)
            except docker.errors.APIError as exc:
                raise ProcessSpawnError(f"container_wait_failed: {exc}") from exc
            end = time.monotonic()
            oom = False if timeout else container_oom_killed(container)
        finally:
            remove_container(container)

        signal_no: int | None = None
        if exit_code is not None and exit_code > 128:
            signal_no = exit_code - 128
        if oom:
            logger.info("container OOM killed workspace=%s test=%s", workspace.id, index)
        return ProgramRun(
            exit_code=exit_code if exit_code is not None else -9,
            signal_no=9 if timeout else signal_no,
            timeout=timeout,
            time_ms=int((end - start) * 1000),
            memory_kb=None,
        )
