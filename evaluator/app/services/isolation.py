from __future__ import annotations

# Host-side isolation for locally spawned toolchain and submission processes.
#
# Runs go through bubblewrap: fresh user/pid/net/ipc/uts namespaces, an empty
# root holding read-only system directories, and only the evaluation's own
# workspace bound read-write at its host path (argv and cwd stay unchanged).
# bwrap's inner child is pid 1 of the new pid namespace and dies with its
# parent, so killing the spawned bwrap tears down every descendant, including
# ones that left the process group with setsid().
#
# Isolation is on by default. If bwrap is missing or cannot create namespaces
# on this host, runs fail with ProcessSpawnError instead of running bare.

import dataclasses
import logging
import shutil
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from ..utils.errors import ProcessSpawnError
from .program_runner import ProgramRun

logger = logging.getLogger(__name__)

SYSTEM_RO_PATHS = (
    "/usr",
    "/bin",
    "/sbin",
    "/lib",
    "/lib32",
    "/lib64",
    "/etc/alternatives",
    "/etc/ld.so.cache",
)
READY_CHECK_TIMEOUT_S = 10

_READY_LOCK = threading.Lock()
_READY_BWRAP: set[str] = set()


@dataclass(frozen=True)
class IsolationConfig:
    mode: Literal["bwrap", "none"] = "bwrap"
    bwrap_path: str = "bwrap"
    # Extra host paths exposed read-only (e.g. a toolchain outside /usr).
    ro_paths: tuple[str, ...] = ()

    @property
    def enabled(self) -> bool:
        return self.mode != "none"

    def with_ro_paths(self, *paths: str) -> IsolationConfig:
        extra = tuple(p for p in paths if p and p not in self.ro_paths)
        return dataclasses.replace(self, ro_paths=self.ro_paths + extra)


UNISOLATED = IsolationConfig(mode="none")


def bwrap_prefix(config: IsolationConfig, *, bind_root: Path | None) -> list[str]:
    cmd = [config.bwrap_path, "--unshare-all", "--die-with-parent", "--new-session"]
    for path in (*SYSTEM_RO_PATHS, *config.ro_paths):
        cmd += ["--ro-bind-try", path, path]
    cmd += ["--dev", "/dev", "--tmpfs", "/tmp"]
    if bind_root is not None:
        # Mounted at the path callers use, so unresolved argv paths still work.
        cmd += ["--bind", str(bind_root.resolve()), str(bind_root), "--chdir", str(bind_root)]
    cmd.append("--")
    return cmd


def isolate_command(config: IsolationConfig, argv: list[str], *, bind_root: Path) -> list[str]:
    if not config.enabled:
        return list(argv)
    return [*bwrap_prefix(config, bind_root=bind_root), *argv]


def ensure_isolation_ready(config: IsolationConfig) -> None:
    # Checked once per process and bwrap binary.
    if not config.enabled or config.bwrap_path in _READY_BWRAP:
        return

    with _READY_LOCK:
        if config.bwrap_path in _READY_BWRAP:
            return
        if shutil.which(config.bwrap_path) is None:
            raise ProcessSpawnError(f"sandbox_unavailable: {config.bwrap_path} not found")
        try:
            proc = subprocess.run(
                [*bwrap_prefix(config, bind_root=None), "true"],
                stdin=subprocess.DEVNULL,
                capture_output=True,
                timeout=READY_CHECK_TIMEOUT_S,
                check=False,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            raise ProcessSpawnError(f"sandbox_unavailable: {type(exc).__name__}: {exc}") from exc
        if proc.returncode != 0:
            detail = proc.stderr.decode("utf-8", errors="replace").strip() or f"exit {proc.returncode}"
            raise ProcessSpawnError(f"sandbox_unavailable: {detail}")
        logger.info("bwrap isolation ready path=%s", config.bwrap_path)
        _READY_BWRAP.add(config.bwrap_path)


def normalize_isolated_run(config: IsolationConfig, run: ProgramRun) -> ProgramRun:
    # bwrap reports a signalled child as exit 128+N.
    if not config.enabled or run.timeout or run.signal_no is not None or run.exit_code <= 128:
        return run
    return dataclasses.replace(run, signal_no=run.exit_code - 128)
