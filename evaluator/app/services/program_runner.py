from __future__ import annotations

# Subprocess runner shared by the compiler and the local sandbox.
#
# Children start in their own session so the process group can be SIGKILLed
# on timeout. Descendants that call setsid() leave that group; only the pid
# namespace set up by isolation.py contains them. stdin/stdout/stderr are bound
# to workspace files, never to pipes, so large inputs/outputs cannot deadlock
# the parent.

import os
import resource
import signal
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..utils.errors import ProcessSpawnError
from .models import RunLimits

POLL_INTERVAL_S = 0.005
SANDBOX_ENV = {"PATH": "/usr/local/bin:/usr/bin:/bin", "LANG": "C.UTF-8", "HOME": "/nonexistent"}
MAX_OPEN_FILES = 64


@dataclass
class RunProgramState:
    # Mutable state used by run_program() and its helpers.
    reaped: bool = False
    exit_code: int | None = None
    signal_no: int | None = None
    peak_rss_kb: int | None = None
    timeout: bool = False
    reap_error: str | None = None


@dataclass(frozen=True)
class ProgramRun:
    exit_code: int
    signal_no: int | None
    timeout: bool
    time_ms: int
    memory_kb: int | None


def limits_preexec(limits: RunLimits | None):
    # Runs in the forked child right before exec.
    def _preexec() -> None:
        os.setsid()
        if limits is None:
            return
        cpu = limits.cpu_time_limit_s
        memory = limits.memory_limit_mb * 1024 * 1024
        resource.setrlimit(resource.RLIMIT_CPU, (cpu, cpu + 1))
        resource.setrlimit(resource.RLIMIT_AS, (memory, memory))
        resource.setrlimit(resource.RLIMIT_FSIZE, (limits.max_output_bytes, limits.max_output_bytes))
        resource.setrlimit(resource.RLIMIT_CORE, (0, 0))
        resource.setrlimit(resource.RLIMIT_NOFILE, (MAX_OPEN_FILES, MAX_OPEN_FILES))
        # Counted per uid; bounds fork bombs when the host has no pid cgroup for us.
        resource.setrlimit(resource.RLIMIT_NPROC, (limits.pids_limit, limits.pids_limit))

    return _preexec


def kill_process_group(proc: subprocess.Popen[bytes]) -> None:
    # Best-effort: prefer killing the process group; fall back to proc.kill().
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        return
    except PermissionError:
        proc.kill()


def sweep_process_group(pgid: int) -> None:
    # Kill background children left in the group after the leader was reaped.
    try:
        os.killpg(pgid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        return


def extract_peak_rss_kb(ru: Any) -> int:
    raw = getattr(ru, "ru_maxrss", 0) or 0
    if isinstance(raw, bool):
        return 0
    if isinstance(raw, (int, float)):
        return max(0, int(raw))
    return 0


def record_status(state: RunProgramState, status: int, ru: Any) -> None:
    state.reaped = True
    if os.WIFEXITED(status):
        state.exit_code = os.WEXITSTATUS(status)
    elif os.WIFSIGNALED(status):
        state.signal_no = os.WTERMSIG(status)
        state.exit_code = -int(state.signal_no)
    else:
        state.exit_code = 0
    state.peak_rss_kb = extract_peak_rss_kb(ru)


def try_reap_nohang(proc: subprocess.Popen[bytes], state: RunProgramState) -> None:
    # Read exit status and ru_maxrss without blocking.
    if state.reaped:
        return
    try:
        pid, status, ru = os.wait4(proc.pid, os.WNOHANG)
    except ChildProcessError:
        state.reaped = True
        if state.exit_code is None:
            state.exit_code = int(proc.returncode) if proc.returncode is not None else 0
        return
    except OSError as e:
        state.reap_error = str(e)
        return
    if pid == 0:
        return
    record_status(state, status, ru)


def reap_blocking(proc: subprocess.Popen[bytes], state: RunProgramState) -> None:
    if state.reaped:
        return
    try:
        _pid, status, ru = os.wait4(proc.pid, 0)
        record_status(state, status, ru)
    except (ChildProcessError, OSError) as e:
        state.reap_error = str(e)
        try:
            state.exit_code = int(proc.wait(timeout=1))
        except (subprocess.TimeoutExpired, OSError):
            state.exit_code = int(proc.returncode) if proc.returncode is not None else 0
        state.reaped = True


def spawn_program(
    argv: list[str],
    *,
    cwd: Path,
    stdin_path: Path | None,
    stdout_path: Path,
    stderr_path: Path | None,
    limits: RunLimits | None,
    env: dict[str, str] | None,
) -> subprocess.Popen[bytes]:
    stdin_file = stdin_path.open("rb") if stdin_path is not None else None
    stdout_file = stdout_path.open("wb")
    stderr_file = stderr_path.open("wb") if stderr_path is not None else None
    try:
        return subprocess.Popen(
            argv,
            stdin=stdin_file if stdin_file is not None else subprocess.DEVNULL,
            stdout=stdout_file,
            stderr=stderr_file if stderr_file is not None else subprocess.STDOUT,
            cwd=str(cwd),
            env=env,
            close_fds=True,
            preexec_fn=limits_preexec(limits),
        )
    except (OSError, subprocess.SubprocessError) as exc:
        raise ProcessSpawnError(f"spawn_failed:{argv[0]}: {type(exc).__name__}: {exc}") from exc
    finally:
        # The child holds its own copies of these descriptors.
        for fh in (stdin_file, stdout_file, stderr_file):
            if fh is not None:
                fh.close()


def run_program(
    argv: list[str],
    *,
    cwd: Path,
    stdout_path: Path,
    time_limit_ms: int,
    stdin_path: Path | None = None,
    stderr_path: Path | None = None,
    limits: RunLimits | None = None,
    env: dict[str, str] | None = None,
) -> ProgramRun:
    """Run ``argv`` once, killing its process group after ``time_limit_ms``.

    When ``stderr_path`` is None stderr is merged into ``stdout_path``.
    ``limits`` (when given) are applied as rlimits in the child.
    """

    start = time.monotonic()
    proc = spawn_program(
        argv,
        cwd=cwd,
        stdin_path=stdin_path,
        stdout_path=stdout_path,
        stderr_path=stderr_path,
        limits=limits,
        env=env,
    )

    state = RunProgramState()
    deadline = start + (time_limit_ms / 1000.0)
    while True:
        try_reap_nohang(proc, state)
        if state.reaped:
            break
        if time.monotonic() >= deadline:
            state.timeout = True
            kill_process_group(proc)
            break
        time.sleep(POLL_INTERVAL_S)

    end = time.monotonic()
    reap_blocking(proc, state)
    sweep_process_group(proc.pid)
    proc.returncode = state.exit_code
    return ProgramRun(
        exit_code=int(state.exit_code if state.exit_code is not None else 0),
        signal_no=state.signal_no,
        timeout=state.timeout,
        time_ms=int((end - start) * 1000),
        memory_kb=state.peak_rss_kb,
    )
