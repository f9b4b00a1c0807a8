from __future__ import annotations

# Execution sandbox: run a compiled artifact against one test case.
#
# Input is written to a workspace file and bound to stdin; stdout/stderr go to
# per-test capture files. Timeouts and crashes are reported as data on the
# ExecutionOutcome; only spawn failures raise.

import logging
import signal
from pathlib import Path
from typing import Protocol

from .comparison import decode_output
from .isolation import IsolationConfig, ensure_isolation_ready, isolate_command, normalize_isolated_run
from .models import ExecutionOutcome, RunLimits, TestCase, Workspace
from .program_runner import SANDBOX_ENV, ProgramRun, run_program
from .workspace import read_bytes, write_text

logger = logging.getLogger(__name__)

MAX_STDERR_BYTES = 65536


class Executor(Protocol):
    def execute(self, *, workspace: Workspace, artifact: Path, index: int, limits: RunLimits) -> ProgramRun: ...


class LocalExecutor:
    """Run the artifact as a host child process under rlimits, inside bwrap unless disabled."""

    def __init__(self, *, isolation: IsolationConfig | None = None):
        self.isolation = isolation or IsolationConfig()

    def build_command(self, workspace: Workspace, artifact: Path) -> list[str]:
        return isolate_command(self.isolation, [str(artifact)], bind_root=workspace.root)

    def execute(self, *, workspace: Workspace, artifact: Path, index: int, limits: RunLimits) -> ProgramRun:
        ensure_isolation_ready(self.isolation)
        run = run_program(
            self.build_command(workspace, artifact),
            cwd=workspace.root,
            stdin_path=workspace.input_path(index),
            stdout_path=workspace.stdout_path(index),
            stderr_path=workspace.stderr_path(index),
            time_limit_ms=limits.time_limit_ms,
            limits=limits,
            env=dict(SANDBOX_ENV),
        )
        return normalize_isolated_run(self.isolation, run)


class Sandbox:
    def __init__(self, executor: Executor):
        self.executor = executor

    def run(
        self,
        workspace: Workspace,
        artifact: Path,
        case: TestCase,
        limits: RunLimits,
        *,
        index: int = 1,
    ) -> ExecutionOutcome:
        write_text(workspace.input_path(index), case.input)

        run = self.executor.execute(workspace=workspace, artifact=artifact, index=index, limits=limits)

        raw_stdout = read_bytes(workspace.stdout_path(index), max_bytes=limits.max_output_bytes + 1)
        raw_stderr = read_bytes(workspace.stderr_path(index), max_bytes=MAX_STDERR_BYTES)
        output_limit_exceeded = run.signal_no == signal.SIGXFSZ or len(raw_stdout) > limits.max_output_bytes
        crashed = not run.timeout and run.exit_code != 0

        if run.timeout:
            logger.info("test timed out workspace=%s test=%s limit_ms=%s", workspace.id, index, limits.time_limit_ms)
        elif crashed:
            logger.info(
                "test crashed workspace=%s test=%s exit_code=%s signal=%s",
                workspace.id,
                index,
                run.exit_code,
                run.signal_no,
            )

        return ExecutionOutcome(
            stdout=decode_output(raw_stdout[: limits.max_output_bytes]),
            stderr=decode_output(raw_stderr),
            exit_code=run.exit_code,
            elapsed_ms=run.time_ms,
            timed_out=run.timeout,
            crashed=crashed,
            signal=run.signal_no,
            memory_kb=run.memory_kb,
            output_limit_exceeded=output_limit_exceeded,
        )
