"""Build a submission into an executable inside its workspace.

The toolchain is always invoked with an argument vector; submission text
only ever reaches the compiler as a file on disk. Success is decided by the
compiler's exit status, so warnings on stdout/stderr do not fail a build.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from .isolation import IsolationConfig, ensure_isolation_ready, isolate_command
from .models import CompileOutcome, Workspace
from .program_runner import run_program
from .workspace import read_bytes, write_text

logger = logging.getLogger(__name__)

COMPILE_LOG_NAME = "compile.log"
TRUNCATION_MARKER = "\n... [diagnostics truncated]"


@dataclass(frozen=True)
class ToolchainConfig:
    compiler_path: str
    compiler_args: tuple[str, ...] = ()
    timeout_ms: int = 20000
    max_diagnostics_bytes: int = 65536
    isolation: IsolationConfig = IsolationConfig()


def build_compile_command(config: ToolchainConfig, *, source_path: Path, artifact_path: Path) -> list[str]:
    return [config.compiler_path, *config.compiler_args, str(source_path), "-o", str(artifact_path)]


def decode_diagnostics(data: bytes, *, max_bytes: int) -> str:
    if len(data) > max_bytes:
        return data[:max_bytes].decode("utf-8", errors="replace") + TRUNCATION_MARKER
    return data.decode("utf-8", errors="replace")


class Compiler:
    def __init__(self, config: ToolchainConfig):
        self.config = config

    def compile(self, workspace: Workspace, source: str) -> CompileOutcome:
        write_text(workspace.source_path, source)
        log_path = workspace.root / COMPILE_LOG_NAME
        cmd = build_compile_command(self.config, source_path=workspace.source_path, artifact_path=workspace.artifact_path)
        # The source may #include arbitrary paths, so the compiler only sees its own workspace too.
        isolation = self.config.isolation
        if os.path.isabs(self.config.compiler_path):
            isolation = isolation.with_ro_paths(str(Path(self.config.compiler_path).parent))
        ensure_isolation_ready(isolation)
        cmd = isolate_command(isolation, cmd, bind_root=workspace.root)

        run = run_program(
            cmd,
            cwd=workspace.root,
            stdout_path=log_path,
            time_limit_ms=self.config.timeout_ms,
            env=os.environ.copy(),
        )
        diagnostics = decode_diagnostics(
            read_bytes(log_path, max_bytes=self.config.max_diagnostics_bytes + 1),
            max_bytes=self.config.max_diagnostics_bytes,
        )

        if run.timeout:
            logger.warning("compilation timed out workspace=%s timeout_ms=%s", workspace.id, self.config.timeout_ms)
            message = f"compilation timed out after {self.config.timeout_ms} ms"
            return CompileOutcome(
                success=False,
                diagnostics=f"{diagnostics.rstrip()}\n{message}".lstrip("\n"),
                exit_code=None,
                timed_out=True,
                elapsed_ms=run.time_ms,
            )

        success = run.exit_code == 0 and workspace.artifact_path.is_file()
        if run.exit_code == 0 and not success:
            diagnostics = diagnostics or "compiler exited successfully but produced no executable"
        elif not success and not diagnostics.strip():
            diagnostics = f"compiler exited with status {run.exit_code}"

        logger.info(
            "compilation finished workspace=%s success=%s exit_code=%s elapsed_ms=%s",
            workspace.id,
            success,
            run.exit_code,
            run.time_ms,
        )
        return CompileOutcome(
            success=success,
            diagnostics=diagnostics,
            exit_code=run.exit_code,
            timed_out=False,
            elapsed_ms=run.time_ms,
        )
