from __future__ import annotations

# Evaluation orchestration.
#
# acquire workspace -> compile -> run every test in order -> aggregate -> release.
# A failed compile short-circuits the tests; timeouts and crashes are per-test
# outcomes and never stop the remaining tests. Only EngineError escapes.

import logging
import time
from dataclasses import dataclass
from pathlib import Path

from ..settings import Settings
from .comparison import outputs_match
from .compiler import Compiler, ToolchainConfig
from .docker_sandbox import DockerExecutor, DockerSandboxConfig
from .isolation import IsolationConfig
from .models import EvaluationReport, ExecutionOutcome, RunLimits, Submission, TestCase, TestOutcome, Workspace
from .sandbox import LocalExecutor, Sandbox
from .workspace import WorkspaceManager

logger = logging.getLogger(__name__)

EMPTY_COMPILE_ERROR = "compilation failed"


@dataclass(frozen=True)
class EvaluationOptions:
    limits: RunLimits
    # Budget for compile + all tests; None disables it.
    deadline_ms: int | None = None


def skipped_outcome(*, index: int, case: TestCase) -> TestOutcome:
    # Test never spawned because the request deadline ran out.
    return TestOutcome(
        index=index,
        input=case.input,
        expected=case.expected,
        actual="",
        passed=False,
        execution=ExecutionOutcome(stdout="", exit_code=None, elapsed_ms=0, timed_out=True),
    )


def judge(*, index: int, case: TestCase, execution: ExecutionOutcome) -> TestOutcome:
    # A non-zero exit is kept as data; the verdict is the output comparison.
    passed = not execution.timed_out and outputs_match(execution.stdout, case.expected)
    return TestOutcome(
        index=index,
        input=case.input,
        expected=case.expected,
        actual=execution.actual,
        passed=passed,
        execution=execution,
    )


class Evaluator:
    def __init__(
        self,
        *,
        workspaces: WorkspaceManager,
        compiler: Compiler,
        sandbox: Sandbox,
        options: EvaluationOptions,
    ):
        self.workspaces = workspaces
        self.compiler = compiler
        self.sandbox = sandbox
        self.options = options

    def evaluate(self, submission: Submission, *, limits: RunLimits | None = None) -> EvaluationReport:
        limits = limits or self.options.limits
        started = time.monotonic()
        with self.workspaces.scoped() as workspace:
            compile_outcome = self.compiler.compile(workspace, submission.code)
            if not compile_outcome.success:
                logger.info("compile failed workspace=%s timed_out=%s", workspace.id, compile_outcome.timed_out)
                return EvaluationReport(
                    compiled=False,
                    compile_error=compile_outcome.diagnostics or EMPTY_COMPILE_ERROR,
                    test_results=(),
                    total_execution_time_ms=0,
                    compile_time_ms=compile_outcome.elapsed_ms,
                )

            results, deadline_exceeded = self.run_cases(
                workspace=workspace,
                cases=submission.test_cases,
                limits=limits,
                started=started,
            )

        report = EvaluationReport(
            compiled=True,
            compile_error="",
            test_results=tuple(results),
            total_execution_time_ms=sum(r.execution.elapsed_ms for r in results),
            compile_time_ms=compile_outcome.elapsed_ms,
            deadline_exceeded=deadline_exceeded,
        )
        logger.info(
            "evaluation finished tests=%s passed=%s total_ms=%s",
            len(report.test_results),
            report.passed_count,
            report.total_execution_time_ms,
        )
        return report

    def remaining_ms(self, started: float) -> int | None:
        if self.options.deadline_ms is None:
            return None
        return self.options.deadline_ms - int((time.monotonic() - started) * 1000)

    def run_cases(
        self,
        *,
        workspace: Workspace,
        cases: tuple[TestCase, ...],
        limits: RunLimits,
        started: float,
    ) -> tuple[list[TestOutcome], bool]:
        results: list[TestOutcome] = []
        deadline_exceeded = False
        artifact = workspace.artifact_path
        for index, case in enumerate(cases, start=1):
            remaining = self.remaining_ms(started)
            if remaining is not None and remaining <= 0:
                if not deadline_exceeded:
                    logger.warning("request deadline exceeded workspace=%s at test=%s", workspace.id, index)
                deadline_exceeded = True
                results.append(skipped_outcome(index=index, case=case))
                continue

            case_limits = limits
            if remaining is not None and remaining < limits.time_limit_ms:
                case_limits = limits.with_time_limit(remaining)
            execution = self.sandbox.run(workspace, artifact, case, case_limits, index=index)
            results.append(judge(index=index, case=case, execution=execution))
        return results, deadline_exceeded


def default_limits(settings: Settings) -> RunLimits:
    return RunLimits(
        time_limit_ms=settings.default_time_limit_ms,
        memory_limit_mb=settings.default_memory_mb,
        max_output_bytes=settings.max_output_bytes,
        pids_limit=settings.pids_limit,
        cpus=settings.cpus,
    )


def isolation_config(settings: Settings) -> IsolationConfig:
    return IsolationConfig(
        mode=settings.local_isolation,
        bwrap_path=settings.bwrap_path,
        ro_paths=tuple(settings.sandbox_ro_paths),
    )


def build_evaluator(settings: Settings) -> Evaluator:
    isolation = isolation_config(settings)
    if settings.sandbox_executor == "docker":
        executor = DockerExecutor(
            DockerSandboxConfig(image=settings.sandbox_image, api_timeout_seconds=settings.docker_api_timeout_seconds)
        )
    else:
        executor = LocalExecutor(isolation=isolation)
    return Evaluator(
        workspaces=WorkspaceManager(
            root=Path(settings.workspace_root),
            source_filename=settings.source_filename,
            artifact_filename=settings.artifact_filename,
        ),
        compiler=Compiler(
            ToolchainConfig(
                compiler_path=settings.compiler_path,
                compiler_args=tuple(settings.compiler_args),
                timeout_ms=settings.compile_timeout_ms,
                max_diagnostics_bytes=settings.max_diagnostics_bytes,
                isolation=isolation,
            )
        ),
        sandbox=Sandbox(executor),
        options=EvaluationOptions(
            limits=default_limits(settings),
            deadline_ms=settings.request_deadline_ms if settings.request_deadline_ms > 0 else None,
        ),
    )
