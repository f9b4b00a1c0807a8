from __future__ import annotations

# Value objects shared by the workspace/compiler/sandbox/evaluation services.

from dataclasses import dataclass, field
from pathlib import Path

from .comparison import strip_trailing_newline


@dataclass(frozen=True)
class TestCase:
    __test__ = False  # keep pytest from collecting this as a test class

    input: str
    expected: str


@dataclass(frozen=True)
class Submission:
    code: str
    test_cases: tuple[TestCase, ...] = ()
    language: str = "cpp"


@dataclass(frozen=True)
class RunLimits:
    time_limit_ms: int
    memory_limit_mb: int
    max_output_bytes: int
    pids_limit: int = 64
    cpus: float = 1.0

    @property
    def cpu_time_limit_s(self) -> int:
        # CPU ceiling sits one second above the wall clock so the wall timeout wins.
        return max(1, -(-self.time_limit_ms // 1000) + 1)

    def with_time_limit(self, time_limit_ms: int) -> RunLimits:
        return RunLimits(
            time_limit_ms=max(1, int(time_limit_ms)),
            memory_limit_mb=self.memory_limit_mb,
            max_output_bytes=self.max_output_bytes,
            pids_limit=self.pids_limit,
            cpus=self.cpus,
        )


@dataclass(frozen=True)
class Workspace:
    id: str
    root: Path
    source_path: Path
    artifact_path: Path

    def input_path(self, index: int) -> Path:
        return self.root / f"input_{index}.txt"

    def stdout_path(self, index: int) -> Path:
        return self.root / f"stdout_{index}.txt"

    def stderr_path(self, index: int) -> Path:
        return self.root / f"stderr_{index}.txt"


@dataclass(frozen=True)
class CompileOutcome:
    success: bool
    diagnostics: str
    exit_code: int | None = None
    timed_out: bool = False
    elapsed_ms: int = 0


@dataclass(frozen=True)
class ExecutionOutcome:
    stdout: str
    exit_code: int | None
    elapsed_ms: int
    timed_out: bool = False
    crashed: bool = False
    stderr: str = ""
    signal: int | None = None
    memory_kb: int | None = None
    output_limit_exceeded: bool = False

    @property
    def actual(self) -> str:
        return strip_trailing_newline(self.stdout)


@dataclass(frozen=True)
class TestOutcome:
    __test__ = False

    index: int
    input: str
    expected: str
    actual: str
    passed: bool
    execution: ExecutionOutcome


@dataclass(frozen=True)
class EvaluationReport:
    compiled: bool
    compile_error: str = ""
    test_results: tuple[TestOutcome, ...] = field(default_factory=tuple)
    total_execution_time_ms: int = 0
    # Compile time is kept out of total_execution_time_ms.
    compile_time_ms: int = 0
    deadline_exceeded: bool = False

    @property
    def passed_count(self) -> int:
        return sum(1 for outcome in self.test_results if outcome.passed)

    @property
    def all_passed(self) -> bool:
        return self.compiled and all(outcome.passed for outcome in self.test_results)
