from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from ..services.evaluation_pool import EvaluationPool
from ..services.models import EvaluationReport, RunLimits, Submission, TestCase
from ..settings import SETTINGS
from ..utils.errors import http_error


router = APIRouter(tags=["evaluate"])


def get_evaluation_pool() -> EvaluationPool:
    from ..services.singletons import EVALUATION_POOL  # noqa: WPS433

    if EVALUATION_POOL is None:
        raise RuntimeError("evaluation_pool_not_ready")
    return EVALUATION_POOL


class TestCaseIn(BaseModel):
    input: str
    expected: str


class EvaluateRequest(BaseModel):
    code: str
    test_cases: list[TestCaseIn]
    time_limit_ms: int | None = None
    memory_limit_mb: int | None = None


class TestResultOut(BaseModel):
    test_case: int
    input: str
    expected: str
    actual: str
    passed: bool


class EvaluateResponse(BaseModel):
    compiled: bool
    compile_error: str
    test_results: list[TestResultOut]
    total_execution_time_ms: int


def resolve_limits(body: EvaluateRequest) -> RunLimits:
    # Clamp limits.
    time_limit_ms = int(body.time_limit_ms or SETTINGS.default_time_limit_ms)
    time_limit_ms = max(1, min(time_limit_ms, SETTINGS.max_time_limit_ms))
    memory_limit_mb = int(body.memory_limit_mb or SETTINGS.default_memory_mb)
    memory_limit_mb = max(16, min(memory_limit_mb, SETTINGS.max_memory_mb))
    return RunLimits(
        time_limit_ms=time_limit_ms,
        memory_limit_mb=memory_limit_mb,
        max_output_bytes=SETTINGS.max_output_bytes,
        pids_limit=SETTINGS.pids_limit,
        cpus=SETTINGS.cpus,
    )


def to_submission(body: EvaluateRequest) -> Submission:
    if len(body.code.encode("utf-8")) > SETTINGS.max_code_bytes:
        http_error(400, f"Malformed request body: code exceeds {SETTINGS.max_code_bytes} bytes")
    if len(body.test_cases) > SETTINGS.max_test_cases:
        http_error(400, f"Malformed request body: at most {SETTINGS.max_test_cases} test cases are allowed")
    return Submission(
        code=body.code,
        test_cases=tuple(TestCase(input=c.input, expected=c.expected) for c in body.test_cases),
    )


def to_response(report: EvaluationReport) -> EvaluateResponse:
    return EvaluateResponse(
        compiled=report.compiled,
        compile_error=report.compile_error,
        test_results=[
            TestResultOut(
                test_case=outcome.index,
                input=outcome.input,
                expected=outcome.expected,
                actual=outcome.actual,
                passed=outcome.passed,
            )
            for outcome in report.test_results
        ],
        total_execution_time_ms=report.total_execution_time_ms,
    )


@router.post("/evaluate", response_model=EvaluateResponse)
def evaluate(body: EvaluateRequest, pool: EvaluationPool = Depends(get_evaluation_pool)):
    submission = to_submission(body)
    report = pool.evaluate(submission, limits=resolve_limits(body))
    return to_response(report)


@router.get("/health")
def health():
    return {"status": "ok"}
