from __future__ import annotations

import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from evaluator.tests.programs import write_fake_compiler


def _init_test_env() -> Path:
    """
    Initialize isolated test env before importing evaluator modules.

    This must run at module import time, because evaluator settings and the
    evaluation pool are created during module import and read env vars only once.
    """

    root = Path(tempfile.mkdtemp(prefix="codecoach-pytest-"))
    compiler = write_fake_compiler(root / "toolchain")

    os.environ["CODECOACH_WORKSPACE_ROOT"] = str(root / "workspaces")
    os.environ["CODECOACH_COMPILER_PATH"] = str(compiler)
    os.environ["CODECOACH_COMPILER_ARGS"] = "[]"
    os.environ["CODECOACH_SANDBOX_EXECUTOR"] = "local"
    # Test programs are trusted shell scripts; bwrap is exercised in test_isolation.py.
    os.environ["CODECOACH_LOCAL_ISOLATION"] = "none"
    os.environ.setdefault("CODECOACH_MAX_CONCURRENT_EVALUATIONS", "8")
    os.environ.setdefault("CODECOACH_DEFAULT_TIME_LIMIT_MS", "2000")
    os.environ.setdefault("CODECOACH_LOG_LEVEL", "WARNING")
    return root


TEST_ROOT = _init_test_env()


def pytest_sessionstart(session: pytest.Session) -> None:
    started_at = datetime.now(tz=timezone.utc).isoformat(timespec="seconds")
    print(f"[codecoach-test] status=running started_at={started_at}", flush=True)


def pytest_sessionfinish(session: pytest.Session, exitstatus: int) -> None:
    finished_at = datetime.now(tz=timezone.utc).isoformat(timespec="seconds")
    result = "passed" if exitstatus == 0 else "failed"
    print(f"[codecoach-test] status=finished result={result} exit_code={exitstatus} finished_at={finished_at}", flush=True)


@pytest.fixture(scope="session")
def fake_compiler() -> Path:
    return Path(os.environ["CODECOACH_COMPILER_PATH"])


@pytest.fixture
def make_evaluator(tmp_path: Path, fake_compiler: Path):
    from evaluator.app.services.compiler import Compiler, ToolchainConfig  # noqa: WPS433
    from evaluator.app.services.evaluation import EvaluationOptions, Evaluator  # noqa: WPS433
    from evaluator.app.services.isolation import UNISOLATED  # noqa: WPS433
    from evaluator.app.services.models import RunLimits  # noqa: WPS433
    from evaluator.app.services.sandbox import LocalExecutor, Sandbox  # noqa: WPS433
    from evaluator.app.services.workspace import WorkspaceManager  # noqa: WPS433

    def _make(
        *,
        time_limit_ms: int = 2000,
        deadline_ms: int | None = None,
        compile_timeout_ms: int = 10000,
        max_output_bytes: int = 1_048_576,
        workspace_root: Path | None = None,
    ) -> Evaluator:
        return Evaluator(
            workspaces=WorkspaceManager(root=workspace_root or (tmp_path / "workspaces")),
            compiler=Compiler(
                ToolchainConfig(compiler_path=str(fake_compiler), timeout_ms=compile_timeout_ms, isolation=UNISOLATED)
            ),
            sandbox=Sandbox(LocalExecutor(isolation=UNISOLATED)),
            options=EvaluationOptions(
                limits=RunLimits(time_limit_ms=time_limit_ms, memory_limit_mb=256, max_output_bytes=max_output_bytes),
                deadline_ms=deadline_ms,
            ),
        )

    return _make


@pytest.fixture(scope="session")
def client():
    from evaluator.app.main import app  # noqa: WPS433

    return TestClient(app)
