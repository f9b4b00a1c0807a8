from __future__ import annotations

import time
from pathlib import Path

import pytest

from evaluator.app.services.models import RunLimits, Submission, TestCase
from evaluator.app.utils.errors import ProcessSpawnError, WorkspaceError
from evaluator.tests import programs


def _submission(code: str, *cases: tuple[str, str]) -> Submission:
    return Submission(code=code, test_cases=tuple(TestCase(input=i, expected=e) for i, e in cases))


def test_hello_scenario(make_evaluator):
    report = make_evaluator().evaluate(_submission(programs.HELLO, ("", "Hello")))
    assert report.compiled
    assert report.compile_error == ""
    assert len(report.test_results) == 1
    outcome = report.test_results[0]
    assert outcome.index == 1
    assert outcome.passed
    assert outcome.actual == "Hello"


def test_syntax_error_scenario(make_evaluator):
    report = make_evaluator().evaluate(_submission(programs.SYNTAX_ERROR, ("", "never")))
    assert not report.compiled
    assert report.compile_error
    assert report.test_results == ()
    assert report.total_execution_time_ms == 0


def test_sum_scenario(make_evaluator):
    report = make_evaluator().evaluate(_submission(programs.SUM, ("2 3", "5"), ("2 3", "6")))
    first, second = report.test_results
    assert first.passed and first.actual == "5"
    assert not second.passed and second.actual == "5"
    assert [r.index for r in report.test_results] == [1, 2]


def test_no_test_cases_only_reflects_build(make_evaluator):
    ok = make_evaluator().evaluate(_submission(programs.HELLO))
    assert ok.compiled and ok.test_results == ()
    bad = make_evaluator().evaluate(_submission(programs.SYNTAX_ERROR))
    assert not bad.compiled and bad.test_results == ()


def test_compile_warnings_still_compile(make_evaluator):
    report = make_evaluator().evaluate(_submission(programs.WARNING, ("", "Hello")))
    assert report.compiled
    assert report.compile_error == ""
    assert report.test_results[0].passed


def test_trailing_newline_rules(make_evaluator):
    evaluator = make_evaluator()
    assert evaluator.evaluate(_submission(programs.HELLO, ("", "Hello\n"))).test_results[0].passed
    two = evaluator.evaluate(_submission(programs.TWO_NEWLINES, ("", "5"), ("", "5\n\n")))
    assert [r.passed for r in two.test_results] == [False, True]
    assert two.test_results[0].actual == "5\n"
    assert not evaluator.evaluate(_submission(programs.TRAILING_SPACE, ("", "5"))).test_results[0].passed
    assert evaluator.evaluate(_submission(programs.CRLF, ("", "5"))).test_results[0].passed


def test_infinite_loop_times_out_and_later_tests_run(make_evaluator):
    evaluator = make_evaluator(time_limit_ms=500)
    start = time.monotonic()
    report = evaluator.evaluate(_submission(programs.LOOP_ON_INPUT, ("loop\n", "loop"), ("7\n", "7")))
    elapsed = time.monotonic() - start

    looping, normal = report.test_results
    assert looping.execution.timed_out
    assert not looping.passed
    assert normal.passed
    assert not normal.execution.timed_out
    assert elapsed < 0.5 + 3.0


def test_crash_is_recorded_and_does_not_abort(make_evaluator):
    report = make_evaluator().evaluate(_submission(programs.CRASH, ("", "partial"), ("", "other")))
    assert len(report.test_results) == 2
    for outcome in report.test_results:
        assert outcome.execution.crashed
        assert outcome.execution.exit_code == 3
        assert outcome.actual == "partial"
    # The verdict follows the output; the non-zero exit stays on the execution record.
    assert [r.passed for r in report.test_results] == [True, False]


def test_correct_output_with_nonzero_exit_passes(make_evaluator):
    report = make_evaluator().evaluate(_submission("#!/bin/sh\nread a b\necho $((a + b))\nexit 1\n", ("2 3", "5")))
    outcome = report.test_results[0]
    assert outcome.execution.crashed
    assert outcome.actual == "5"
    assert outcome.passed


def test_total_time_excludes_compile_time(make_evaluator):
    report = make_evaluator().evaluate(_submission(programs.SUM, ("1 1", "2"), ("2 2", "4")))
    assert report.total_execution_time_ms == sum(r.execution.elapsed_ms for r in report.test_results)
    assert report.compile_time_ms >= 0


def test_same_submission_twice_is_deterministic(make_evaluator):
    evaluator = make_evaluator()
    submission = _submission(programs.SUM, ("1 2", "3"), ("5 5", "11"), ("0 0", "0"))
    first = evaluator.evaluate(submission)
    second = evaluator.evaluate(submission)
    assert [r.passed for r in first.test_results] == [r.passed for r in second.test_results] == [True, False, True]


def test_workspaces_are_released_on_every_path(make_evaluator, tmp_path: Path):
    root = tmp_path / "released"
    evaluator = make_evaluator(workspace_root=root, time_limit_ms=300)
    evaluator.evaluate(_submission(programs.HELLO, ("", "Hello")))
    evaluator.evaluate(_submission(programs.SYNTAX_ERROR, ("", "x")))
    evaluator.evaluate(_submission(programs.LOOP_ON_INPUT, ("loop\n", "")))
    evaluator.evaluate(_submission(programs.CRASH, ("", "")))
    assert list(root.iterdir()) == []


def test_unexpected_error_still_releases_workspace(make_evaluator, tmp_path: Path, monkeypatch):
    root = tmp_path / "boom"
    evaluator = make_evaluator(workspace_root=root)

    def explode(*args, **kwargs):
        raise ProcessSpawnError("spawn_failed: simulated")

    monkeypatch.setattr(evaluator.sandbox, "run", explode)
    with pytest.raises(ProcessSpawnError):
        evaluator.evaluate(_submission(programs.HELLO, ("", "Hello")))
    assert list(root.iterdir()) == []


def test_workspace_failure_aborts_evaluation(make_evaluator, tmp_path: Path):
    blocker = tmp_path / "file"
    blocker.write_text("x", encoding="utf-8")
    evaluator = make_evaluator(workspace_root=blocker)
    with pytest.raises(WorkspaceError):
        evaluator.evaluate(_submission(programs.HELLO, ("", "Hello")))


def test_request_deadline_skips_remaining_tests(make_evaluator):
    evaluator = make_evaluator(time_limit_ms=2000, deadline_ms=600)
    report = evaluator.evaluate(
        _submission(programs.LOOP_ON_INPUT, ("loop\n", ""), ("1\n", "1"), ("2\n", "2"))
    )
    assert report.deadline_exceeded
    assert len(report.test_results) == 3
    assert report.test_results[0].execution.timed_out
    assert report.test_results[0].execution.elapsed_ms < 2000
    for skipped in report.test_results[1:]:
        assert skipped.execution.timed_out
        assert not skipped.passed


def test_per_request_limits_override_defaults(make_evaluator):
    evaluator = make_evaluator(time_limit_ms=5000)
    limits = RunLimits(time_limit_ms=300, memory_limit_mb=256, max_output_bytes=1_048_576)
    start = time.monotonic()
    report = evaluator.evaluate(_submission(programs.LOOP_ON_INPUT, ("loop\n", "")), limits=limits)
    assert report.test_results[0].execution.timed_out
    assert time.monotonic() - start < 3
