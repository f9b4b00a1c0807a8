from __future__ import annotations

# Bounded worker pool for evaluations.
#
# Each evaluation occupies one worker thread for its whole lifetime (compile +
# tests). The pool size caps concurrent compiler/program spawns on the host.
# The executor is the only shared mutable object; evaluations never share a
# workspace.

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor

from .evaluation import Evaluator
from .models import EvaluationReport, RunLimits, Submission

logger = logging.getLogger(__name__)


class EvaluationPool:
    def __init__(self, *, evaluator: Evaluator, max_workers: int):
        self.evaluator = evaluator
        self.max_workers = max(1, int(max_workers))
        self._executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="evaluation")
        self._lock = threading.Lock()
        self._in_flight = 0

    @property
    def in_flight(self) -> int:
        with self._lock:
            return self._in_flight

    def _run(self, submission: Submission, limits: RunLimits | None) -> EvaluationReport:
        with self._lock:
            self._in_flight += 1
        try:
            return self.evaluator.evaluate(submission, limits=limits)
        finally:
            with self._lock:
                self._in_flight -= 1

    def submit(self, submission: Submission, *, limits: RunLimits | None = None) -> Future[EvaluationReport]:
        return self._executor.submit(self._run, submission, limits)

    def evaluate(self, submission: Submission, *, limits: RunLimits | None = None) -> EvaluationReport:
        # Blocks the caller until a worker has finished this submission.
        return self.submit(submission, limits=limits).result()

    def shutdown(self, *, wait: bool = True) -> None:
        logger.info("shutting down evaluation pool")
        self._executor.shutdown(wait=wait)
