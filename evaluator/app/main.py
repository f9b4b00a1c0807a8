from __future__ import annotations

import logging

from fastapi import FastAPI

from .exceptions import install_exception_handlers
from .routers import evaluate
from .services.evaluation import build_evaluator
from .services.evaluation_pool import EvaluationPool
from .settings import SETTINGS


def configure_logging() -> None:
    logging.basicConfig(
        level=str(SETTINGS.log_level or "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def create_app() -> FastAPI:
    configure_logging()
    SETTINGS.ensure_dirs()

    app = FastAPI(title="codecoach-evaluator", version="0.1.0")
    install_exception_handlers(app)

    app.include_router(evaluate.router)

    return app


app = create_app()


# Singletons
from .services import singletons  # noqa: WPS433,E402

EVALUATION_POOL = EvaluationPool(
    evaluator=build_evaluator(SETTINGS),
    max_workers=SETTINGS.max_concurrent_evaluations,
)
singletons.EVALUATION_POOL = EVALUATION_POOL
