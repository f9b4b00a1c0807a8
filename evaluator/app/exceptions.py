from __future__ import annotations

import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from starlette.responses import PlainTextResponse

from .utils.errors import EngineError

logger = logging.getLogger(__name__)


def describe_validation_errors(errors: list[dict]) -> str:
    parts: list[str] = []
    for err in errors:
        loc = ".".join(str(p) for p in err.get("loc") or () if p != "body")
        msg = str(err.get("msg") or "invalid value")
        parts.append(f"{loc}: {msg}" if loc else msg)
    return "; ".join(parts) or "invalid request"


def install_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(HTTPException)
    async def http_exception_handler(_: Request, exc: HTTPException):  # type: ignore[override]
        return PlainTextResponse(str(exc.detail), status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(_: Request, exc: RequestValidationError):  # type: ignore[override]
        return PlainTextResponse(
            f"Malformed request body: {describe_validation_errors(list(exc.errors()))}",
            status_code=400,
        )

    @app.exception_handler(EngineError)
    async def engine_exception_handler(_: Request, exc: EngineError):  # type: ignore[override]
        logger.error("evaluation aborted code=%s: %s", exc.code, exc.message)
        return PlainTextResponse(f"Internal server error: {exc.message}", status_code=500)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(_: Request, exc: Exception):  # type: ignore[override]
        logger.error("unhandled error during evaluation: %s", exc, exc_info=exc)
        return PlainTextResponse(f"Internal server error: {exc}", status_code=500)
