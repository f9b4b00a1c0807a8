#
# Error helpers.
#
from __future__ import annotations

from fastapi import HTTPException


class EngineError(RuntimeError):
    """Infrastructure failure that aborts a whole evaluation."""

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


class WorkspaceError(EngineError):
    def __init__(self, message: str):
        super().__init__("workspace_error", message)


class ProcessSpawnError(EngineError):
    def __init__(self, message: str):
        super().__init__("spawn_error", message)


def http_error(status_code: int, message: str):
    raise HTTPException(status_code=status_code, detail=message)
