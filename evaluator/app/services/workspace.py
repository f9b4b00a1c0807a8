#
# Per-evaluation workspace layout and lifecycle.
#
from __future__ import annotations

import logging
import shutil
import tempfile
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from ..utils.errors import WorkspaceError
from .models import Workspace

logger = logging.getLogger(__name__)


def ensure_inside(path: Path, root: Path) -> Path:
    # Reject paths that resolve outside the workspace root.
    resolved = path.resolve()
    if not resolved.is_relative_to(root.resolve()):
        raise WorkspaceError(f"path escapes workspace: {path}")
    return resolved


def safe_rmtree(path: Path) -> bool:
    try:
        shutil.rmtree(path)
    except FileNotFoundError:
        return True
    except OSError as exc:
        logger.warning("remove workspace failed path=%s: %s", path, exc)
        return False
    return True


def write_text(path: Path, text: str) -> None:
    try:
        path.write_text(text, encoding="utf-8")
    except OSError as exc:
        raise WorkspaceError(f"write_failed:{path.name}:{exc}") from exc


def read_bytes(path: Path, *, max_bytes: int | None = None) -> bytes:
    # Missing capture files read as empty (the program may have died before writing).
    try:
        with path.open("rb") as fh:
            return fh.read() if max_bytes is None else fh.read(max_bytes)
    except FileNotFoundError:
        return b""
    except OSError as exc:
        raise WorkspaceError(f"read_failed:{path.name}:{exc}") from exc


class WorkspaceManager:
    """Allocate and tear down one isolated directory per evaluation.

    Every workspace gets a fresh ``uuid4`` id and its own ``mkdtemp``
    directory, so two evaluations in flight can never share a path.
    """

    def __init__(self, *, root: Path, source_filename: str = "solution.cpp", artifact_filename: str = "solution"):
        self.root = root
        self.source_filename = source_filename
        self.artifact_filename = artifact_filename

    def acquire(self) -> Workspace:
        workspace_id = uuid.uuid4().hex
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            ws_root = Path(tempfile.mkdtemp(prefix=f"eval-{workspace_id}-", dir=str(self.root)))
        except OSError as exc:
            raise WorkspaceError(f"workspace_create_failed: {exc}") from exc

        workspace = Workspace(
            id=workspace_id,
            root=ws_root,
            source_path=ws_root / self.source_filename,
            artifact_path=ws_root / self.artifact_filename,
        )
        try:
            ensure_inside(workspace.source_path, ws_root)
            ensure_inside(workspace.artifact_path, ws_root)
        except WorkspaceError:
            safe_rmtree(ws_root)
            raise
        logger.debug("workspace acquired id=%s path=%s", workspace_id, ws_root)
        return workspace

    def release(self, workspace: Workspace) -> None:
        if safe_rmtree(workspace.root):
            logger.debug("workspace released id=%s", workspace.id)

    @contextmanager
    def scoped(self) -> Iterator[Workspace]:
        workspace = self.acquire()
        try:
            yield workspace
        finally:
            self.release(workspace)
