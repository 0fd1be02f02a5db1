from __future__ import annotations

import fcntl
import logging
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from pydantic import ValidationError

from .canonical import to_canonical_json
from .errors import StoreReadError, StoreWriteError
from .models import PROJECT_ID_RE, Project

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# File locking helpers
# ---------------------------------------------------------------------------

_LOCK_SUFFIX = ".lock"
_RECORD_SUFFIX = ".json"


@contextmanager
def _locked_file(path: Path) -> Iterator[None]:
    """Acquire an exclusive file lock for the duration of the context.

    Uses a separate .lock sidecar file so the record itself can be
    atomically replaced via ``os.replace`` without disturbing the lock
    handle.
    """
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def _atomic_write_text(path: Path, content: str) -> None:
    """Write *content* to *path* atomically.

    Writes to a temporary file in the same directory, then renames
    (``os.replace``) into place, so a crash never leaves a half-written
    record behind.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _safe_read_json(path: Path, model_name: str) -> str:
    """Read a JSON record and raise a clear error if it is unreadable.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file is empty or contains non-UTF-8 data.
    """
    if not path.is_file():
        raise FileNotFoundError(f"{model_name} not found: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError(f"{model_name} at {path} contains invalid UTF-8 data") from exc
    if not text.strip():
        raise ValueError(f"{model_name} at {path} is empty")
    return text


# ---------------------------------------------------------------------------
# BlueprintStore
# ---------------------------------------------------------------------------

class BlueprintStore:
    """Filesystem store holding one canonical JSON record per project.

    A missing projects directory is a legitimate empty store. Any record
    that cannot be read or validated fails the whole load with
    ``StoreReadError`` so callers never mistake a broken store for an
    empty one.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.projects_dir = self.root / "projects"

    def record_path(self, project_id: str) -> Path:
        if not PROJECT_ID_RE.match(project_id):
            raise ValueError(f"project id must contain only filesystem-safe characters: {project_id!r}")
        return self.projects_dir / f"{project_id}{_RECORD_SUFFIX}"

    def load(self) -> list[Project]:
        """Read every persisted project ordered by creation time.

        Raises:
            StoreReadError: If the directory or any record cannot be read or validated.
        """
        if not self.projects_dir.exists():
            logger.debug("No projects directory at %s; store is empty", self.projects_dir)
            return []
        if not self.projects_dir.is_dir():
            raise StoreReadError(f"projects path {self.projects_dir} is not a directory")
        try:
            with os.scandir(self.projects_dir) as entries:
                paths = sorted(
                    Path(entry.path)
                    for entry in entries
                    if entry.name.endswith(_RECORD_SUFFIX) and not entry.name.startswith(".")
                )
        except OSError as exc:
            raise StoreReadError(f"cannot list projects in {self.projects_dir}: {exc}") from exc

        projects: list[Project] = []
        for path in paths:
            projects.append(self._read_record(path))
        projects.sort(key=lambda project: (project.created_at, project.id))
        logger.info("Loaded %d project(s) from %s", len(projects), self.projects_dir)
        return projects

    def _read_record(self, path: Path) -> Project:
        try:
            with _locked_file(path):
                text = _safe_read_json(path, "project record")
        except (OSError, ValueError) as exc:
            raise StoreReadError(str(exc)) from exc
        try:
            project = Project.model_validate_json(text)
        except ValidationError as exc:
            raise StoreReadError(f"project record at {path} failed validation: {exc}") from exc
        if path.stem != project.id:
            raise StoreReadError(f"project record at {path} holds mismatched id {project.id!r}")
        return project

    def save(self, project: Project) -> Path:
        """Persist ``project`` atomically under an exclusive lock.

        Raises:
            StoreWriteError: If the record cannot be written.
        """
        path = self.record_path(project.id)
        try:
            payload = to_canonical_json(project)
            with _locked_file(path):
                _atomic_write_text(path, payload)
        except OSError as exc:
            raise StoreWriteError(f"cannot write project {project.id} to {path}: {exc}") from exc
        logger.debug("Saved project %s to %s", project.id, path)
        return path

    def delete(self, project_id: str) -> None:
        """Remove a project record. Deleting an absent record is not an error.

        Raises:
            StoreWriteError: If the record exists but cannot be removed.
        """
        path = self.record_path(project_id)
        lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
        try:
            with _locked_file(path):
                path.unlink(missing_ok=True)
            lock_path.unlink(missing_ok=True)
        except OSError as exc:
            raise StoreWriteError(f"cannot delete project {project_id} at {path}: {exc}") from exc
        logger.info("Deleted project %s", project_id)
