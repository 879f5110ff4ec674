"""File-per-task store with coarse-grained locking.

Each task lives in ``task-<id>.json`` inside the queue directory.  The
directory listing is the source of truth; there is no index file, so task
files can be inspected or repaired with ordinary tools.  Every operation runs
under one process-wide re-entrant lock plus a cross-process file lock.
Nothing is cached in memory.
"""

from __future__ import annotations

import os
import threading
from contextlib import contextmanager
from datetime import timedelta
from pathlib import Path
from typing import ContextManager, Iterator, Optional

from filelock import FileLock
from loguru import logger

from ..constants import LOCK_TIMEOUT, QUEUE_LOCK_FILE, TASK_FILE_PREFIX, TASK_FILE_SUFFIX
from ..errors import InvalidIDError, TaskNotFoundError, TaskStoreError
from ..io_utils import _atomic_write_json, _read_json
from ..utils import _now
from .model import PENDING_STATUSES, TERMINAL_STATUSES, Task, TaskResult, TaskStatus


# ---------------------------------------------------------------------------
# Filenames
# ---------------------------------------------------------------------------

def task_filename(task_id: str) -> str:
    return f"{TASK_FILE_PREFIX}{task_id}{TASK_FILE_SUFFIX}"


def is_task_file(name: str) -> bool:
    return (
        name.startswith(TASK_FILE_PREFIX)
        and name.endswith(TASK_FILE_SUFFIX)
        and len(name) > len(TASK_FILE_PREFIX) + len(TASK_FILE_SUFFIX)
    )


def check_task_id(task_id: str) -> str:
    """Reject ids that cannot name a file directly inside the queue directory."""
    if not task_id:
        raise InvalidIDError("task ID cannot be empty")
    separators = {"/", "\\", os.sep, os.altsep or "/"}
    if any(sep in task_id for sep in separators) or ".." in task_id:
        raise InvalidIDError(f"task ID must not contain path separators or '..': {task_id!r}")
    return task_id


# ---------------------------------------------------------------------------
# TaskStore
# ---------------------------------------------------------------------------

class TaskStore:
    """Thread-safe, file-backed store for :class:`Task` objects.

    Parameters
    ----------
    queue_dir:
        Directory holding one JSON file per task.  Created if missing.
    """

    def __init__(self, queue_dir: Path) -> None:
        self._queue_dir = Path(queue_dir).expanduser()
        self._queue_dir.mkdir(parents=True, exist_ok=True)
        self._thread_lock = threading.RLock()
        self._file_lock = FileLock(str(self._queue_dir / QUEUE_LOCK_FILE), timeout=LOCK_TIMEOUT)

    @property
    def queue_dir(self) -> Path:
        return self._queue_dir

    # -- internal helpers ---------------------------------------------------

    @contextmanager
    def _locked(self) -> Iterator[None]:
        with self._thread_lock:
            with self._file_lock:
                yield

    def locked(self) -> ContextManager[None]:
        """Hold the store lock across several operations."""
        return self._locked()

    def _path(self, task_id: str) -> Path:
        return self._queue_dir / task_filename(check_task_id(task_id))

    def _read(self, task_id: str) -> Task:
        path = self._path(task_id)
        if not path.exists():
            raise TaskNotFoundError(f"task not found: {task_id}")
        try:
            return Task.from_dict(_read_json(path))
        except (OSError, ValueError, TypeError, KeyError) as exc:
            raise TaskStoreError(f"failed to read task {task_id}: {exc}") from exc

    def _write(self, task: Task) -> None:
        _atomic_write_json(self._path(task.id), task.to_dict())

    # -- public API ---------------------------------------------------------

    def save_task(self, task: Task) -> None:
        """Persist *task*, replacing any previous version."""
        with self._locked():
            self._write(task)

    def load_task(self, task_id: str) -> Task:
        """Load a task by id; raises :class:`TaskNotFoundError` if absent."""
        if not task_id:
            raise TaskNotFoundError("task not found: <empty id>")
        with self._locked():
            return self._read(task_id)

    def exists(self, task_id: str) -> bool:
        try:
            path = self._path(task_id)
        except InvalidIDError:
            return False
        with self._locked():
            return path.exists()

    def delete_task(self, task_id: str) -> None:
        with self._locked():
            path = self._path(task_id)
            try:
                path.unlink()
            except FileNotFoundError:
                raise TaskNotFoundError(f"task not found: {task_id}") from None
            except OSError as exc:
                raise TaskStoreError(f"failed to delete task file: {exc}") from exc

    def list_tasks(self) -> list[Task]:
        """Return every readable task, oldest first.

        Unreadable or unparseable files are skipped with a warning instead of
        failing the whole listing.
        """
        with self._locked():
            tasks: list[Task] = []
            for path in sorted(self._queue_dir.iterdir()):
                if not path.is_file() or not is_task_file(path.name):
                    continue
                try:
                    task = Task.from_dict(_read_json(path))
                except (OSError, ValueError, TypeError, KeyError) as exc:
                    logger.warning("Skipping unreadable task file {}: {}", path.name, exc)
                    continue
                if not task.id:
                    logger.warning("Skipping task file {} with empty id", path.name)
                    continue
                tasks.append(task)
        tasks.sort(key=lambda t: (t.created_at, t.id))
        return tasks

    def update_task_status(self, task_id: str, status: TaskStatus) -> Task:
        """Move a stored task to *status*, enforcing lifecycle rules.

        ``started_at`` / ``completed_at`` are stamped the first time a
        relevant status is reached and never overwritten.
        """
        with self._locked():
            task = self._read(task_id)
            task.transition(TaskStatus(status))
            self._write(task)
            return task

    def update_task_result(self, task_id: str, result: Optional[TaskResult]) -> Task:
        with self._locked():
            task = self._read(task_id)
            task.result = result
            self._write(task)
            return task

    def remove_dependency(self, task_id: str, dependency_id: str) -> Task:
        """Drop *dependency_id* from the stored task's prerequisites."""
        with self._locked():
            task = self._read(task_id)
            task.depends_on = [d for d in task.depends_on if d != dependency_id]
            self._write(task)
            return task

    def update_task_session_id(self, task_id: str, session_id: str) -> Task:
        with self._locked():
            task = self._read(task_id)
            task.session_id = session_id
            self._write(task)
            return task

    def find_task_by_session_id(self, session_id: str) -> Task:
        for task in self.list_tasks():
            if session_id and task.session_id == session_id:
                return task
        raise TaskNotFoundError(f"task not found for session: {session_id}")

    def get_tasks_by_status(self, status: TaskStatus) -> list[Task]:
        target = TaskStatus(status)
        return [t for t in self.list_tasks() if t.status == target]

    def get_pending_tasks(self) -> list[Task]:
        """Tasks that have not started: ``pending`` or ``waiting``."""
        return [t for t in self.list_tasks() if t.status in PENDING_STATUSES]

    def cleanup(self, older_than: timedelta) -> int:
        """Delete terminal tasks completed before ``now - older_than``.

        Non-terminal tasks are always kept, whatever their age.  Returns the
        number of task files removed.
        """
        cutoff = _now() - older_than
        removed = 0
        with self._locked():
            for task in self.list_tasks():
                if task.status not in TERMINAL_STATUSES:
                    continue
                if task.completed_at is None or task.completed_at >= cutoff:
                    continue
                try:
                    self._path(task.id).unlink()
                except OSError as exc:
                    logger.warning("Failed to remove task {}: {}", task.id, exc)
                    continue
                removed += 1
        if removed:
            logger.info("Removed {} task(s) completed before {}", removed, cutoff.isoformat())
        return removed
