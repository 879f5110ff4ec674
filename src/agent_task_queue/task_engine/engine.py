"""Task manager: creation, batch import, lookup and queue maintenance.

This is the entry point for everything that changes the queue outside the
worker loop.  It wraps :class:`TaskStore` with validation (required fields,
priority range, dependency existence, cycle and depth limits).
"""

from __future__ import annotations

from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterable, Optional

from loguru import logger
from pydantic import BaseModel, Field

from ..constants import DEFAULT_MAX_DEPENDENCY_DEPTH
from ..errors import (
    AmbiguousTaskError,
    InvalidIDError,
    MissingDependencyError,
    TaskFileError,
    TaskNotFoundError,
    TaskValidationError,
)
from ..utils import generate_short_id
from .graph import DependencyGraph
from .model import (
    PRIORITY_NORMAL,
    DependencyPolicy,
    Task,
    TaskConfig,
    TaskStatus,
    validate_priority,
)
from .store import TaskStore, check_task_id
from .taskfile import TaskFile, load_task_file


class CreateTaskRequest(BaseModel):
    name: str
    worktree: str
    base_branch: str = ""
    repository: str = ""
    priority: int = PRIORITY_NORMAL
    depends_on: list[str] = Field(default_factory=list)
    dependency_policy: DependencyPolicy = DependencyPolicy.WAIT
    prompt: str = ""
    files_to_focus: list[str] = Field(default_factory=list)
    verification_commands: list[str] = Field(default_factory=list)
    auto_commit: bool = False


def _dedupe(ids: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for item in ids:
        if item and item not in seen:
            seen.add(item)
            out.append(item)
    return out


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------

class TaskManager:
    """Validate and persist tasks on top of a :class:`TaskStore`.

    Parameters
    ----------
    store:
        Backing task store.
    max_dependency_depth:
        Longest allowed prerequisite chain for new tasks; 0 disables the check.
    validate_dependencies:
        When False, dependency ids are not checked at creation time.
    """

    def __init__(
        self,
        store: TaskStore,
        *,
        max_dependency_depth: int = DEFAULT_MAX_DEPENDENCY_DEPTH,
        validate_dependencies: bool = True,
    ) -> None:
        self.store = store
        self.max_dependency_depth = max(0, int(max_dependency_depth))
        self.validate_dependencies = validate_dependencies

    def _new_id(self) -> str:
        task_id = generate_short_id()
        while self.store.exists(task_id):
            task_id = generate_short_id()
        return task_id

    def _check_depth(self, graph: DependencyGraph, task_ids: Iterable[str]) -> None:
        if self.max_dependency_depth <= 0:
            return
        for task_id in task_ids:
            depth = graph.get_task_depth(task_id)
            if depth > self.max_dependency_depth:
                raise TaskValidationError(
                    f"task {task_id} would have dependency depth {depth}, "
                    f"exceeding the limit of {self.max_dependency_depth}"
                )

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_task(self, req: CreateTaskRequest) -> Task:
        """Validate *req*, persist a new pending task and return it."""
        if not req.name.strip():
            raise TaskValidationError("task name is required")
        if not req.worktree.strip():
            raise TaskValidationError("worktree must be specified")
        priority = validate_priority(req.priority)

        task = Task(
            id=self._new_id(),
            name=req.name.strip(),
            worktree=req.worktree.strip(),
            base_branch=req.base_branch,
            repository_root=str(Path(req.repository).expanduser()) if req.repository else "",
            priority=priority,
            depends_on=_dedupe(req.depends_on),
            dependency_policy=req.dependency_policy,
            prompt=req.prompt,
            files_to_focus=list(req.files_to_focus),
            verification_commands=list(req.verification_commands),
            config=TaskConfig(auto_commit=req.auto_commit),
        )

        if task.depends_on and (self.validate_dependencies or self.max_dependency_depth):
            existing = self.store.list_tasks()
            if self.validate_dependencies:
                known = {t.id for t in existing}
                for dep_id in task.depends_on:
                    if dep_id not in known:
                        raise MissingDependencyError(task.id, dep_id)
            graph = DependencyGraph.from_tasks([*existing, task])
            self._check_depth(graph, [task.id])

        self.store.save_task(task)
        logger.info("Created task {} ({}) priority={}", task.id, task.display_name, task.priority)
        return task

    def create_tasks_from_file(self, path: Path) -> list[Task]:
        """Create every task in a YAML batch file, or none of them."""
        task_file = load_task_file(path)
        tasks = self.build_tasks(task_file)
        for task in tasks:
            self.store.save_task(task)
        logger.info("Created {} task(s) from {}", len(tasks), Path(path).name)
        return tasks

    def build_tasks(self, task_file: TaskFile) -> list[Task]:
        """Turn a parsed task file into validated, unsaved tasks.

        Raises :class:`TaskFileError` on the first problem found.
        """
        existing = self.store.list_tasks()
        stored_ids = {t.id for t in existing}
        file_ids: set[str] = set()
        tasks: list[Task] = []

        for index, entry in enumerate(task_file.tasks, start=1):
            label = entry.id or f"#{index}"
            if not entry.id:
                raise TaskFileError(f"task {label}: task ID is required")
            try:
                check_task_id(entry.id)
            except InvalidIDError as exc:
                raise TaskFileError(f"task {label}: {exc}") from exc
            if entry.id in file_ids:
                raise TaskFileError(f"task {label}: duplicate task ID in file")
            if entry.id in stored_ids:
                raise TaskFileError(f"task {label}: task already exists")
            if not entry.worktree:
                raise TaskFileError(f"task {label}: worktree must be specified")
            try:
                priority = validate_priority(entry.effective_priority)
            except TaskValidationError as exc:
                raise TaskFileError(f"task {label}: {exc}") from exc
            file_ids.add(entry.id)
            tasks.append(
                Task(
                    id=entry.id,
                    name=entry.name,
                    worktree=entry.worktree,
                    base_branch=entry.base_branch,
                    repository_root=task_file.repository_for(entry),
                    priority=priority,
                    depends_on=_dedupe(entry.depends_on),
                    dependency_policy=entry.dependency_policy,
                    prompt=entry.prompt,
                    files_to_focus=list(entry.files_to_focus),
                    verification_commands=list(entry.verification_commands),
                    config=task_file.config_for(entry),
                )
            )

        known = stored_ids | file_ids
        for task in tasks:
            for dep_id in task.depends_on:
                if dep_id not in known:
                    raise TaskFileError(f"task {task.id} depends on non-existent task {dep_id}")

        graph = DependencyGraph.from_tasks([*existing, *tasks])
        offender = graph.find_cycle()
        if offender is not None:
            raise TaskFileError(f"circular dependency detected involving task {offender}")
        try:
            self._check_depth(graph, [t.id for t in tasks])
        except TaskValidationError as exc:
            raise TaskFileError(str(exc)) from exc
        return tasks

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get_task(self, task_id: str) -> Task:
        return self.store.load_task(task_id)

    def list_tasks(
        self,
        status: Optional[TaskStatus] = None,
        min_priority: Optional[int] = None,
    ) -> list[Task]:
        tasks = self.store.list_tasks()
        if status is not None:
            tasks = self.filter_by_status(tasks, status)
        if min_priority is not None:
            tasks = self.filter_by_priority(tasks, min_priority)
        return tasks

    def find_task_by_pattern(self, pattern: str) -> Task:
        """Resolve *pattern* to exactly one task.

        An exact id wins; otherwise the pattern is matched as a
        case-insensitive substring of the id, name and worktree.
        """
        if not pattern:
            raise TaskNotFoundError("no task found matching an empty pattern")
        if self.store.exists(pattern):
            return self.store.load_task(pattern)

        needle = pattern.lower()
        matches = [
            t
            for t in self.store.list_tasks()
            if needle in t.id.lower() or needle in t.name.lower() or needle in t.worktree.lower()
        ]
        if not matches:
            raise TaskNotFoundError(f"no task found matching pattern: {pattern}")
        if len(matches) > 1:
            raise AmbiguousTaskError(
                f"multiple tasks match pattern '{pattern}': {len(matches)} matches "
                f"({', '.join(t.id for t in matches)})"
            )
        return matches[0]

    @staticmethod
    def filter_by_status(tasks: Iterable[Task], status: TaskStatus) -> list[Task]:
        target = TaskStatus(status)
        return [t for t in tasks if t.status == target]

    @staticmethod
    def filter_by_priority(tasks: Iterable[Task], min_priority: int) -> list[Task]:
        return [t for t in tasks if t.priority >= min_priority]

    @staticmethod
    def filter_by_created_after(tasks: Iterable[Task], when: datetime) -> list[Task]:
        return [t for t in tasks if t.created_at > when]

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def cancel_task(self, task_id: str) -> Task:
        task = self.store.update_task_status(task_id, TaskStatus.CANCELLED)
        logger.info("Cancelled task {}", task_id)
        return task

    def remove_task(self, task_id: str) -> None:
        """Delete a task and drop it from every dependent's prerequisites."""
        with self.store.locked():
            task = self.store.load_task(task_id)
            if task.status == TaskStatus.RUNNING:
                raise TaskValidationError(f"task {task_id} is running; cancel it before removing")
            dependents = [t.id for t in self.store.list_tasks() if task_id in t.depends_on]
            self.store.delete_task(task_id)
            # Reload each dependent so concurrent status changes survive.
            for dependent_id in dependents:
                try:
                    self.store.remove_dependency(dependent_id, task_id)
                except TaskNotFoundError:
                    continue
        logger.info("Removed task {} ({} dependent(s) updated)", task_id, len(dependents))

    def get_topological_order(self) -> list[Task]:
        return DependencyGraph.from_tasks(self.store.list_tasks()).get_topological_order()

    def prune(self, retention_days: int) -> int:
        return self.store.cleanup(timedelta(days=retention_days))

    def status_counts(self) -> dict[str, int]:
        counts = {status.value: 0 for status in TaskStatus}
        for task in self.store.list_tasks():
            counts[task.status.value] += 1
        return counts
