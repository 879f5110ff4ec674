"""Dependency graph over a snapshot of tasks.

The graph owns no lock; callers build a fresh graph per scheduling tick and
use it from a single thread.  It answers four questions: is the task set
structurally valid, which tasks may run now, which one should run next, and
in what order could everything run.
"""

from __future__ import annotations

import heapq
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from loguru import logger

from ..errors import (
    CircularDependencyError,
    DuplicateIDError,
    InvalidIDError,
    MissingDependencyError,
    NoExecutableTasksError,
    TaskValidationError,
)
from .model import (
    PENDING_STATUSES,
    DependencyPolicy,
    Task,
    TaskStatus,
    compute_blocks,
)


@dataclass(frozen=True)
class PolicyOutcome:
    """A status change applied to a task because a prerequisite failed."""

    task_id: str
    status: TaskStatus
    failed_dependency: str

    def to_dict(self) -> dict[str, str]:
        return {
            "task_id": self.task_id,
            "status": self.status.value,
            "failed_dependency": self.failed_dependency,
        }


def schedule_key(task: Task) -> tuple[int, datetime, str]:
    # Higher priority first, then oldest, then id.
    return (-task.priority, task.created_at, task.id)


_WHITE, _GREY, _BLACK = 0, 1, 2


class DependencyGraph:
    def __init__(self) -> None:
        self._tasks: dict[str, Task] = {}
        self._edges: dict[str, list[str]] = {}

    @classmethod
    def from_tasks(cls, tasks: Iterable[Task]) -> "DependencyGraph":
        """Build a graph, skipping tasks that cannot be added."""
        graph = cls()
        for task in tasks:
            try:
                graph.add_task(task)
            except TaskValidationError as exc:
                logger.warning("Skipping task {!r} while building graph: {}", task.id, exc)
        return graph

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def add_task(self, task: Task) -> None:
        if not task.id:
            raise InvalidIDError("task ID cannot be empty")
        if task.id in self._tasks:
            raise DuplicateIDError(f"task {task.id} already exists")
        self._tasks[task.id] = task
        self._edges[task.id] = list(task.depends_on)
        self._refresh_blocks()

    def update_task(self, task: Task) -> None:
        """Replace the stored task (or add it) and re-index its prerequisites."""
        if not task.id:
            raise InvalidIDError("task ID cannot be empty")
        self._tasks[task.id] = task
        self._edges[task.id] = list(task.depends_on)
        self._refresh_blocks()

    def remove_task(self, task_id: str) -> None:
        if task_id not in self._tasks:
            return
        del self._tasks[task_id]
        self._edges.pop(task_id, None)
        for other_id, deps in self._edges.items():
            if task_id in deps:
                remaining = [d for d in deps if d != task_id]
                self._edges[other_id] = remaining
                self._tasks[other_id].depends_on = list(remaining)
        self._refresh_blocks()

    def _refresh_blocks(self) -> None:
        blocks = compute_blocks(self._tasks.values())
        for task_id, task in self._tasks.items():
            task.blocks = blocks[task_id]

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._tasks)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    @property
    def tasks(self) -> list[Task]:
        return list(self._tasks.values())

    def get_task(self, task_id: str) -> Optional[Task]:
        return self._tasks.get(task_id)

    def get_dependencies(self, task_id: str) -> list[Task]:
        return [self._tasks[d] for d in self._edges.get(task_id, []) if d in self._tasks]

    def get_dependents(self, task_id: str) -> list[Task]:
        return [self._tasks[tid] for tid, deps in self._edges.items() if task_id in deps]

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate_dependencies(self) -> None:
        """Raise if a prerequisite is missing or the graph has a cycle.

        Missing references are reported before cycles.
        """
        for task_id in sorted(self._edges):
            for dep_id in self._edges[task_id]:
                if dep_id not in self._tasks:
                    raise MissingDependencyError(task_id, dep_id)
        offender = self.find_cycle()
        if offender is not None:
            raise CircularDependencyError(
                f"circular dependency detected involving task {offender}", offender
            )

    def find_cycle(self) -> Optional[str]:
        """Return a task id on a cycle, or None.  Missing ids are ignored."""
        color = {task_id: _WHITE for task_id in self._tasks}
        for root in sorted(self._tasks):
            if color[root] != _WHITE:
                continue
            color[root] = _GREY
            stack = [(root, iter(self._edges.get(root, [])))]
            while stack:
                node, deps = stack[-1]
                for dep_id in deps:
                    state = color.get(dep_id)
                    if state is None:
                        continue
                    if state == _GREY:
                        return dep_id
                    if state == _WHITE:
                        color[dep_id] = _GREY
                        stack.append((dep_id, iter(self._edges.get(dep_id, []))))
                        break
                else:
                    color[node] = _BLACK
                    stack.pop()
        return None

    # ------------------------------------------------------------------
    # Readiness and dependency policies
    # ------------------------------------------------------------------

    def _check_dependencies(self, task: Task) -> tuple[bool, Optional[PolicyOutcome]]:
        for dep_id in task.depends_on:
            dep = self._tasks.get(dep_id)
            if dep is None:
                return False, None
            if dep.status == TaskStatus.COMPLETED:
                continue
            if dep.status == TaskStatus.FAILED:
                if task.dependency_policy == DependencyPolicy.FAIL:
                    return False, self._apply_policy(task, TaskStatus.FAILED, dep_id)
                if task.dependency_policy == DependencyPolicy.SKIP:
                    return False, self._apply_policy(task, TaskStatus.SKIPPED, dep_id)
            return False, None
        return True, None

    def _apply_policy(self, task: Task, status: TaskStatus, dep_id: str) -> PolicyOutcome:
        task.transition(status)
        result = task.ensure_result()
        if dep_id not in result.dependency_failures:
            result.dependency_failures.append(dep_id)
        result.error = f"dependency {dep_id} failed"
        logger.info(
            "Task {} marked {} by '{}' policy: dependency {} failed",
            task.id,
            status.value,
            task.dependency_policy.value,
            dep_id,
        )
        return PolicyOutcome(task_id=task.id, status=status, failed_dependency=dep_id)

    def evaluate_policies(self) -> list[PolicyOutcome]:
        """Apply skip/fail policies until no further task changes.

        A task failed by its own policy can in turn fail or skip its
        dependents, so evaluation repeats until a pass changes nothing.
        """
        outcomes: list[PolicyOutcome] = []
        while True:
            changed = False
            for task in list(self._tasks.values()):
                if task.status not in PENDING_STATUSES:
                    continue
                _, outcome = self._check_dependencies(task)
                if outcome is not None:
                    outcomes.append(outcome)
                    changed = True
            if not changed:
                return outcomes

    def get_ready_tasks(self) -> list[Task]:
        """Not-started tasks whose prerequisites have all completed.

        Dependency policies are applied first, so a call may move tasks to
        ``skipped`` or ``failed`` as a side effect.
        """
        self.evaluate_policies()
        ready: list[Task] = []
        for task in self._tasks.values():
            if task.status not in PENDING_STATUSES:
                continue
            ok, _ = self._check_dependencies(task)
            if ok:
                ready.append(task)
        return ready

    def get_executable_task(self) -> Task:
        ready = self.get_ready_tasks()
        if not ready:
            raise NoExecutableTasksError("no executable tasks available")
        return min(ready, key=schedule_key)

    # ------------------------------------------------------------------
    # Ordering
    # ------------------------------------------------------------------

    def get_topological_order(self) -> list[Task]:
        self.validate_dependencies()
        order = self._kahn_order()
        if len(order) != len(self._tasks):
            raise CircularDependencyError("circular dependency detected during topological sort")
        return order

    def _kahn_order(self) -> list[Task]:
        in_degree = {task_id: 0 for task_id in self._tasks}
        dependents: dict[str, list[str]] = {task_id: [] for task_id in self._tasks}
        for task_id, deps in self._edges.items():
            for dep_id in deps:
                if dep_id in self._tasks:
                    in_degree[task_id] += 1
                    dependents[dep_id].append(task_id)

        heap = [schedule_key(self._tasks[tid]) for tid, deg in in_degree.items() if deg == 0]
        heapq.heapify(heap)
        order: list[Task] = []
        while heap:
            _, _, task_id = heapq.heappop(heap)
            order.append(self._tasks[task_id])
            for dependent_id in dependents[task_id]:
                in_degree[dependent_id] -= 1
                if in_degree[dependent_id] == 0:
                    heapq.heappush(heap, schedule_key(self._tasks[dependent_id]))
        return order

    def get_dependency_depth(self) -> int:
        """Length of the longest prerequisite chain (a lone task counts 1)."""
        if not self._tasks:
            return 0
        depths = self._acyclic_depths()
        if depths is not None:
            return max(depths.values())
        return max(self._path_depth(task_id, set()) for task_id in self._tasks)

    def get_task_depth(self, task_id: str) -> int:
        """Length of the longest chain ending at *task_id*, 0 if unknown."""
        if task_id not in self._tasks:
            return 0
        depths = self._acyclic_depths()
        if depths is not None:
            return depths[task_id]
        return self._path_depth(task_id, set())

    def _acyclic_depths(self) -> Optional[dict[str, int]]:
        if self.find_cycle() is not None:
            return None
        depths: dict[str, int] = {}
        for task in self._kahn_order():
            deps = [depths[d] for d in self._edges[task.id] if d in depths]
            depths[task.id] = 1 + max(deps, default=0)
        return depths

    def _path_depth(self, task_id: str, path: set[str]) -> int:
        # A node already on the current path contributes nothing.
        if task_id in path:
            return 0
        path.add(task_id)
        best = 0
        for dep_id in self._edges.get(task_id, []):
            if dep_id in self._tasks:
                best = max(best, self._path_depth(dep_id, path))
        path.discard(task_id)
        return best + 1
