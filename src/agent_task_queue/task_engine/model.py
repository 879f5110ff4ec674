"""Task model and lifecycle state machine.

A :class:`Task` is a unit of schedulable work with a priority, an ordered list
of prerequisite task ids and a dependency policy describing what happens when a
prerequisite fails.  Tasks serialize to plain JSON-safe dicts for the
file-per-task store.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Iterable, Optional

from ..constants import DEFAULT_AGENT_TYPE, DISPLAY_NAME_MAX
from ..errors import InvalidPriorityError, InvalidTransitionError
from ..utils import _format_iso, _now, _parse_iso, generate_short_id


# ---------------------------------------------------------------------------
# Priority
# ---------------------------------------------------------------------------

PRIORITY_MIN = 1
PRIORITY_MAX = 100

PRIORITY_VERY_LOW = 10  # Background work that can wait indefinitely
PRIORITY_LOW = 25
PRIORITY_NORMAL = 50  # Default
PRIORITY_HIGH = 75
PRIORITY_URGENT = 90
PRIORITY_CRITICAL = 100  # Blocking issues, run first


def validate_priority(priority: Any) -> int:
    """Return *priority* as an int, raising if it is outside 1..100."""
    try:
        value = int(priority)
    except (TypeError, ValueError):
        raise InvalidPriorityError(f"priority must be an integer, got {priority!r}") from None
    if isinstance(priority, bool) or not PRIORITY_MIN <= value <= PRIORITY_MAX:
        raise InvalidPriorityError(
            f"priority must be between {PRIORITY_MIN} and {PRIORITY_MAX}, got {priority!r}"
        )
    return value


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class TaskStatus(str, Enum):
    """Lifecycle status of a task."""

    PENDING = "pending"
    WAITING = "waiting"  # display alias for a pending task that is not ready yet
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class DependencyPolicy(str, Enum):
    """How a failed prerequisite affects its dependents."""

    WAIT = "wait"  # keep waiting (default)
    SKIP = "skip"  # mark the dependent skipped
    FAIL = "fail"  # mark the dependent failed


class TaskCategory(str, Enum):
    """Resource category a task consumes a slot from."""

    DEVELOPMENT = "development"


TERMINAL_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.SKIPPED, TaskStatus.CANCELLED}
)
PENDING_STATUSES = frozenset({TaskStatus.PENDING, TaskStatus.WAITING})


# ---------------------------------------------------------------------------
# Valid status transitions
# ---------------------------------------------------------------------------

_NOT_STARTED_TARGETS = {
    TaskStatus.RUNNING,
    TaskStatus.SKIPPED,
    TaskStatus.FAILED,
    TaskStatus.CANCELLED,
}

_VALID_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.PENDING: _NOT_STARTED_TARGETS | {TaskStatus.WAITING},
    TaskStatus.WAITING: set(_NOT_STARTED_TARGETS),
    TaskStatus.RUNNING: {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED},
    TaskStatus.COMPLETED: set(),
    TaskStatus.FAILED: set(),
    TaskStatus.SKIPPED: set(),
    TaskStatus.CANCELLED: set(),
}


def can_transition(current: TaskStatus, target: TaskStatus) -> bool:
    """Return True if a task may move from *current* to *target*.

    Re-applying the current status is always allowed.
    """
    if current == target:
        return True
    return target in _VALID_TRANSITIONS.get(current, set())


def check_transition(current: TaskStatus, target: TaskStatus, task_id: str = "") -> None:
    if not can_transition(current, target):
        valid = sorted(s.value for s in _VALID_TRANSITIONS.get(current, set()))
        label = f"task {task_id}" if task_id else "task"
        raise InvalidTransitionError(
            f"Cannot transition {label} from {current.value} to {target.value}. Valid targets: {valid}"
        )


# ---------------------------------------------------------------------------
# Nested records
# ---------------------------------------------------------------------------

@dataclass
class TaskConfig:
    skip_permissions: bool = True
    auto_commit: bool = False
    backup_files: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "skip_permissions": self.skip_permissions,
            "auto_commit": self.auto_commit,
            "backup_files": self.backup_files,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "TaskConfig":
        d = dict(data or {})
        return cls(
            skip_permissions=bool(d.get("skip_permissions", True)),
            auto_commit=bool(d.get("auto_commit", False)),
            backup_files=bool(d.get("backup_files", False)),
        )


@dataclass
class TaskResult:
    """Outcome of executing (or policy-resolving) a task."""

    exit_code: int = 0
    duration: float = 0.0  # seconds
    files_changed: list[str] = field(default_factory=list)
    commit_hash: Optional[str] = None
    dependencies_wait_time: float = 0.0  # seconds
    dependency_failures: list[str] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "exit_code": self.exit_code,
            "duration": self.duration,
            "files_changed": list(self.files_changed),
            "commit_hash": self.commit_hash,
            "dependencies_wait_time": self.dependencies_wait_time,
            "dependency_failures": list(self.dependency_failures),
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaskResult":
        d = dict(data)
        return cls(
            exit_code=int(d.get("exit_code", 0) or 0),
            duration=float(d.get("duration", 0.0) or 0.0),
            files_changed=list(d.get("files_changed", []) or []),
            commit_hash=d.get("commit_hash"),
            dependencies_wait_time=float(d.get("dependencies_wait_time", 0.0) or 0.0),
            dependency_failures=list(d.get("dependency_failures", []) or []),
            error=d.get("error"),
        )


# ---------------------------------------------------------------------------
# Task dataclass
# ---------------------------------------------------------------------------

@dataclass
class Task:
    """A queued unit of work for a coding agent."""

    # Identity
    id: str = field(default_factory=generate_short_id)
    name: str = ""

    # Where the work happens
    worktree: str = ""
    base_branch: str = ""
    repository_root: str = ""
    worktree_path: str = ""

    # Scheduling
    priority: int = PRIORITY_NORMAL
    status: TaskStatus = TaskStatus.PENDING
    created_at: datetime = field(default_factory=_now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    # Execution context
    session_id: str = ""
    agent_type: str = DEFAULT_AGENT_TYPE

    # Dependencies
    depends_on: list[str] = field(default_factory=list)
    blocks: list[str] = field(default_factory=list)  # derived, see compute_blocks()
    dependency_policy: DependencyPolicy = DependencyPolicy.WAIT

    # Work definition
    prompt: str = ""
    files_to_focus: list[str] = field(default_factory=list)
    verification_commands: list[str] = field(default_factory=list)
    config: TaskConfig = field(default_factory=TaskConfig)

    # Outcome
    result: Optional[TaskResult] = None

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a plain dict for JSON persistence."""
        return {
            "id": self.id,
            "name": self.name,
            "worktree": self.worktree,
            "base_branch": self.base_branch,
            "repository_root": self.repository_root,
            "worktree_path": self.worktree_path,
            "priority": self.priority,
            "status": self.status.value,
            "created_at": _format_iso(self.created_at),
            "started_at": _format_iso(self.started_at),
            "completed_at": _format_iso(self.completed_at),
            "session_id": self.session_id,
            "agent_type": self.agent_type,
            "depends_on": list(self.depends_on),
            "blocks": list(self.blocks),
            "dependency_policy": self.dependency_policy.value,
            "prompt": self.prompt,
            "files_to_focus": list(self.files_to_focus),
            "verification_commands": list(self.verification_commands),
            "config": self.config.to_dict(),
            "result": self.result.to_dict() if self.result is not None else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        """Deserialize from a plain dict.

        Unknown status / policy values raise ``ValueError`` so a corrupt task
        file is reported rather than silently rewritten.
        """
        d = dict(data)
        created_at = _parse_iso(d.get("created_at")) or _now()
        result_raw = d.get("result")
        return cls(
            id=str(d.get("id", "")),
            name=str(d.get("name", "") or ""),
            worktree=str(d.get("worktree", "") or ""),
            base_branch=str(d.get("base_branch", "") or ""),
            repository_root=str(d.get("repository_root", "") or ""),
            worktree_path=str(d.get("worktree_path", "") or ""),
            priority=int(d.get("priority", PRIORITY_NORMAL)),
            status=TaskStatus(str(d.get("status", TaskStatus.PENDING.value))),
            created_at=created_at,
            started_at=_parse_iso(d.get("started_at")),
            completed_at=_parse_iso(d.get("completed_at")),
            session_id=str(d.get("session_id", "") or ""),
            agent_type=str(d.get("agent_type", DEFAULT_AGENT_TYPE) or DEFAULT_AGENT_TYPE),
            depends_on=list(d.get("depends_on", []) or []),
            blocks=list(d.get("blocks", []) or []),
            dependency_policy=DependencyPolicy(
                str(d.get("dependency_policy") or DependencyPolicy.WAIT.value)
            ),
            prompt=str(d.get("prompt", "") or ""),
            files_to_focus=list(d.get("files_to_focus", []) or []),
            verification_commands=list(d.get("verification_commands", []) or []),
            config=TaskConfig.from_dict(d.get("config")),
            result=TaskResult.from_dict(result_raw) if isinstance(result_raw, dict) else None,
        )

    # ------------------------------------------------------------------
    # Status helpers
    # ------------------------------------------------------------------

    def transition(self, new_status: TaskStatus, when: Optional[datetime] = None) -> None:
        """Move to *new_status*, stamping ``started_at`` / ``completed_at``.

        Timestamps are only set the first time the relevant status is
        reached; existing values are never overwritten.
        """
        check_transition(self.status, new_status, self.id)
        self.status = new_status
        now = when or _now()
        if new_status == TaskStatus.RUNNING and self.started_at is None:
            self.started_at = now
        if new_status in TERMINAL_STATUSES and self.completed_at is None:
            self.completed_at = now

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_pending(self) -> bool:
        return self.status in PENDING_STATUSES

    @property
    def display_name(self) -> str:
        if self.name:
            return self.name
        if len(self.prompt) > DISPLAY_NAME_MAX:
            return self.prompt[: DISPLAY_NAME_MAX - 3] + "..."
        return self.prompt

    @property
    def duration(self) -> float:
        """Execution duration in seconds, 0 when unknown."""
        if self.result is not None and self.result.duration:
            return self.result.duration
        if self.started_at is not None and self.completed_at is not None:
            return max(0.0, (self.completed_at - self.started_at).total_seconds())
        return 0.0

    def ensure_result(self) -> TaskResult:
        if self.result is None:
            self.result = TaskResult()
        return self.result


# ---------------------------------------------------------------------------
# Derived relationships
# ---------------------------------------------------------------------------

def compute_blocks(tasks: Iterable[Task]) -> dict[str, list[str]]:
    """Return ``{task_id: [ids of tasks that depend on it]}``.

    Derived purely from ``depends_on``; references to unknown ids are ignored.
    Dependents are listed in the iteration order of *tasks*.
    """
    task_list = list(tasks)
    blocks: dict[str, list[str]] = {t.id: [] for t in task_list}
    for t in task_list:
        for dep_id in t.depends_on:
            if dep_id in blocks and t.id not in blocks[dep_id]:
                blocks[dep_id].append(t.id)
    return blocks
