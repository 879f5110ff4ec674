"""Provide the public `agent_task_queue` package exports."""

from __future__ import annotations

from .task_engine.engine import CreateTaskRequest, TaskManager
from .task_engine.graph import DependencyGraph
from .task_engine.model import DependencyPolicy, Task, TaskStatus
from .task_engine.store import TaskStore

__all__ = [
    "CreateTaskRequest",
    "DependencyGraph",
    "DependencyPolicy",
    "Task",
    "TaskManager",
    "TaskStatus",
    "TaskStore",
]
