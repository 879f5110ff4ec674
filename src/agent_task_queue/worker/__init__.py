from .executor import (
    CommandExecutor,
    ExecutionOutcome,
    Executor,
    ScriptedExecutor,
    SessionExecutor,
    SessionProvider,
    TmuxSessionProvider,
)
from .resources import ResourceManager, ResourceStats, ResourceWaiter, Slot, SlotManager
from .scheduler import SchedulingContext, TaskWorker

__all__ = [
    "CommandExecutor",
    "ExecutionOutcome",
    "Executor",
    "ResourceManager",
    "ResourceStats",
    "ResourceWaiter",
    "SchedulingContext",
    "ScriptedExecutor",
    "SessionExecutor",
    "SessionProvider",
    "Slot",
    "SlotManager",
    "TaskWorker",
    "TmuxSessionProvider",
]
