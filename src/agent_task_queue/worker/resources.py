"""Bounded execution slots.

A :class:`ResourceManager` hands out :class:`Slot` leases up to a global
ceiling and a per-category ceiling.  Blocking acquisition waits on a
condition variable; each release wakes exactly one waiter.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from loguru import logger

from ..errors import (
    NoSlotsAvailableError,
    SlotCancelledError,
    SlotNotFoundError,
    SlotTimeoutError,
    UnknownCategoryError,
)
from ..task_engine.model import Task, TaskCategory
from ..utils import _now

# Upper bound on a single condition wait so a cancel event is noticed promptly.
_CANCEL_POLL_SECONDS = 0.05


def _category(value: Any) -> TaskCategory:
    try:
        return TaskCategory(value)
    except ValueError:
        raise UnknownCategoryError(f"unknown task category: {value}") from None


class Slot:
    """A lease on one unit of execution capacity."""

    def __init__(self, manager: "ResourceManager", owner_id: str, category: TaskCategory) -> None:
        self.owner_id = owner_id
        self.category = category
        self.acquired_at: datetime = _now()
        self._manager = manager
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> bool:
        """Return the slot to its manager.  Only the first call has effect."""
        return self._manager._release(self)

    def __repr__(self) -> str:
        state = "released" if self._released else "held"
        return f"Slot(owner_id={self.owner_id!r}, category={self.category.value!r}, {state})"


@dataclass(frozen=True)
class ResourceStats:
    max_parallel: int
    max_development: int
    active_development: int
    available_development: int
    total_active: int
    development_utilization: float  # percent

    @classmethod
    def build(cls, max_parallel: int, max_development: int, active_development: int) -> "ResourceStats":
        total = active_development
        available = max(0, min(max_development - active_development, max_parallel - total))
        return cls(
            max_parallel=max_parallel,
            max_development=max_development,
            active_development=active_development,
            available_development=available,
            total_active=total,
            development_utilization=active_development / max_development * 100.0,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_parallel": self.max_parallel,
            "max_development": self.max_development,
            "active_development": self.active_development,
            "available_development": self.available_development,
            "total_active": self.total_active,
            "development_utilization": self.development_utilization,
        }

    def __str__(self) -> str:
        return (
            f"Active: {self.total_active}/{self.max_parallel} total "
            f"({self.active_development} dev) | "
            f"Available: {self.available_development} dev | "
            f"Utilization: {self.development_utilization:.1f}% dev"
        )


class ResourceManager:
    """Allocate slots under ``max_parallel`` and per-category limits.

    Parameters
    ----------
    max_parallel:
        Global ceiling on concurrently held slots.
    max_development:
        Ceiling for the development category; values <= 0 mean
        ``max_parallel``.
    """

    def __init__(self, max_parallel: int, max_development: int = 0) -> None:
        if max_parallel < 1:
            raise ValueError(f"max_parallel must be >= 1, got {max_parallel}")
        self.max_parallel = max_parallel
        self.max_development = max_development if max_development > 0 else max_parallel
        self._cond = threading.Condition(threading.Lock())
        self._active: dict[TaskCategory, int] = {TaskCategory.DEVELOPMENT: 0}

    def _limit(self, category: TaskCategory) -> int:
        if category == TaskCategory.DEVELOPMENT:
            return self.max_development
        raise UnknownCategoryError(f"unknown task category: {category}")

    def _total_active(self) -> int:
        return sum(self._active.values())

    def _has_capacity(self, category: TaskCategory) -> bool:
        return (
            self._active[category] < self._limit(category)
            and self._total_active() < self.max_parallel
        )

    def _grant(self, category: TaskCategory, owner_id: str) -> Slot:
        self._active[category] += 1
        return Slot(self, owner_id, category)

    def _release(self, slot: Slot) -> bool:
        with self._cond:
            if slot._released:
                return False
            slot._released = True
            self._active[slot.category] -= 1
            self._cond.notify()
        logger.debug("Released {} slot held by {}", slot.category.value, slot.owner_id)
        return True

    # ------------------------------------------------------------------
    # Acquisition
    # ------------------------------------------------------------------

    def acquire_slot(
        self,
        category: TaskCategory,
        owner_id: str,
        cancel: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> Slot:
        """Block until a slot is free.

        Raises :class:`SlotCancelledError` when *cancel* is set and
        :class:`SlotTimeoutError` once *timeout* seconds have passed.  A
        failed acquisition never holds capacity.
        """
        category = _category(category)
        deadline = None if timeout is None else time.monotonic() + max(timeout, 0.0)
        with self._cond:
            while not self._has_capacity(category):
                if cancel is not None and cancel.is_set():
                    raise SlotCancelledError(f"slot acquisition cancelled for {owner_id}")
                wait_for: Optional[float] = None
                if deadline is not None:
                    wait_for = deadline - time.monotonic()
                    if wait_for <= 0:
                        raise SlotTimeoutError(
                            f"timed out waiting for a {category.value} slot for {owner_id}"
                        )
                if cancel is not None:
                    wait_for = _CANCEL_POLL_SECONDS if wait_for is None else min(wait_for, _CANCEL_POLL_SECONDS)
                self._cond.wait(wait_for)
            if cancel is not None and cancel.is_set():
                # Hand the wake-up to someone else.
                self._cond.notify()
                raise SlotCancelledError(f"slot acquisition cancelled for {owner_id}")
            return self._grant(category, owner_id)

    def try_acquire_slot(self, category: TaskCategory, owner_id: str) -> Slot:
        category = _category(category)
        with self._cond:
            if not self._has_capacity(category):
                raise NoSlotsAvailableError(f"no {category.value} slots available")
            return self._grant(category, owner_id)

    def wait_for_slot(
        self,
        category: TaskCategory,
        owner_id: str,
        timeout: float,
        cancel: Optional[threading.Event] = None,
    ) -> Slot:
        return self.acquire_slot(category, owner_id, cancel=cancel, timeout=timeout)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def can_acquire(self, category: TaskCategory) -> bool:
        """Advisory check; a later acquire may still fail."""
        try:
            category = _category(category)
        except UnknownCategoryError:
            return False
        with self._cond:
            return self._has_capacity(category)

    def get_stats(self) -> ResourceStats:
        with self._cond:
            active_dev = self._active[TaskCategory.DEVELOPMENT]
        return ResourceStats.build(self.max_parallel, self.max_development, active_dev)


class ResourceWaiter:
    """Try a slot immediately, then wait up to *timeout* seconds."""

    def __init__(
        self,
        manager: ResourceManager,
        category: TaskCategory,
        owner_id: str,
        timeout: float,
    ) -> None:
        self.manager = manager
        self.category = category
        self.owner_id = owner_id
        self.timeout = timeout
        self._started = time.monotonic()

    def wait(self, cancel: Optional[threading.Event] = None) -> Slot:
        try:
            return self.manager.try_acquire_slot(self.category, self.owner_id)
        except NoSlotsAvailableError:
            pass
        return self.manager.wait_for_slot(self.category, self.owner_id, self.timeout, cancel=cancel)

    def wait_time(self) -> float:
        return time.monotonic() - self._started


class SlotManager:
    """Track at most one slot per task id."""

    def __init__(self, resources: ResourceManager) -> None:
        self.resources = resources
        self._lock = threading.Lock()
        self._slots: dict[str, Slot] = {}

    def acquire_for_task(
        self,
        task: Task,
        category: TaskCategory = TaskCategory.DEVELOPMENT,
        cancel: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> Slot:
        """Return the task's slot, acquiring one if it holds none."""
        with self._lock:
            existing = self._slots.get(task.id)
        if existing is not None:
            return existing
        # Acquire outside the lock so other tasks can release meanwhile.
        slot = self.resources.acquire_slot(category, task.id, cancel=cancel, timeout=timeout)
        with self._lock:
            existing = self._slots.get(task.id)
            if existing is not None:
                slot.release()
                return existing
            self._slots[task.id] = slot
        return slot

    def try_acquire_for_task(
        self,
        task: Task,
        category: TaskCategory = TaskCategory.DEVELOPMENT,
    ) -> Slot:
        with self._lock:
            existing = self._slots.get(task.id)
            if existing is not None:
                return existing
            slot = self.resources.try_acquire_slot(category, task.id)
            self._slots[task.id] = slot
            return slot

    def release_for_task(self, task_id: str) -> None:
        with self._lock:
            slot = self._slots.pop(task_id, None)
        if slot is None:
            raise SlotNotFoundError(f"no slot found for task: {task_id}")
        slot.release()

    def get_slot_for_task(self, task_id: str) -> Optional[Slot]:
        with self._lock:
            return self._slots.get(task_id)

    def get_active_slots(self) -> dict[str, Slot]:
        with self._lock:
            return dict(self._slots)

    def cleanup(self) -> int:
        """Release every tracked slot and return how many there were."""
        with self._lock:
            slots = list(self._slots.values())
            self._slots.clear()
        for slot in slots:
            slot.release()
        if slots:
            logger.info("Released {} orphaned slot(s)", len(slots))
        return len(slots)
