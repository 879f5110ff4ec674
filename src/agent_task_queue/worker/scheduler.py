"""Scheduler loop: pick ready tasks, lease slots, run them, record outcomes.

Each tick rebuilds a :class:`SchedulingContext` from the store, so the
dependency graph never drifts from what is on disk.  Tasks run on a thread
pool; slots are released and a terminal status is written whatever the
executor does.
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Optional

from loguru import logger

from ..constants import DEFAULT_POLL_INTERVAL_SECONDS, INTERRUPTED_ERROR
from ..errors import NoSlotsAvailableError, TaskQueueError, TaskValidationError
from ..task_engine.graph import DependencyGraph, PolicyOutcome, schedule_key
from ..task_engine.model import Task, TaskCategory, TaskResult, TaskStatus
from ..task_engine.store import TaskStore
from ..utils import format_duration
from .executor import ExecutionOutcome, Executor
from .resources import ResourceManager, Slot, SlotManager


@dataclass
class SchedulingContext:
    """A per-tick snapshot of the queue."""

    graph: DependencyGraph
    policy_outcomes: list[PolicyOutcome] = field(default_factory=list)

    @classmethod
    def load(cls, store: TaskStore) -> "SchedulingContext":
        """Build the graph from *store* and persist any policy outcomes."""
        graph = DependencyGraph.from_tasks(store.list_tasks())
        outcomes = graph.evaluate_policies()
        for outcome in outcomes:
            task = graph.get_task(outcome.task_id)
            if task is None:
                continue
            try:
                with store.locked():
                    store.update_task_status(task.id, outcome.status)
                    store.update_task_result(task.id, task.result)
            except TaskQueueError as exc:
                logger.warning("Could not record policy outcome for task {}: {}", task.id, exc)
        return cls(graph=graph, policy_outcomes=outcomes)

    def ready_tasks(self) -> list[Task]:
        """Ready tasks in the order they should start."""
        return sorted(self.graph.get_ready_tasks(), key=schedule_key)


class TaskWorker:
    """Run queued tasks under the resource manager's limits.

    Parameters
    ----------
    store:
        Task store to read from and record outcomes into.
    executor:
        Runs a single task.
    resources:
        Slot allocator; its ``max_parallel`` also sizes the thread pool.
    poll_interval:
        Seconds between scheduling ticks.
    validate_dependencies:
        Log structural problems (missing prerequisites, cycles) every tick.
    """

    def __init__(
        self,
        store: TaskStore,
        executor: Executor,
        resources: ResourceManager,
        *,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        validate_dependencies: bool = True,
    ) -> None:
        self.store = store
        self.executor = executor
        self.resources = resources
        self.slots = SlotManager(resources)
        self.poll_interval = poll_interval
        self.validate_dependencies = validate_dependencies
        self._lock = threading.RLock()
        self._thread: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._pool: ThreadPoolExecutor | None = None
        self._futures: dict[str, Future] = {}
        self._futures_lock = threading.Lock()
        self._recovered = False

    def _get_pool(self) -> ThreadPoolExecutor:
        if self._pool is None:
            self._pool = ThreadPoolExecutor(
                max_workers=self.resources.max_parallel, thread_name_prefix="taskq-worker"
            )
        return self._pool

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Run the scheduling loop on a background thread."""
        with self._lock:
            if self._thread and self._thread.is_alive():
                return
            self.recover_interrupted_tasks()
            self._stop.clear()
            self._thread = threading.Thread(target=self._loop, daemon=True, name="taskq-scheduler")
            self._thread.start()

    def run_forever(self) -> None:
        """Run the scheduling loop on the calling thread until :meth:`stop`."""
        self.recover_interrupted_tasks()
        self._stop.clear()
        self._loop()

    def stop(self) -> None:
        self._stop.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def shutdown(self, *, timeout: float = 10.0) -> None:
        """Stop the loop, wait for in-flight tasks, then release every slot."""
        with self._lock:
            self._stop.set()
            thread = self._thread

        if thread and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=max(timeout, 0.0))

        with self._futures_lock:
            inflight = list(self._futures.values())
        if inflight and timeout > 0:
            _, not_done = wait(inflight, timeout=timeout)
            if not_done:
                logger.warning("{} task(s) still running at shutdown", len(not_done))

        pool = self._pool
        if pool is not None:
            pool.shutdown(wait=False, cancel_futures=False)
            self._pool = None

        self.slots.cleanup()
        with self._futures_lock:
            self._futures.clear()
        self._thread = None

    def _loop(self) -> None:
        logger.info("Worker started ({})", self.resources.get_stats())
        while not self._stop.is_set():
            try:
                self.tick_once()
            except Exception:
                logger.exception("Scheduling tick failed")
            self._stop.wait(self.poll_interval)
        logger.info("Worker loop stopped")

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    def recover_interrupted_tasks(self) -> list[str]:
        """Fail tasks left ``running`` by a previous worker process.

        A running task cannot return to ``pending``, so it is recorded as
        failed.  Tasks this worker is executing are left alone.
        """
        if self._recovered:
            return []
        self._recovered = True
        with self._futures_lock:
            inflight = set(self._futures)
        recovered: list[str] = []
        for task in self.store.get_tasks_by_status(TaskStatus.RUNNING):
            if task.id in inflight or self.slots.get_slot_for_task(task.id) is not None:
                continue
            result = task.ensure_result()
            result.exit_code = -1
            result.error = INTERRUPTED_ERROR
            try:
                self.store.update_task_result(task.id, result)
                self.store.update_task_status(task.id, TaskStatus.FAILED)
            except TaskQueueError as exc:
                logger.error("Failed to recover task {}: {}", task.id, exc)
                continue
            recovered.append(task.id)
        if recovered:
            logger.warning("Marked {} interrupted task(s) as failed: {}", len(recovered), ", ".join(recovered))
        return recovered

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _sweep_futures(self) -> None:
        """Remove completed futures and log any unexpected errors."""
        with self._futures_lock:
            done_ids = [tid for tid, f in self._futures.items() if f.done()]
            for tid in done_ids:
                fut = self._futures.pop(tid)
                exc = fut.exception()
                if exc:
                    logger.opt(exception=exc).error("Task {} raised unexpected error: {}", tid, exc)

    def in_flight(self) -> int:
        with self._futures_lock:
            return sum(1 for f in self._futures.values() if not f.done())

    def tick_once(self) -> int:
        """Start every ready task a slot is available for.

        Returns the number of tasks started.
        """
        self._sweep_futures()
        ctx = SchedulingContext.load(self.store)

        if self.validate_dependencies:
            try:
                ctx.graph.validate_dependencies()
            except TaskValidationError as exc:
                logger.warning("Queue has invalid dependencies: {}", exc)

        started = 0
        for task in ctx.ready_tasks():
            if self._stop.is_set():
                break
            with self._futures_lock:
                if task.id in self._futures:
                    continue
            try:
                slot = self.slots.try_acquire_for_task(task, TaskCategory.DEVELOPMENT)
            except NoSlotsAvailableError:
                logger.debug("No slots available ({})", self.resources.get_stats())
                break
            try:
                running = self.store.update_task_status(task.id, TaskStatus.RUNNING)
            except TaskQueueError as exc:
                logger.warning("Could not start task {}: {}", task.id, exc)
                self._release(task.id)
                continue
            logger.info("Starting task {} ({}) priority={}", running.id, running.display_name, running.priority)
            future = self._get_pool().submit(self._execute_task, running, slot)
            with self._futures_lock:
                self._futures[running.id] = future
            started += 1
        return started

    def run_until_idle(self, timeout: Optional[float] = None) -> int:
        """Tick until nothing is running and nothing more can start.

        Returns the total number of tasks started.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        total = 0
        while True:
            started = self.tick_once()
            total += started
            with self._futures_lock:
                inflight = list(self._futures.values())
            if not started and not inflight:
                return total
            remaining = None if deadline is None else max(deadline - time.monotonic(), 0.0)
            if inflight:
                wait(inflight, timeout=remaining)
            if deadline is not None and time.monotonic() >= deadline:
                logger.warning("Stopped waiting for idle after {}s", timeout)
                return total

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _release(self, task_id: str) -> None:
        try:
            self.slots.release_for_task(task_id)
        except TaskQueueError as exc:
            logger.warning("Slot release for task {} failed: {}", task_id, exc)

    def _execute_task(self, task: Task, slot: Slot) -> None:
        start = time.monotonic()
        try:
            outcome = self.executor.run(task)
        except Exception as exc:
            logger.exception("Executor raised for task {}", task.id)
            outcome = ExecutionOutcome(exit_code=-1, error=str(exc) or exc.__class__.__name__)
        finally:
            self._release(task.id)
        duration = time.monotonic() - start
        self._record_outcome(task, outcome, duration)

    def _record_outcome(self, task: Task, outcome: ExecutionOutcome, duration: float) -> None:
        status = TaskStatus.COMPLETED if outcome.succeeded else TaskStatus.FAILED
        if outcome.error is None and outcome.exit_code != 0:
            outcome.error = f"exit code {outcome.exit_code}"
        wait_time = 0.0
        if task.started_at is not None:
            wait_time = max(0.0, (task.started_at - task.created_at).total_seconds())
        result = TaskResult(
            exit_code=outcome.exit_code,
            duration=duration,
            files_changed=list(outcome.changed_files),
            dependencies_wait_time=wait_time,
            error=outcome.error,
        )
        try:
            self.store.update_task_result(task.id, result)
            if outcome.session_id:
                self.store.update_task_session_id(task.id, outcome.session_id)
            self.store.update_task_status(task.id, status)
        except TaskQueueError as exc:
            logger.error("Could not record {} for task {}: {}", status.value, task.id, exc)
            return
        if status == TaskStatus.COMPLETED:
            logger.info("Task {} completed in {}", task.id, format_duration(duration))
        else:
            logger.error("Task {} failed after {}: {}", task.id, format_duration(duration), outcome.error)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def status(self) -> dict[str, Any]:
        counts = {s.value: 0 for s in TaskStatus}
        for task in self.store.list_tasks():
            counts[task.status.value] += 1
        thread = self._thread
        return {
            "running": bool(thread and thread.is_alive()) and not self._stop.is_set(),
            "in_flight": self.in_flight(),
            "counts": counts,
            "active_slots": sorted(self.slots.get_active_slots()),
            "resources": self.resources.get_stats().to_dict(),
        }
