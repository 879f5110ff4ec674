"""Tests for the dependency graph (task_engine/graph.py)."""

from __future__ import annotations

import random
from datetime import datetime, timedelta, timezone

import pytest

from agent_task_queue.errors import (
    CircularDependencyError,
    DuplicateIDError,
    InvalidIDError,
    MissingDependencyError,
    NoExecutableTasksError,
)
from agent_task_queue.task_engine.graph import DependencyGraph, PolicyOutcome
from agent_task_queue.task_engine.model import (
    DependencyPolicy,
    Task,
    TaskStatus,
    compute_blocks,
)

BASE = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _task(task_id: str, *deps: str, priority: int = 50, offset: int = 0, **kwargs) -> Task:
    return Task(
        id=task_id,
        name=task_id,
        worktree=f"wt-{task_id}",
        priority=priority,
        depends_on=list(deps),
        created_at=BASE + timedelta(seconds=offset),
        **kwargs,
    )


def _graph(*tasks: Task) -> DependencyGraph:
    graph = DependencyGraph()
    for task in tasks:
        graph.add_task(task)
    return graph


def _random_dag(rng: random.Random, size: int) -> list[Task]:
    # Edges only point at lower indexes, so the result is acyclic.
    tasks = []
    for i in range(size):
        deps = [f"t{j}" for j in range(i) if rng.random() < 0.3]
        tasks.append(_task(f"t{i}", *deps, priority=rng.randint(1, 100), offset=rng.randint(0, 50)))
    rng.shuffle(tasks)
    return tasks


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------

class TestAddTask:
    def test_empty_id_rejected(self) -> None:
        with pytest.raises(InvalidIDError):
            DependencyGraph().add_task(Task(id=""))

    def test_duplicate_rejected(self) -> None:
        graph = _graph(_task("a"))
        with pytest.raises(DuplicateIDError, match="already exists"):
            graph.add_task(_task("a"))

    def test_blocks_independent_of_insertion_order(self) -> None:
        forward = _graph(_task("a"), _task("b", "a"))
        backward = _graph(_task("b", "a"), _task("a"))
        assert forward.get_task("a").blocks == ["b"]
        assert backward.get_task("a").blocks == ["b"]

    def test_blocks_always_match_recomputation(self) -> None:
        rng = random.Random(7)
        tasks = _random_dag(rng, 15)
        graph = DependencyGraph.from_tasks(tasks)
        expected = compute_blocks(graph.tasks)
        for task in graph.tasks:
            assert task.blocks == expected[task.id]

    def test_from_tasks_skips_duplicates(self) -> None:
        graph = DependencyGraph.from_tasks([_task("a"), _task("a"), _task("b")])
        assert len(graph) == 2
        assert "a" in graph and "b" in graph


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class TestValidateDependencies:
    def test_missing_dependency(self) -> None:
        graph = _graph(_task("a", "ghost"))
        with pytest.raises(MissingDependencyError, match="depends on non-existent task ghost"):
            graph.validate_dependencies()

    def test_missing_reported_before_cycle(self) -> None:
        graph = _graph(_task("a", "b"), _task("b", "a"), _task("c", "ghost"))
        with pytest.raises(MissingDependencyError):
            graph.validate_dependencies()

    def test_self_reference_is_cycle(self) -> None:
        graph = _graph(_task("a", "a"))
        with pytest.raises(CircularDependencyError):
            graph.validate_dependencies()

    @pytest.mark.parametrize("length", [2, 3, 5])
    def test_cycle_detected(self, length: int) -> None:
        ids = [f"c{i}" for i in range(length)]
        tasks = [_task(ids[i], ids[(i + 1) % length]) for i in range(length)]
        graph = _graph(_task("root"), *tasks)
        with pytest.raises(CircularDependencyError) as exc_info:
            graph.validate_dependencies()
        assert exc_info.value.task_id in ids

    def test_random_dags_validate(self) -> None:
        rng = random.Random(42)
        for _ in range(25):
            DependencyGraph.from_tasks(_random_dag(rng, rng.randint(1, 20))).validate_dependencies()

    def test_random_dag_with_back_edge_fails(self) -> None:
        rng = random.Random(3)
        for _ in range(25):
            size = rng.randint(2, 15)
            tasks = {t.id: t for t in _random_dag(rng, size)}
            # Close a loop along a guaranteed chain.
            for i in range(1, size):
                if f"t{i - 1}" not in tasks[f"t{i}"].depends_on:
                    tasks[f"t{i}"].depends_on.append(f"t{i - 1}")
            tasks["t0"].depends_on.append(f"t{size - 1}")
            graph = DependencyGraph.from_tasks(tasks.values())
            with pytest.raises(CircularDependencyError):
                graph.validate_dependencies()


# ---------------------------------------------------------------------------
# Readiness and policies
# ---------------------------------------------------------------------------

class TestReadiness:
    def test_ready_requires_completed_dependencies(self) -> None:
        graph = _graph(
            _task("a", status=TaskStatus.COMPLETED),
            _task("b", status=TaskStatus.RUNNING),
            _task("c", "a"),
            _task("d", "a", "b"),
            _task("e"),
        )
        ready = {t.id for t in graph.get_ready_tasks()}
        assert ready == {"c", "e"}

    def test_waiting_counts_as_not_started(self) -> None:
        graph = _graph(
            _task("a", status=TaskStatus.COMPLETED),
            _task("w", "a", status=TaskStatus.WAITING),
        )
        assert [t.id for t in graph.get_ready_tasks()] == ["w"]

    def test_missing_dependency_is_not_ready(self) -> None:
        graph = _graph(_task("a", "ghost"))
        assert graph.get_ready_tasks() == []

    def test_skipped_dependency_keeps_dependent_pending(self) -> None:
        graph = _graph(
            _task("a", status=TaskStatus.SKIPPED),
            _task("b", "a", dependency_policy=DependencyPolicy.SKIP),
        )
        assert graph.get_ready_tasks() == []
        assert graph.get_task("b").status == TaskStatus.PENDING

    def test_dependency_policies(self) -> None:
        graph = _graph(
            _task("dep", status=TaskStatus.FAILED),
            _task("w", "dep", dependency_policy=DependencyPolicy.WAIT),
            _task("s", "dep", dependency_policy=DependencyPolicy.SKIP),
            _task("f", "dep", dependency_policy=DependencyPolicy.FAIL),
        )
        ready = graph.get_ready_tasks()
        assert ready == []
        assert graph.get_task("w").status == TaskStatus.PENDING
        skipped = graph.get_task("s")
        failed = graph.get_task("f")
        assert skipped.status == TaskStatus.SKIPPED
        assert failed.status == TaskStatus.FAILED
        assert skipped.completed_at is not None
        assert failed.result.dependency_failures == ["dep"]
        assert "dep" in failed.result.error

    def test_evaluate_policies_reports_outcomes(self) -> None:
        graph = _graph(
            _task("dep", status=TaskStatus.FAILED),
            _task("s", "dep", dependency_policy=DependencyPolicy.SKIP),
        )
        outcomes = graph.evaluate_policies()
        assert outcomes == [PolicyOutcome(task_id="s", status=TaskStatus.SKIPPED, failed_dependency="dep")]
        assert graph.evaluate_policies() == []

    def test_fail_policy_cascades(self) -> None:
        graph = _graph(
            _task("c", "b", dependency_policy=DependencyPolicy.FAIL),
            _task("b", "a", dependency_policy=DependencyPolicy.FAIL),
            _task("a", status=TaskStatus.FAILED),
        )
        outcomes = graph.evaluate_policies()
        assert {o.task_id for o in outcomes} == {"b", "c"}
        assert graph.get_task("c").status == TaskStatus.FAILED


class TestExecutableTask:
    def test_highest_priority_wins(self) -> None:
        graph = _graph(_task("A", priority=25), _task("B", priority=90))
        assert graph.get_executable_task().id == "B"

    def test_ties_broken_by_creation_time(self) -> None:
        graph = _graph(_task("late", offset=10), _task("early", offset=1))
        assert graph.get_executable_task().id == "early"

    def test_none_ready(self) -> None:
        graph = _graph(_task("a", status=TaskStatus.RUNNING))
        with pytest.raises(NoExecutableTasksError):
            graph.get_executable_task()


# ---------------------------------------------------------------------------
# Ordering
# ---------------------------------------------------------------------------

class TestTopologicalOrder:
    def test_dependencies_come_first(self) -> None:
        graph = _graph(_task("c", "b"), _task("b", "a"), _task("a"))
        assert [t.id for t in graph.get_topological_order()] == ["a", "b", "c"]

    def test_priority_breaks_ties(self) -> None:
        graph = _graph(_task("low", priority=10), _task("high", priority=90), _task("mid", priority=50))
        assert [t.id for t in graph.get_topological_order()] == ["high", "mid", "low"]

    def test_cycle_raises(self) -> None:
        graph = _graph(_task("a", "b"), _task("b", "a"))
        with pytest.raises(CircularDependencyError):
            graph.get_topological_order()

    def test_random_dags_respect_transitive_dependencies(self) -> None:
        rng = random.Random(11)
        for _ in range(25):
            graph = DependencyGraph.from_tasks(_random_dag(rng, rng.randint(1, 25)))
            order = [t.id for t in graph.get_topological_order()]
            assert sorted(order) == sorted(t.id for t in graph.tasks)
            position = {task_id: i for i, task_id in enumerate(order)}
            for task in graph.tasks:
                stack = list(task.depends_on)
                seen: set[str] = set()
                while stack:
                    dep = stack.pop()
                    if dep in seen:
                        continue
                    seen.add(dep)
                    assert position[dep] < position[task.id]
                    stack.extend(graph.get_task(dep).depends_on)

    def test_order_is_deterministic(self) -> None:
        tasks = _random_dag(random.Random(5), 20)
        first = [t.id for t in DependencyGraph.from_tasks(tasks).get_topological_order()]
        second = [t.id for t in DependencyGraph.from_tasks(reversed(tasks)).get_topological_order()]
        assert first == second


# ---------------------------------------------------------------------------
# Mutation and lookup
# ---------------------------------------------------------------------------

class TestRemoveTask:
    def test_strips_references(self) -> None:
        graph = _graph(_task("a"), _task("b", "a"), _task("c", "a", "b"))
        graph.remove_task("a")
        assert "a" not in graph
        for task in graph.tasks:
            assert "a" not in task.depends_on
        assert graph.get_task("c").depends_on == ["b"]
        assert graph.get_task("b").blocks == ["c"]
        graph.validate_dependencies()

    def test_unknown_id_is_noop(self) -> None:
        graph = _graph(_task("a"))
        graph.remove_task("ghost")
        assert len(graph) == 1

    def test_random_removals_stay_consistent(self) -> None:
        rng = random.Random(99)
        for _ in range(20):
            graph = DependencyGraph.from_tasks(_random_dag(rng, rng.randint(2, 20)))
            victim = rng.choice([t.id for t in graph.tasks])
            graph.remove_task(victim)
            assert all(victim not in t.depends_on for t in graph.tasks)
            graph.validate_dependencies()


class TestLookups:
    def test_dependencies_and_dependents(self) -> None:
        graph = _graph(_task("a"), _task("b", "a"), _task("c", "a"))
        assert [t.id for t in graph.get_dependencies("b")] == ["a"]
        assert sorted(t.id for t in graph.get_dependents("a")) == ["b", "c"]
        assert graph.get_dependencies("ghost") == []
        assert graph.get_dependents("ghost") == []

    def test_update_task_reindexes(self) -> None:
        graph = _graph(_task("a"), _task("b"))
        graph.update_task(_task("b", "a"))
        assert graph.get_task("a").blocks == ["b"]
        with pytest.raises(InvalidIDError):
            graph.update_task(Task(id=""))


class TestDependencyDepth:
    def test_empty_graph(self) -> None:
        assert DependencyGraph().get_dependency_depth() == 0

    def test_single_task(self) -> None:
        assert _graph(_task("a")).get_dependency_depth() == 1

    def test_longest_chain(self) -> None:
        graph = _graph(_task("a"), _task("b", "a"), _task("c", "b"), _task("d", "a"))
        assert graph.get_dependency_depth() == 3
        assert graph.get_task_depth("d") == 2

    def test_cycle_safe(self) -> None:
        graph = _graph(_task("a", "b"), _task("b", "a"))
        assert graph.get_dependency_depth() == 2
