"""Tests for the task model and lifecycle rules (task_engine/model.py)."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from agent_task_queue.errors import InvalidPriorityError, InvalidTransitionError
from agent_task_queue.task_engine.model import (
    DependencyPolicy,
    Task,
    TaskConfig,
    TaskResult,
    TaskStatus,
    can_transition,
    compute_blocks,
    validate_priority,
)


class TestTaskCreation:
    def test_default_values(self) -> None:
        t = Task(name="Write docs", worktree="docs")
        assert t.priority == 50
        assert t.status == TaskStatus.PENDING
        assert t.dependency_policy == DependencyPolicy.WAIT
        assert t.depends_on == []
        assert t.blocks == []
        assert t.agent_type == "claude"
        assert t.config == TaskConfig(skip_permissions=True, auto_commit=False, backup_files=False)
        assert t.result is None
        assert len(t.id) == 6
        assert t.created_at.tzinfo is not None

    def test_id_generation_unique(self) -> None:
        ids = {Task().id for _ in range(100)}
        assert len(ids) == 100

    def test_display_name_prefers_name(self) -> None:
        assert Task(name="Short", prompt="x" * 80).display_name == "Short"

    def test_display_name_truncates_prompt(self) -> None:
        name = Task(prompt="y" * 80).display_name
        assert len(name) == 50
        assert name.endswith("...")


class TestTaskSerialization:
    def test_round_trip(self) -> None:
        t = Task(
            id="abc123",
            name="Add auth",
            worktree="feature/auth",
            priority=80,
            depends_on=["dep1"],
            dependency_policy=DependencyPolicy.SKIP,
            files_to_focus=["src/auth.py"],
            verification_commands=["make test"],
            result=TaskResult(exit_code=1, duration=2.5, error="boom"),
        )
        restored = Task.from_dict(t.to_dict())
        assert restored == t

    def test_to_dict_uses_plain_values(self) -> None:
        d = Task(id="t1", status=TaskStatus.RUNNING).to_dict()
        assert d["status"] == "running"
        assert d["dependency_policy"] == "wait"
        assert isinstance(d["created_at"], str)
        assert d["started_at"] is None

    def test_from_dict_rejects_unknown_status(self) -> None:
        with pytest.raises(ValueError):
            Task.from_dict({"id": "t1", "status": "exploded"})

    def test_from_dict_defaults_missing_fields(self) -> None:
        t = Task.from_dict({"id": "t1"})
        assert t.status == TaskStatus.PENDING
        assert t.priority == 50
        assert t.config.skip_permissions is True


class TestPriority:
    @pytest.mark.parametrize("value", [1, 50, 100])
    def test_valid(self, value: int) -> None:
        assert validate_priority(value) == value

    @pytest.mark.parametrize("value", [0, 101, -5, "high", None, True])
    def test_invalid(self, value: object) -> None:
        with pytest.raises(InvalidPriorityError):
            validate_priority(value)


class TestLifecycle:
    def test_forward_transitions(self) -> None:
        assert can_transition(TaskStatus.PENDING, TaskStatus.RUNNING)
        assert can_transition(TaskStatus.PENDING, TaskStatus.SKIPPED)
        assert can_transition(TaskStatus.WAITING, TaskStatus.FAILED)
        assert can_transition(TaskStatus.RUNNING, TaskStatus.COMPLETED)

    def test_no_return_to_pending(self) -> None:
        for status in TaskStatus:
            if status != TaskStatus.PENDING:
                assert not can_transition(status, TaskStatus.PENDING)

    def test_terminal_statuses_are_final(self) -> None:
        for status in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.SKIPPED, TaskStatus.CANCELLED):
            assert not can_transition(status, TaskStatus.RUNNING)

    def test_same_status_allowed(self) -> None:
        assert can_transition(TaskStatus.COMPLETED, TaskStatus.COMPLETED)

    def test_transition_stamps_timestamps_once(self) -> None:
        t = Task(id="t1")
        first = datetime(2024, 1, 1, tzinfo=timezone.utc)
        t.transition(TaskStatus.RUNNING, when=first)
        t.transition(TaskStatus.RUNNING, when=first + timedelta(hours=1))
        assert t.started_at == first
        t.transition(TaskStatus.COMPLETED, when=first + timedelta(minutes=5))
        assert t.completed_at == first + timedelta(minutes=5)
        assert t.duration == 300.0

    def test_invalid_transition_raises(self) -> None:
        t = Task(id="t1", status=TaskStatus.COMPLETED)
        with pytest.raises(InvalidTransitionError, match="completed to running"):
            t.transition(TaskStatus.RUNNING)


class TestComputeBlocks:
    def test_inverse_of_depends_on(self) -> None:
        a = Task(id="a")
        b = Task(id="b", depends_on=["a"])
        c = Task(id="c", depends_on=["a", "b", "ghost"])
        blocks = compute_blocks([a, b, c])
        assert blocks == {"a": ["b", "c"], "b": ["c"], "c": []}
