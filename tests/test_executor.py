"""Tests for the executors (worker/executor.py)."""

from __future__ import annotations

import shlex
import subprocess
import sys
from pathlib import Path
from typing import Any

import pytest

from agent_task_queue.errors import ExecutionError
from agent_task_queue.task_engine.model import Task
from agent_task_queue.worker.executor import (
    CommandExecutor,
    ScriptedExecutor,
    SessionExecutor,
    TmuxSessionProvider,
    _parse_porcelain,
    build_prompt,
)


class FakeSessions:
    """Session provider whose sessions live for a fixed number of polls."""

    def __init__(self, lifetime: int, fail_create: bool = False) -> None:
        self.lifetime = lifetime
        self.fail_create = fail_create
        self.polls = 0
        self.terminated: list[Any] = []

    def create(self, task: Task) -> str:
        if self.fail_create:
            raise RuntimeError("no tmux")
        return f"session-{task.id}"

    def exists(self, handle: str) -> bool:
        self.polls += 1
        return self.polls <= self.lifetime

    def terminate(self, handle: str) -> None:
        self.terminated.append(handle)


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += seconds


class TestBuildPrompt:
    def test_falls_back_to_name(self) -> None:
        assert build_prompt(Task(name="Do it")) == "Do it"

    def test_includes_focus_and_verification(self) -> None:
        prompt = build_prompt(
            Task(prompt="Fix bug", files_to_focus=["a.py"], verification_commands=["pytest"])
        )
        assert prompt.startswith("Fix bug")
        assert "- a.py" in prompt
        assert "- pytest" in prompt


class TestPorcelain:
    def test_parses_status_lines(self) -> None:
        output = " M src/a.py\n?? new.txt\nR  old.py -> renamed.py\n"
        assert _parse_porcelain(output) == ["src/a.py", "new.txt", "renamed.py"]


class TestCommandExecutor:
    def test_success_reads_prompt_from_stdin(self, tmp_path: Path) -> None:
        script = tmp_path / "agent.py"
        script.write_text("import sys\nassert sys.stdin.read().startswith('hello')\n")
        executor = CommandExecutor(f"{shlex.quote(sys.executable)} {shlex.quote(str(script))}", timeout=30)
        outcome = executor.run(Task(id="t1", prompt="hello", worktree_path=str(tmp_path)))
        assert outcome.succeeded
        assert outcome.exit_code == 0

    def test_failure_reports_stderr(self, tmp_path: Path) -> None:
        script = tmp_path / "agent.py"
        script.write_text("import sys\nsys.stderr.write('kaboom\\n')\nsys.exit(3)\n")
        outcome = CommandExecutor(f"{shlex.quote(sys.executable)} {shlex.quote(str(script))}").run(Task(id="t1"))
        assert not outcome.succeeded
        assert outcome.exit_code == 3
        assert "kaboom" in outcome.error

    def test_timeout(self, tmp_path: Path) -> None:
        script = tmp_path / "agent.py"
        script.write_text("import time\ntime.sleep(5)\n")
        outcome = CommandExecutor(f"{shlex.quote(sys.executable)} {shlex.quote(str(script))}", timeout=0.2).run(Task(id="t1"))
        assert not outcome.succeeded
        assert "timed out" in outcome.error

    def test_missing_binary(self) -> None:
        outcome = CommandExecutor("definitely-not-a-real-binary-xyz").run(Task(id="t1"))
        assert not outcome.succeeded
        assert "failed to start" in outcome.error

    def test_unknown_placeholder(self) -> None:
        with pytest.raises(ExecutionError, match="placeholder"):
            CommandExecutor("agent {nope}").run(Task(id="t1"))

    def test_empty_command(self) -> None:
        with pytest.raises(ValueError):
            CommandExecutor("   ")


class TestSessionExecutor:
    def test_session_finishes(self) -> None:
        clock = FakeClock()
        sessions = FakeSessions(lifetime=3)
        executor = SessionExecutor(sessions, poll_interval=2, timeout=60, sleep=clock.sleep, clock=clock)
        outcome = executor.run(Task(id="t1"))
        assert outcome.succeeded
        assert outcome.session_id == "session-t1"
        assert clock.now == 6
        assert sessions.terminated == []

    def test_timeout_terminates_and_fails(self) -> None:
        clock = FakeClock()
        sessions = FakeSessions(lifetime=1000)
        executor = SessionExecutor(sessions, poll_interval=2, timeout=10, sleep=clock.sleep, clock=clock)
        outcome = executor.run(Task(id="t1"))
        assert not outcome.succeeded
        assert "timed out" in outcome.error
        assert sessions.terminated == ["session-t1"]

    def test_create_failure(self) -> None:
        outcome = SessionExecutor(FakeSessions(0, fail_create=True)).run(Task(id="t1"))
        assert not outcome.succeeded
        assert "no tmux" in outcome.error


class TestScriptedExecutor:
    def test_defaults_to_success(self) -> None:
        executor = ScriptedExecutor()
        assert executor.run(Task(id="t1")).succeeded
        assert executor.calls == ["t1"]

    def test_scripted_failure_by_name(self) -> None:
        executor = ScriptedExecutor({"build": {"exit_code": 2, "changed_files": ["x"]}})
        outcome = executor.run(Task(id="t1", name="build"))
        assert outcome.exit_code == 2
        assert outcome.changed_files == ["x"]

    def test_scripted_raise(self) -> None:
        with pytest.raises(ExecutionError, match="exploded"):
            ScriptedExecutor({"t1": {"raise": "exploded"}}).run(Task(id="t1"))


class FakeTmux:
    """Records tmux invocations; ``alive`` sessions answer has-session."""

    def __init__(self, fail: str = "") -> None:
        self.calls: list[list[str]] = []
        self.alive: set[str] = set()
        self.fail = fail

    def __call__(self, argv: list[str], **kwargs: Any) -> subprocess.CompletedProcess:
        self.calls.append(argv)
        action = argv[1]
        code = 0
        if action == self.fail:
            code = 1
        elif action == "new-session":
            self.alive.add(argv[argv.index("-s") + 1])
        elif action == "has-session":
            code = 0 if argv[-1] in self.alive else 1
        elif action == "kill-session":
            self.alive.discard(argv[-1])
        return subprocess.CompletedProcess(argv, code, stdout="", stderr="boom" if code else "")


class TestTmuxSessionProvider:
    def test_create_exists_terminate(self, tmp_path: Path) -> None:
        tmux = FakeTmux()
        provider = TmuxSessionProvider("agent --task {task_id}", runner=tmux)
        task = Task(id="t1", prompt="fix it", worktree_path=str(tmp_path))

        handle = provider.create(task)

        assert handle == "taskq-t1"
        argv = tmux.calls[0]
        assert argv[:5] == ["tmux", "new-session", "-d", "-s", "taskq-t1"]
        assert argv[5:7] == ["-c", str(tmp_path)]
        assert argv[-1] == "printf '%s' 'fix it' | agent --task t1"
        assert provider.exists(handle)
        provider.terminate(handle)
        assert not provider.exists(handle)

    def test_prompt_placeholder_is_quoted(self) -> None:
        provider = TmuxSessionProvider("agent -p {prompt}", runner=FakeTmux())
        assert provider.shell_command(Task(id="t1", prompt="it's done")) == "agent -p 'it'\"'\"'s done'"

    def test_create_failure_reported_by_session_executor(self) -> None:
        provider = TmuxSessionProvider("agent", runner=FakeTmux(fail="new-session"))
        outcome = SessionExecutor(provider).run(Task(id="t1"))
        assert not outcome.succeeded
        assert "new-session failed" in outcome.error

    def test_session_executor_end_to_end(self) -> None:
        tmux = FakeTmux()
        clock = FakeClock()
        provider = TmuxSessionProvider("agent", runner=tmux)

        def _sleep(seconds: float) -> None:
            clock.sleep(seconds)
            tmux.alive.clear()

        executor = SessionExecutor(provider, poll_interval=1, timeout=60, sleep=_sleep, clock=clock)
        outcome = executor.run(Task(id="t1"))
        assert outcome.succeeded
        assert outcome.session_id == "taskq-t1"
