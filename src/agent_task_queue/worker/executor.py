"""Executors run one task and report how it went.

The scheduler only depends on the :class:`Executor` protocol.  Three
implementations are provided: a subprocess-based :class:`CommandExecutor`, a
:class:`SessionExecutor` that polls an external session until it disappears
(tmux sessions come from :class:`TmuxSessionProvider`), and a deterministic
:class:`ScriptedExecutor` for dry runs and tests.
"""

from __future__ import annotations

import shlex
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping, Optional, Protocol

from loguru import logger

from ..constants import (
    DEFAULT_EXECUTOR_TIMEOUT_SECONDS,
    DEFAULT_SESSION_POLL_INTERVAL_SECONDS,
    SESSION_NAME_PREFIX,
)
from ..errors import ExecutionError
from ..task_engine.model import Task


@dataclass
class ExecutionOutcome:
    exit_code: int = 0
    changed_files: list[str] = field(default_factory=list)
    error: Optional[str] = None
    session_id: str = ""

    @property
    def succeeded(self) -> bool:
        return self.error is None and self.exit_code == 0


class Executor(Protocol):
    def run(self, task: Task) -> ExecutionOutcome:
        ...


class SessionProvider(Protocol):
    def create(self, task: Task) -> Any:
        ...

    def exists(self, handle: Any) -> bool:
        ...

    def terminate(self, handle: Any) -> None:
        ...


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def build_prompt(task: Task) -> str:
    """Compose the agent prompt from the task's work definition."""
    parts = [task.prompt or task.name]
    if task.files_to_focus:
        parts.append("Files to focus on:\n" + "\n".join(f"- {p}" for p in task.files_to_focus))
    if task.verification_commands:
        parts.append(
            "Verify the work with:\n" + "\n".join(f"- {c}" for c in task.verification_commands)
        )
    return "\n\n".join(parts)


def task_workdir(task: Task) -> Optional[Path]:
    for candidate in (task.worktree_path, task.repository_root):
        if candidate:
            path = Path(candidate).expanduser()
            if path.is_dir():
                return path
    return None


def _parse_porcelain(output: str) -> list[str]:
    files: list[str] = []
    for line in output.splitlines():
        if len(line) < 4:
            continue
        path = line[3:]
        if " -> " in path:
            path = path.split(" -> ", 1)[1]
        files.append(path.strip().strip('"'))
    return files


def _git_changed_files(workdir: Optional[Path]) -> list[str]:
    if workdir is None:
        return []
    try:
        result = subprocess.run(
            ["git", "status", "--porcelain"],
            cwd=workdir,
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError:
        return []
    if result.returncode != 0:
        return []
    return _parse_porcelain(result.stdout)


# ---------------------------------------------------------------------------
# Executors
# ---------------------------------------------------------------------------

class CommandExecutor:
    """Run a shell command for each task.

    The command may use ``{prompt}``, ``{task_id}`` and ``{worktree}``
    placeholders.  Without ``{prompt}`` the prompt is written to stdin.
    """

    def __init__(self, command: str, timeout: float = DEFAULT_EXECUTOR_TIMEOUT_SECONDS) -> None:
        if not command.strip():
            raise ValueError("executor command must not be empty")
        self.command = command
        self.timeout = timeout

    def _argv(self, task: Task, prompt: str) -> list[str]:
        try:
            formatted = [
                part.format(prompt=prompt, task_id=task.id, worktree=task.worktree)
                for part in shlex.split(self.command)
            ]
        except (KeyError, IndexError) as exc:
            raise ExecutionError(f"unknown placeholder in executor command: {exc}") from exc
        return formatted

    def run(self, task: Task) -> ExecutionOutcome:
        prompt = build_prompt(task)
        argv = self._argv(task, prompt)
        workdir = task_workdir(task)
        stdin_prompt = None if "{prompt}" in self.command else prompt
        logger.debug("Running {} for task {} in {}", argv[0], task.id, workdir or ".")
        try:
            proc = subprocess.run(
                argv,
                cwd=workdir,
                input=stdin_prompt,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired:
            return ExecutionOutcome(
                exit_code=-1,
                changed_files=_git_changed_files(workdir),
                error=f"command timed out after {self.timeout:g}s",
            )
        except OSError as exc:
            return ExecutionOutcome(exit_code=-1, error=f"failed to start command: {exc}")

        error = None
        if proc.returncode != 0:
            tail = (proc.stderr or "").strip().splitlines()[-5:]
            error = f"command exited with code {proc.returncode}"
            if tail:
                error += ": " + " | ".join(tail)
        return ExecutionOutcome(
            exit_code=proc.returncode,
            changed_files=_git_changed_files(workdir),
            error=error,
        )


class SessionExecutor:
    """Start a session and poll until it ends or the fallback timeout hits.

    A session that is still alive at the timeout is terminated and the task
    reported as failed, so a terminal status is always recorded.
    """

    def __init__(
        self,
        provider: SessionProvider,
        *,
        poll_interval: float = DEFAULT_SESSION_POLL_INTERVAL_SECONDS,
        timeout: float = DEFAULT_EXECUTOR_TIMEOUT_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.provider = provider
        self.poll_interval = poll_interval
        self.timeout = timeout
        self._sleep = sleep
        self._clock = clock

    def run(self, task: Task) -> ExecutionOutcome:
        try:
            handle = self.provider.create(task)
        except Exception as exc:
            return ExecutionOutcome(exit_code=-1, error=f"failed to create session: {exc}")

        session_id = str(handle)
        started = self._clock()
        while True:
            if not self.provider.exists(handle):
                logger.debug("Session {} for task {} finished", session_id, task.id)
                return ExecutionOutcome(
                    changed_files=_git_changed_files(task_workdir(task)),
                    session_id=session_id,
                )
            if self._clock() - started >= self.timeout:
                logger.warning("Session {} for task {} timed out; terminating", session_id, task.id)
                try:
                    self.provider.terminate(handle)
                except Exception as exc:
                    logger.error("Failed to terminate session {}: {}", session_id, exc)
                return ExecutionOutcome(
                    exit_code=-1,
                    error=f"session timed out after {self.timeout:g}s",
                    session_id=session_id,
                )
            self._sleep(self.poll_interval)


class TmuxSessionProvider:
    """One detached tmux session per task, running the executor command.

    The session exits when the command does, so :meth:`exists` turning false
    marks completion.  The command accepts the same placeholders as
    :class:`CommandExecutor`; without ``{prompt}`` the prompt is piped in.
    """

    def __init__(
        self,
        command: str,
        *,
        tmux: str = "tmux",
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ) -> None:
        if not command.strip():
            raise ValueError("executor command must not be empty")
        self.command = command
        self.tmux = tmux
        self._runner = runner

    def _tmux(self, *args: str) -> subprocess.CompletedProcess:
        return self._runner([self.tmux, *args], capture_output=True, text=True, check=False)

    def session_name(self, task: Task) -> str:
        return f"{SESSION_NAME_PREFIX}{task.id}"

    def shell_command(self, task: Task) -> str:
        prompt = build_prompt(task)
        try:
            command = self.command.format(
                prompt=shlex.quote(prompt),
                task_id=shlex.quote(task.id),
                worktree=shlex.quote(task.worktree),
            )
        except (KeyError, IndexError) as exc:
            raise ExecutionError(f"unknown placeholder in executor command: {exc}") from exc
        if "{prompt}" not in self.command:
            command = f"printf '%s' {shlex.quote(prompt)} | {command}"
        return command

    def create(self, task: Task) -> str:
        name = self.session_name(task)
        args = ["new-session", "-d", "-s", name]
        workdir = task_workdir(task)
        if workdir is not None:
            args += ["-c", str(workdir)]
        args.append(self.shell_command(task))
        result = self._tmux(*args)
        if result.returncode != 0:
            raise ExecutionError(f"tmux new-session failed: {(result.stderr or '').strip()}")
        logger.info("Started tmux session {} for task {}", name, task.id)
        return name

    def exists(self, handle: str) -> bool:
        return self._tmux("has-session", "-t", handle).returncode == 0

    def terminate(self, handle: str) -> None:
        result = self._tmux("kill-session", "-t", handle)
        if result.returncode != 0:
            raise ExecutionError(f"tmux kill-session failed: {(result.stderr or '').strip()}")


class ScriptedExecutor:
    """Deterministic executor driven by a mapping.

    Keys are task ids or names; values are dicts with optional
    ``exit_code``, ``error``, ``changed_files``, ``delay`` and ``raise``
    entries.  Tasks without an entry succeed immediately.
    """

    def __init__(self, script: Optional[Mapping[str, Mapping[str, Any]]] = None) -> None:
        self.script = dict(script or {})
        self.calls: list[str] = []
        self._lock = threading.Lock()

    def run(self, task: Task) -> ExecutionOutcome:
        with self._lock:
            self.calls.append(task.id)
        entry = dict(self.script.get(task.id) or self.script.get(task.name) or {})
        delay = float(entry.get("delay", 0) or 0)
        if delay > 0:
            time.sleep(delay)
        if entry.get("raise"):
            raise ExecutionError(str(entry["raise"]))
        return ExecutionOutcome(
            exit_code=int(entry.get("exit_code", 0) or 0),
            changed_files=list(entry.get("changed_files") or []),
            error=entry.get("error"),
            session_id=str(entry.get("session_id", "") or ""),
        )
