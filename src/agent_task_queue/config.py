"""Load queue configuration from ``~/.config/agent-taskq/config.yaml``.

Example::

    queue:
      queue_dir: ~/.config/agent-taskq/queue
      retention_days: 30
      validate_dependencies: true
      max_dependency_depth: 5
    worker:
      max_parallel: 3
      max_development_tasks: 2
      poll_interval: 5
    executor:
      command: claude -p
      mode: command        # or "session" (tmux)
      timeout: 7200
      session_poll_interval: 2
"""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

from .constants import (
    CONFIG_ENV_VAR,
    CONFIG_FILE,
    DEFAULT_CONFIG_DIR,
    DEFAULT_EXECUTOR_COMMAND,
    DEFAULT_EXECUTOR_MODE,
    DEFAULT_EXECUTOR_TIMEOUT_SECONDS,
    DEFAULT_MAX_DEPENDENCY_DEPTH,
    DEFAULT_MAX_DEVELOPMENT_TASKS,
    DEFAULT_MAX_PARALLEL,
    DEFAULT_POLL_INTERVAL_SECONDS,
    DEFAULT_RETENTION_DAYS,
    DEFAULT_SESSION_POLL_INTERVAL_SECONDS,
    EXECUTOR_MODES,
    QUEUE_DIR_NAME,
)
from .io_utils import _load_data_with_error


def _default_queue_dir() -> Path:
    return Path(DEFAULT_CONFIG_DIR).expanduser() / QUEUE_DIR_NAME


@dataclass
class QueueConfig:
    queue_dir: Path = field(default_factory=_default_queue_dir)
    retention_days: int = DEFAULT_RETENTION_DAYS
    validate_dependencies: bool = True
    max_dependency_depth: int = DEFAULT_MAX_DEPENDENCY_DEPTH

    max_parallel: int = DEFAULT_MAX_PARALLEL
    max_development_tasks: int = DEFAULT_MAX_DEVELOPMENT_TASKS
    poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS

    executor_command: str = DEFAULT_EXECUTOR_COMMAND
    executor_mode: str = DEFAULT_EXECUTOR_MODE
    executor_timeout: float = DEFAULT_EXECUTOR_TIMEOUT_SECONDS
    session_poll_interval: float = DEFAULT_SESSION_POLL_INTERVAL_SECONDS

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["queue_dir"] = str(self.queue_dir)
        return data


def default_config_path() -> Path:
    override = os.environ.get(CONFIG_ENV_VAR)
    if override:
        return Path(override).expanduser()
    return Path(DEFAULT_CONFIG_DIR).expanduser() / CONFIG_FILE


def _get_nested(config: dict[str, Any], *keys: str) -> Any:
    cur: Any = config
    for key in keys:
        if not isinstance(cur, dict):
            return None
        cur = cur.get(key)
    return cur


def _positive_int(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError("expected an integer")
    number = int(value)
    if number < 1:
        raise ValueError("must be >= 1")
    return number


def _non_negative_int(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError("expected an integer")
    number = int(value)
    if number < 0:
        raise ValueError("must be >= 0")
    return number


def _positive_float(value: Any) -> float:
    if isinstance(value, bool):
        raise ValueError("expected a number")
    number = float(value)
    if number <= 0:
        raise ValueError("must be > 0")
    return number


def _boolean(value: Any) -> bool:
    if not isinstance(value, bool):
        raise ValueError("expected true or false")
    return value


def _non_empty_str(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError("expected a non-empty string")
    return value.strip()


def _executor_mode(value: Any) -> str:
    mode = str(value).strip().lower()
    if mode not in EXECUTOR_MODES:
        raise ValueError(f"expected one of {', '.join(EXECUTOR_MODES)}")
    return mode


_KEYS: list[tuple[tuple[str, str], str, Callable[[Any], Any]]] = [
    (("queue", "queue_dir"), "queue_dir", lambda v: Path(_non_empty_str(v)).expanduser()),
    (("queue", "retention_days"), "retention_days", _positive_int),
    (("queue", "validate_dependencies"), "validate_dependencies", _boolean),
    (("queue", "max_dependency_depth"), "max_dependency_depth", _non_negative_int),
    (("worker", "max_parallel"), "max_parallel", _positive_int),
    (("worker", "max_development_tasks"), "max_development_tasks", _positive_int),
    (("worker", "poll_interval"), "poll_interval", _positive_float),
    (("executor", "command"), "executor_command", _non_empty_str),
    (("executor", "mode"), "executor_mode", _executor_mode),
    (("executor", "timeout"), "executor_timeout", _positive_float),
    (("executor", "session_poll_interval"), "session_poll_interval", _positive_float),
]


def load_queue_config(path: Optional[Path] = None) -> tuple[QueueConfig, str | None]:
    """Load the optional queue config file.

    Args:
        path: Explicit config file. Defaults to ``$AGENT_TASKQ_CONFIG`` or
            ``~/.config/agent-taskq/config.yaml``.

    Returns:
        A tuple of ``(config, error_message)``. A missing file yields the
        defaults and no error. Invalid values keep their defaults and are
        listed in the error message.
    """
    path = Path(path).expanduser() if path else default_config_path()
    config = QueueConfig()
    data, err = _load_data_with_error(path, {})
    if err:
        return config, err

    problems: list[str] = []
    for keys, attr, convert in _KEYS:
        raw = _get_nested(data, *keys)
        if raw is None:
            continue
        try:
            setattr(config, attr, convert(raw))
        except (TypeError, ValueError) as exc:
            problems.append(f"{'.'.join(keys)}: {exc} (got {raw!r})")

    if problems:
        return config, f"{path.name}: invalid values ignored: " + "; ".join(problems)
    return config, None
