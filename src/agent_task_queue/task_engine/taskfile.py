"""Batch task file schema (YAML).

Example::

    version: "1.0"
    repository: ~/src/project
    default_config:
      auto_commit: true
    tasks:
      - id: auth
        name: Add login endpoint
        worktree: feature/auth
        priority: 80
      - id: auth-tests
        name: Cover login endpoint
        worktree: feature/auth-tests
        depends_on: [auth]
        dependency_policy: skip
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from ..constants import TASK_FILE_VERSION
from ..errors import TaskFileError
from .model import PRIORITY_NORMAL, DependencyPolicy, TaskConfig


class TaskConfigModel(BaseModel):
    skip_permissions: Optional[bool] = None
    auto_commit: Optional[bool] = None
    backup_files: Optional[bool] = None

    def apply_to(self, config: TaskConfig) -> TaskConfig:
        """Return a copy of *config* with every field set here overridden."""
        merged = TaskConfig.from_dict(config.to_dict())
        for key, value in self.model_dump(exclude_none=True).items():
            setattr(merged, key, value)
        return merged


class TaskFileEntry(BaseModel):
    id: str = ""
    name: str = ""
    repository: str = ""
    worktree: str = ""
    base_branch: str = ""
    priority: Optional[int] = None
    depends_on: list[str] = Field(default_factory=list)
    dependency_policy: DependencyPolicy = DependencyPolicy.WAIT
    prompt: str = ""
    files_to_focus: list[str] = Field(default_factory=list)
    verification_commands: list[str] = Field(default_factory=list)
    config: Optional[TaskConfigModel] = None

    @property
    def effective_priority(self) -> int:
        # 0 and missing both mean "not set".
        return self.priority if self.priority else PRIORITY_NORMAL


class TaskFile(BaseModel):
    version: str = ""
    repository: str = ""
    default_config: Optional[TaskConfigModel] = None
    tasks: list[TaskFileEntry] = Field(default_factory=list)

    def config_for(self, entry: TaskFileEntry) -> TaskConfig:
        config = TaskConfig()
        if self.default_config is not None:
            config = self.default_config.apply_to(config)
        if entry.config is not None:
            config = entry.config.apply_to(config)
        return config

    def repository_for(self, entry: TaskFileEntry) -> str:
        repo = entry.repository or self.repository
        return str(Path(repo).expanduser()) if repo else ""


def parse_task_file(data: Any, source: str = "<task file>") -> TaskFile:
    if not isinstance(data, dict):
        raise TaskFileError(f"{source}: expected a mapping at the top level")
    # YAML reads an unquoted 1.0 as a float.
    if isinstance(data.get("version"), (int, float)) and not isinstance(data.get("version"), bool):
        data = {**data, "version": str(data["version"])}
    try:
        task_file = TaskFile.model_validate(data)
    except ValidationError as exc:
        raise TaskFileError(f"{source}: invalid task file: {exc}") from exc
    if task_file.version != TASK_FILE_VERSION:
        raise TaskFileError(
            f"unsupported task file version: {task_file.version or '<missing>'} "
            f"(expected {TASK_FILE_VERSION})"
        )
    return task_file


def load_task_file(path: Path) -> TaskFile:
    path = Path(path).expanduser()
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except OSError as exc:
        raise TaskFileError(f"failed to read task file: {exc}") from exc
    except yaml.YAMLError as exc:
        raise TaskFileError(f"failed to parse YAML: {exc}") from exc
    return parse_task_file(data, source=path.name)
