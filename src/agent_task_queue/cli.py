from __future__ import annotations

import argparse
import json
import signal
import sys
from pathlib import Path
from typing import Any, Optional

from loguru import logger
from rich.console import Console
from rich.table import Table

from .config import QueueConfig, load_queue_config
from .constants import DEFAULT_SHUTDOWN_TIMEOUT_SECONDS, EXECUTOR_MODES
from .errors import TaskQueueError
from .task_engine.engine import CreateTaskRequest, TaskManager
from .task_engine.model import DependencyPolicy, Task, TaskStatus
from .task_engine.store import TaskStore
from .utils import format_duration
from .worker.executor import (
    CommandExecutor,
    Executor,
    ScriptedExecutor,
    SessionExecutor,
    TmuxSessionProvider,
)
from .worker.resources import ResourceManager, ResourceStats
from .worker.scheduler import TaskWorker

_STATUS_STYLES = {
    TaskStatus.PENDING: 'white',
    TaskStatus.WAITING: 'yellow',
    TaskStatus.RUNNING: 'cyan',
    TaskStatus.COMPLETED: 'green',
    TaskStatus.FAILED: 'red',
    TaskStatus.SKIPPED: 'magenta',
    TaskStatus.CANCELLED: 'dim',
}


def configure_logging(level: str = 'INFO') -> None:
    """Configure loguru logger with the specified level."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{module}</cyan>:<cyan>{line}</cyan>\n"
            "{message}"
        ),
    )


def _write_json(payload: Any) -> None:
    sys.stdout.write(json.dumps(payload, indent=2) + '\n')


def _load_config(args: argparse.Namespace) -> QueueConfig:
    config, err = load_queue_config(Path(args.config) if args.config else None)
    if err:
        logger.warning('Config problem: {}', err)
    if args.queue_dir:
        config.queue_dir = Path(args.queue_dir).expanduser()
    return config


def _ctx(args: argparse.Namespace) -> tuple[QueueConfig, TaskManager]:
    config = _load_config(args)
    store = TaskStore(config.queue_dir)
    manager = TaskManager(
        store,
        max_dependency_depth=config.max_dependency_depth,
        validate_dependencies=config.validate_dependencies,
    )
    return config, manager


# ---------------------------------------------------------------------------
# task
# ---------------------------------------------------------------------------

def _task_add(args: argparse.Namespace) -> int:
    _, manager = _ctx(args)
    req = CreateTaskRequest(
        name=args.name,
        worktree=args.worktree,
        base_branch=args.base_branch or '',
        repository=args.repository or '',
        priority=args.priority,
        depends_on=list(args.depends_on or []),
        dependency_policy=DependencyPolicy(args.policy),
        prompt=args.prompt or '',
        files_to_focus=list(args.file or []),
        verification_commands=list(args.verify or []),
        auto_commit=args.auto_commit,
    )
    task = manager.create_task(req)
    _write_json({'task': task.to_dict()})
    return 0


def _task_add_file(args: argparse.Namespace) -> int:
    _, manager = _ctx(args)
    tasks = manager.create_tasks_from_file(Path(args.path))
    _write_json({'tasks': [task.to_dict() for task in tasks]})
    return 0


def _render_tasks(tasks: list[Task]) -> None:
    console = Console()
    if not tasks:
        console.print('No tasks found')
        return
    table = Table(show_header=True, header_style='bold')
    table.add_column('ID')
    table.add_column('Status')
    table.add_column('Pri', justify='right')
    table.add_column('Name')
    table.add_column('Worktree')
    table.add_column('Depends on')
    table.add_column('Duration', justify='right')
    for task in tasks:
        style = _STATUS_STYLES.get(task.status, 'white')
        table.add_row(
            task.id,
            f'[{style}]{task.status.value}[/{style}]',
            str(task.priority),
            task.display_name,
            task.worktree,
            ', '.join(task.depends_on),
            format_duration(task.duration) if task.duration else '',
        )
    console.print(table)


def _task_list(args: argparse.Namespace) -> int:
    _, manager = _ctx(args)
    status = TaskStatus(args.status) if args.status else None
    tasks = manager.list_tasks(status=status, min_priority=args.min_priority)
    if args.json:
        _write_json({'tasks': [task.to_dict() for task in tasks]})
    else:
        _render_tasks(tasks)
    return 0


def _task_show(args: argparse.Namespace) -> int:
    _, manager = _ctx(args)
    task = manager.find_task_by_pattern(args.pattern)
    _write_json({'task': task.to_dict()})
    return 0


def _task_remove(args: argparse.Namespace) -> int:
    _, manager = _ctx(args)
    task = manager.find_task_by_pattern(args.pattern)
    manager.remove_task(task.id)
    _write_json({'removed': task.id})
    return 0


def _task_cancel(args: argparse.Namespace) -> int:
    _, manager = _ctx(args)
    task = manager.find_task_by_pattern(args.pattern)
    task = manager.cancel_task(task.id)
    _write_json({'task': task.to_dict()})
    return 0


def _task_order(args: argparse.Namespace) -> int:
    _, manager = _ctx(args)
    order = manager.get_topological_order()
    _write_json({
        'order': [
            {'id': t.id, 'name': t.name, 'priority': t.priority, 'status': t.status.value, 'depends_on': list(t.depends_on)}
            for t in order
        ]
    })
    return 0


# ---------------------------------------------------------------------------
# worker
# ---------------------------------------------------------------------------

def _build_executor(args: argparse.Namespace, config: QueueConfig) -> Executor:
    if args.dry_run:
        return ScriptedExecutor()
    mode = args.executor or config.executor_mode
    if mode == 'session':
        return SessionExecutor(
            TmuxSessionProvider(config.executor_command),
            poll_interval=config.session_poll_interval,
            timeout=config.executor_timeout,
        )
    return CommandExecutor(config.executor_command, timeout=config.executor_timeout)


def _build_worker(args: argparse.Namespace, config: QueueConfig, manager: TaskManager) -> TaskWorker:
    max_parallel = args.parallel or config.max_parallel
    resources = ResourceManager(max_parallel, min(config.max_development_tasks, max_parallel))
    executor = _build_executor(args, config)
    return TaskWorker(
        manager.store,
        executor,
        resources,
        poll_interval=config.poll_interval,
        validate_dependencies=config.validate_dependencies,
    )


def _worker_start(args: argparse.Namespace) -> int:
    config, manager = _ctx(args)
    worker = _build_worker(args, config, manager)

    if args.once or args.until_idle:
        worker.recover_interrupted_tasks()
        if args.once:
            started = worker.tick_once()
        else:
            started = worker.run_until_idle()
        worker.shutdown(timeout=config.executor_timeout)
        _write_json({'started': started, 'status': worker.status()})
        return 0

    def _handle_signal(signum: int, _frame: Any) -> None:
        logger.info('Received signal {}, shutting down', signum)
        worker.stop()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)
    try:
        worker.run_forever()
    finally:
        worker.shutdown(timeout=DEFAULT_SHUTDOWN_TIMEOUT_SECONDS)
    return 0


def _worker_status(args: argparse.Namespace) -> int:
    config, manager = _ctx(args)
    counts = manager.status_counts()
    max_parallel = config.max_parallel
    max_dev = min(config.max_development_tasks, max_parallel)
    stats = ResourceStats.build(max_parallel, max_dev, min(counts[TaskStatus.RUNNING.value], max_dev))
    if args.json:
        _write_json({'counts': counts, 'resources': stats.to_dict(), 'queue_dir': str(config.queue_dir)})
        return 0
    console = Console()
    summary = ', '.join(f'{n} {status}' for status, n in counts.items() if n)
    console.print(f'[bold]Queue:[/bold] {config.queue_dir}')
    console.print(f'[bold]Tasks:[/bold] {summary or "none"}')
    console.print(f'[bold]Resources:[/bold] {stats}')
    return 0


def _prune(args: argparse.Namespace) -> int:
    config, manager = _ctx(args)
    days = args.older_than_days if args.older_than_days is not None else config.retention_days
    removed = manager.prune(days)
    _write_json({'removed': removed, 'older_than_days': days})
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='agent-taskq', description='Dependency-aware task queue for coding agents')
    parser.add_argument('--config', default=None, help='Config file (default: $AGENT_TASKQ_CONFIG or ~/.config/agent-taskq/config.yaml)')
    parser.add_argument('--queue-dir', default=None, help='Override the queue directory')
    parser.add_argument('--log-level', default='INFO', choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'])
    subparsers = parser.add_subparsers(dest='command', required=True)

    task = subparsers.add_parser('task', help='Manage tasks')
    task_sub = task.add_subparsers(dest='task_cmd', required=True)
    tadd = task_sub.add_parser('add', help='Add a task')
    tadd.add_argument('name')
    tadd.add_argument('--worktree', '-w', required=True)
    tadd.add_argument('--base-branch', default=None)
    tadd.add_argument('--repository', default=None)
    tadd.add_argument('--priority', '-p', type=int, default=50)
    tadd.add_argument('--depends-on', nargs='+', default=None)
    tadd.add_argument('--policy', default='wait', choices=[p.value for p in DependencyPolicy])
    tadd.add_argument('--prompt', default=None)
    tadd.add_argument('--file', action='append', default=None, help='File to focus on (repeatable)')
    tadd.add_argument('--verify', action='append', default=None, help='Verification command (repeatable)')
    tadd.add_argument('--auto-commit', action='store_true')
    tadd.set_defaults(func=_task_add)
    tfile = task_sub.add_parser('add-file', help='Add tasks from a YAML file')
    tfile.add_argument('path')
    tfile.set_defaults(func=_task_add_file)
    tlist = task_sub.add_parser('list', help='List tasks')
    tlist.add_argument('--status', default=None, choices=[s.value for s in TaskStatus])
    tlist.add_argument('--min-priority', type=int, default=None)
    tlist.add_argument('--json', action='store_true')
    tlist.set_defaults(func=_task_list)
    tshow = task_sub.add_parser('show', help='Show one task')
    tshow.add_argument('pattern')
    tshow.set_defaults(func=_task_show)
    tremove = task_sub.add_parser('remove', help='Remove a task')
    tremove.add_argument('pattern')
    tremove.set_defaults(func=_task_remove)
    tcancel = task_sub.add_parser('cancel', help='Cancel a task')
    tcancel.add_argument('pattern')
    tcancel.set_defaults(func=_task_cancel)
    torder = task_sub.add_parser('order', help='Show the execution order')
    torder.set_defaults(func=_task_order)

    worker = subparsers.add_parser('worker', help='Run or inspect the worker')
    worker_sub = worker.add_subparsers(dest='worker_cmd', required=True)
    wstart = worker_sub.add_parser('start', help='Start processing the queue')
    wstart.add_argument('--parallel', type=int, default=None)
    wstart.add_argument('--once', action='store_true', help='Run a single scheduling tick')
    wstart.add_argument('--until-idle', action='store_true', help='Run until nothing else can start')
    wstart.add_argument('--dry-run', action='store_true', help='Complete tasks without running anything')
    wstart.add_argument('--executor', default=None, choices=list(EXECUTOR_MODES), help='Run tasks as a command or in tmux sessions (default: config)')
    wstart.set_defaults(func=_worker_start)
    wstatus = worker_sub.add_parser('status', help='Show queue and resource status')
    wstatus.add_argument('--json', action='store_true')
    wstatus.set_defaults(func=_worker_status)

    prune = subparsers.add_parser('prune', help='Delete old finished tasks')
    prune.add_argument('--older-than-days', type=int, default=None)
    prune.set_defaults(func=_prune)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)
    handler = getattr(args, 'func', None)
    if handler is None:
        parser.print_help()
        return 1
    try:
        return int(handler(args) or 0)
    except TaskQueueError as exc:
        sys.stderr.write(f'Error: {exc}\n')
        return 1


if __name__ == '__main__':
    raise SystemExit(main())
