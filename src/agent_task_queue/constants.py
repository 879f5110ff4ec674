APP_NAME = "agent-taskq"
CONFIG_ENV_VAR = "AGENT_TASKQ_CONFIG"
DEFAULT_CONFIG_DIR = "~/.config/agent-taskq"
CONFIG_FILE = "config.yaml"
QUEUE_DIR_NAME = "queue"

TASK_FILE_PREFIX = "task-"
TASK_FILE_SUFFIX = ".json"
QUEUE_LOCK_FILE = ".queue.lock"
LOCK_TIMEOUT = 30  # seconds

TASK_FILE_VERSION = "1.0"

DEFAULT_MAX_PARALLEL = 3
DEFAULT_MAX_DEVELOPMENT_TASKS = 2
DEFAULT_POLL_INTERVAL_SECONDS = 5.0
DEFAULT_SESSION_POLL_INTERVAL_SECONDS = 2.0
DEFAULT_RETENTION_DAYS = 30
DEFAULT_MAX_DEPENDENCY_DEPTH = 5
DEFAULT_EXECUTOR_COMMAND = "claude -p"
DEFAULT_EXECUTOR_TIMEOUT_SECONDS = 2 * 60 * 60
DEFAULT_SHUTDOWN_TIMEOUT_SECONDS = 300.0

EXECUTOR_MODES = ("command", "session")
DEFAULT_EXECUTOR_MODE = "command"
SESSION_NAME_PREFIX = "taskq-"

DEFAULT_AGENT_TYPE = "claude"
DISPLAY_NAME_MAX = 50

INTERRUPTED_ERROR = "Interrupted by worker restart"
