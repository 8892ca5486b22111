WORK_DIR_NAME = ".agent-work"
PLANS_DIR = "plans"
COMPLETED_DIR = "completed"
REPORTS_DIR = "reports"
TEMP_DIR = "temp"
LOCKS_DIR = "locks"
WORKTREES_DIR = "orrery-worktrees"
CONFIG_FILE = "config.yaml"
LOCK_FILE = "exec.lock"

WORK_DIR_ENV = "ORRERY_WORK_DIR"
REPO_ROOT_ENV = "ORRERY_REPO_ROOT"
PARALLEL_ENABLED_ENV = "ORRERY_PARALLEL_ENABLED"
PARALLEL_MAX_ENV = "ORRERY_PARALLEL_MAX"
AGENT_TIMEOUT_ENV = "ORRERY_AGENT_TIMEOUT"
REVIEW_ENABLED_ENV = "ORRERY_REVIEW_ENABLED"
REVIEW_MAX_ITERATIONS_ENV = "ORRERY_REVIEW_MAX_ITERATIONS"

# Substring that identifies one of our own processes in a lock owner's command line.
PROCESS_MARKER = "orrery"

# A lock file younger than this that cannot be parsed is assumed to be mid-write.
LOCK_WRITE_GRACE_SECONDS = 10.0

PLAN_SUFFIXES = (".yaml", ".yml")

OUTCOME_SUCCESS = "success"
OUTCOME_PARTIAL = "partial"

DEFAULT_MAX_PARALLEL = 3
DEFAULT_POLL_INTERVAL_SECONDS = 5.0
DEFAULT_AGENT_TIMEOUT_SECONDS = 600
DEFAULT_RETRY_ATTEMPTS = 1
DEFAULT_RETRY_BACKOFF_SECONDS = 5.0
DEFAULT_REVIEW_MAX_ITERATIONS = 3
DEFAULT_KILL_GRACE_SECONDS = 5

# Exit code reported for a worker killed by the orchestrator (matches `timeout(1)`).
TIMEOUT_EXIT_CODE = 124

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_BLOCKED = 2

FAILOVER_REASON_COMMAND_NOT_FOUND = "command_not_found"
FAILOVER_REASON_SPAWN_ERROR = "spawn_error"
FAILOVER_REASON_TIMEOUT = "timeout"
FAILOVER_REASON_IDLE = "no_output"
FAILOVER_REASON_API_ERROR = "api_error"
FAILOVER_REASON_TOKEN_LIMIT = "token_limit"

DEFAULT_API_ERROR_PATTERNS = (
    r"(?i)API error",
    r"(?i)connection refused",
    r"(?i)ECONNRESET",
    r"(?i)ETIMEDOUT",
    r"(?i)network error",
    r"(?i)rate limit",
    r"\b429\b",
    r"\b502\b",
    r"\b503\b",
)

DEFAULT_TOKEN_LIMIT_PATTERNS = (
    r"(?i)token limit",
    r"(?i)context.*(limit|length|exceeded)",
    r"(?i)maximum.*tokens",
    r"(?i)too long",
)
