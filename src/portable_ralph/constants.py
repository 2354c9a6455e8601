"""Define default tunables and fixed names used across the loop and notifiers."""

VERSION = "1.3.0"

ENV_PREFIX = "RALPH_"
DEFAULT_CONFIG_FILE = "~/.ralph/config.yaml"
DEFAULT_STATE_DIR = "~/.ralph"
LOCKS_DIR = "locks"
RUNS_DIR = "runs"
PROGRESS_SUFFIX = "_PROGRESS.md"

COMPLETION_MARKER = "RALPH_DONE"
NO_COMMIT_DIRECTIVE = "DO_NOT_COMMIT"

DEFAULT_WORKER_COMMAND = "claude -p --dangerously-skip-permissions --model sonnet --verbose"
DEFAULT_WORKER_TIMEOUT_SECONDS = 45 * 60
DEFAULT_MAX_WORKER_FAILURES = 3
DEFAULT_ITERATION_DELAY_SECONDS = 2.0

DEFAULT_NOTIFY_FREQUENCY = 5
NOTIFY_FREQUENCY_MIN = 1
NOTIFY_FREQUENCY_MAX = 100

MAX_ITERATIONS_MAX = 10000

DEFAULT_RATE_LIMIT_MAX = 60
DEFAULT_RATE_LIMIT_WINDOW_SECONDS = 60.0

DEFAULT_BATCH_DELAY_SECONDS = 300.0
DEFAULT_BATCH_MAX = 10

DEFAULT_RETRY_MAX_ATTEMPTS = 3
DEFAULT_RETRY_BASE_DELAY_SECONDS = 2.0
DEFAULT_RETRY_MAX_DELAY_SECONDS = 30.0

DEFAULT_HTTP_TIMEOUT_SECONDS = 10.0
HTTP_CONNECT_TIMEOUT_SECONDS = 5.0
DEFAULT_SMTP_TIMEOUT_SECONDS = 30.0
DEFAULT_CUSTOM_SCRIPT_TIMEOUT_SECONDS = 30.0
SCRIPT_KILL_GRACE_SECONDS = 2.0

DEFAULT_LOCK_TIMEOUT_SECONDS = 0.0
DEFAULT_LOCK_STALE_SECONDS = 3600.0
LOCK_POLL_BASE_SECONDS = 0.1
LOCK_POLL_MAX_SECONDS = 2.0

CONFIG_FILE_MODE = 0o600

TOKEN_MASK_PREFIX_LENGTH = 8
TOKEN_MASK_MARGIN = 3
REDACTED = "[REDACTED]"

MESSAGE_TRUNCATE_LENGTH = 100
VALIDATION_MIN_DEFAULT = 0
VALIDATION_MAX_DEFAULT = 999999

# Provider error codes that indicate a temporary condition on the remote side.
RETRYABLE_PROVIDER_CODES = frozenset(
    {
        "Throttling",
        "ThrottlingException",
        "TooManyRequestsException",
        "ServiceUnavailable",
        "RequestTimeout",
        "InternalFailure",
        "rate_limited",
    }
)
RETRYABLE_HTTP_STATUSES = frozenset({408, 425, 429})

EXIT_OK = 0
EXIT_INVALID_INPUT = 1
EXIT_LOCK_CONTENTION = 2
EXIT_WORKER_FAILURE = 3
EXIT_CANCELLED = 130
