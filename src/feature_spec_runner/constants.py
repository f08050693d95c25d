STATE_DIR_NAME = ".spec_runner"
CONFIG_FILE = "config.yaml"
RUNS_DIR = "runs"

DEFAULT_SPECS_DIR = "specs"
SPEC_FILE = "spec.yaml"
PLAN_FILE = "plan.yaml"
TASKS_FILE = "tasks.yaml"

# Searched in order; the first existing file wins.
CONSTITUTION_PATHS = (
    ".spec_runner/memory/constitution.yaml",
    ".spec_runner/memory/constitution.yml",
    ".specify/memory/constitution.yaml",
    ".specify/memory/constitution.yml",
)

DEFAULT_MAX_RETRIES = 3
DEFAULT_TIMEOUT_SECONDS = 1800
DEFAULT_COMMAND_PREFIX = "/speckit"
DEFAULT_AGENT_COMMAND = "claude -p --dangerously-skip-permissions {prompt}"
DEFAULT_IMPLEMENT_METHOD = "phases"
IMPLEMENT_METHODS = ("phases", "tasks", "single-session")

MAX_RETRY_ERRORS_SHOWN = 10
TIMEOUT_EXIT_CODE = 124

EXIT_SUCCESS = 0
EXIT_FAILED = 1
EXIT_RETRY_EXHAUSTED = 2
EXIT_INVALID_INPUT = 3
EXIT_TIMEOUT = 5
EXIT_CANCELLED = 130

ENV_MAX_RETRIES = "SPEC_RUNNER_MAX_RETRIES"
ENV_AGENT_COMMAND = "SPEC_RUNNER_AGENT_COMMAND"
ENV_ASSUME_YES = "SPEC_RUNNER_YES"
