"""Global configuration: paths, constants, defaults."""

from pathlib import Path

# Default directory holding locks, target records, and the event journal
DEFAULT_STATE_DIR = Path(".shipline")

LOCKS_DIR = "locks"
TARGETS_DIR = "targets"
JOURNAL_DB = "events.db"
TARGETS_FILE = "targets.yaml"

# Remote output kept on an ExecutionResult (tail of combined stdout/stderr)
OUTPUT_EXCERPT_LIMIT = 4096

# Retry hard cap across every stage
MAX_ATTEMPTS_CAP = 5

# Defaults for stage timeouts, in seconds
BUILD_TIMEOUT = 1800
PUSH_TIMEOUT = 900
DEPLOY_TIMEOUT = 300
SSH_CONNECT_TIMEOUT = 10

# Health check wait window
HEALTH_WINDOW = 60.0
HEALTH_INTERVAL = 5.0
HEALTH_REQUIRED_PASSES = 1

# Environment variable carrying the image reference into docker compose
IMAGE_ENV_VAR = "SHIPLINE_IMAGE"
