"""
Core Configuration Definitions.

This module defines the default structure and values for the runner's
configuration system using `yacs`. It serves as the single source of truth
for all configurable parameters.

Configuration is organized into sections:
- SYSTEM: Global paths and environment settings.
- RUNNER: Process supervision, result delivery and concurrency limits.
- LOGGING: Service log level and rotation.
"""

import logging
import os
from pathlib import Path
from yacs.config import CfgNode as CN  # type: ignore[import-untyped]

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return int(default)
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid integer env %s=%s, fallback to %s", name, raw, default)
        return int(default)


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None:
        return float(default)
    try:
        return float(raw)
    except ValueError:
        logger.warning("Invalid float env %s=%s, fallback to %s", name, raw, default)
        return float(default)


_C = CN()

# -----------------------------------------------------------------------------
# System Configuration
# -----------------------------------------------------------------------------
_C.SYSTEM = CN()
# Root directory of the project
_C.SYSTEM.ROOT = str(Path(__file__).parent.parent)

# Data directory for service logs and other runner state
_C.SYSTEM.DATA_DIR = os.environ.get(
    "AGENT_RUNNER_DATA_DIR",
    os.path.join(os.getcwd(), ".agent-runner"),
)
_C.SYSTEM.LOGS_DIR = os.path.join(_C.SYSTEM.DATA_DIR, "logs")

# Bundled prompt fragments
_C.SYSTEM.TEMPLATES_DIR = os.path.join(_C.SYSTEM.ROOT, "agent_runner", "assets", "templates")

# -----------------------------------------------------------------------------
# Runner Configuration
# -----------------------------------------------------------------------------
_C.RUNNER = CN()

# Concurrent runs per agent tool
_C.RUNNER.AGENT_CONCURRENCY = _env_int("AGENT_RUNNER_AGENT_CONCURRENCY", 1)

# Concurrent auxiliary commands (0 disables the global command pool)
_C.RUNNER.COMMAND_CONCURRENCY = _env_int("AGENT_RUNNER_COMMAND_CONCURRENCY", 0)

# Time an agent gets to exit on its own after its result settled (seconds)
_C.RUNNER.AGENT_GRACE_PERIOD_SEC = _env_float("AGENT_RUNNER_GRACE_PERIOD_SEC", 30.0)

# Wait window between SIGTERM and SIGKILL (seconds)
_C.RUNNER.SIGTERM_WAIT_SEC = _env_float("AGENT_RUNNER_SIGTERM_WAIT_SEC", 1.0)

# Inactivity watchdog window (seconds, 0 disables)
_C.RUNNER.INACTIVITY_TIMEOUT_SEC = _env_float("AGENT_RUNNER_INACTIVITY_TIMEOUT_SEC", 0.0)

# Time stream readers get to drain after process exit (seconds)
_C.RUNNER.STREAM_DRAIN_TIMEOUT_SEC = _env_float("AGENT_RUNNER_STREAM_DRAIN_TIMEOUT_SEC", 5.0)

# File protocol polling interval (seconds)
_C.RUNNER.RESULT_POLL_INTERVAL_SEC = _env_float("AGENT_RUNNER_RESULT_POLL_INTERVAL_SEC", 1.0)

# Callback protocol listener
_C.RUNNER.CALLBACK_HOST = os.environ.get("AGENT_RUNNER_CALLBACK_HOST", "127.0.0.1")
_C.RUNNER.CALLBACK_PATH = "/agent-result"

# Result files and response payloads, relative to the run working directory
_C.RUNNER.RESPONSE_DIR = os.path.join(".agent-runner", "logs", "response")

# Pseudo-terminal size for interactive agents
_C.RUNNER.TERMINAL_COLS = _env_int("AGENT_RUNNER_TERMINAL_COLS", 120)
_C.RUNNER.TERMINAL_ROWS = _env_int("AGENT_RUNNER_TERMINAL_ROWS", 40)

# Stderr tail included in command failure messages (chars)
_C.RUNNER.FAILURE_STDERR_TAIL_CHARS = 500

# Prompt echo limit on console (chars)
_C.RUNNER.PROMPT_LOG_LIMIT = _env_int("AGENT_RUNNER_PROMPT_LOG_LIMIT", 4000)

# Node runtime probe timeout (seconds)
_C.RUNNER.RUNTIME_PROBE_TIMEOUT_SEC = 10.0

# Record termination plans instead of sending signals
_C.RUNNER.MOCK_TERMINATION = _env_bool("AGENT_RUNNER_MOCK_TERMINATION", False)

# Most recent termination plans kept on a registry
_C.RUNNER.TERMINATION_PLAN_HISTORY = _env_int("AGENT_RUNNER_TERMINATION_PLAN_HISTORY", 256)

# -----------------------------------------------------------------------------
# Logging Configuration
# -----------------------------------------------------------------------------
_C.LOGGING = CN()
_C.LOGGING.LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
_C.LOGGING.FILE = os.environ.get("LOG_FILE", os.path.join(_C.SYSTEM.LOGS_DIR, "agent_runner.log"))
_C.LOGGING.MAX_BYTES = _env_int("LOG_MAX_BYTES", 5 * 1024 * 1024)
_C.LOGGING.BACKUP_COUNT = _env_int("LOG_BACKUP_COUNT", 5)


def get_cfg_defaults() -> CN:
    """Get a yacs CfgNode object with default values."""
    return _C.clone()
