# src/engine/config.py
"""
Configuration for the scan orchestrator, read from environment variables.
"""
import os


def env_int(key: str, default: int) -> int:
    """Get integer value from environment variable"""
    return int(os.getenv(key, str(default)))


def env_float(key: str, default: float) -> float:
    return float(os.getenv(key, str(default)))


def env_bool(key: str, default: bool = False) -> bool:
    value = os.getenv(key, str(default)).lower()
    return value in ("true", "1", "yes", "on")


# Database configuration
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./scan_orchestrator.db")

# Working directories
WORKSPACE_ROOT = os.getenv("WORKSPACE_ROOT", os.path.join(os.getcwd(), "temp"))

# Scheduler
MAX_CONCURRENT_JOBS = env_int("MAX_CONCURRENT_JOBS", 3)
DEFAULT_PRIORITY = 5

# Analysis engine
SEMGREP_BINARY = os.getenv("SEMGREP_BINARY", "semgrep")
SEMGREP_TIMEOUT = env_int("SEMGREP_TIMEOUT", 300)
MAX_SCAN_TIMEOUT = env_int("MAX_SCAN_TIMEOUT", 1800)
TIMEOUT_GRACE_BUFFER = env_int("TIMEOUT_GRACE_BUFFER", 30)
KILL_GRACE_SECONDS = env_float("KILL_GRACE_SECONDS", 10.0)
MAX_FILE_SIZE_KB = env_int("MAX_FILE_SIZE_KB", 1024)
USE_DEFAULT_EXCLUDES = env_bool("USE_DEFAULT_EXCLUDES", True)

# Source fetching
GIT_BINARY = os.getenv("GIT_BINARY", "git")
FETCH_TIMEOUT = env_int("FETCH_TIMEOUT", 600)

# Job store
MAX_LOG_ENTRIES = env_int("MAX_LOG_ENTRIES", 1000)
PERSISTENCE_RETRIES = env_int("PERSISTENCE_RETRIES", 3)
PERSISTENCE_BACKOFF = env_float("PERSISTENCE_BACKOFF", 0.2)
RERUN_WINDOW_DAYS = env_int("RERUN_WINDOW_DAYS", 7)
JOB_RETENTION_DAYS = env_int("JOB_RETENTION_DAYS", 30)

# Rules catalogue seeded at startup (optional)
RULES_PATH = os.getenv("RULES_PATH")

# Notifications
WEBHOOK_URL = os.getenv("WEBHOOK_URL")
WEBHOOK_TIMEOUT = env_float("WEBHOOK_TIMEOUT", 10.0)

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
