import os
import pathlib
from dotenv import load_dotenv

load_dotenv()


def boolean_env(key: str, default: bool = False) -> bool:
    return os.getenv(key, "1" if default else "0").lower() in ("1", "true", "yes")


def list_env(key: str, default: str = "") -> list[str]:
    return [item.strip() for item in os.getenv(key, default).split(",") if item.strip()]


# Server settings
APP_ENV = os.getenv("APP_ENV", "development")
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "3000"))
CORS_ORIGINS = list_env("CORS_ORIGINS", "http://localhost:5173")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Auth settings
# With auth disabled every connection resolves to DEV_USER_ID
AUTH_ENABLED = boolean_env("AUTH_ENABLED", False)
DEV_USER_ID = os.getenv("DEV_USER_ID", "dev-user")
SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "session_id")
AUTH_TOKENS = os.getenv("AUTH_TOKENS", "")
AUTH_TOKENS_FILE = os.getenv("AUTH_TOKENS_FILE", "")
ADMIN_USERS = set(list_env("ADMIN_USERS"))

# Docker settings
DOCKER_HOST = os.getenv("DOCKER_HOST", "unix:///var/run/docker.sock")
DOCKER_TIMEOUT = int(os.getenv("DOCKER_TIMEOUT", "60"))
IMAGE_PREFIX = os.getenv("IMAGE_PREFIX", "web-shell-backend")
BUILD_CONTEXT_DIR = pathlib.Path(
    os.getenv("BUILD_CONTEXT_DIR", pathlib.Path(__file__).parents[3] / "docker" / "web-shell")
)
DOCKERFILE = os.getenv("DOCKERFILE", "Dockerfile")
# Empty means the default bridge network
CONTAINER_NETWORK = os.getenv("CONTAINER_NETWORK", "")
PERSISTENT_WORKSPACES = boolean_env("PERSISTENT_WORKSPACES", True)
WORKSPACE_PATH = os.getenv("WORKSPACE_PATH", "/workspace")
STOP_TIMEOUT = int(os.getenv("STOP_TIMEOUT", "5"))

# Default per-environment limits (profiles may override)
DEFAULT_CPUS = float(os.getenv("DEFAULT_CPUS", "1"))
DEFAULT_MEMORY = os.getenv("DEFAULT_MEMORY", "512m")
DEFAULT_PIDS = int(os.getenv("DEFAULT_PIDS", "256"))

# Session policy
# Intervals are in seconds
MAX_SESSIONS_PER_USER = int(os.getenv("MAX_SESSIONS_PER_USER", "5"))
IDLE_TIMEOUT_MINUTES = int(os.getenv("IDLE_TIMEOUT_MINUTES", "30"))
IDLE_TIMEOUT = IDLE_TIMEOUT_MINUTES * 60
SESSION_MAX_AGE_HOURS = float(os.getenv("SESSION_MAX_AGE_HOURS", "24"))
SESSION_MAX_AGE = int(SESSION_MAX_AGE_HOURS * 60 * 60)
REAPER_INTERVAL = int(os.getenv("REAPER_INTERVAL", 5 * 60))
# 0 disables the scheduled reconcile; the admin trigger still works
RECONCILE_INTERVAL = int(os.getenv("RECONCILE_INTERVAL", 10 * 60))
RECONCILE_AUTO_DESTROY = boolean_env("RECONCILE_AUTO_DESTROY", False)
TERMINATION_GRACE_SECONDS = float(os.getenv("TERMINATION_GRACE_SECONDS", "0.1"))

# Resource monitoring
RESOURCE_POLL_INTERVAL = float(os.getenv("RESOURCE_POLL_INTERVAL", "5"))
RESOURCE_STREAM_INTERVAL = float(os.getenv("RESOURCE_STREAM_INTERVAL", "1"))
RESOURCE_HISTORY_SIZE = int(os.getenv("RESOURCE_HISTORY_SIZE", "720"))
ACTIVE_CPU_THRESHOLD = float(os.getenv("ACTIVE_CPU_THRESHOLD", "1.0"))

# Message validation
MIN_COLS = int(os.getenv("MIN_COLS", "10"))
MAX_COLS = int(os.getenv("MAX_COLS", "500"))
MIN_ROWS = int(os.getenv("MIN_ROWS", "5"))
MAX_ROWS = int(os.getenv("MAX_ROWS", "200"))
MAX_INPUT_SIZE = int(os.getenv("MAX_INPUT_SIZE", 10 * 1024))
ALLOWED_SHELLS = tuple(list_env("ALLOWED_SHELLS", "bash,zsh"))
