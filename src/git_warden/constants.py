import os
from pathlib import Path

"""Global constants and default paths for git-warden.

This module defines the filesystem layout (adhering to XDG standards where
applicable), application identifiers, and the fixed tuning values of the
synchronization engine.
"""

# --- Identity ---
APP_NAME = "git-warden"
"""str: The human-readable application name, also used as the logger name."""

AUTH_USERNAME = "git-warden"
"""str: Placeholder basic-auth username sent alongside an auth token.

Some hosting providers reject an empty username, the token is the secret.
"""

# --- Paths ---
_XDG_STATE = os.environ.get("XDG_STATE_HOME")
_BASE_STATE = Path(_XDG_STATE) if _XDG_STATE else Path.home() / ".local/state"

STATE_DIR = _BASE_STATE / "git-warden"
"""Path: The directory for runtime state data (logs)."""

LOG_FILE = STATE_DIR / "daemon.log"
"""Path: The file path for the daemon process logs."""

CONFIG_DIR: Path = Path.home() / ".config/git-warden"
"""Path: The directory for user configuration files."""

CONFIG_FILE: Path = CONFIG_DIR / "config.toml"
"""Path: The main configuration file path."""

# --- Sync Engine ---
DEFAULT_BRANCH = "master"
"""str: Branch tracked when a repository does not name one."""

DEFAULT_INTERVAL = 3600
"""int: Seconds between polls when a repository does not set an interval."""

NUM_RETRIES = 3
"""int: Sync attempts per pull before the last error is surfaced."""

PULL_COOLDOWN = 5
"""int: Minimum seconds between two real syncs of the same repository."""

REMOTE_NAME = "origin"
"""str: The remote every managed checkout pulls from."""

# --- Webhook Server ---
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8080
