import os
from pathlib import Path

"""Global constants and path definitions for Git Tether.

This module defines the filesystem layout (adhering to XDG standards where applicable),
application identifiers, and the git state markers the reconciler watches for.
"""

# --- Identity ---
APP_NAME = "git-tether"
"""str: The human-readable application name."""

APP_LABEL = "com.gittether"
"""str: The reverse-DNS style prefix used for service unit names."""

DAEMON_EXECUTABLE = "git-tether-daemon"
"""str: The console script that runs the polling loop."""

# --- Paths ---
_XDG_STATE = os.environ.get("XDG_STATE_HOME")
_BASE_STATE = Path(_XDG_STATE) if _XDG_STATE else Path.home() / ".local/state"

STATE_DIR = _BASE_STATE / "git-tether"
"""Path: The directory for runtime state data (logs)."""

# Ensure state directory exists immediately upon module import.
STATE_DIR.mkdir(parents=True, exist_ok=True)

LOG_SUFFIX = ".log"
"""str: Each watched repository logs to `STATE_DIR/<repo>-<hash>.log`."""

# --- Configuration Paths ---
CONFIG_DIR: Path = Path.home() / ".config/git-tether"
"""Path: The directory for user configuration files."""

CONFIG_FILE: Path = CONFIG_DIR / "config.toml"
"""Path: The main configuration file path."""

LOCAL_CONFIG_NAME = "tether.toml"
"""str: Per-repository configuration file, looked up at the repository root."""

# --- Per-repository markers (relative to .git) ---
PAUSE_MARKER = "tether_paused"
"""str: Presence of this file inside .git suspends reconciliation."""

PID_MARKER = "tether.pid"
"""str: The daemon's PID file inside .git."""

# --- Environment overrides ---
ENV_INTERVAL = "GIT_TETHER_INTERVAL"
"""str: Overrides `sync.interval`."""

ENV_COMMIT_MESSAGE = "GIT_TETHER_COMMIT_MESSAGE"
"""str: Overrides `sync.commit_message`."""

# --- Git / Logic Constants ---
DEFAULT_COMMIT_MESSAGE = "Automated commit at {timestamp}"
"""str: Commit message used when no override is configured."""

STASH_MESSAGE = "git-tether autostash"
"""str: Label attached to stash entries created while pulling."""

GIT_LOCK_FILES = {
    "rebase-merge": "rebase",
    "rebase-apply": "rebase",
    "MERGE_HEAD": "merge",
    "CHERRY_PICK_HEAD": "cherry-pick",
    "REVERT_HEAD": "revert",
    "BISECT_LOG": "bisect",
}
"""
dict[str, str]: Git internal files indicating an active operation
that must be resolved by hand before the reconciler touches the tree.
"""

NETWORK_ENV = {
    "GIT_TERMINAL_PROMPT": "0",
    "GIT_SSH_COMMAND": "ssh -o BatchMode=yes",
}
"""dict[str, str]: Environment applied to fetch/pull/push so they never prompt."""
