"""Git Tether: Keep a git working copy in sync with its upstream branch.

This package provides the command-line interface, background daemon, and the
reconciliation state machine that pulls upstream changes (setting local edits
aside while it does) and pushes local edits back, one serialized cycle per tick.
"""

from . import (
    cli,
    config,
    constants,
    daemon,
    git_wrapper,
    reconciler,
    scheduler,
    service,
    system,
)

__all__ = [
    "cli",
    "config",
    "constants",
    "daemon",
    "git_wrapper",
    "reconciler",
    "scheduler",
    "service",
    "system",
]
