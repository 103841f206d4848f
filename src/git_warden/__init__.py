"""git-warden: keep working directories in sync with remote git repositories.

This package provides the repository synchronization engine (clone/pull state
machine, polling scheduler, webhook dispatcher and post-update commands),
along with the daemon and command-line interface that drive it.
"""

from . import (
    cli,
    commands,
    config,
    constants,
    daemon,
    errors,
    git_wrapper,
    repo,
    scheduler,
    system,
    webhook,
)

__all__ = [
    "cli",
    "commands",
    "config",
    "constants",
    "daemon",
    "errors",
    "git_wrapper",
    "repo",
    "scheduler",
    "system",
    "webhook",
]
