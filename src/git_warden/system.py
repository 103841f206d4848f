import logging
import shutil
import subprocess
from dataclasses import dataclass

from .constants import APP_NAME
from .errors import GitNotFoundError

logger = logging.getLogger(APP_NAME)


@dataclass(frozen=True)
class GitBinary:
    """Handle to a located git executable.

    Produced once at startup by `locate_git` and handed to every repository,
    so no component has to look the binary up on its own.

    Attributes:
        executable (str): Absolute path (or name) of the git executable.
        version (str): The `git --version` output, informational only.
    """

    executable: str = "git"
    version: str = ""


def locate_git() -> GitBinary:
    """Locates the git executable in PATH and records its version.

    Returns:
        GitBinary: The handle to pass to repositories.

    Raises:
        GitNotFoundError: If no git executable is available in PATH.
    """
    exe = shutil.which("git")
    if not exe:
        raise GitNotFoundError(
            "git-warden requires git installed. Cannot find git binary in PATH"
        )

    version = ""
    try:
        version = subprocess.check_output([exe, "--version"], text=True).strip()
    except (OSError, subprocess.CalledProcessError) as e:
        logger.debug(f"Could not read git version from {exe}: {e}")

    logger.debug(f"Using {exe} ({version or 'unknown version'})")
    return GitBinary(executable=exe, version=version)
