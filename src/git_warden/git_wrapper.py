import base64
import logging
import os
import subprocess
from collections.abc import Mapping
from pathlib import Path

from .constants import APP_NAME, AUTH_USERNAME, REMOTE_NAME
from .errors import SyncError
from .system import GitBinary

logger = logging.getLogger(APP_NAME)


def auth_env(
    token: str, base: Mapping[str, str] | None = None
) -> dict[str, str] | None:
    """Builds a process environment that attaches basic-auth credentials.

    The header is injected through git's `GIT_CONFIG_*` variables so the token
    never shows up in the process arguments. Config entries already present in
    `base` are kept.

    Args:
        token (str): The authentication token. Empty means no authentication.
        base (Mapping[str, str] | None): The environment to extend. Defaults to
                                         the current process environment.

    Returns:
        dict[str, str] | None: The environment for git, or None to inherit.
    """
    if not token:
        return None
    env = dict(os.environ if base is None else base)
    try:
        index = int(env.get("GIT_CONFIG_COUNT", "0"))
    except ValueError:
        index = 0
    creds = base64.b64encode(f"{AUTH_USERNAME}:{token}".encode()).decode()
    env["GIT_CONFIG_COUNT"] = str(index + 1)
    env[f"GIT_CONFIG_KEY_{index}"] = "http.extraHeader"
    env[f"GIT_CONFIG_VALUE_{index}"] = f"Authorization: Basic {creds}"
    return env


class GitRepo:
    """A wrapper around the git command-line interface for one local checkout.

    Every command runs through `_run`, which turns a non-zero exit into a
    `SyncError` carrying git's stderr. Network commands additionally carry the
    authentication header when a token is configured.

    Attributes:
        path (Path): The file system path to the checkout root.
        git (GitBinary): The git executable to invoke.
        token (str): Optional authentication token for network operations.
    """

    def __init__(self, path: Path, git: GitBinary | None = None, token: str = ""):
        """Initializes the GitRepo instance.

        Args:
            path (Path): The path to the checkout root directory.
            git (GitBinary | None): The git executable handle. Defaults to
                                    plain `git` resolved through PATH.
            token (str, optional): Authentication token. Defaults to "".

        Raises:
            ValueError: If the specified path does not contain a .git directory.
        """
        self.path = path
        self.git = git or GitBinary()
        self.token = token
        if not (self.path / ".git").exists():
            raise ValueError(f"Not a git repository: {self.path}")

    @staticmethod
    def _exec(
        git: GitBinary,
        args: list[str],
        cwd: Path,
        capture: bool = True,
        env: dict[str, str] | None = None,
    ) -> str:
        """Executes a git command in `cwd`, optionally with a custom environment.

        Returns:
            str: The stripped stdout if capture is True, otherwise "".

        Raises:
            SyncError: If git is missing or exits with a non-zero code.
        """
        try:
            res = subprocess.run(
                [git.executable, *args],
                cwd=cwd,
                capture_output=capture,
                text=True,
                check=True,
                stdin=subprocess.DEVNULL,
                env=env,
            )
            return res.stdout.strip() if capture else ""
        except subprocess.CalledProcessError as e:
            raise SyncError(f"Git error: {(e.stderr or str(e)).strip()}") from e
        except OSError as e:
            raise SyncError(f"Git error: {e}") from e

    def _run(self, args: list[str], capture: bool = True, network: bool = False) -> str:
        """Executes a git command within the checkout.

        Args:
            args (list[str]): Arguments to pass to git.
            capture (bool, optional): Whether to capture and return stdout.
            network (bool, optional): Whether the command talks to the remote
                                      and needs credentials attached.

        Returns:
            str: The stripped stdout of the command if capture is True.
        """
        env = auth_env(self.token) if network else None
        return self._exec(self.git, args, self.path, capture=capture, env=env)

    @classmethod
    def clone(
        cls,
        url: str,
        path: Path,
        branch: str,
        git: GitBinary | None = None,
        token: str = "",
    ) -> "GitRepo":
        """Clones a single branch, with submodules, into an empty directory.

        Args:
            url (str): The clone URL.
            path (Path): The existing, empty target directory.
            branch (str): The branch to check out.
            git (GitBinary | None): The git executable handle.
            token (str, optional): Authentication token.

        Returns:
            GitRepo: The wrapper for the fresh checkout.
        """
        git = git or GitBinary()
        args = [
            "clone",
            "--branch",
            branch,
            "--recurse-submodules",
            url,
            ".",
        ]
        cls._exec(git, args, path, env=auth_env(token))
        return cls(path, git=git, token=token)

    def pull(self, branch: str) -> None:
        """Fetches `branch` from origin and merges it into the checkout.

        An up-to-date checkout is not an error.

        Args:
            branch (str): The tracked branch.
        """
        self._run(
            [
                "pull",
                "--no-rebase",
                "--no-edit",
                "--recurse-submodules",
                REMOTE_NAME,
                branch,
            ],
            network=True,
        )

    def head_commit(self) -> str:
        """Resolves HEAD to its full commit hash.

        Returns:
            str: The SHA-1 of the checked-out commit.
        """
        return self._run(["rev-parse", "HEAD"])

    def origin_url(self) -> str:
        """Retrieves the URL of the origin remote.

        Returns:
            str: The configured remote URL.
        """
        return self._run(["remote", "get-url", REMOTE_NAME])

    def checkout(self, target: str, force: bool = False) -> None:
        """Checks out a branch or commit.

        Args:
            target (str): The branch name or commit hash.
            force (bool, optional): Whether to discard local changes.
        """
        cmd = ["checkout"]
        if force:
            cmd.append("-f")
        cmd.append(target)
        self._run(cmd, capture=False)
