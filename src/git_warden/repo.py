"""The per-repository synchronization state machine.

A `Repo` owns one local checkout. `prepare` validates the target directory
once, `pull` clones or updates it (with retries and a cooldown) and runs the
post-update commands whenever the checked-out commit changes.
"""

import logging
import shutil
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from urllib.parse import urlsplit, urlunsplit

from .commands import Command
from .constants import (
    APP_NAME,
    DEFAULT_BRANCH,
    DEFAULT_INTERVAL,
    NUM_RETRIES,
    PULL_COOLDOWN,
)
from .errors import (
    CommandError,
    ConfigurationError,
    ConflictError,
    DirtyDirectoryError,
    SyncError,
    WardenError,
    merge_errors,
)
from .git_wrapper import GitRepo
from .system import GitBinary

logger = logging.getLogger(APP_NAME)


class RepoURL(str):
    """A repository URL that never prints its credentials.

    `str()` yields the display form, `raw` the value as configured and `val()`
    the form handed to `git clone`.
    """

    @property
    def raw(self) -> str:
        return str.__str__(self)

    def __str__(self) -> str:
        parts = urlsplit(self.raw)
        if not parts.scheme or "@" not in parts.netloc:
            return self.raw

        userinfo, host = parts.netloc.rsplit("@", 1)
        if parts.scheme in ("http", "https"):
            netloc = host
        else:
            netloc = f"{userinfo.split(':', 1)[0]}@{host}"
        return urlunsplit(parts._replace(netloc=netloc))

    def __repr__(self) -> str:
        return f"RepoURL({str(self)!r})"

    def val(self) -> str:
        """Returns the URL as passed to git clone (without an `ssh://` prefix)."""
        return self.raw.removeprefix("ssh://")


def parse_url(value: str) -> tuple[RepoURL, str]:
    """Validates and normalizes a configured repository URL.

    A bare `host/path` is treated as https. Only http, https and ssh schemes
    are accepted.

    Args:
        value (str): The URL as written in the configuration.

    Returns:
        tuple[RepoURL, str]: The normalized URL and its host name.

    Raises:
        ConfigurationError: If the scheme is unsupported or the URL is empty.
    """
    value = value.strip()
    if not value:
        raise ConfigurationError("repository url is required")

    if not value.startswith(("https://", "http://", "ssh://")):
        scheme, sep, _ = value.partition("://")
        if sep:
            raise ConfigurationError(
                f"invalid url scheme {scheme}. If url contains port, scheme is required"
            )
        value = "https://" + value

    try:
        netloc = urlsplit(value).netloc
    except ValueError as e:
        raise ConfigurationError(f"invalid url {value!r}: {e}") from e

    host = netloc.rsplit("@", 1)[-1]
    # ssh urls may use scp syntax (host:path), which is not a port.
    host = host.split(":", 1)[0]
    return RepoURL(value), host


class HookType(str, Enum):
    """Supported webhook providers."""

    GITHUB = "github"
    GITLAB = "gitlab"
    BITBUCKET = "bitbucket"
    GITEA = "gitea"
    GOGS = "gogs"
    GENERIC = "generic"


@dataclass(frozen=True)
class HookConfig:
    """Webhook settings of a repository.

    Attributes:
        url (str): Request path that routes to the repository. Empty means the
            repository is polled instead.
        secret (str): Shared secret used to validate payloads, if any.
        type (HookType | None): Provider; None detects it from the headers.
    """

    url: str = ""
    secret: str = ""
    type: HookType | None = None


@dataclass(eq=False)
class Repo:
    """A remote repository mirrored into a local directory.

    Configuration attributes are fixed after construction. The pull state
    (`cloned`, `last_pull`, `last_commit`) is only touched while holding the
    repository lock.

    Attributes:
        url (RepoURL): The remote URL.
        path (Path): The local checkout directory.
        branch (str): The tracked branch.
        token (str): Optional authentication token.
        interval (int): Seconds between polls.
        then (list[Command]): Post-update commands, in order.
        hook (HookConfig): Webhook settings.
        git (GitBinary): The git executable handle.
        host (str): Host part of the URL, informational.
    """

    url: RepoURL
    path: Path
    branch: str = DEFAULT_BRANCH
    token: str = ""
    interval: int = DEFAULT_INTERVAL
    then: list[Command] = field(default_factory=list)
    hook: HookConfig = field(default_factory=HookConfig)
    git: GitBinary = field(default_factory=GitBinary)
    host: str = ""

    cloned: bool = field(default=False, init=False)
    last_pull: float | None = field(default=None, init=False)
    last_commit: str = field(default="", init=False)
    _lock: threading.Lock = field(
        default_factory=threading.Lock, init=False, repr=False
    )

    def __post_init__(self) -> None:
        if not isinstance(self.url, RepoURL):
            self.url = RepoURL(self.url)
        self.path = Path(self.path)

    def prepare(self) -> None:
        """Validates the local directory before the first pull.

        Creates the directory if it is missing or empty. A checkout of the same
        remote is adopted and marked as cloned.

        Raises:
            ConflictError: If the directory is a checkout of another remote.
            DirtyDirectoryError: If the directory holds anything else.
        """
        if self.path.exists() and not self.path.is_dir():
            raise DirtyDirectoryError(
                f"cannot git clone into {self.path}, not a directory"
            )

        try:
            entries = list(self.path.iterdir())
        except OSError:
            entries = []

        if not entries:
            self.path.mkdir(mode=0o755, parents=True, exist_ok=True)
            return

        if not (self.path / ".git").is_dir():
            raise DirtyDirectoryError(
                f"cannot git clone into {self.path}, directory not empty"
            )

        try:
            origin = GitRepo(self.path, git=self.git).origin_url()
        except (ValueError, WardenError) as e:
            raise ConflictError(
                f"cannot retrieve repo url for {self.path} Error: {e}"
            ) from e

        if origin.removesuffix(".git") == self.url.val().removesuffix(".git"):
            self.cloned = True
            return

        raise ConflictError(f"another git repo '{origin}' exists at {self.path}")

    def pull(self) -> None:
        """Brings the checkout up to date and runs post-update commands.

        Calls within `PULL_COOLDOWN` seconds of the last successful sync return
        without doing anything. A failed sync is retried immediately, up to
        `NUM_RETRIES` attempts in total.

        Raises:
            SyncError: If every sync attempt failed.
            CommandError | AggregateError: If post-update commands failed.
        """
        with self._lock:
            if (
                self.last_pull is not None
                and time.monotonic() - self.last_pull < PULL_COOLDOWN
            ):
                return

            last_commit = self.last_commit

            error: SyncError | None = None
            for attempt in range(1, NUM_RETRIES + 1):
                try:
                    self._sync()
                    error = None
                    break
                except SyncError as e:
                    logger.warning(
                        f"Pull {self.url} failed (attempt {attempt}/{NUM_RETRIES}): {e}"
                    )
                    error = e

            if error is not None:
                raise error

            if self.last_commit == last_commit:
                logger.info("No new changes.")
                return

            logger.info(f"{self.url} pulled.")
            self._exec_then()

    def _sync(self) -> None:
        if not self.cloned:
            self._clone()
        else:
            self._pull()

    def _clone(self) -> None:
        was_empty = not (self.path.is_dir() and any(self.path.iterdir()))
        try:
            repo = GitRepo.clone(
                self.url.val(), self.path, self.branch, git=self.git, token=self.token
            )
        except SyncError:
            # A clone that fails on a submodule leaves the main checkout behind.
            if was_empty:
                self._clear_path()
            raise
        self._record(repo)

    def _clear_path(self) -> None:
        """Removes everything inside the checkout directory, keeping the directory."""
        if not self.path.is_dir():
            return
        for entry in self.path.iterdir():
            if entry.is_dir() and not entry.is_symlink():
                shutil.rmtree(entry)
            else:
                entry.unlink()

    def _pull(self) -> None:
        try:
            repo = GitRepo(self.path, git=self.git, token=self.token)
        except ValueError as e:
            raise SyncError(str(e)) from e
        repo.pull(self.branch)
        self._record(repo)

    def _record(self, repo: GitRepo) -> None:
        commit = repo.head_commit()
        self.cloned = True
        self.last_pull = time.monotonic()
        self.last_commit = commit

    def checkout_commit(self, commit: str) -> None:
        """Hard-checks out an explicit commit.

        Args:
            commit (str): The commit hash to check out.

        Raises:
            SyncError: If the checkout is missing or git rejects the commit.
        """
        with self._lock:
            try:
                repo = GitRepo(self.path, git=self.git)
            except ValueError as e:
                raise SyncError(str(e)) from e
            repo.checkout(commit, force=True)
            self.last_commit = repo.head_commit()
            logger.info(f"{self.url} checked out at {commit}.")

    def _exec_then(self) -> None:
        errors = [self._run_command(command) for command in self.then]
        if err := merge_errors(*errors):
            raise err

    def _run_command(self, command: Command) -> CommandError | None:
        try:
            command.exec(self.path)
        except CommandError as e:
            return e
        return None
