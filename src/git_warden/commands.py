"""Post-update commands executed after a pull changes the checked-out commit."""

import logging
import shlex
import subprocess
import threading
from dataclasses import dataclass, field
from pathlib import Path

from .constants import APP_NAME
from .errors import CommandError

logger = logging.getLogger(APP_NAME)


@dataclass(frozen=True)
class Command:
    """A post-update command and its arguments.

    Attributes:
        name (str): The executable to run.
        args (tuple[str, ...]): Arguments, passed verbatim (no shell).
        long_running (bool): If True the command is started detached and its
            exit status is never reported back.
    """

    name: str
    args: tuple[str, ...] = field(default_factory=tuple)
    long_running: bool = False

    @classmethod
    def blocking(cls, name: str, *args: str) -> "Command":
        """Creates a command that is waited for."""
        return cls(name, tuple(args))

    @classmethod
    def detached(cls, name: str, *args: str) -> "Command":
        """Creates a command that is started in the background."""
        return cls(name, tuple(args), long_running=True)

    def __str__(self) -> str:
        return " ".join([self.name, *self.args])

    def exec(self, cwd: Path) -> None:
        """Runs the command with `cwd` as its working directory.

        Args:
            cwd (Path): The repository checkout to run in.

        Raises:
            CommandError: If the command cannot be started or, when blocking,
                          exits with a non-zero code.
        """
        if self.long_running:
            self._exec_detached(cwd)
        else:
            self._exec_blocking(cwd)

    def _exec_blocking(self, cwd: Path) -> None:
        try:
            res = subprocess.run(
                [self.name, *self.args],
                cwd=cwd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
            )
        except OSError as e:
            raise CommandError(f"Command '{self}' failed to start: {e}") from e

        if res.returncode != 0:
            output = (res.stdout or "").strip()
            raise CommandError(
                f"Command '{self}' exited with status {res.returncode}: {output}"
            )
        logger.info(f"Command '{self}' successful.")

    def _exec_detached(self, cwd: Path) -> None:
        try:
            proc = subprocess.Popen(
                [self.name, *self.args],
                cwd=cwd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as e:
            raise CommandError(f"Command '{self}' failed to start: {e}") from e

        logger.info(f"Command '{self}' started in background (pid {proc.pid}).")

        # Reap the child so it does not linger as a zombie.
        threading.Thread(
            target=_reap, args=(proc, str(self)), name=f"reap-{proc.pid}", daemon=True
        ).start()


def _reap(proc: subprocess.Popen, cmdline: str) -> None:
    code = proc.wait()
    if code != 0:
        logger.debug(f"Background command '{cmdline}' exited with status {code}.")


def parse_command(value: str | list[str], long_running: bool = False) -> Command:
    """Builds a Command from a config value.

    Args:
        value (str | list[str]): Either an argv list or a command line that is
                                 split with shell quoting rules.
        long_running (bool, optional): Whether the command is detached.

    Returns:
        Command: The parsed command.

    Raises:
        ValueError: If the value is empty or not a string/list of strings.
    """
    if isinstance(value, str):
        argv = shlex.split(value)
    elif isinstance(value, list) and all(isinstance(v, str) for v in value):
        argv = list(value)
    else:
        raise ValueError(f"Invalid command {value!r}")

    if not argv:
        raise ValueError("Empty command")
    return Command(argv[0], tuple(argv[1:]), long_running=long_running)
