import logging
import re
import tomllib
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from .commands import Command, parse_command
from .constants import (
    APP_NAME,
    DEFAULT_BRANCH,
    DEFAULT_HOST,
    DEFAULT_INTERVAL,
    DEFAULT_PORT,
)
from .errors import ConfigurationError
from .repo import HookConfig, HookType, Repo, parse_url
from .system import GitBinary

logger = logging.getLogger(APP_NAME)

REPO_KEYS = {
    "url",
    "path",
    "branch",
    "auth_token",
    "interval",
    "then",
    "then_long",
    "hook",
}


def parse_size(value: int | str) -> int:
    """Converts human-readable size strings (e.g., '100MB') to bytes."""
    if isinstance(value, bool):
        raise ValueError(f"Invalid size format '{value}'")
    if isinstance(value, int):
        return value
    match = re.match(r"^(\d+(?:\.\d+)?)\s*([kmg]b?)$", str(value).strip().lower())
    if not match:
        raise ValueError(f"Invalid size format '{value}'")
    num, unit = float(match.group(1)), match.group(2)
    multiplier = {
        "k": 1024,
        "kb": 1024,
        "m": 1024**2,
        "mb": 1024**2,
        "g": 1024**3,
        "gb": 1024**3,
    }
    return int(num * multiplier[unit])


def parse_time(value: int | str) -> int:
    """Converts human-readable time strings (e.g., '1hr', '30m') to seconds."""
    if isinstance(value, bool):
        raise ValueError(f"Invalid time format '{value}'")
    if isinstance(value, int):
        return value
    match = re.match(
        r"^(-?\d+(?:\.\d+)?)\s*(s|sec|m|min|h|hr)s?$", str(value).strip().lower()
    )
    if not match:
        raise ValueError(f"Invalid time format '{value}'")
    num, unit = float(match.group(1)), match.group(2)
    multiplier = {"s": 1, "sec": 1, "m": 60, "min": 60, "h": 3600, "hr": 3600}
    return int(num * multiplier[unit])


@dataclass
class ServerConfig:
    """Webhook server settings.

    Attributes:
        host (str): Interface the webhook server binds to.
        port (int): Port the webhook server listens on.
    """

    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT


@dataclass
class LimitsConfig:
    """Resource limitation settings.

    Attributes:
        max_log_size (int): Max bytes for log files before rotation.
    """

    max_log_size: int = 5 * 1024 * 1024


@dataclass
class Config:
    """Global configuration aggregator.

    Attributes:
        root (Path): Base directory for relative repository paths.
        server (ServerConfig): Webhook server settings.
        limits (LimitsConfig): Resource limits.
        repos (list[Repo]): The declared repositories, not yet prepared.
    """

    root: Path = field(default_factory=Path.cwd)
    server: ServerConfig = field(default_factory=ServerConfig)
    limits: LimitsConfig = field(default_factory=LimitsConfig)
    repos: list[Repo] = field(default_factory=list)

    @property
    def hook_repos(self) -> list[Repo]:
        """Repositories pulled on webhook events."""
        return [r for r in self.repos if r.hook.url]

    @property
    def polling_repos(self) -> list[Repo]:
        """Repositories pulled on a timer."""
        return [r for r in self.repos if not r.hook.url]

    @classmethod
    def load(cls, path: Path, git: GitBinary | None = None) -> "Config":
        """Loads a configuration file.

        Args:
            path (Path): The TOML file to read.
            git (GitBinary | None): Git handle given to every repository.

        Returns:
            Config: The parsed configuration.

        Raises:
            ConfigurationError: If the file is missing, unreadable or declares
                                an invalid repository.
        """
        try:
            with open(path, "rb") as f:
                data = tomllib.load(f)
        except FileNotFoundError as e:
            raise ConfigurationError(f"Config file not found: {path}") from e
        except tomllib.TOMLDecodeError as e:
            raise ConfigurationError(f"Config syntax error in {path}: {e}") from e
        except OSError as e:
            raise ConfigurationError(f"Cannot read config {path}: {e}") from e

        return cls.from_dict(data, base=path.parent, git=git)

    @classmethod
    def from_dict(
        cls, data: dict[str, Any], base: Path | None = None, git: GitBinary | None = None
    ) -> "Config":
        """Builds a configuration from parsed TOML data.

        Args:
            data (dict[str, Any]): The parsed document.
            base (Path | None): Directory a relative `root` is resolved from.
            git (GitBinary | None): Git handle given to every repository.

        Returns:
            Config: The parsed configuration.
        """
        instance = cls()
        base = base or Path.cwd()

        if "root" in data:
            root = Path(str(data["root"])).expanduser()
            instance.root = root if root.is_absolute() else (base / root)

        if "server" in data:
            instance.server = cls._update_dataclass(
                "server", instance.server, data["server"]
            )
        if "limits" in data:
            instance.limits = cls._update_dataclass(
                "limits", instance.limits, data["limits"]
            )

        repos = data.get("repo", [])
        if not isinstance(repos, list):
            raise ConfigurationError("[[repo]] must be an array of tables")
        for index, entry in enumerate(repos):
            instance.repos.append(
                parse_repo(entry, instance.root, git=git or GitBinary(), index=index)
            )

        return instance

    @staticmethod
    def _update_dataclass(section_name: str, instance: Any, updates: Any) -> Any:
        """Updates a dataclass, warning on invalid keys and parsing human-readable formats."""
        if not isinstance(updates, dict):
            logger.warning(f"Config section [{section_name}] is not a table. Ignoring.")
            return instance

        valid_keys = instance.__dataclass_fields__.keys()
        filtered_updates = {}

        # 1. Catch and warn about typos / unknown keys
        invalid_keys = set(updates.keys()) - set(valid_keys)
        if invalid_keys:
            logger.warning(
                f"Unknown config keys in [{section_name}]: {', '.join(sorted(invalid_keys))}. Ignoring."
            )

        # 2. Process valid keys
        for k, v in updates.items():
            if k not in valid_keys:
                continue

            try:
                if k == "max_log_size":
                    filtered_updates[k] = parse_size(v)
                elif k == "port":
                    filtered_updates[k] = int(v)
                else:
                    filtered_updates[k] = v
            except (TypeError, ValueError) as e:
                logger.warning(
                    f"Config error in [{section_name}].{k}: {e}. Falling back to default."
                )

        return replace(instance, **filtered_updates)


def _resolve_path(root: Path, value: str | None) -> Path:
    if not value:
        return root
    path = Path(value).expanduser()
    if path.is_absolute():
        return path
    return root / path


def _parse_command_entry(value: Any, long_running: bool) -> Command:
    # Table form: { command = [...], long = true }
    if isinstance(value, dict):
        unknown = set(value) - {"command", "long"}
        if unknown:
            raise ValueError(f"unknown keys {', '.join(sorted(unknown))}")
        long = value.get("long", long_running)
        if not isinstance(long, bool):
            raise ValueError(f"'long' must be true or false, got {long!r}")
        return parse_command(value.get("command", []), long_running=long)
    return parse_command(value, long_running=long_running)


def _parse_commands(name: str, value: Any, long_running: bool) -> list[Command]:
    if not isinstance(value, list):
        raise ConfigurationError(f"'{name}' must be a list of commands")
    try:
        return [_parse_command_entry(v, long_running) for v in value]
    except ValueError as e:
        raise ConfigurationError(f"Invalid '{name}' entry: {e}") from e


def _parse_hook(value: Any) -> HookConfig:
    if isinstance(value, str):
        value = {"url": value}
    if not isinstance(value, dict):
        raise ConfigurationError("'hook' must be a url string or a table")

    url = str(value.get("url", ""))
    if not url.startswith("/"):
        raise ConfigurationError(f"hook url must be a path starting with '/': {url!r}")

    hook_type = None
    if raw_type := value.get("type"):
        try:
            hook_type = HookType(raw_type)
        except ValueError as e:
            raise ConfigurationError(f"invalid hook type {raw_type}") from e

    return HookConfig(url=url, secret=str(value.get("secret", "")), type=hook_type)


def parse_repo(
    entry: Any, root: Path, git: GitBinary | None = None, index: int = 0
) -> Repo:
    """Builds a Repo from one `[[repo]]` table.

    Args:
        entry (Any): The table as parsed from TOML.
        root (Path): Base directory for a relative `path`.
        git (GitBinary | None): Git handle for the repository.
        index (int, optional): Position in the file, used in error messages.

    Returns:
        Repo: The repository, not yet prepared.

    Raises:
        ConfigurationError: If the declaration is invalid.
    """
    if not isinstance(entry, dict):
        raise ConfigurationError(f"repo #{index + 1} must be a table")

    unknown = set(entry) - REPO_KEYS
    if unknown:
        raise ConfigurationError(
            f"Unknown keys in repo #{index + 1}: {', '.join(sorted(unknown))}"
        )

    if not entry.get("url"):
        raise ConfigurationError(f"repo #{index + 1} requires a url")
    url, host = parse_url(str(entry["url"]))

    interval = DEFAULT_INTERVAL
    if "interval" in entry:
        try:
            value = parse_time(entry["interval"])
        except ValueError as e:
            raise ConfigurationError(f"{url}: {e}") from e
        if value > 0:
            interval = value

    then = _parse_commands("then", entry.get("then", []), long_running=False)
    then += _parse_commands("then_long", entry.get("then_long", []), long_running=True)

    hook = _parse_hook(entry["hook"]) if "hook" in entry else HookConfig()

    return Repo(
        url=url,
        path=_resolve_path(root, entry.get("path")),
        branch=str(entry.get("branch") or DEFAULT_BRANCH),
        token=str(entry.get("auth_token", "")),
        interval=interval,
        then=then,
        hook=hook,
        git=git or GitBinary(),
        host=host,
    )
