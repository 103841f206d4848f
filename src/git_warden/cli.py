import argparse
import logging
import sys
import textwrap
from pathlib import Path

from rich.console import Console
from rich.table import Table

from . import daemon
from .config import Config
from .constants import APP_NAME, CONFIG_FILE
from .errors import WardenError
from .repo import Repo
from .system import locate_git

logger = logging.getLogger(APP_NAME)
console = Console()
err_console = Console(stderr=True)

CONFIG_REFERENCE = textwrap.dedent(
    """\
    # git-warden configuration

    # Base directory for relative repository paths (default: current directory).
    root = "/srv/www"

    [server]
    # Webhook listener, only started when a repository declares a hook.
    host = "127.0.0.1"
    port = 8080

    [limits]
    max_log_size = "5MB"

    [[repo]]
    url = "github.com/user/site"       # https is assumed without a scheme
    path = "site"                      # relative to root
    branch = "main"                    # default: master
    # auth_token = "..."
    interval = "10 min"                # default: 1 hour
    # Run after every change, in order. `long = true` starts a command in the
    # background without waiting for it.
    then = [
        ["hugo", "--minify"],
        { command = ["./serve.sh"], long = true },
        "systemctl reload nginx",
    ]
    then_long = [["./notify.sh"]]         # background, after `then`

    [[repo]]
    url = "https://gitlab.com/user/config.git"
    path = "/etc/app"
    hook = { url = "/hooks/config", secret = "s3cr3t", type = "gitlab" }
    """
)


def _load(config_path: Path) -> Config:
    git = locate_git()
    return Config.load(config_path, git=git)


def _select(config: Config, url: str | None) -> list[Repo]:
    if url is None:
        return config.repos
    repos = [r for r in config.repos if str(r.url) == url or r.url.raw == url]
    if not repos:
        err_console.print(f"[bold red]ERROR:[/bold red] No repository '{url}' configured.")
        sys.exit(1)
    return repos


def run_daemon(config_path: Path) -> None:
    """Loads the configuration and runs the daemon until stopped."""
    config = _load(config_path)
    daemon.setup_logging(interactive=False, max_bytes=config.limits.max_log_size)
    daemon.run(config)


def check_config(config_path: Path) -> None:
    """Validates the configuration and every repository directory."""
    config = _load(config_path)
    daemon.prepare_all(config.repos)

    table = Table(title=f"{APP_NAME}: {config_path}")
    table.add_column("Repository", style="cyan")
    table.add_column("Path")
    table.add_column("Branch")
    table.add_column("Trigger")
    table.add_column("State")

    for repo in config.repos:
        if repo.hook.url:
            hook_type = repo.hook.type.value if repo.hook.type else "auto"
            trigger = f"webhook {repo.hook.url} ({hook_type})"
        else:
            trigger = f"every {repo.interval}s"
        state = "[green]cloned[/green]" if repo.cloned else "[yellow]empty[/yellow]"
        table.add_row(str(repo.url), str(repo.path), repo.branch, trigger, state)

    console.print(table)
    console.print("[bold green]SUCCESS:[/bold green] Configuration is valid.")


def pull_now(config_path: Path, url: str | None = None) -> None:
    """Pulls the selected repositories once, in the foreground."""
    config = _load(config_path)
    failed = False
    for repo in _select(config, url):
        repo.prepare()
        with console.status(f"[bold blue]Pulling {repo.url}...[/bold blue]"):
            try:
                repo.pull()
            except WardenError as e:
                failed = True
                console.print(f"[bold red]PULL ERROR {repo.url}:[/bold red] {e}")
                continue
        console.print(f"[bold green]SUCCESS:[/bold green] {repo.url} at {repo.last_commit[:12]}")
    if failed:
        sys.exit(1)


def checkout(config_path: Path, url: str, commit: str) -> None:
    """Hard-checks out `commit` in the configured repository `url`."""
    config = _load(config_path)
    for repo in _select(config, url):
        repo.prepare()
        if not repo.cloned:
            err_console.print(
                f"[bold red]ERROR:[/bold red] {repo.url} has not been cloned to {repo.path} yet."
            )
            sys.exit(1)
        repo.checkout_commit(commit)
        console.print(f"[bold green]SUCCESS:[/bold green] {repo.url} is at {commit}.")


def main() -> None:
    """Entry point for the `git-warden` command."""
    parser = argparse.ArgumentParser(
        prog=APP_NAME,
        description="Keep directories in sync with git repositories.",
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=CONFIG_FILE,
        help=f"Configuration file (default: {CONFIG_FILE})",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable debug logging"
    )

    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("run", help="Run the sync daemon (default)")
    subparsers.add_parser("check", help="Validate config and repository directories")

    pull_parser = subparsers.add_parser("pull", help="Pull repositories once")
    pull_parser.add_argument("url", nargs="?", help="Only pull this repository")

    checkout_parser = subparsers.add_parser(
        "checkout", help="Check out a specific commit of a repository"
    )
    checkout_parser.add_argument("url", help="Repository URL as configured")
    checkout_parser.add_argument("commit", help="Commit hash to check out")

    subparsers.add_parser("config", help="Print a reference configuration file")

    args = parser.parse_args()

    if args.command == "config":
        console.print(CONFIG_REFERENCE, markup=False, highlight=False)
        return

    if args.command not in (None, "run"):
        daemon.setup_logging(interactive=True)
    if args.verbose:
        logger.setLevel(logging.DEBUG)

    try:
        if args.command in (None, "run"):
            run_daemon(args.config)
        elif args.command == "check":
            check_config(args.config)
        elif args.command == "pull":
            pull_now(args.config, args.url)
        elif args.command == "checkout":
            checkout(args.config, args.url, args.commit)
    except WardenError as e:
        err_console.print(f"[bold red]ERROR:[/bold red] {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
