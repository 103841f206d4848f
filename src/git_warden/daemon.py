import logging
import signal
import sys
import threading
from logging.handlers import RotatingFileHandler
from pathlib import Path
from types import FrameType

import uvicorn

from .config import Config
from .constants import APP_NAME, LOG_FILE
from .errors import WardenError
from .repo import Repo
from .scheduler import Scheduler
from .webhook import create_app

logger = logging.getLogger(APP_NAME)
logger.setLevel(logging.INFO)


def setup_logging(
    interactive: bool, log_file: Path = LOG_FILE, max_bytes: int = 5 * 1024 * 1024
) -> None:
    """Configures the logging subsystem.

    Args:
        interactive (bool): If True, logs to stdout. If False, logs to stderr
                            and to a rotating log file.
        log_file (Path, optional): The daemon log file.
        max_bytes (int, optional): Size at which the log file is rotated.
    """
    if logger.handlers:
        return

    formatter = logging.Formatter(
        "[%(asctime)s] %(levelname)s: %(message)s", "%Y-%m-%d %H:%M:%S"
    )

    # Always log to a stream (captured by systemd when daemonized).
    stream_handler = logging.StreamHandler(
        sys.stderr if not interactive else sys.stdout
    )
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    if not interactive:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                log_file, maxBytes=max_bytes, backupCount=5
            )
        except OSError as e:
            logger.warning(f"Could not open log file {log_file}: {e}")
        else:
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)


def prepare_all(repos: list[Repo]) -> None:
    """Validates every repository directory.

    Raises:
        WardenError: On the first directory that cannot be used.
    """
    for repo in repos:
        repo.prepare()
        state = "existing checkout" if repo.cloned else "empty"
        logger.info(f"Prepared {repo.url} at {repo.path} ({state}).")


def initial_pull(repo: Repo) -> bool:
    """Pulls once at startup so configuration problems show up immediately.

    Returns:
        bool: True if the pull succeeded.
    """
    try:
        repo.pull()
        return True
    except WardenError as e:
        logger.error(f"STARTUP PULL ERROR {repo.url}: {e}")
        return False


def start(config: Config, scheduler: Scheduler) -> None:
    """Prepares repositories, performs startup pulls and starts polling loops.

    Webhook-driven repositories only get the startup pull.

    Args:
        config (Config): The loaded configuration.
        scheduler (Scheduler): Scheduler that owns the polling loops.

    Raises:
        WardenError: If a repository directory cannot be used.
    """
    prepare_all(config.repos)

    for repo in config.hook_repos:
        initial_pull(repo)

    for repo in config.polling_repos:
        initial_pull(repo)
        scheduler.start(repo)


def _wait_for_signal() -> None:
    stop = threading.Event()

    def handler(signum: int, _frame: FrameType | None) -> None:
        logger.info(f"Received signal {signum}, shutting down.")
        stop.set()

    signal.signal(signal.SIGINT, handler)
    signal.signal(signal.SIGTERM, handler)
    stop.wait()


def run(config: Config) -> None:
    """The main daemon entry point. Blocks until the process is told to stop.

    Args:
        config (Config): The loaded configuration.
    """
    scheduler = Scheduler()
    try:
        start(config, scheduler)

        if hook_repos := config.hook_repos:
            for repo in hook_repos:
                logger.info(f"Listening for {repo.url} webhooks on {repo.hook.url}.")
            uvicorn.run(
                create_app(hook_repos),
                host=config.server.host,
                port=config.server.port,
                log_level="info",
            )
        else:
            _wait_for_signal()
    finally:
        scheduler.stop_all(timeout=1.0)
