import logging
import threading
from dataclasses import dataclass, field

from .constants import APP_NAME
from .errors import WardenError
from .repo import Repo

logger = logging.getLogger(APP_NAME)


@dataclass
class _Loop:
    repo: Repo
    thread: threading.Thread
    halt: threading.Event = field(default_factory=threading.Event)


class Scheduler:
    """Runs one background polling loop per repository.

    Each loop sleeps for the repository's interval and then pulls, forever,
    independently of every other loop. A failed pull is logged and the loop
    carries on with the next tick.
    """

    def __init__(self) -> None:
        self._loops: list[_Loop] = []
        self._lock = threading.Lock()

    def start(self, repo: Repo) -> None:
        """Starts the polling loop for `repo` in a daemon thread.

        Args:
            repo (Repo): The repository to poll.
        """
        halt = threading.Event()
        thread = threading.Thread(
            target=self._run,
            args=(repo, halt),
            name=f"poll-{repo.path.name or repo.host}",
            daemon=True,
        )
        with self._lock:
            self._loops.append(_Loop(repo, thread, halt))
        thread.start()
        logger.debug(f"Polling {repo.url} every {repo.interval}s.")

    @staticmethod
    def _run(repo: Repo, halt: threading.Event) -> None:
        while not halt.wait(repo.interval):
            try:
                repo.pull()
            except WardenError as e:
                logger.error(f"PULL ERROR {repo.url}: {e}")
            except Exception:
                logger.exception(f"LOOP ERROR {repo.url}")

    def stop(self, url: str | None = None, limit: int = -1) -> int:
        """Stops running loops.

        Args:
            url (str | None, optional): Only stop loops of repositories whose
                                        display URL matches. Defaults to all.
            limit (int, optional): Maximum number of loops to stop, -1 for no
                                   limit. Defaults to -1.

        Returns:
            int: The number of loops stopped.
        """
        stopped = []
        with self._lock:
            for loop in self._loops:
                if limit != -1 and len(stopped) >= limit:
                    break
                if url is None or str(loop.repo.url) == url:
                    loop.halt.set()
                    stopped.append(loop)
            self._loops = [loop for loop in self._loops if loop not in stopped]

        for loop in stopped:
            logger.debug(f"Stopped polling {loop.repo.url}.")
        return len(stopped)

    def stop_all(self, timeout: float | None = None) -> None:
        """Stops every loop and waits for their threads to finish.

        Args:
            timeout (float | None, optional): Seconds to wait per thread.
        """
        with self._lock:
            loops = list(self._loops)
        self.stop()
        for loop in loops:
            loop.thread.join(timeout)

    def __len__(self) -> int:
        with self._lock:
            return len(self._loops)
