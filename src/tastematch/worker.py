import logging
import queue
import threading

from .config import REFRESH_QUEUE_MAX_SIZE
from .profile_cache import ProfileCache

logger = logging.getLogger(__name__)

_STOP = object()


class ProfileRefreshWorker:
    """
    Recomputes taste maps after watch-history changes, off the caller's thread.

    `submit` only enqueues; a single daemon thread drains the queue and
    refreshes each user's cached taste map. Refresh failures are logged and
    never reach the code that submitted the user.
    """

    def __init__(self, profile_cache: ProfileCache, max_queue_size: int = REFRESH_QUEUE_MAX_SIZE):
        self.profile_cache = profile_cache
        self._queue: queue.Queue = queue.Queue(maxsize=max_queue_size)
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()
        self.refreshed = 0
        self.failed = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> "ProfileRefreshWorker":
        with self._lock:
            if not self.running:
                self._thread = threading.Thread(target=self._run, name="tastematch-refresh", daemon=True)
                self._thread.start()
        return self

    def submit(self, user_id: str) -> bool:
        """Queue a refresh; returns False (and drops it) when the queue is full."""
        try:
            self._queue.put_nowait(user_id)
            return True
        except queue.Full:
            logger.warning(f"Refresh queue full, dropping refresh for {user_id}")
            return False

    def join(self) -> None:
        """Block until every queued refresh has been processed."""
        self._queue.join()

    def stop(self, timeout: float | None = 5.0) -> None:
        with self._lock:
            thread = self._thread
            if thread is None:
                return
            self._queue.put(_STOP)
            thread.join(timeout)
            if thread.is_alive():
                logger.warning("Refresh worker did not stop within timeout")
            self._thread = None

    def _run(self) -> None:
        while True:
            user_id = self._queue.get()
            try:
                if user_id is _STOP:
                    return
                self._refresh(user_id)
            finally:
                self._queue.task_done()

    def _refresh(self, user_id: str) -> None:
        try:
            self.profile_cache.refresh(user_id)
            self.refreshed += 1
            logger.debug(f"Refreshed taste map for {user_id}")
        except Exception as e:
            self.failed += 1
            logger.error(f"Taste map refresh failed for {user_id}: {e}")

    def __enter__(self) -> "ProfileRefreshWorker":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.join()
        self.stop()
