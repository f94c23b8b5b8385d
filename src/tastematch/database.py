import sqlite3
import json
import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from .config import DB_PATH

logger = logging.getLogger(__name__)


def parse_timestamp_naive(timestamp_str: str) -> datetime:
    """
    Parse ISO format timestamp string to naive datetime.

    Ensures consistency by always returning naive datetime regardless of
    whether the stored timestamp had timezone info.
    """
    dt = datetime.fromisoformat(timestamp_str)
    return dt.replace(tzinfo=None) if dt.tzinfo else dt


def now_iso() -> str:
    """Current time as a naive ISO timestamp, the format every table stores."""
    return datetime.now().isoformat()


@dataclass
class _ThreadConnection:
    conn: sqlite3.Connection
    checked_at: float
    depth: int = 0


class ConnectionPool:
    """
    One SQLite connection per thread.

    Batch scoring and the refresh worker run on their own threads, so each
    gets a private connection. Connections of threads that have exited are
    closed lazily, and an idle connection is re-checked with SELECT 1 before
    reuse. `depth` tracks get_db nesting so only the outermost block commits.
    """

    def __init__(self, db_path, max_size: int = 50, health_check_interval: int = 300, cleanup_interval: int = 60):
        self._db_path = db_path
        self._max_size = max_size
        self._health_check_interval = health_check_interval
        self._cleanup_interval = cleanup_interval
        self._lock = threading.Lock()
        self._threads: dict[int, _ThreadConnection] = {}
        self._last_cleanup = time.time()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        for pragma in ("busy_timeout = 5000", "journal_mode = WAL", "synchronous = NORMAL", "foreign_keys = ON"):
            conn.execute(f"PRAGMA {pragma}")
        return conn

    @staticmethod
    def _close_quietly(thread_id: int, conn: sqlite3.Connection) -> None:
        try:
            conn.close()
        except sqlite3.Error as e:
            logger.warning(f"Error closing connection for thread {thread_id}: {e}")

    def _reap_dead_threads(self, force: bool = False) -> None:
        now = time.time()
        if not force and now - self._last_cleanup < self._cleanup_interval:
            return
        self._last_cleanup = now

        alive = {t.ident for t in threading.enumerate()}
        dead = [tid for tid in self._threads if tid not in alive]
        for tid in dead:
            self._close_quietly(tid, self._threads.pop(tid).conn)
        if dead:
            logger.debug(f"Closed {len(dead)} connections of finished threads, {len(self._threads)} open")

    def _state(self) -> _ThreadConnection:
        thread_id = threading.get_ident()
        now = time.time()

        with self._lock:
            self._reap_dead_threads()
            state = self._threads.get(thread_id)

            if state is not None and now - state.checked_at > self._health_check_interval:
                try:
                    state.conn.execute("SELECT 1").fetchone()
                    state.checked_at = now
                except sqlite3.Error as e:
                    logger.warning(f"Replacing unhealthy connection for thread {thread_id}: {e}")
                    self._close_quietly(thread_id, state.conn)
                    state = None

            if state is None:
                if len(self._threads) >= self._max_size:
                    self._reap_dead_threads(force=True)
                if len(self._threads) >= self._max_size:
                    raise RuntimeError(f"Connection pool exhausted ({self._max_size} threads hold connections)")
                state = _ThreadConnection(conn=self._connect(), checked_at=now)
                self._threads[thread_id] = state

            return state

    def get_connection(self) -> sqlite3.Connection:
        return self._state().conn

    def get_transaction_depth(self) -> int:
        state = self._threads.get(threading.get_ident())
        return state.depth if state else 0

    def increment_transaction_depth(self):
        self._state().depth += 1

    def decrement_transaction_depth(self):
        state = self._threads.get(threading.get_ident())
        if state:
            state.depth = max(0, state.depth - 1)

    def close_all(self):
        """Close every connection (application shutdown, test teardown)."""
        with self._lock:
            for thread_id, state in self._threads.items():
                self._close_quietly(thread_id, state.conn)
            self._threads.clear()
        logger.debug("Connection pool closed")


_pool: ConnectionPool | None = None
_pool_lock = threading.Lock()


def init_db() -> None:
    DB_PATH.parent.mkdir(exist_ok=True, parents=True)
    with get_db() as conn:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS watch_items (
                user_id TEXT NOT NULL,
                content_id TEXT NOT NULL,
                media_type TEXT NOT NULL DEFAULT 'movie',
                user_rating REAL,
                fallback_rating REAL,   -- community average, used when user_rating is NULL
                status TEXT NOT NULL,
                watch_count INTEGER DEFAULT 1,
                added_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (user_id, content_id, media_type)
            );

            CREATE TABLE IF NOT EXISTS content_metadata (
                content_id TEXT NOT NULL,
                media_type TEXT NOT NULL,
                genres TEXT,        -- JSON list of names
                cast_members TEXT,  -- JSON list of {id, name}
                crew_members TEXT,  -- JSON list of {id, name, job}
                fetched_at TEXT,
                PRIMARY KEY (content_id, media_type)
            );

            -- Pairwise scores, one row per unordered pair (user_a < user_b)
            CREATE TABLE IF NOT EXISTS similarity_scores (
                user_a TEXT NOT NULL,
                user_b TEXT NOT NULL,
                overall_match TEXT NOT NULL,       -- fixed-point decimal strings
                taste_similarity TEXT NOT NULL,
                rating_correlation TEXT NOT NULL,
                person_overlap TEXT NOT NULL,
                genre_rating_similarity TEXT,
                rating_patterns TEXT,   -- JSON blob
                snapshot_a TEXT NOT NULL,   -- JSON TasteMapSnapshot
                snapshot_b TEXT NOT NULL,
                computed_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                computed_by TEXT NOT NULL DEFAULT 'on-demand',
                UNIQUE (user_a, user_b),
                CHECK (user_a < user_b)
            );

            CREATE INDEX IF NOT EXISTS idx_watch_user_status ON watch_items(user_id, status);
            CREATE INDEX IF NOT EXISTS idx_watch_content ON watch_items(content_id, media_type);
            CREATE INDEX IF NOT EXISTS idx_watch_added ON watch_items(added_at);

            CREATE INDEX IF NOT EXISTS idx_sim_user_a ON similarity_scores(user_a);
            CREATE INDEX IF NOT EXISTS idx_sim_user_b ON similarity_scores(user_b);
            CREATE INDEX IF NOT EXISTS idx_sim_computed_at ON similarity_scores(computed_at);
        """)


def _get_pool() -> ConnectionPool:
    global _pool
    if _pool is None:
        with _pool_lock:
            if _pool is None:
                DB_PATH.parent.mkdir(exist_ok=True, parents=True)
                _pool = ConnectionPool(DB_PATH)
    return _pool


@contextmanager
def get_db(read_only: bool = False):
    """
    Get database connection with proper transaction handling.

    Args:
        read_only: If True, skip commit on exit (optimization for read operations)

    Handles nested calls correctly:
    - Only the outermost context commits/rollbacks
    - Inner contexts are no-ops for transaction control
    """
    pool = _get_pool()
    conn = pool.get_connection()

    is_outermost = pool.get_transaction_depth() == 0
    pool.increment_transaction_depth()

    try:
        yield conn

        if is_outermost and not read_only:
            conn.commit()

    except Exception:
        if is_outermost:
            conn.rollback()
        raise

    finally:
        pool.decrement_transaction_depth()


def close_pool():
    """Close the connection pool. Call on application shutdown."""
    global _pool
    if _pool is not None:
        _pool.close_all()
        _pool = None


def load_json(val, default=None):
    """Safely load JSON from db field."""
    if default is None:
        default = []
    if not val:
        return default
    if isinstance(val, (list, dict)):
        return val
    try:
        return json.loads(val)
    except (json.JSONDecodeError, TypeError) as e:
        logger.warning(f"Failed to parse JSON '{str(val)[:50]}...': {e}")
        return default


def dump_json(val) -> str:
    return json.dumps(val, ensure_ascii=False, separators=(",", ":"), sort_keys=True)


def run_maintenance(vacuum: bool = True, analyze: bool = True) -> None:
    """
    Run optional VACUUM/ANALYZE after bulk imports or pruning.
    Uses a dedicated connection to avoid interfering with pooled transactions.
    """
    if not vacuum and not analyze:
        return

    conn = sqlite3.connect(DB_PATH)
    try:
        if vacuum:
            conn.execute("VACUUM")
        if analyze:
            conn.execute("ANALYZE")
        conn.commit()
    finally:
        conn.close()
