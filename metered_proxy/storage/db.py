"""
Database connection management.

Provides SQLite connections and a small pool shared by concurrent requests.
"""

import queue
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List

# Seconds a writer waits on a locked database before giving up
BUSY_TIMEOUT = 30.0


def get_connection(db_path: str = "metered-proxy.db") -> sqlite3.Connection:
    """Create and return a SQLite database connection with foreign keys enabled.

    The connection may be handed between worker threads, so thread affinity
    checks are disabled; the pool guarantees a single user at a time.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=BUSY_TIMEOUT, check_same_thread=False)
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA journal_mode = WAL")
    return conn


class ConnectionPool:
    """Fixed-size pool of SQLite connections.

    Connections are opened lazily up to ``size``; callers beyond that wait
    up to ``acquire_timeout`` seconds for one to be returned.
    """

    def __init__(self, db_path: str, size: int = 4, acquire_timeout: float = BUSY_TIMEOUT):
        if size < 1:
            raise ValueError("pool size must be >= 1")
        self.db_path = db_path
        self.size = size
        self.acquire_timeout = acquire_timeout
        self._idle: "queue.LifoQueue[sqlite3.Connection]" = queue.LifoQueue()
        self._all: List[sqlite3.Connection] = []
        self._lock = threading.Lock()
        self._closed = False

    def _acquire(self) -> sqlite3.Connection:
        with self._lock:
            if self._closed:
                raise sqlite3.ProgrammingError("connection pool is closed")
            try:
                return self._idle.get_nowait()
            except queue.Empty:
                if len(self._all) < self.size:
                    conn = get_connection(self.db_path)
                    self._all.append(conn)
                    return conn
        try:
            conn = self._idle.get(timeout=self.acquire_timeout)
        except queue.Empty:
            raise sqlite3.OperationalError(
                f"no pooled connection became free within {self.acquire_timeout}s"
            ) from None
        if self._closed:
            raise sqlite3.ProgrammingError("connection pool is closed")
        return conn

    def _release(self, conn: sqlite3.Connection) -> None:
        if self._closed:
            # close() already closed every connection
            return
        if conn.in_transaction:
            conn.rollback()
        self._idle.put(conn)

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """Borrow a connection for the duration of the ``with`` block."""
        conn = self._acquire()
        try:
            yield conn
        finally:
            self._release(conn)

    def close(self) -> None:
        """Close every connection opened by the pool."""
        with self._lock:
            self._closed = True
            conns, self._all = self._all, []
        for conn in conns:
            conn.close()
