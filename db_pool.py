"""SQLite connection pool shared by the profile and metric-history stores."""
import logging
import sqlite3
import threading
from contextlib import contextmanager
from queue import Empty, Queue
from typing import Generator, List, Optional

logger = logging.getLogger(__name__)


class PoolTimeoutError(RuntimeError):
    """Raised when no pooled connection becomes available in time."""


class SQLiteConnectionPool:
    """Thread-safe SQLite connection pool.

    Connections are opened with ``check_same_thread=False`` because profile
    writes run on a worker pool while reads happen on request threads; the
    pool guarantees a connection is only used by one thread at a time.
    """

    def __init__(self, database: str, max_connections: int = 5, acquire_timeout: Optional[float] = 5.0):
        self.database = database
        self.max_connections = max_connections
        self.acquire_timeout = acquire_timeout
        self._pool: Queue[sqlite3.Connection] = Queue(maxsize=max_connections)
        self._lock = threading.Lock()
        self._created_connections = 0
        self._all: List[sqlite3.Connection] = []

    def _create_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.database, check_same_thread=False, timeout=self.acquire_timeout or 5.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Borrow a connection, creating one while under ``max_connections``."""
        connection = None
        try:
            connection = self._pool.get(block=False)
        except Empty:
            with self._lock:
                if self._created_connections < self.max_connections:
                    connection = self._create_connection()
                    self._created_connections += 1
                    self._all.append(connection)
                    logger.debug("Created new connection (total: %s)", self._created_connections)
            if connection is None:
                try:
                    connection = self._pool.get(block=True, timeout=self.acquire_timeout)
                except Empty as exc:
                    raise PoolTimeoutError(
                        f"no SQLite connection available within {self.acquire_timeout}s"
                    ) from exc

        try:
            yield connection
        finally:
            try:
                connection.rollback()
                self._pool.put(connection)
            except sqlite3.Error as e:
                logger.error("Error returning connection to pool: %s", e)
                with self._lock:
                    self._created_connections -= 1
                    if connection in self._all:
                        self._all.remove(connection)
                try:
                    connection.close()
                except sqlite3.Error:
                    logger.debug("Ignoring close failure on broken connection")

    def close_all(self) -> None:
        """Close every connection the pool ever handed out."""
        with self._lock:
            connections = list(self._all)
            self._all.clear()
            self._created_connections = 0
        while True:
            try:
                self._pool.get(block=False)
            except Empty:
                break
        for connection in connections:
            try:
                connection.close()
            except sqlite3.Error:
                logger.debug("Ignoring close failure during pool shutdown")
