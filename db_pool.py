"""SQLite connection pool shared by the API apps and scripts."""
import logging
import sqlite3
import threading
from contextlib import contextmanager
from queue import Empty, Queue
from typing import Generator

logger = logging.getLogger(__name__)


class SQLiteConnectionPool:
    """Thread-safe SQLite connection pool.

    FastAPI runs sync handlers on a worker threadpool, so connections are opened
    with ``check_same_thread=False`` and handed out to one thread at a time.
    """

    def __init__(self, database: str, max_connections: int = 5, busy_timeout_ms: int = 5000):
        self.database = database
        self.max_connections = max_connections
        self.busy_timeout_ms = busy_timeout_ms
        self._pool: Queue[sqlite3.Connection] = Queue(maxsize=max_connections)
        self._lock = threading.Lock()
        self._created_connections = 0

    def _create_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.database, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute(f"PRAGMA busy_timeout = {int(self.busy_timeout_ms)}")
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
                    logger.debug("Opened SQLite connection %s/%s for %s",
                                 self._created_connections, self.max_connections, self.database)
            if connection is None:
                connection = self._pool.get(block=True)

        try:
            yield connection
        finally:
            try:
                connection.rollback()
                self._pool.put(connection)
            except sqlite3.Error as e:
                logger.error("Error returning connection to pool: %s", e)
                connection.close()
                with self._lock:
                    self._created_connections -= 1

    def close_all(self) -> None:
        """Close every idle connection held by the pool."""
        with self._lock:
            while True:
                try:
                    connection = self._pool.get(block=False)
                except Empty:
                    break
                connection.close()
                self._created_connections -= 1
