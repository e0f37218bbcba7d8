"""SQLite connection pool shared by the request handlers."""
import logging
import sqlite3
import threading
from contextlib import contextmanager
from queue import Empty, Queue
from typing import Generator

from errors import ServiceError

logger = logging.getLogger(__name__)

class PoolClosedError(RuntimeError):
    pass

class PoolExhaustedError(ServiceError):
    status_code = 503

class SQLiteConnectionPool:
    """Thread-safe SQLite connection pool.

    Connections run in autocommit mode; callers that need atomic
    multi-statement work issue ``BEGIN IMMEDIATE`` themselves.
    """

    def __init__(
        self,
        database: str,
        max_connections: int = 5,
        busy_timeout: float = 10.0,
        acquire_timeout: float = 30.0,
    ):
        if max_connections <= 0:
            raise ValueError("max_connections must be positive")
        self.database = database
        self.max_connections = max_connections
        self.busy_timeout = busy_timeout
        self.acquire_timeout = acquire_timeout
        self._pool: Queue[sqlite3.Connection] = Queue(maxsize=max_connections)
        self._lock = threading.Lock()
        self._created_connections = 0
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _create_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.database,
            timeout=self.busy_timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a connection from the pool or create a new one if needed."""
        if self._closed:
            raise PoolClosedError("connection pool is closed")
        connection = None
        try:
            connection = self._pool.get(block=False)
        except Empty:
            with self._lock:
                if self._created_connections < self.max_connections:
                    connection = self._create_connection()
                    self._created_connections += 1
                    logger.debug("Created new connection (total: %s)", self._created_connections)
            if connection is None:
                # Limit reached, wait for a connection to come back.
                try:
                    connection = self._pool.get(block=True, timeout=self.acquire_timeout)
                except Empty:
                    logger.warning("No database connection freed up within %ss", self.acquire_timeout)
                    raise PoolExhaustedError("Database is busy, please retry") from None

        try:
            yield connection
        finally:
            self._release(connection)

    def _release(self, connection: sqlite3.Connection) -> None:
        try:
            if connection.in_transaction:
                connection.rollback()
            if self._closed:
                raise PoolClosedError("pool closed while connection was checked out")
            self._pool.put(connection, block=False)
        except Exception as e:
            logger.debug("Discarding pooled connection: %s", e)
            try:
                connection.close()
            except sqlite3.Error:
                logger.warning("Failed to close discarded connection", exc_info=True)
            with self._lock:
                self._created_connections -= 1

    def close(self) -> None:
        """Close every idle connection and refuse further checkouts."""
        self._closed = True
        while True:
            try:
                connection = self._pool.get(block=False)
            except Empty:
                break
            try:
                connection.close()
            except sqlite3.Error:
                logger.warning("Failed to close pooled connection", exc_info=True)
            with self._lock:
                self._created_connections -= 1
