"""Bounded connection pool for the SQLite queue store.

Each queue operation checks out a connection, runs its transaction and
returns it. Pooling is SQLAlchemy's ``QueuePool`` over raw sqlite3
connections: at most ``max_size`` exist at once and up to ``min_size``
idle ones are kept between operations. Each checkout is handed out as a
sqlite-utils ``Database``.
"""

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator

from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.pool import QueuePool
from sqlite_utils import Database

from ..errors import TransientQueueError

logger = logging.getLogger(__name__)


def sqlite_path_from_url(url: str) -> str:
    """Map ``sqlite:///relative.db`` / ``sqlite:////abs.db`` / bare paths to a file path."""
    prefix = "sqlite:///"
    if url.startswith(prefix):
        return url[len(prefix):]
    if "://" in url:
        raise ValueError(f"unsupported queue url scheme: {url}")
    return url


def connect_queue_database(db_path: str) -> sqlite3.Connection:
    """Open a connection usable from any worker thread (never shared concurrently)."""
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(
        str(path),
        timeout=5.0,
        check_same_thread=False,
        isolation_level=None,  # explicit BEGIN/COMMIT
    )
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA synchronous=NORMAL")
    return conn


class ConnectionPool:
    """Thread-safe pool handing out sqlite-utils ``Database`` handles.

    Args:
        creator: Opens a new sqlite3 connection
        min_size: Idle connections retained after release (low watermark)
        max_size: Hard bound on open connections (high watermark)
        acquire_timeout_s: Wait for a free slot before TransientQueueError
    """

    def __init__(
        self,
        creator: Callable[[], sqlite3.Connection],
        min_size: int = 1,
        max_size: int = 4,
        acquire_timeout_s: float = 10.0,
    ):
        if max_size < 1 or min_size < 0 or min_size > max_size:
            raise ValueError(f"invalid pool bounds min={min_size} max={max_size}")

        self.min_size = min_size
        self.max_size = max_size
        self.acquire_timeout_s = acquire_timeout_s
        self._pool = QueuePool(
            creator,
            pool_size=min_size,
            max_overflow=max_size - min_size,
            timeout=acquire_timeout_s,
        )
        self._closed = False

    @property
    def open_connections(self) -> int:
        return self._pool.checkedin() + self._pool.checkedout()

    @contextmanager
    def connection(self) -> Iterator[Database]:
        """Check out a connection for the duration of one operation."""
        if self._closed:
            raise TransientQueueError("queue connection pool is closed")

        try:
            fairy = self._pool.connect()
        except PoolTimeoutError as e:
            raise TransientQueueError(
                f"no queue connection available within {self.acquire_timeout_s}s "
                f"(pool_max={self.max_size})"
            ) from e
        except sqlite3.Error as e:
            raise TransientQueueError(f"cannot open queue store: {e}") from e

        try:
            yield Database(fairy.dbapi_connection)
        finally:
            if self._closed:
                fairy.invalidate()
            else:
                fairy.close()

    def close(self) -> None:
        """Close idle connections; in-use connections close on release."""
        self._closed = True
        self._pool.dispose()
        logger.info("Queue connection pool closed")
