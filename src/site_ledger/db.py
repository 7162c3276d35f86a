from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from .errors import StorageError

logger = logging.getLogger(__name__)


def connect_sqlite(path: str | Path = ":memory:", timeout: float = 5.0, check_same_thread: bool = True) -> sqlite3.Connection:
    conn = sqlite3.connect(path, timeout=timeout, check_same_thread=check_same_thread)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def apply_sqlite_migration(conn: sqlite3.Connection, migration_path: str | Path) -> None:
    sql = Path(migration_path).read_text(encoding="utf-8")
    conn.executescript(sql)


@contextmanager
def write_transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Hold the database write lock from the first read to the commit.

    ``BEGIN IMMEDIATE`` takes the reserved lock up front, so a check such as
    ``qty <= available`` and the write that depends on it cannot interleave
    with another writer.
    """
    if conn.in_transaction:
        raise RuntimeError("write_transaction cannot be nested inside an open transaction")
    try:
        conn.execute("BEGIN IMMEDIATE")
    except sqlite3.OperationalError as exc:
        logger.error("Could not acquire the write lock: %s", exc)
        raise StorageError(str(exc)) from exc
    try:
        yield conn
        conn.commit()
    except sqlite3.OperationalError as exc:
        conn.rollback()
        logger.error("Write transaction failed: %s", exc)
        raise StorageError(str(exc)) from exc
    except BaseException:
        conn.rollback()
        raise
