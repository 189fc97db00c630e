"""SQLite implementation of FestpassStore.

One connection per call, WAL journal, and a busy timeout so concurrent
worker threads queue on the write lock instead of failing.
"""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from festpass.adapters.base_store import SCHEMA, BaseFestpassStore

_BUSY_TIMEOUT_SECONDS = 30.0


class SqliteStore(BaseFestpassStore):
    """FestpassStore backed by a single SQLite file."""

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self._db_path), timeout=_BUSY_TIMEOUT_SECONDS)
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(SCHEMA)
        finally:
            conn.close()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def close(self) -> None:
        pass  # connections are per-call; nothing to tear down

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(str(self._db_path), timeout=_BUSY_TIMEOUT_SECONDS)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    @property
    def _ph(self) -> str:
        return "?"

    @property
    def _integrity_error(self) -> type[Exception]:
        return sqlite3.IntegrityError
