"""PostgreSQL implementation of FestpassStore (psycopg 3 + connection pool)."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

import psycopg
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from festpass.adapters.base_store import SCHEMA, BaseFestpassStore


class PostgresStore(BaseFestpassStore):
    """FestpassStore backed by PostgreSQL via a shared connection pool."""

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 2,
        max_size: int = 10,
        run_schema: bool = True,
    ) -> None:
        self._dsn = dsn
        self._pool = ConnectionPool(
            dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row},
            open=True,
        )
        if run_schema:
            self._apply_schema()

    def _apply_schema(self) -> None:
        """Create tables and indexes if they don't exist."""
        with self._pool.connection() as conn:
            conn.execute(SCHEMA)

    @property
    def dsn(self) -> str:
        return self._dsn

    def close(self) -> None:
        self._pool.close()

    @contextmanager
    def _connection(self) -> Iterator[psycopg.Connection]:
        # The pool commits on clean exit and rolls back on error.
        with self._pool.connection() as conn:
            yield conn

    @property
    def _ph(self) -> str:
        return "%s"

    @property
    def _integrity_error(self) -> type[Exception]:
        return psycopg.IntegrityError
