"""Pick and build the FestpassStore named by configuration.

``FESTPASS_DB_BACKEND`` selects the backend (``sqlite`` unless set).
SQLite reads its file from ``FESTPASS_DB_PATH``; Postgres needs a DSN
from ``FESTPASS_PG_DSN``.  Backend modules are imported lazily so that
a SQLite deployment never loads psycopg.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Callable

from festpass.ports import FestpassStore

DEFAULT_DB_PATH = str(Path(".festpass") / "state.db")


def _sqlite(db_path: str | Path | None, dsn: str | None, **_: Any) -> FestpassStore:
    from festpass.adapters.sqlite_store import SqliteStore

    return SqliteStore(db_path or os.environ.get("FESTPASS_DB_PATH", DEFAULT_DB_PATH))


def _postgres(db_path: str | Path | None, dsn: str | None, **pool: Any) -> FestpassStore:
    from festpass.adapters.postgres_store import PostgresStore

    dsn = dsn or os.environ.get("FESTPASS_PG_DSN")
    if not dsn:
        raise ValueError("The postgres backend needs a DSN: set FESTPASS_PG_DSN or pass dsn=")
    return PostgresStore(dsn, **pool)


_BUILDERS: dict[str, Callable[..., FestpassStore]] = {
    "sqlite": _sqlite,
    "postgres": _postgres,
}


def create_store(
    *,
    backend: str | None = None,
    db_path: str | Path | None = None,
    dsn: str | None = None,
    **kwargs: Any,
) -> FestpassStore:
    """Build the configured store.

    Explicit arguments win over the environment.  Extra keyword
    arguments (``min_size``, ``max_size``) size the Postgres pool and
    are ignored by SQLite.
    """
    name = (backend or os.environ.get("FESTPASS_DB_BACKEND") or "sqlite").lower()
    try:
        build = _BUILDERS[name]
    except KeyError:
        known = ", ".join(sorted(_BUILDERS))
        raise ValueError(f"Unknown backend {name!r}; choose one of: {known}") from None
    return build(db_path, dsn, **kwargs)
