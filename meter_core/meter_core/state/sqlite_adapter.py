"""aiosqlite engines for single-node deployments, the CLI and tests.

The ORM tables are shared with PostgreSQL.  Two things behave differently
on SQLite: :class:`~meter_core.state.locks.NamedLock` uses the
``job_locks`` table instead of advisory locks, and JSONB columns are stored
as TEXT.
"""

from __future__ import annotations

import logging
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

MEMORY = ":memory:"

# Applied to every new DBAPI connection.  busy_timeout lets concurrent
# writers (the ledger and the reconcilers) queue instead of failing fast.
_BASE_PRAGMAS: tuple[str, ...] = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA busy_timeout=5000",
)


def sqlite_path_from_url(database_url: str) -> str:
    """Return the file path of a ``sqlite+aiosqlite:///...`` URL, or ``:memory:``."""
    _, sep, path = database_url.partition("///")
    return path if sep and path else MEMORY


def get_local_engine(
    db_path: Path | str = ".keymeter/state.db",
    *,
    foreign_keys: bool = True,
) -> AsyncEngine:
    """Create an aiosqlite engine for *db_path*.

    Parameters
    ----------
    db_path:
        Database file; missing parent directories are created.  ``:memory:``
        gives a private in-memory database on one shared connection.
    foreign_keys:
        Whether ``ON DELETE CASCADE`` and friends are enforced.

    Returns
    -------
    AsyncEngine
    """
    if str(db_path) == MEMORY:
        engine = create_async_engine(
            f"sqlite+aiosqlite:///{MEMORY}",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        path = Path(db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        engine = create_async_engine(f"sqlite+aiosqlite:///{path}", connect_args={"check_same_thread": False})

    pragmas = (*_BASE_PRAGMAS, f"PRAGMA foreign_keys={'ON' if foreign_keys else 'OFF'}")

    @event.listens_for(engine.sync_engine, "connect")
    def _apply_pragmas(dbapi_conn: object, _record: object) -> None:
        cursor = dbapi_conn.cursor()  # type: ignore[attr-defined]
        for pragma in pragmas:
            cursor.execute(pragma)
        cursor.close()

    logger.info("SQLite engine ready: %s (foreign_keys=%s)", db_path, foreign_keys)
    return engine
