"""
Database Utilities - engine setup, timeouts, and read-only row fetches
against the hosted financial database.
"""
import asyncio
import logging
import threading
import time
import urllib.parse
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import sqlalchemy
from sqlalchemy import create_engine, select, text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.pool import QueuePool
from sqlalchemy.sql.elements import ColumnElement

from backend.services.runtime import log_event, run_blocking
from ledger.schema import LOOKUP_COLUMNS, get_table

logger = logging.getLogger("db_utils")

_ENGINE: Optional[Engine] = None
_ENGINE_LOCK = threading.Lock()


class QueryTimeoutError(Exception):
    """Raised when a query exceeds the timeout limit"""
    pass


class QueryExecutionError(Exception):
    """Raised when query execution fails"""
    pass


@dataclass
class DatabaseConfig:
    """Database connection configuration"""
    url: str
    service_key: str

    # Timeout settings (in seconds)
    connect_timeout: int = 10
    statement_timeout: int = 10

    # Pool settings
    pool_size: int = 5
    max_overflow: int = 5

    @property
    def connection_uri(self) -> str:
        """Postgres URI on the psycopg driver with the service key as password."""
        url = make_url(coerce_to_psycopg_url(self.url.strip()))
        if self.service_key:
            url = url.set(password=self.service_key)
        return url.render_as_string(hide_password=False)


def coerce_to_psycopg_url(url: str) -> str:
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme in ("postgres", "postgresql"):
        return url.replace(parsed.scheme, "postgresql+psycopg", 1)
    if not parsed.scheme.startswith("postgresql+"):
        return "postgresql+psycopg://" + url.split("://", 1)[-1]
    return url


def create_engine_with_timeout(config: DatabaseConfig) -> Engine:
    """
    Create a SQLAlchemy engine with connection and statement timeouts.

    The statement timeout is a Postgres session option, so a query the
    engine stops waiting on is also cancelled server-side.
    """
    engine = create_engine(
        config.connection_uri,
        poolclass=QueuePool,
        pool_size=config.pool_size,
        max_overflow=config.max_overflow,
        pool_timeout=30,
        pool_pre_ping=True,  # Verify connections before use
        pool_recycle=1800,   # Hosted Postgres drops idle connections
        connect_args={
            "connect_timeout": int(config.connect_timeout),
            "options": f"-c statement_timeout={int(config.statement_timeout * 1000)}",
        },
        echo=False,
    )

    # Warm up the connection pool — first query is faster
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        log_event(logger, logging.INFO, "engine_created")
    except Exception as e:
        # Pool warming is best-effort; actual errors surface on real queries
        logger.debug(f"Engine warmup failed: {e}")

    return engine


def get_finance_engine(config: DatabaseConfig) -> Engine:
    """Process-wide engine, created on first use and reused by every request."""
    global _ENGINE
    if _ENGINE is not None:
        return _ENGINE
    with _ENGINE_LOCK:
        if _ENGINE is None:
            _ENGINE = create_engine_with_timeout(config)
        return _ENGINE


def dispose_finance_engine() -> None:
    global _ENGINE
    with _ENGINE_LOCK:
        if _ENGINE is not None:
            _ENGINE.dispose()
            _ENGINE = None


class FinanceDB:
    """Read-only access to the financial tables.

    Every fetch is a single SELECT built with SQLAlchemy Core; callers pass
    predicates built against the table's columns. Lookup names (such as a
    submission's location name) are joined in under their label.
    """

    def __init__(self, engine: Engine):
        self._engine = engine

    def fetch_rows(
        self,
        table_name: str,
        predicates: Sequence[ColumnElement] = (),
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """
        Fetch matching rows as plain dicts.

        Args:
            table_name: name of a known financial table
            predicates: WHERE clauses, AND-ed together
            limit: maximum rows to return (None = all matching rows)

        Raises:
            QueryExecutionError: unknown table or any database error
        """
        table = get_table(table_name)
        if table is None:
            raise QueryExecutionError(f"Unknown table: {table_name}")

        columns: List[Any] = [table]
        source = table
        for label, foreign_key, lookup_key, lookup_value in LOOKUP_COLUMNS.get(table.name, ()):
            source = source.outerjoin(lookup_key.table, foreign_key == lookup_key)
            columns.append(lookup_value.label(label))

        stmt = select(*columns).select_from(source)
        if predicates:
            stmt = stmt.where(*predicates)
        if limit is not None:
            stmt = stmt.limit(int(limit))

        started = time.perf_counter()
        try:
            with self._engine.connect() as conn:
                rows = [dict(r) for r in conn.execute(stmt).mappings().all()]
        except sqlalchemy.exc.SQLAlchemyError as e:
            log_event(
                logger,
                logging.WARNING,
                "db_fetch_failed",
                table=table.name,
                error=str(e).split("\n")[0][:180],
            )
            raise QueryExecutionError(f"Database error on {table.name}") from e

        log_event(
            logger,
            logging.DEBUG,
            "db_fetch_ok",
            table=table.name,
            predicates=len(predicates),
            rows=len(rows),
            elapsed_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        return rows

    async def fetch_rows_async(
        self,
        table_name: str,
        predicates: Sequence[ColumnElement] = (),
        limit: Optional[int] = None,
        *,
        timeout_s: float = 10.0,
    ) -> List[Dict[str, Any]]:
        """Run :meth:`fetch_rows` on the shared pool under a timeout."""
        try:
            return await run_blocking(lambda: self.fetch_rows(table_name, predicates, limit), timeout_s)
        except asyncio.TimeoutError as exc:
            raise QueryTimeoutError(f"Query on {table_name} exceeded {timeout_s} second timeout") from exc
