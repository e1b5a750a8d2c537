from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

import psycopg
from psycopg import IsolationLevel
from psycopg.conninfo import conninfo_to_dict, make_conninfo
from psycopg_pool import ConnectionPool

logger = logging.getLogger(__name__)


class PostgresClient:
    """Lightweight wrapper around a psycopg connection pool."""

    def __init__(
        self,
        dsn: str,
        *,
        min_connections: int = 1,
        max_connections: int = 10,
        kwargs: Optional[dict[str, object]] = None,
    ) -> None:
        if not dsn:
            raise ValueError("PostgresClient requires a PostgreSQL DSN")

        pool_kwargs = {"autocommit": True}
        if kwargs:
            pool_kwargs.update(kwargs)

        self._dsn = dsn
        self._pool = ConnectionPool(
            conninfo=self._dsn,
            min_size=max(1, min_connections),
            max_size=max(1, max_connections),
            kwargs=pool_kwargs,
            open=True,
        )

    @property
    def dsn(self) -> str:
        return self._dsn

    @property
    def safe_dsn(self) -> str:
        try:
            params = conninfo_to_dict(self._dsn)
        except psycopg.ProgrammingError:
            return "<unparseable dsn>"

        if params.get("password") is not None:
            params["password"] = "***"
        return make_conninfo(**params)

    @contextmanager
    def connection(self) -> Iterator[psycopg.Connection]:
        with self._pool.connection() as conn:
            yield conn

    @contextmanager
    def cursor(self) -> Iterator[psycopg.Cursor]:
        with self.connection() as conn:
            with conn.cursor() as cur:
                yield cur

    @contextmanager
    def transaction(self, *, serializable: bool = False) -> Iterator[psycopg.Cursor]:
        """Yield a cursor whose statements commit or roll back together."""

        with self.connection() as conn:
            previous = conn.isolation_level
            if serializable:
                conn.isolation_level = IsolationLevel.SERIALIZABLE
            try:
                with conn.transaction():
                    with conn.cursor() as cur:
                        yield cur
            finally:
                if serializable and not conn.closed:
                    conn.isolation_level = previous

    def close(self) -> None:
        try:
            self._pool.close()
        except psycopg.Error as exc:
            logger.debug("database.close_failed dsn=%s error=%s", self.safe_dsn, exc)


__all__ = ["PostgresClient"]
