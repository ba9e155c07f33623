"""
Pooled PostgreSQL access for the accounts tables.

One ThreadedConnectionPool per DSN, shared by every PostgresClient built for
that DSN. Each call borrows a connection, runs a single statement in its own
transaction and hands the connection back: committed on success, rolled back
on any error. Rows come back as plain dicts.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, List, Tuple
from uuid import UUID

import psycopg2
import psycopg2.extras
import psycopg2.pool

logger = logging.getLogger(__name__)

Params = Tuple | Dict | None

_jsonb_registered = False


def _adapt(value: Any) -> Any:
    """UUIDs become strings, recursing through containers."""
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, dict):
        return {k: _adapt(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return type(value)(_adapt(v) for v in value)
    return value


class PostgresClient:
    """
    Dict-row PostgreSQL client.

    Usage:
        db = PostgresClient(database_url)
        account = db.execute_single("SELECT * FROM accounts WHERE id = %s", (account_id,))
        updated = db.execute_returning("UPDATE accounts SET ... RETURNING *", params)
    """

    _connection_pools: Dict[str, psycopg2.pool.ThreadedConnectionPool] = {}
    _pools_lock = threading.RLock()

    def __init__(self, database_url: str, min_connections: int = 2, max_connections: int = 20):
        self._database_url = database_url
        self._min_connections = min_connections
        self._max_connections = max_connections
        self._pool()

    def _pool(self) -> psycopg2.pool.ThreadedConnectionPool:
        with self._pools_lock:
            pool = self._connection_pools.get(self._database_url)
            if pool is None:
                pool = psycopg2.pool.ThreadedConnectionPool(
                    minconn=self._min_connections,
                    maxconn=self._max_connections,
                    dsn=self._database_url,
                    connect_timeout=30,
                )
                global _jsonb_registered
                if not _jsonb_registered:
                    psycopg2.extras.register_default_jsonb(globally=True)
                    _jsonb_registered = True
                self._connection_pools[self._database_url] = pool
                logger.info(f"Connection pool created ({self._min_connections}-{self._max_connections})")
            return pool

    @contextmanager
    def get_connection(self):
        """Borrow a connection; a failed transaction is rolled back before it goes back."""
        pool = self._pool()
        conn = pool.getconn()
        if conn is None:
            raise RuntimeError("Could not get connection from pool")
        try:
            yield conn
        except Exception:
            conn.rollback()
            raise
        finally:
            pool.putconn(conn)

    def _run(self, query: str, params: Params, always_fetch: bool) -> List[Dict[str, Any]]:
        with self.get_connection() as conn:
            with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                cur.execute(query, _adapt(params))
                if always_fetch or cur.description:
                    rows = [dict(row) for row in cur.fetchall()]
                else:
                    rows = []
            conn.commit()
        return rows

    def execute(self, query: str, params: Params = None) -> List[Dict[str, Any]]:
        """Run a statement; rows if it produced any, else []."""
        return self._run(query, params, always_fetch=False)

    def execute_single(self, query: str, params: Params = None) -> Dict[str, Any] | None:
        rows = self.execute(query, params)
        return rows[0] if rows else None

    def execute_returning(self, query: str, params: Params = None) -> List[Dict[str, Any]]:
        """INSERT/UPDATE/DELETE ... RETURNING. An empty list means the guard matched nothing."""
        return self._run(query, params, always_fetch=True)

    def close(self) -> None:
        with self._pools_lock:
            pool = self._connection_pools.pop(self._database_url, None)
            if pool is not None:
                pool.closeall()

    @classmethod
    def close_all_pools(cls) -> None:
        with cls._pools_lock:
            for pool in cls._connection_pools.values():
                pool.closeall()
            cls._connection_pools.clear()
