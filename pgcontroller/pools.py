"""
Connection pools per engine identity and database.

One registry object is created by the controller and handed to every engine.
Pools are keyed first by the engine identity ("namespace/name" of the
PostgresEngineConfiguration) and then by database name, and are created lazily
with the credentials presented by the caller.
"""

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, Tuple

import psycopg2
from psycopg2 import pool
from psycopg2.extensions import make_dsn

from .config import Config, YELLOW, RESET
from .errors import EngineError

logger = logging.getLogger("postgres-controller.pools")


@dataclass(frozen=True)
class ConnectionParams:
    """Everything needed to open a connection to one engine"""
    key: str
    host: str
    port: int
    user: str
    password: str
    uri_args: str = ""
    default_database: str = "postgres"

    def dsn(self, database: str) -> str:
        extra = {}
        for part in filter(None, self.uri_args.split("&")):
            name, _, value = part.partition("=")
            extra[name] = value
        return make_dsn(host=self.host, port=self.port, user=self.user, password=self.password,
                        dbname=database, connect_timeout=Config.DB_CONNECT_TIMEOUT, **extra)

    @property
    def credentials(self) -> Tuple[str, str, str, int, str]:
        return (self.user, self.password, self.host, self.port, self.uri_args)


class EngineConnectionRegistry:
    """Thread-safe cache of psycopg2 pools"""

    def __init__(self, min_conn: int = None, max_conn: int = None):
        self.min_conn = Config.DB_POOL_MIN_CONN if min_conn is None else min_conn
        self.max_conn = Config.DB_POOL_MAX_CONN if max_conn is None else max_conn
        self._lock = threading.Lock()
        self._pools: Dict[str, Dict[str, pool.ThreadedConnectionPool]] = {}
        self._credentials: Dict[str, tuple] = {}

    def _pool_for(self, params: ConnectionParams, database: str) -> pool.ThreadedConnectionPool:
        with self._lock:
            if self._credentials.get(params.key) not in (None, params.credentials):
                logger.info(f"{YELLOW}Credentials changed for {params.key}, closing its pools{RESET}")
                self._close_key(params.key)
            self._credentials[params.key] = params.credentials

            pools = self._pools.setdefault(params.key, {})
            if database not in pools:
                try:
                    pools[database] = pool.ThreadedConnectionPool(
                        self.min_conn, self.max_conn, params.dsn(database)
                    )
                except psycopg2.Error as e:
                    raise EngineError(f"cannot connect to {params.host}:{params.port}/{database}: {e}") from e
                logger.info(f"Opened pool for {params.key} database {database}")
            return pools[database]

    @contextmanager
    def acquire(self, params: ConnectionParams, database: str = None):
        """
        Lend an autocommit connection from the pool of (identity, database)

        Args:
            params: Connection parameters of the engine identity
            database: Database to connect to, the identity default if omitted
        """
        database = database or params.default_database
        connection_pool = self._pool_for(params, database)
        try:
            conn = connection_pool.getconn()
        except psycopg2.Error as e:
            raise EngineError(f"cannot connect to {params.host}:{params.port}/{database}: {e}") from e

        broken = False
        try:
            conn.autocommit = True
            yield conn
        except psycopg2.InterfaceError:
            broken = True
            raise
        finally:
            try:
                connection_pool.putconn(conn, close=broken or bool(conn.closed))
            except pool.PoolError:
                # Pool was closed while the connection was lent out
                conn.close()

    def _close_key(self, key: str):
        for database, connection_pool in self._pools.pop(key, {}).items():
            connection_pool.closeall()
            logger.info(f"Closed pool for {key} database {database}")
        self._credentials.pop(key, None)

    def close_all(self, key: str):
        """Close and forget every pool under an identity key. Safe when nothing is cached."""
        with self._lock:
            self._close_key(key)

    def close_database(self, key: str, database: str):
        """Close and forget the pool of one database under an identity key"""
        with self._lock:
            connection_pool = self._pools.get(key, {}).pop(database, None)
            if connection_pool is not None:
                connection_pool.closeall()
                logger.info(f"Closed pool for {key} database {database}")

    def close_everything(self):
        with self._lock:
            for key in list(self._pools):
                self._close_key(key)

    def cached(self, key: str) -> Dict[str, pool.ThreadedConnectionPool]:
        with self._lock:
            return dict(self._pools.get(key, {}))
