"""
Database Connection Pool - Async PostgreSQL access for the coordinator.

This module provides:
- Connection pool creation and management
- JSON/JSONB codecs so JSON columns round-trip as Python objects
- Transactions for row-locked read-modify-write updates
- Automatic retry with reconnect on connection errors
"""

import asyncio
import json
import logging
import random
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional

try:
    import asyncpg
    ASYNCPG_AVAILABLE = True
except ImportError:
    ASYNCPG_AVAILABLE = False
    asyncpg = None

logger = logging.getLogger(__name__)


DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY = 0.5  # seconds
DEFAULT_MAX_DELAY = 30.0  # seconds


@dataclass
class DatabaseConfig:
    """Database connection configuration."""
    host: str = 'localhost'
    port: int = 5432
    database: str = 'analysisflow'
    user: str = 'postgres'
    password: str = ''
    min_connections: int = 2
    max_connections: int = 10
    command_timeout: int = 30
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_base_delay: float = DEFAULT_BASE_DELAY
    retry_max_delay: float = DEFAULT_MAX_DELAY


async def _init_connection(connection) -> None:
    """Register JSON codecs on every new pooled connection."""
    for type_name in ('json', 'jsonb'):
        await connection.set_type_codec(
            type_name,
            encoder=json.dumps,
            decoder=json.loads,
            schema='pg_catalog',
        )


class DatabasePool:
    """
    Async connection pool for the analysis tables.

    All query helpers go through execute_with_retry().
    """

    def __init__(self, config: DatabaseConfig):
        if not ASYNCPG_AVAILABLE:
            raise RuntimeError("asyncpg is not installed. Install with: pip install asyncpg")

        self.config = config
        self._pool: Optional[asyncpg.Pool] = None
        self._connected = False

    async def connect(self) -> None:
        """Create the connection pool."""
        if self._pool is not None:
            return

        try:
            self._pool = await asyncpg.create_pool(
                host=self.config.host,
                port=self.config.port,
                database=self.config.database,
                user=self.config.user,
                password=self.config.password,
                min_size=self.config.min_connections,
                max_size=self.config.max_connections,
                command_timeout=self.config.command_timeout,
                init=_init_connection,
            )
            self._connected = True
            logger.info(f"Database pool created: {self.config.host}:{self.config.port}/{self.config.database}")
        except Exception as e:
            logger.error(f"Failed to create database pool: {e}")
            raise

    async def disconnect(self) -> None:
        """Close the connection pool."""
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
            self._connected = False
            logger.info("Database pool closed")

    @property
    def is_connected(self) -> bool:
        return self._connected and self._pool is not None

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator['asyncpg.Connection']:
        """Acquire a connection from the pool."""
        if not self._pool:
            raise RuntimeError("Database pool not connected")

        async with self._pool.acquire() as connection:
            yield connection

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator['asyncpg.Connection']:
        """
        Run statements in one atomic transaction.

        Usage:
            async with db.transaction() as conn:
                row = await conn.fetchrow("SELECT ... FOR UPDATE", analysis_id)
                await conn.execute("UPDATE ...")
        """
        if not self._pool:
            raise RuntimeError("Database pool not connected")

        async with self._pool.acquire() as connection:
            async with connection.transaction():
                yield connection

    async def reconnect(self) -> None:
        """Drop the pool and reconnect with exponential backoff plus jitter."""
        if self._pool is not None:
            try:
                await self._pool.close()
            except Exception as e:
                logger.warning(f"Error closing pool during reconnect: {e}")
            finally:
                self._pool = None
                self._connected = False

        last_error = None
        for attempt in range(1, self.config.max_retries + 1):
            try:
                await self.connect()
                logger.info(f"Reconnected to database on attempt {attempt}")
                return
            except Exception as e:
                last_error = e
                if attempt < self.config.max_retries:
                    delay = min(
                        self.config.retry_base_delay * (2 ** (attempt - 1)),
                        self.config.retry_max_delay
                    )
                    total_delay = delay + delay * random.uniform(0, 0.25)
                    logger.warning(
                        f"Reconnect attempt {attempt}/{self.config.max_retries} failed: {e}. "
                        f"Retrying in {total_delay:.2f}s"
                    )
                    await asyncio.sleep(total_delay)

        raise RuntimeError(
            f"Failed to reconnect after {self.config.max_retries} attempts: {last_error}"
        )

    async def fetch(self, query: str, *args) -> list:
        return await self.execute_with_retry('fetch', query, *args)

    async def fetchrow(self, query: str, *args) -> Optional['asyncpg.Record']:
        return await self.execute_with_retry('fetchrow', query, *args)

    async def fetchval(self, query: str, *args) -> Any:
        return await self.execute_with_retry('fetchval', query, *args)

    async def execute(self, query: str, *args) -> str:
        return await self.execute_with_retry('execute', query, *args)

    async def execute_with_retry(
        self,
        operation: str,
        query: str,
        *args,
        max_retries: Optional[int] = None
    ) -> Any:
        """
        Run a query, reconnecting and retrying on connection errors.

        Args:
            operation: 'fetch', 'fetchrow', 'fetchval' or 'execute'
            query: SQL query
            *args: Query arguments
            max_retries: Override the configured retry count

        Raises:
            RuntimeError: If every attempt hit a connection error
        """
        retries = max_retries if max_retries is not None else self.config.max_retries
        last_error = None

        for attempt in range(1, retries + 1):
            try:
                async with self.acquire() as conn:
                    if operation == 'fetch':
                        return await conn.fetch(query, *args)
                    elif operation == 'fetchrow':
                        return await conn.fetchrow(query, *args)
                    elif operation == 'fetchval':
                        return await conn.fetchval(query, *args)
                    elif operation == 'execute':
                        return await conn.execute(query, *args)
                    else:
                        raise ValueError(f"Unknown operation: {operation}")

            except (asyncpg.PostgresConnectionError, asyncpg.InterfaceError) as e:
                last_error = e
                logger.warning(
                    f"Database connection error on attempt {attempt}/{retries}: {e}"
                )
                if attempt < retries:
                    try:
                        await self.reconnect()
                    except Exception as reconnect_error:
                        logger.error(f"Reconnection failed: {reconnect_error}")

        raise RuntimeError(
            f"Database operation failed after {retries} attempts: {last_error}"
        )

    async def check_health(self) -> dict:
        """Connectivity status for the health endpoint."""
        if not self.is_connected:
            return {
                'status': 'unhealthy',
                'connected': False,
                'error': 'Pool not connected'
            }

        try:
            async with self.acquire() as conn:
                await conn.fetchval("SELECT 1")
            return {
                'status': 'healthy',
                'connected': True,
                'pool_size': self._pool.get_size() if self._pool else 0,
            }
        except Exception as e:
            return {
                'status': 'unhealthy',
                'connected': False,
                'error': str(e)
            }


def create_pool_from_config(config: dict) -> DatabasePool:
    """
    Create a DatabasePool from the `database` section of database.yaml.

    The pool is returned unconnected.
    """
    conn_config = config.get('connection', {})
    retry_config = config.get('retry', {})

    db_config = DatabaseConfig(
        host=conn_config.get('host', 'localhost'),
        port=int(conn_config.get('port', 5432)),
        database=conn_config.get('database', 'analysisflow'),
        user=conn_config.get('user', 'postgres'),
        password=conn_config.get('password', ''),
        min_connections=int(conn_config.get('min_connections', 2)),
        max_connections=int(conn_config.get('max_connections', 10)),
        command_timeout=int(conn_config.get('command_timeout', 30)),
        max_retries=int(retry_config.get('max_retries', DEFAULT_MAX_RETRIES)),
        retry_base_delay=float(retry_config.get('base_delay', DEFAULT_BASE_DELAY)),
        retry_max_delay=float(retry_config.get('max_delay', DEFAULT_MAX_DELAY)),
    )

    return DatabasePool(db_config)
