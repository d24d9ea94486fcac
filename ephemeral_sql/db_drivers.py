from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

import asyncpg
from jinja2sql import Jinja2SQL
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import NullPool

from ephemeral_sql.db import (
    LIST_DATABASES_TEMPLATE,
    TERMINATE_BACKENDS_TEMPLATE,
    create_database_sql,
    drop_database_sql,
    like_pattern,
)
from ephemeral_sql.errors import (
    DatabaseConnectionError,
    EphemeralDatabaseError,
    PoolError,
    ProvisioningError,
    TeardownError,
)

logger = logging.getLogger(__name__)

# Errors asyncpg surfaces for network, protocol and server side failures
ASYNCPG_ERRORS = (
    OSError,
    asyncio.TimeoutError,
    asyncpg.PostgresError,
    asyncpg.InterfaceError,
)


class ServerAdapter(ABC):
    """Abstract adapter issuing server level statements (sync and async)."""

    # ---------- Sync API ----------
    @abstractmethod
    def open_admin_connection(self, server_endpoint: str) -> Any:
        ...

    @abstractmethod
    def create_database(self, server_endpoint: str, database_name: str) -> None:
        ...

    @abstractmethod
    def connect(self, db_url: str) -> Any:
        ...

    @abstractmethod
    def close_connection(self, conn: Any, commit: bool = False) -> None:
        ...

    @abstractmethod
    def open_pool(self, db_url: str, **options: Any) -> Any:
        ...

    @abstractmethod
    def close_pool(self, pool: Any) -> None:
        ...

    @abstractmethod
    def drop_database(self, server_endpoint: str, database_name: str) -> None:
        ...

    @abstractmethod
    def list_databases(self, server_endpoint: str, prefix: str) -> List[str]:
        ...

    # ---------- Async API (optional) ----------
    async def open_admin_connection_async(self, server_endpoint: str) -> Any:  # pragma: no cover
        raise NotImplementedError

    async def create_database_async(self, server_endpoint: str, database_name: str) -> None:  # pragma: no cover
        raise NotImplementedError

    async def connect_async(self, db_url: str) -> Any:  # pragma: no cover
        raise NotImplementedError

    async def close_connection_async(self, conn: Any, commit: bool = False) -> None:  # pragma: no cover
        raise NotImplementedError

    async def open_pool_async(self, db_url: str, **options: Any) -> Any:  # pragma: no cover
        raise NotImplementedError

    async def close_pool_async(self, pool: Any) -> None:  # pragma: no cover
        raise NotImplementedError

    def terminate_pool(self, pool: Any) -> None:  # pragma: no cover
        raise NotImplementedError

    async def drop_database_async(self, server_endpoint: str, database_name: str) -> None:  # pragma: no cover
        raise NotImplementedError

    async def list_databases_async(self, server_endpoint: str, prefix: str) -> List[str]:  # pragma: no cover
        raise NotImplementedError


class SQLAlchemyAdapter(ServerAdapter):
    """Synchronous adapter backed by SQLAlchemy engines (psycopg2 by default)."""

    def __init__(self, connect_args: Optional[Dict[str, Any]] = None) -> None:
        self.connect_args = connect_args or {}
        # "named" produces :name parameters which SQLAlchemy understands via text() bindings
        self.j2sql = Jinja2SQL(param_style="named")

    def _engine(self, db_url: str, **kwargs: Any) -> Engine:
        kwargs.setdefault("connect_args", self.connect_args)
        return create_engine(_sqlalchemy_dsn(db_url), **kwargs)

    def open_admin_connection(self, server_endpoint: str) -> Connection:
        # NullPool: closing the connection closes the socket, nothing is reused
        try:
            engine = self._engine(server_endpoint, poolclass=NullPool, isolation_level="AUTOCOMMIT")
            return engine.connect()
        except (SQLAlchemyError, ValueError) as e:
            raise DatabaseConnectionError(
                f"Failed to open administrative connection: {str(e)}"
            ) from e

    @contextmanager
    def _admin_session(self, server_endpoint: str) -> Iterator[Connection]:
        conn = self.open_admin_connection(server_endpoint)
        try:
            yield conn
        finally:
            conn.close()

    def create_database(self, server_endpoint: str, database_name: str) -> None:
        with self._admin_session(server_endpoint) as conn:
            statement = create_database_sql(database_name)
            logger.debug(f"Executing statement: {statement}")
            try:
                conn.execute(text(statement))
            except SQLAlchemyError as e:
                raise ProvisioningError(
                    f"Failed to create database {database_name}: {str(e)}", database_name
                ) from e

    def connect(self, db_url: str) -> Connection:
        try:
            return self._engine(db_url, poolclass=NullPool).connect()
        except (SQLAlchemyError, ValueError) as e:
            raise DatabaseConnectionError(f"Failed to connect: {str(e)}") from e

    def close_connection(self, conn: Connection, commit: bool = False) -> None:
        try:
            if commit and conn.in_transaction():
                conn.commit()
        finally:
            conn.close()

    def open_pool(self, db_url: str, **options: Any) -> Engine:
        try:
            engine = self._engine(db_url, **options)
        except (SQLAlchemyError, ValueError) as e:
            raise PoolError(f"Invalid connection pool configuration: {str(e)}") from e

        try:
            # Engines connect lazily; check one connection out so failures surface here
            with engine.connect():
                pass
        except SQLAlchemyError as e:
            engine.dispose()
            raise PoolError(f"Failed to open connection pool: {str(e)}") from e
        return engine

    def close_pool(self, pool: Engine) -> None:
        pool.dispose()

    def drop_database(self, server_endpoint: str, database_name: str) -> None:
        try:
            with self._admin_session(server_endpoint) as conn:
                query, params = self.j2sql.from_string(
                    TERMINATE_BACKENDS_TEMPLATE, context={"database_name": database_name}
                )
                logger.debug(f"Executing statement: {query} {params}")
                terminated = conn.execute(text(query), params).fetchall()
                logger.debug(f"Terminated {len(terminated)} session(s) on {database_name}")

                statement = drop_database_sql(database_name)
                logger.debug(f"Executing statement: {statement}")
                conn.execute(text(statement))
        except (EphemeralDatabaseError, SQLAlchemyError) as e:
            raise TeardownError(
                f"Failed to drop database {database_name}: {str(e)}", database_name
            ) from e

    def list_databases(self, server_endpoint: str, prefix: str) -> List[str]:
        with self._admin_session(server_endpoint) as conn:
            query, params = self.j2sql.from_string(
                LIST_DATABASES_TEMPLATE, context={"pattern": like_pattern(prefix)}
            )
            try:
                return [row[0] for row in conn.execute(text(query), params)]
            except SQLAlchemyError as e:
                raise EphemeralDatabaseError(f"Failed to list databases: {str(e)}") from e


class AsyncpgAdapter(ServerAdapter):
    """Adapter for asyncpg (async PostgreSQL driver)."""

    def __init__(self, connect_kwargs: Optional[Dict[str, Any]] = None, close_timeout: float = 5.0) -> None:
        self.connect_kwargs = connect_kwargs or {}
        # Seconds to wait for checked out pool connections before terminating them
        self.close_timeout = close_timeout
        # jinja2sql will render SQL & parameters in asyncpg style ($1, $2, ...)
        self.j2sql = Jinja2SQL(param_style="asyncpg")

    async def open_admin_connection_async(self, server_endpoint: str) -> asyncpg.Connection:
        try:
            return await asyncpg.connect(_asyncpg_dsn(server_endpoint), **self.connect_kwargs)
        except (*ASYNCPG_ERRORS, ValueError) as e:
            raise DatabaseConnectionError(
                f"Failed to open administrative connection: {str(e)}"
            ) from e

    async def create_database_async(self, server_endpoint: str, database_name: str) -> None:
        conn = await self.open_admin_connection_async(server_endpoint)
        try:
            statement = create_database_sql(database_name)
            logger.debug(f"Executing statement: {statement}")
            await conn.execute(statement)
        except ASYNCPG_ERRORS as e:
            raise ProvisioningError(
                f"Failed to create database {database_name}: {str(e)}", database_name
            ) from e
        finally:
            await conn.close()

    async def connect_async(self, db_url: str) -> asyncpg.Connection:
        try:
            return await asyncpg.connect(_asyncpg_dsn(db_url), **self.connect_kwargs)
        except (*ASYNCPG_ERRORS, ValueError) as e:
            raise DatabaseConnectionError(f"Failed to connect: {str(e)}") from e

    async def close_connection_async(self, conn: asyncpg.Connection, commit: bool = False) -> None:
        # asyncpg runs outside of transactions unless the caller opened one
        await conn.close()

    async def open_pool_async(self, db_url: str, **options: Any) -> asyncpg.Pool:
        try:
            return await asyncpg.create_pool(_asyncpg_dsn(db_url), **options)
        except (*ASYNCPG_ERRORS, ValueError) as e:
            raise PoolError(f"Failed to open connection pool: {str(e)}") from e

    async def close_pool_async(self, pool: asyncpg.Pool) -> None:
        # Pool.close() waits for every checked out connection to be released
        try:
            await asyncio.wait_for(pool.close(), timeout=self.close_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"Pool did not close within {self.close_timeout}s, terminating its connections"
            )
            pool.terminate()

    def terminate_pool(self, pool: asyncpg.Pool) -> None:
        pool.terminate()

    async def drop_database_async(self, server_endpoint: str, database_name: str) -> None:
        try:
            conn = await self.open_admin_connection_async(server_endpoint)
        except DatabaseConnectionError as e:
            raise TeardownError(
                f"Failed to drop database {database_name}: {str(e)}", database_name
            ) from e

        try:
            query, params_list = self.j2sql.from_string(
                TERMINATE_BACKENDS_TEMPLATE, context={"database_name": database_name}
            )
            logger.debug(f"Executing statement: {query} {params_list}")
            terminated = await conn.fetch(query, *params_list)
            logger.debug(f"Terminated {len(terminated)} session(s) on {database_name}")

            statement = drop_database_sql(database_name)
            logger.debug(f"Executing statement: {statement}")
            await conn.execute(statement)
        except ASYNCPG_ERRORS as e:
            raise TeardownError(
                f"Failed to drop database {database_name}: {str(e)}", database_name
            ) from e
        finally:
            await conn.close()

    async def list_databases_async(self, server_endpoint: str, prefix: str) -> List[str]:
        conn = await self.open_admin_connection_async(server_endpoint)
        try:
            query, params_list = self.j2sql.from_string(
                LIST_DATABASES_TEMPLATE, context={"pattern": like_pattern(prefix)}
            )
            records = await conn.fetch(query, *params_list)
            return [r["datname"] for r in records]
        except ASYNCPG_ERRORS as e:
            raise EphemeralDatabaseError(f"Failed to list databases: {str(e)}") from e
        finally:
            await conn.close()

    # Sync methods are not supported for asyncpg adapter
    def open_admin_connection(self, server_endpoint: str) -> Any:  # pragma: no cover - sync not supported
        raise NotImplementedError("Use open_admin_connection_async with AsyncpgAdapter")

    def create_database(self, server_endpoint: str, database_name: str) -> None:  # pragma: no cover
        raise NotImplementedError("Use create_database_async with AsyncpgAdapter")

    def connect(self, db_url: str) -> Any:  # pragma: no cover
        raise NotImplementedError("Use connect_async with AsyncpgAdapter")

    def close_connection(self, conn: Any, commit: bool = False) -> None:  # pragma: no cover
        raise NotImplementedError("Use close_connection_async with AsyncpgAdapter")

    def open_pool(self, db_url: str, **options: Any) -> Any:  # pragma: no cover
        raise NotImplementedError("Use open_pool_async with AsyncpgAdapter")

    def close_pool(self, pool: Any) -> None:  # pragma: no cover
        raise NotImplementedError("Use close_pool_async with AsyncpgAdapter")

    def drop_database(self, server_endpoint: str, database_name: str) -> None:  # pragma: no cover
        raise NotImplementedError("Use drop_database_async with AsyncpgAdapter")

    def list_databases(self, server_endpoint: str, prefix: str) -> List[str]:  # pragma: no cover
        raise NotImplementedError("Use list_databases_async with AsyncpgAdapter")


def _sqlalchemy_dsn(db_url: str) -> str:
    """SQLAlchemy only accepts the postgresql:// spelling of the scheme."""
    if db_url.startswith("postgres://"):
        return "postgresql://" + db_url[len("postgres://"):]
    return db_url


def _asyncpg_dsn(db_url: str) -> str:
    """Strip a SQLAlchemy style driver suffix, e.g. postgresql+asyncpg:// -> postgresql://"""
    scheme, sep, rest = db_url.partition("://")
    if not sep:
        return db_url
    return f"{scheme.split('+', 1)[0]}{sep}{rest}"
