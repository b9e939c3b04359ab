"""
Connection pool capability interface.

The monitor never manages a pool's lifecycle; it only acquires a
connection, runs statements on it and releases it. Any object with this
shape works. SQLAlchemyConnectionPool adapts an SQLAlchemy AsyncEngine.
"""
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple, Union, runtime_checkable

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine
import structlog

from ..shared.config import DatabaseSettings

logger = structlog.get_logger(__name__)

Params = Optional[Union[Sequence[Any], Mapping[str, Any]]]

_POSITIONAL = re.compile(r'\$(\d+)')


@dataclass
class QueryResult:
    """Rows returned by a statement plus the driver's row count."""
    rows: List[Dict[str, Any]] = field(default_factory=list)
    row_count: int = 0


@runtime_checkable
class Connection(Protocol):
    async def query(self, sql: str, params: Params = None) -> QueryResult:
        ...


@runtime_checkable
class ConnectionPool(Protocol):
    async def acquire(self) -> Connection:
        ...

    async def release(self, connection: Connection) -> None:
        ...


def bind_positional(sql: str, params: Params) -> Tuple[str, Dict[str, Any]]:
    """
    Translate ``$1``-style placeholders into SQLAlchemy named binds.

    Mapping parameters are passed through untouched.
    """
    if params is None:
        return sql, {}
    if isinstance(params, Mapping):
        return sql, dict(params)

    values = list(params)
    bound = {f"p{index + 1}": value for index, value in enumerate(values)}
    return _POSITIONAL.sub(lambda m: f":p{m.group(1)}", sql), bound


class SQLAlchemyConnection:
    """Connection wrapper exposing ``query()`` over an AsyncConnection."""

    def __init__(self, connection: AsyncConnection):
        self.connection = connection

    async def query(self, sql: str, params: Params = None) -> QueryResult:
        statement, bound = bind_positional(sql, params)
        result = await self.connection.execute(text(statement), bound)

        rows: List[Dict[str, Any]] = []
        if result.returns_rows:
            rows = [dict(row._mapping) for row in result.fetchall()]
        row_count = len(rows) if result.returns_rows else max(result.rowcount, 0)

        await self.connection.commit()
        return QueryResult(rows=rows, row_count=row_count)


class SQLAlchemyConnectionPool:
    """ConnectionPool backed by an SQLAlchemy AsyncEngine."""

    def __init__(self, engine: AsyncEngine):
        self.engine = engine

    @classmethod
    def from_url(cls, database_url: str, pool_size: int = 10, max_overflow: int = 20,
                 echo: bool = False) -> 'SQLAlchemyConnectionPool':
        engine = create_async_engine(
            database_url,
            echo=echo,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_pre_ping=True,  # Validate connections before use
            pool_recycle=3600,
        )
        logger.info("Database engine created", pool_size=pool_size, max_overflow=max_overflow)
        return cls(engine)

    @classmethod
    def from_settings(cls, settings: DatabaseSettings) -> 'SQLAlchemyConnectionPool':
        return cls.from_url(
            settings.database_url,
            pool_size=settings.pool_size,
            max_overflow=settings.max_overflow,
            echo=settings.echo,
        )

    async def acquire(self) -> SQLAlchemyConnection:
        connection = await self.engine.connect()
        return SQLAlchemyConnection(connection)

    async def release(self, connection: SQLAlchemyConnection) -> None:
        try:
            await connection.connection.close()
        except Exception as e:
            logger.error("Failed to release database connection", error=str(e))

    async def dispose(self) -> None:
        await self.engine.dispose()
        logger.info("Database engine disposed")
