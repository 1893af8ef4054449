import re
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Optional, TypeVar

from pydantic import BaseModel
from sqlalchemy import event, inspect, text
from sqlalchemy.engine import CursorResult, make_url
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

TModel = TypeVar("TModel", bound=BaseModel)

# Plain SQL identifiers only, bounded by the PostgreSQL name limit
IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")


class Connection:
    """A single transactional connection, as handed out by Database.connect()."""

    def __init__(self, conn: AsyncConnection):
        self.conn = conn

    def quote(self, identifier: str) -> str:
        """Validate and quote a table or column name for the current dialect."""
        if not IDENTIFIER_PATTERN.match(identifier):
            raise ValueError(f"Invalid SQL identifier: {identifier!r}")
        return self.conn.dialect.identifier_preparer.quote(identifier)

    async def execute(self, query: str, values: Optional[dict] = None) -> CursorResult:
        return await self.conn.execute(text(query), values or {})

    async def fetchone(
        self,
        query: str,
        values: Optional[dict] = None,
        model: Optional[type[TModel]] = None,
    ) -> Any:
        result = await self.execute(query, values)
        row = result.mappings().first()
        if row is None:
            return None
        return model(**dict(row)) if model else dict(row)

    async def fetchall(
        self,
        query: str,
        values: Optional[dict] = None,
        model: Optional[type[TModel]] = None,
    ) -> list[Any]:
        result = await self.execute(query, values)
        rows = result.mappings().all()
        if model:
            return [model(**dict(row)) for row in rows]
        return [dict(row) for row in rows]

    async def get_table_names(self) -> list[str]:
        return await self.conn.run_sync(
            lambda sync_conn: inspect(sync_conn).get_table_names()
        )

    async def get_columns(self, table_name: str) -> list[str]:
        columns = await self.conn.run_sync(
            lambda sync_conn: inspect(sync_conn).get_columns(table_name)
        )
        return [column["name"] for column in columns]

    async def get_primary_key(self, table_name: str) -> list[str]:
        constraint = await self.conn.run_sync(
            lambda sync_conn: inspect(sync_conn).get_pk_constraint(table_name)
        )
        return list(constraint.get("constrained_columns") or [])


class Database:
    """
    Thin async wrapper over a SQLAlchemy engine.
    Every call outside connect() runs in its own transaction.
    """

    def __init__(self, url: str):
        self.url = url
        parsed = make_url(url)
        if parsed.get_backend_name() == "sqlite" and parsed.database not in (
            None,
            "",
            ":memory:",
        ):
            Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)
        self.engine: AsyncEngine = create_async_engine(url, pool_pre_ping=True)

        if self.engine.dialect.name == "sqlite":
            # pysqlite defers BEGIN until the first DML statement, which would leave
            # CREATE TABLE ... AS SELECT outside the transaction
            @event.listens_for(self.engine.sync_engine, "connect")
            def _disable_implicit_transactions(dbapi_connection, connection_record):
                dbapi_connection.isolation_level = None

            @event.listens_for(self.engine.sync_engine, "begin")
            def _begin_explicitly(conn):
                conn.exec_driver_sql("BEGIN")

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name

    @asynccontextmanager
    async def connect(self) -> AsyncIterator[Connection]:
        async with self.engine.begin() as conn:
            yield Connection(conn)

    async def execute(self, query: str, values: Optional[dict] = None) -> CursorResult:
        async with self.connect() as conn:
            return await conn.execute(query, values)

    async def fetchone(
        self,
        query: str,
        values: Optional[dict] = None,
        model: Optional[type[TModel]] = None,
    ) -> Any:
        async with self.connect() as conn:
            return await conn.fetchone(query, values, model)

    async def fetchall(
        self,
        query: str,
        values: Optional[dict] = None,
        model: Optional[type[TModel]] = None,
    ) -> list[Any]:
        async with self.connect() as conn:
            return await conn.fetchall(query, values, model)

    async def dispose(self) -> None:
        await self.engine.dispose()
