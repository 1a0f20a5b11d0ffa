"""PostgreSQL reference adapter built on asyncpg and the shared connection pools."""

from __future__ import annotations

import asyncio
import json
import time
from collections import Counter
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from typing import Any, ClassVar, TypeVar

import asyncpg
from pydantic import Field

from ...events import EventBus, EventType
from ...exceptions import (
    ConnectionFailedError,
    ConstraintViolationError,
    DisconnectFailedError,
    FlowBridgeError,
    PermissionDeniedError,
    QueryError,
    TransientError,
)
from ...pool.manager import ConnectionFactory, ConnectionPoolManager, PooledConnection
from ...utils.config import ComponentConfig, PoolOptions, build_component_config, get_settings
from ...utils.logging import setup_logger
from ..base import (
    AdapterCapabilities,
    BaseAdapter,
    ConnectionStatus,
    DiscoveryOptions,
    Operation,
    OrderBy,
    ReadOptions,
    Transaction,
    WriteOptions,
    parse_options,
)
from ..types import QueryResult, ReadResult, Schema, UniversalType, WriteResult, parse_schema_reference
from . import catalog
from .queries import (
    Statement,
    affected_rows,
    build_count_query,
    build_select_query,
    build_write_statements,
    quote_qualified,
)

logger = setup_logger(__name__, context={"component": "adapter"})

T = TypeVar("T")

_TRANSIENT_SQLSTATES = frozenset({"57014", "40001", "40P01", "53300", "57P01", "57P02", "57P03"})
_TRANSIENT_CLASSES = ("08", "53")


class PostgreSQLConfig(ComponentConfig):
    """Connection options for :class:`PostgreSQLAdapter` (times in ms)."""

    host: str = "localhost"
    port: int = Field(default=5432, ge=1, le=65535)
    database: str
    user: str
    password: str | None = None
    default_schema: str = Field(default="public", alias="schema")
    ssl: str | bool | None = None
    application_name: str = "flowbridge"
    statement_timeout: int = Field(default=30_000, ge=0)
    connection_timeout: int = Field(default=10_000, gt=0)
    idle_timeout: int = Field(default=30_000, gt=0)
    acquire_timeout: int = Field(default=10_000, gt=0)
    min_connections: int = Field(default=2, ge=0)
    max_connections: int = Field(default=10, ge=1)
    source_id: str | None = None
    schema_cache_ttl: int | None = Field(default=None, ge=0)

    @property
    def pool_key(self) -> str:
        return f"postgresql://{self.user}@{self.host}:{self.port}/{self.database}"


def translate_error(exc: BaseException) -> FlowBridgeError:
    """Map asyncpg and network failures onto the error taxonomy, keeping the SQLSTATE."""

    if isinstance(exc, FlowBridgeError):
        return exc
    if isinstance(exc, asyncpg.PostgresError):
        sqlstate = getattr(exc, "sqlstate", None) or ""
        message = str(exc)
        if sqlstate == "42501":
            return PermissionDeniedError(message, code=sqlstate)
        if sqlstate.startswith("23"):
            return ConstraintViolationError(message, code=sqlstate)
        if sqlstate in _TRANSIENT_SQLSTATES or sqlstate.startswith(_TRANSIENT_CLASSES):
            return TransientError(message, code=sqlstate)
        return QueryError(message, code=sqlstate or None)
    if isinstance(exc, asyncpg.exceptions.ConnectionDoesNotExistError):
        return TransientError(f"Connection lost: {exc}")
    if isinstance(exc, (OSError, asyncio.TimeoutError)):
        return TransientError(f"Network failure: {exc}")
    if isinstance(exc, asyncpg.InterfaceError):
        return QueryError(str(exc))
    return QueryError(f"{type(exc).__name__}: {exc}")


class PostgreSQLTransaction(Transaction):
    """Transaction pinned to one pooled connection; commit/rollback always release it."""

    def __init__(self, adapter: PostgreSQLAdapter, connection: PooledConnection, transaction: Any) -> None:
        self._adapter = adapter
        self._connection = connection
        self._transaction = transaction
        self._finished = False

    @property
    def handle(self) -> Any:
        return self._connection.handle

    async def commit(self) -> None:
        await self._finish(self._transaction.commit)

    async def rollback(self) -> None:
        await self._finish(self._transaction.rollback)

    async def execute_query(self, sql: str, params: Sequence[Any] | None = None) -> QueryResult:
        if self._finished:
            raise QueryError("Transaction already finished")
        try:
            return await self._adapter._query_on(self.handle, sql, list(params or []))
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError) as exc:
            raise translate_error(exc) from exc

    async def _finish(self, action: Callable[[], Awaitable[None]]) -> None:
        if self._finished:
            return
        self._finished = True
        try:
            await action()
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
            raise translate_error(exc) from exc
        finally:
            await self._adapter.pool_manager.release(self._adapter.pool_name, self._connection)


class PostgreSQLAdapter(BaseAdapter):
    """
    Reference adapter for PostgreSQL.

    Connections come from a pool named after host, port, database and user so
    source and target adapters pointing at the same server share it.
    """

    adapter_type: ClassVar[str] = "postgresql"
    capabilities: ClassVar[AdapterCapabilities] = AdapterCapabilities(
        schema_discovery=True,
        batch_operations=True,
        streaming=True,
        transactions=True,
        partitioning=True,
        cdc=False,
        incremental_sync=True,
        custom_query=True,
    )
    supported_operations: ClassVar[frozenset[Operation]] = frozenset(Operation)
    default_namespace: ClassVar[str] = "public"

    _pool_users: ClassVar[Counter[tuple[int, str]]] = Counter()

    def __init__(
        self,
        config: dict[str, Any] | None = None,
        *,
        pool_manager: ConnectionPoolManager | None = None,
        events: EventBus | None = None,
        connector: Callable[..., Awaitable[Any]] | None = None,
    ) -> None:
        settings = get_settings()
        self.pg_config = build_component_config(
            PostgreSQLConfig, dict(config or {}), strict=settings.strict_config
        )
        merged = dict(config or {})
        merged.setdefault("source_id", self.pg_config.source_id or f"postgresql:{self.pg_config.database}")
        super().__init__(merged, pool_manager=pool_manager, events=events)
        self.default_schema = self.pg_config.default_schema
        self._connector = connector or asyncpg.connect
        self._server_version: str | None = None
        self._holds_pool = False

    @property
    def pool_name(self) -> str:
        return self.pg_config.pool_key

    # ------------------------------------------------------------ connection
    async def connect(self) -> None:
        """Create (or join) the pool and verify the server answers."""

        if self.is_connected:
            return
        self._set_status(ConnectionStatus.CONNECTING)
        factory = ConnectionFactory(
            create=self._open_connection,
            destroy=self._close_connection,
            validate=self._validate_connection,
        )
        try:
            await self.pool_manager.create_pool(self.pool_name, factory, self._pool_options())
            self._pool_users[self._pool_ref] += 1
            self._holds_pool = True
            version = await self._run(lambda conn: conn.fetchval("SELECT version()"))
        except FlowBridgeError as exc:
            self._set_status(ConnectionStatus.ERROR)
            await self._release_pool_ref()
            raise ConnectionFailedError(
                f"PostgreSQL connection failed: {exc}", code=exc.code, details={"pool": self.pool_name}
            ) from exc

        self._server_version = version
        self._set_status(ConnectionStatus.CONNECTED)
        logger.info(
            "Connected to PostgreSQL %s:%s/%s",
            self.pg_config.host,
            self.pg_config.port,
            self.pg_config.database,
            extra={"status": "connected"},
        )
        self.events.emit(
            EventType.ADAPTER_CONNECTED,
            self.source_id,
            adapter_type=self.adapter_type,
            version=version,
            database=self.pg_config.database,
        )

    async def disconnect(self) -> None:
        """Leave the shared pool, destroying it when this was the last user."""

        if self.status is ConnectionStatus.DISCONNECTED:
            return
        try:
            await self._release_pool_ref()
        except Exception as exc:
            self._set_status(ConnectionStatus.ERROR)
            raise DisconnectFailedError(f"Error disconnecting from PostgreSQL: {exc}") from exc
        self._set_status(ConnectionStatus.DISCONNECTED)
        logger.info("PostgreSQL connection closed", extra={"status": "disconnected"})
        self.events.emit(EventType.ADAPTER_DISCONNECTED, self.source_id, adapter_type=self.adapter_type)

    async def test_connection(self) -> bool:
        if not self.pool_manager.has_pool(self.pool_name):
            return False
        try:
            await self._run(lambda conn: conn.fetchval("SELECT 1"))
        except FlowBridgeError as exc:
            logger.warning("Connection test failed: %s", exc, extra={"status": "warning"})
            return False
        return True

    async def get_system_metadata(self) -> dict[str, Any]:
        """Return server identity, limits, size and installed extensions."""

        async def _collect(conn: Any) -> dict[str, Any]:
            metadata: dict[str, Any] = {}
            for key, query in catalog.SYSTEM_METADATA_QUERIES.items():
                try:
                    metadata[key] = await conn.fetchval(query)
                except asyncpg.PostgresError as exc:
                    logger.warning("Failed to read %s: %s", key, exc, extra={"status": "warning"})
            try:
                extensions = await conn.fetch(catalog.EXTENSIONS_QUERY)
            except asyncpg.PostgresError as exc:
                logger.warning("Failed to list extensions: %s", exc, extra={"status": "warning"})
            else:
                metadata["installed_extensions"] = [dict(row) for row in extensions]
            return metadata

        return await self._run(_collect)

    def get_pool_status(self) -> dict[str, Any] | None:
        if not self.pool_manager.has_pool(self.pool_name):
            return None
        return self.pool_manager.get_pool_statistics(self.pool_name)

    # -------------------------------------------------------------- discovery
    async def _discover_schemas(self, options: DiscoveryOptions) -> list[Schema]:
        async def _discover(conn: Any) -> list[Schema]:
            tables = await conn.fetch(
                catalog.TABLES_QUERY,
                catalog.relkinds_for(options.include_views),
                options.namespaces,
                options.name_pattern,
                options.limit,
            )
            oids = [row["oid"] for row in tables]
            if not oids:
                return []
            columns = await conn.fetch(catalog.COLUMNS_QUERY, oids)
            primary_keys = await conn.fetch(catalog.PRIMARY_KEYS_QUERY, oids)
            foreign_keys = await conn.fetch(catalog.FOREIGN_KEYS_QUERY, oids)
            indexes = await conn.fetch(catalog.INDEXES_QUERY, oids) if options.include_indexes else []
            return catalog.assemble_schemas(
                self.source_id, tables, columns, primary_keys, foreign_keys, indexes
            )

        return await self._run(_discover)

    async def _discover_routines(
        self, options: DiscoveryOptions
    ) -> dict[str, tuple[list[str], list[str]]]:
        async def _routines(conn: Any) -> dict[str, tuple[list[str], list[str]]]:
            result: dict[str, tuple[list[str], list[str]]] = {}
            if options.include_functions:
                for row in await conn.fetch(catalog.FUNCTIONS_QUERY, options.namespaces):
                    result.setdefault(row["namespace"], ([], []))[0].append(row["name"])
            if options.include_sequences:
                for row in await conn.fetch(catalog.SEQUENCES_QUERY, options.namespaces):
                    result.setdefault(row["namespace"], ([], []))[1].append(row["name"])
            return result

        return await self._run(_routines)

    # ------------------------------------------------------------------ reads
    async def _read_data(self, schema: str | Schema, options: ReadOptions) -> ReadResult:
        table_ref = self._table_ref(schema)
        sql, params = build_select_query(table_ref, options)

        async def _read(conn: Any) -> tuple[list[Any], int | None]:
            rows = await conn.fetch(sql, *params)
            total = None
            if options.include_total_count:
                count_sql, count_params = build_count_query(table_ref, options)
                total = await conn.fetchval(count_sql, *count_params)
            return rows, total

        started = time.perf_counter()
        rows, total = await self._run(_read)
        return ReadResult(
            rows=[dict(row) for row in rows],
            row_count=len(rows),
            total_count=int(total) if total is not None else None,
            metadata={
                "table": table_ref,
                "duration_ms": round((time.perf_counter() - started) * 1000, 3),
            },
        )

    async def iter_batches(
        self,
        schema: str | Schema,
        options: ReadOptions | dict[str, Any] | None = None,
        *,
        batch_size: int = 1_000,
        hold_connection: bool = True,
    ) -> AsyncIterator[list[dict[str, Any]]]:
        """
        Stream rows in pages of ``batch_size``.

        By default rows come from a server-side cursor inside a read
        transaction, which keeps one pooled connection leased until the
        iterator closes. With ``hold_connection=False`` each page is a separate
        ``LIMIT/OFFSET`` read ordered by the primary key (or every column when
        there is none), so writes into the same pool can run between pages.
        """

        self.require_operation(Operation.READ)
        opts = parse_options(ReadOptions, options)
        if not hold_connection:
            if not opts.order_by:
                opts = opts.model_copy(update={"order_by": await self._stable_order(schema, opts)})
            async for page in super().iter_batches(schema, opts, batch_size=batch_size):
                yield page
            return

        sql, params = build_select_query(self._table_ref(schema), opts)
        try:
            async with self.pool_manager.lease(self.pool_name) as conn:
                async with conn.transaction():
                    cursor = await conn.cursor(sql, *params)
                    while True:
                        rows = await cursor.fetch(batch_size)
                        if not rows:
                            break
                        self.metrics.records_read += len(rows)
                        yield [dict(row) for row in rows]
                        if len(rows) < batch_size:
                            break
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError) as exc:
            raise translate_error(exc) from exc

    async def _stable_order(self, schema: str | Schema, options: ReadOptions) -> list[OrderBy]:
        if options.group_by:
            return [OrderBy(column=column) for column in options.group_by]
        described = await self.get_schema(schema)
        columns = described.primary_keys or described.column_names
        if options.joins:
            columns = [f"{described.name}.{column}" for column in columns]
        return [OrderBy(column=column) for column in columns]

    # ----------------------------------------------------------------- writes
    async def _write_data(
        self,
        schema: str | Schema,
        data: list[dict[str, Any]],
        options: WriteOptions,
    ) -> WriteResult:
        table_ref = self._table_ref(schema)
        discovered: Schema | None = None
        if options.validate_schema:
            discovered = await self.get_schema(schema)
            known = set(discovered.column_names)
            unknown = sorted({key for row in data for key in row} - known)
            if unknown:
                raise QueryError(
                    f"Unknown column(s) for {discovered.qualified_name}: {', '.join(unknown)}"
                )
        rows = [self._prepare_row(row, discovered) for row in data]
        started = time.perf_counter()

        async def _apply(conn: Any) -> list[tuple[int, list[dict[str, Any]], int]]:
            async def _write_batch(batch: list[dict[str, Any]]) -> tuple[int, list[dict[str, Any]], int]:
                statements = build_write_statements(table_ref, batch, options)
                if options.transaction or len(statements) == 1:
                    return await self._execute_statements(conn, statements)
                async with conn.transaction():
                    return await self._execute_statements(conn, statements)

            if options.transaction:
                async with conn.transaction():
                    return await self.process_batch(rows, _write_batch, options.batch_size)
            return await self.process_batch(rows, _write_batch, options.batch_size)

        outcomes = await self._run(_apply)
        written = sum(outcome[0] for outcome in outcomes)
        returned = [row for outcome in outcomes for row in outcome[1]]
        return WriteResult(
            written=written,
            data=returned if options.returning else None,
            metadata={
                "mode": options.mode.value,
                "batches": len(outcomes),
                "statements": sum(outcome[2] for outcome in outcomes),
                "duration_ms": round((time.perf_counter() - started) * 1000, 3),
            },
        )

    async def _execute_statements(
        self, conn: Any, statements: list[Statement]
    ) -> tuple[int, list[dict[str, Any]], int]:
        written = 0
        returned: list[dict[str, Any]] = []
        for statement in statements:
            if statement.returns_rows:
                rows = await conn.fetch(statement.sql, *statement.params)
                returned.extend(dict(row) for row in rows)
                affected = len(rows)
            else:
                affected = affected_rows(await conn.execute(statement.sql, *statement.params))
            if statement.counts_written:
                written += affected
        return written, returned, len(statements)

    def _prepare_row(self, row: dict[str, Any], schema: Schema | None) -> dict[str, Any]:
        prepared: dict[str, Any] = {}
        for key, value in row.items():
            if isinstance(value, dict):
                value = json.dumps(value, default=str)
            elif isinstance(value, list) and schema is not None:
                column = schema.column(key)
                if column is not None and column.universal_type is UniversalType.JSON:
                    value = json.dumps(value, default=str)
            prepared[key] = value
        return prepared

    # ---------------------------------------------------------- custom query
    async def _execute_query(self, sql: str, params: list[Any]) -> QueryResult:
        return await self._run(lambda conn: self._query_on(conn, sql, params))

    async def _query_on(self, conn: Any, sql: str, params: list[Any]) -> QueryResult:
        started = time.perf_counter()
        statement = await conn.prepare(sql)
        records = await statement.fetch(*params)
        status = statement.get_statusmsg() or ""
        duration_ms = round((time.perf_counter() - started) * 1000, 3)
        fields = [
            {
                "name": attribute.name,
                "type_oid": attribute.type.oid,
                "type_name": attribute.type.name,
                "universal_type": catalog.map_native_type(attribute.type.name).value,
            }
            for attribute in statement.get_attributes()
        ]
        command = status.split(" ", 1)[0] if status else ""
        row_count = len(records) if command in ("SELECT", "") else affected_rows(status)
        logger.debug("Query executed in %sms", duration_ms, extra={"duration_ms": duration_ms})
        return QueryResult(
            rows=[dict(record) for record in records],
            row_count=row_count,
            fields=fields,
            command=command,
            duration_ms=duration_ms,
        )

    async def _begin_transaction(self) -> Transaction:
        pool = self.pool_manager.get_pool(self.pool_name)
        connection = await pool.acquire()
        try:
            transaction = connection.handle.transaction()
            await transaction.start()
        except Exception as exc:
            await pool.release(connection)
            raise translate_error(exc) from exc
        return PostgreSQLTransaction(self, connection, transaction)

    # ---------------------------------------------------------------- helpers
    def _table_ref(self, schema: str | Schema) -> str:
        namespace, name = parse_schema_reference(schema, self.default_schema)
        return quote_qualified(namespace, name)

    def _pool_options(self) -> PoolOptions:
        cfg = self.pg_config
        defaults = self.pool_manager.defaults.model_dump()
        defaults.update(
            min_connections=min(cfg.min_connections, cfg.max_connections),
            max_connections=cfg.max_connections,
            acquire_timeout=cfg.acquire_timeout,
            idle_timeout=cfg.idle_timeout,
            create_timeout=cfg.connection_timeout,
        )
        return PoolOptions(**defaults)

    @property
    def _pool_ref(self) -> tuple[int, str]:
        return id(self.pool_manager), self.pool_name

    async def _release_pool_ref(self) -> None:
        if not self._holds_pool:
            return
        self._holds_pool = False
        ref = self._pool_ref
        self._pool_users[ref] -= 1
        if self._pool_users[ref] <= 0:
            self._pool_users.pop(ref, None)
            if self.pool_manager.has_pool(self.pool_name):
                await self.pool_manager.destroy_pool(self.pool_name)

    async def _run(self, fn: Callable[[Any], Awaitable[T]]) -> T:
        try:
            return await self.pool_manager.execute_with(self.pool_name, fn)
        except FlowBridgeError:
            raise
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError) as exc:
            raise translate_error(exc) from exc

    async def _open_connection(self) -> Any:
        cfg = self.pg_config
        return await self._connector(
            host=cfg.host,
            port=cfg.port,
            database=cfg.database,
            user=cfg.user,
            password=cfg.password,
            ssl=cfg.ssl,
            timeout=cfg.connection_timeout / 1000.0,
            server_settings={
                "application_name": cfg.application_name,
                "statement_timeout": str(cfg.statement_timeout),
            },
        )

    @staticmethod
    async def _close_connection(conn: Any) -> None:
        await conn.close()

    @staticmethod
    async def _validate_connection(conn: Any) -> bool:
        return not conn.is_closed()
