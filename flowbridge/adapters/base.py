"""Base adapter contract shared by every external data system."""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, ClassVar, Literal, TypeVar

from cachetools import TTLCache
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from ..events import EventBus, EventType, get_event_bus
from ..exceptions import FlowBridgeError, QueryError, UnsupportedOperationError
from ..monitoring.metrics import observe_adapter_operation, record_adapter_error
from ..pool.manager import ConnectionPoolManager, get_pool_manager
from ..utils.config import get_settings
from ..utils.logging import setup_logger
from .types import Namespace, QueryResult, ReadResult, Schema, WriteResult, parse_schema_reference

logger = setup_logger(__name__, context={"component": "adapter"})

T = TypeVar("T")
OptionsT = TypeVar("OptionsT", bound=BaseModel)


class ConnectionStatus(str, Enum):
    """Connection status of an adapter."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class Operation(str, Enum):
    """Data operations an adapter may support."""

    READ = "read"
    WRITE = "write"
    UPDATE = "update"
    DELETE = "delete"
    UPSERT = "upsert"
    TRUNCATE = "truncate"
    CREATE_SCHEMA = "create_schema"
    DROP_SCHEMA = "drop_schema"


class WriteMode(str, Enum):
    """How ``write_data`` applies rows to the target."""

    INSERT = "insert"
    UPDATE = "update"
    UPSERT = "upsert"
    REPLACE = "replace"


WRITE_MODE_OPERATIONS: dict[WriteMode, tuple[Operation, ...]] = {
    WriteMode.INSERT: (Operation.WRITE,),
    WriteMode.UPDATE: (Operation.UPDATE,),
    WriteMode.UPSERT: (Operation.UPSERT,),
    WriteMode.REPLACE: (Operation.WRITE, Operation.DELETE),
}


class OnConflict(str, Enum):
    """Behaviour of an insert hitting a unique constraint."""

    ERROR = "error"
    IGNORE = "ignore"
    UPDATE = "update"


class FilterOperator(str, Enum):
    """Filter grammar shared by all adapters."""

    EQ = "eq"
    NE = "ne"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    LIKE = "like"
    ILIKE = "ilike"
    IN = "in"
    BETWEEN = "between"
    REGEX = "regex"
    JSON_CONTAINS = "jsonContains"
    JSON_PATH = "jsonPath"


@dataclass(slots=True, frozen=True)
class AdapterCapabilities:
    """Static description of what an adapter can do."""

    schema_discovery: bool = False
    batch_operations: bool = False
    streaming: bool = False
    transactions: bool = False
    partitioning: bool = False
    cdc: bool = False
    incremental_sync: bool = False
    custom_query: bool = False

    def to_dict(self) -> dict[str, bool]:
        return asdict(self)


class _OptionsModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
    )


class FilterCondition(_OptionsModel):
    """One predicate of a filter list; conditions combine with AND."""

    field: str
    operator: FilterOperator = FilterOperator.EQ
    value: Any = None

    @field_validator("operator", mode="before")
    @classmethod
    def _strip_operator_prefix(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.lstrip("$")
        return value

    @model_validator(mode="after")
    def _check_value_shape(self) -> FilterCondition:
        if self.operator is FilterOperator.IN and not isinstance(self.value, (list, tuple, set)):
            raise ValueError("'in' filters require a list value")
        if self.operator is FilterOperator.BETWEEN and (
            not isinstance(self.value, (list, tuple)) or len(self.value) != 2
        ):
            raise ValueError("'between' filters require a two-element list value")
        return self


def normalize_filters(filters: Any) -> list[FilterCondition]:
    """Accept condition lists or ``{field: value | {op: value}}`` shorthand."""

    if filters is None:
        return []
    if isinstance(filters, dict):
        conditions: list[FilterCondition] = []
        for field_name, spec in filters.items():
            if isinstance(spec, dict) and spec and all(
                isinstance(k, str) and k.lstrip("$") in FilterOperator._value2member_map_
                for k in spec
            ):
                for operator, value in spec.items():
                    conditions.append(
                        FilterCondition(field=field_name, operator=operator, value=value)
                    )
            else:
                conditions.append(FilterCondition(field=field_name, value=spec))
        return conditions
    if isinstance(filters, (list, tuple)):
        return [
            item if isinstance(item, FilterCondition) else FilterCondition.model_validate(item)
            for item in filters
        ]
    raise ValueError("filters must be a list of conditions or a mapping")


class OrderBy(_OptionsModel):
    """Ordering term."""

    column: str
    direction: Literal["asc", "desc"] = "asc"
    nulls: Literal["first", "last"] | None = None

    @classmethod
    def parse(cls, value: Any) -> OrderBy:
        if isinstance(value, OrderBy):
            return value
        if isinstance(value, str):
            text = value.strip()
            if text.startswith("-"):
                return cls(column=text[1:], direction="desc")
            parts = text.split()
            if len(parts) == 2 and parts[1].lower() in ("asc", "desc"):
                return cls(column=parts[0], direction=parts[1].lower())
            return cls(column=text)
        return cls.model_validate(value)


class JoinSpec(_OptionsModel):
    """Join to another container; ``on`` maps left columns to right columns."""

    table: str
    type: Literal["inner", "left", "right", "full"] = "inner"
    alias: str | None = None
    on: dict[str, str]


class ReadOptions(_OptionsModel):
    """Options accepted by ``read_data``."""

    select: list[str] | None = None
    filters: list[FilterCondition] = Field(default_factory=list)
    order_by: list[OrderBy] = Field(default_factory=list)
    group_by: list[str] = Field(default_factory=list)
    having: list[FilterCondition] = Field(default_factory=list)
    joins: list[JoinSpec] = Field(default_factory=list)
    limit: int | None = Field(default=None, ge=0)
    offset: int = Field(default=0, ge=0)
    include_total_count: bool = False

    @field_validator("filters", "having", mode="before")
    @classmethod
    def _normalize_filters(cls, value: Any) -> list[FilterCondition]:
        return normalize_filters(value)

    @field_validator("order_by", mode="before")
    @classmethod
    def _parse_order(cls, value: Any) -> list[OrderBy]:
        if value is None:
            return []
        if isinstance(value, (str, dict)):
            value = [value]
        return [OrderBy.parse(item) for item in value]


class WriteOptions(_OptionsModel):
    """Options accepted by ``write_data``."""

    mode: WriteMode = WriteMode.INSERT
    batch_size: int = Field(default=1_000, ge=1)
    conflict_columns: list[str] = Field(default_factory=list)
    update_columns: list[str] | None = None
    where_conditions: list[FilterCondition] = Field(default_factory=list)
    returning: list[str] | None = None
    on_conflict: OnConflict = OnConflict.ERROR
    validate_schema: bool = False
    transaction: bool = False

    @field_validator("where_conditions", mode="before")
    @classmethod
    def _normalize_where(cls, value: Any) -> list[FilterCondition]:
        return normalize_filters(value)


class DiscoveryOptions(_OptionsModel):
    """Options accepted by ``discover_schemas``."""

    namespaces: list[str] | None = None
    name_pattern: str | None = None
    include_views: bool = True
    include_functions: bool = False
    include_sequences: bool = False
    include_indexes: bool = False
    limit: int | None = Field(default=None, ge=1)


def parse_options(model: type[OptionsT], options: OptionsT | dict[str, Any] | None) -> OptionsT:
    """Validate adapter call options, surfacing problems as :class:`QueryError`."""

    if options is None:
        return model()
    if isinstance(options, model):
        return options
    try:
        return model.model_validate(options)
    except (PydanticValidationError, ValueError) as exc:
        raise QueryError(f"Invalid {model.__name__}: {exc}") from exc


class Transaction(ABC):
    """A unit of work bound to a single connection."""

    @abstractmethod
    async def commit(self) -> None:
        """Commit and release the underlying connection."""

    @abstractmethod
    async def rollback(self) -> None:
        """Roll back and release the underlying connection."""

    @abstractmethod
    async def execute_query(self, sql: str, params: Sequence[Any] | None = None) -> QueryResult:
        """Run a statement inside the transaction."""

    async def __aenter__(self) -> Transaction:
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        if exc_type is None:
            await self.commit()
        else:
            await self.rollback()


@dataclass(slots=True)
class _OperationStats:
    count: int = 0
    errors: int = 0
    total_time_ms: float = 0.0


@dataclass(slots=True)
class AdapterMetrics:
    """Per-operation counters kept by every adapter."""

    operations: dict[str, _OperationStats] = field(default_factory=dict)
    records_read: int = 0
    records_written: int = 0

    def record(self, operation: str, duration_ms: float, *, failed: bool) -> None:
        stats = self.operations.setdefault(operation, _OperationStats())
        stats.count += 1
        stats.total_time_ms += duration_ms
        if failed:
            stats.errors += 1


class BaseAdapter(ABC):
    """
    Abstract base class for all system adapters.

    Public operations check capabilities and supported operations before any
    side effect, then delegate to protected ``_`` hooks implemented by each
    concrete adapter.
    """

    adapter_type: ClassVar[str] = "base"
    capabilities: ClassVar[AdapterCapabilities] = AdapterCapabilities()
    supported_operations: ClassVar[frozenset[Operation]] = frozenset()
    default_namespace: ClassVar[str] = ""

    def __init__(
        self,
        config: dict[str, Any] | None = None,
        *,
        pool_manager: ConnectionPoolManager | None = None,
        events: EventBus | None = None,
    ) -> None:
        """
        Initialize the adapter with configuration.

        Args:
            config: Adapter-specific configuration dictionary
            pool_manager: Pool manager backing the adapter's connections
            events: Event bus receiving adapter lifecycle events
        """
        self.config = dict(config or {})
        self.source_id = str(self.config.get("source_id", self.adapter_type))
        self.status = ConnectionStatus.DISCONNECTED
        self._pool_manager = pool_manager
        self.events = events or get_event_bus()
        self.metrics = AdapterMetrics()

        ttl = self.config.get("schema_cache_ttl", get_settings().schema_cache_ttl)
        self._schema_cache: TTLCache[str, list[Schema]] | None = (
            TTLCache(maxsize=128, ttl=ttl) if ttl and ttl > 0 else None
        )

    @property
    def pool_manager(self) -> ConnectionPoolManager:
        if self._pool_manager is None:
            self._pool_manager = get_pool_manager()
        return self._pool_manager

    @property
    def is_connected(self) -> bool:
        return self.status is ConnectionStatus.CONNECTED

    @property
    def pool_name(self) -> str | None:
        """Name of the pool backing this adapter's connections, if it uses one."""

        return None

    def shares_connections_with(self, other: BaseAdapter) -> bool:
        """Return True when both adapters draw connections from the same pool."""

        return (
            self.pool_name is not None
            and self.pool_name == other.pool_name
            and self.pool_manager is other.pool_manager
        )

    # ----------------------------------------------------------- capabilities
    def has_capability(self, name: str) -> bool:
        """Return True when the capability flag ``name`` is set."""

        return bool(getattr(self.capabilities, name, False))

    def supports_operation(self, operation: Operation | str) -> bool:
        """Return True when ``operation`` is listed as supported."""

        try:
            return Operation(operation) in self.supported_operations
        except ValueError:
            return False

    def require_capability(self, name: str, operation: str) -> None:
        """Raise :class:`UnsupportedOperationError` when ``name`` is missing."""

        if not self.has_capability(name):
            raise UnsupportedOperationError(
                self.adapter_type, operation, f"capability '{name}' is not available"
            )

    def require_operation(self, operation: Operation | str) -> None:
        """Raise :class:`UnsupportedOperationError` when ``operation`` is not supported."""

        if not self.supports_operation(operation):
            raise UnsupportedOperationError(self.adapter_type, str(Operation(operation).value))

    def require_write_mode(self, mode: WriteMode | str) -> None:
        """Check every operation a write mode needs."""

        for operation in WRITE_MODE_OPERATIONS[WriteMode(mode)]:
            self.require_operation(operation)

    def get_capabilities(self) -> dict[str, bool]:
        return self.capabilities.to_dict()

    def get_supported_operations(self) -> list[str]:
        return sorted(operation.value for operation in self.supported_operations)

    # --------------------------------------------------------------- contract
    @abstractmethod
    async def connect(self) -> None:
        """
        Establish the adapter's connection pool.

        Raises:
            ConnectionFailedError: If the system cannot be reached
        """

    @abstractmethod
    async def disconnect(self) -> None:
        """Release every resource held by the adapter; safe to call repeatedly."""

    @abstractmethod
    async def test_connection(self) -> bool:
        """Run a non-destructive liveness check."""

    async def get_system_metadata(self) -> dict[str, Any]:
        """Return server identity, version and limits."""

        raise UnsupportedOperationError(self.adapter_type, "get_system_metadata")

    async def discover_schemas(
        self,
        options: DiscoveryOptions | dict[str, Any] | None = None,
        *,
        refresh: bool = False,
    ) -> list[Schema]:
        """Discover schemas ordered by (namespace, name); cached with a TTL."""

        self.require_capability("schema_discovery", "discover_schemas")
        opts = parse_options(DiscoveryOptions, options)
        cache_key = opts.model_dump_json()
        if self._schema_cache is not None and not refresh:
            cached = self._schema_cache.get(cache_key)
            if cached is not None:
                return list(cached)

        async with self._measure("discover"):
            schemas = await self._discover_schemas(opts)
        schemas.sort(key=lambda schema: (schema.namespace, schema.name))

        if self._schema_cache is not None:
            self._schema_cache[cache_key] = schemas
        return list(schemas)

    async def discover_catalog(
        self,
        options: DiscoveryOptions | dict[str, Any] | None = None,
        *,
        refresh: bool = False,
    ) -> list[Namespace]:
        """Group discovered schemas by namespace, adding routines when requested."""

        opts = parse_options(DiscoveryOptions, options)
        schemas = await self.discover_schemas(opts, refresh=refresh)
        namespaces: dict[str, Namespace] = {}
        for schema in schemas:
            namespaces.setdefault(schema.namespace, Namespace(name=schema.namespace)).schemas.append(
                schema
            )
        if opts.include_functions or opts.include_sequences:
            routines = await self._discover_routines(opts)
            for namespace_name, (functions, sequences) in routines.items():
                namespace = namespaces.setdefault(namespace_name, Namespace(name=namespace_name))
                namespace.functions = functions if opts.include_functions else []
                namespace.sequences = sequences if opts.include_sequences else []
        return [namespaces[name] for name in sorted(namespaces)]

    async def get_schema(self, reference: str | Schema, *, refresh: bool = False) -> Schema:
        """Return the discovered schema for ``"namespace.name"``."""

        if isinstance(reference, Schema) and reference.columns and not refresh:
            return reference
        namespace, name = parse_schema_reference(reference, self.default_namespace)
        pattern = name.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        schemas = await self.discover_schemas(
            DiscoveryOptions(namespaces=[namespace], name_pattern=pattern),
            refresh=refresh,
        )
        for schema in schemas:
            if schema.namespace == namespace and schema.name == name:
                return schema
        raise QueryError(f"Schema '{namespace}.{name}' was not found")

    async def read_data(
        self,
        schema: str | Schema,
        options: ReadOptions | dict[str, Any] | None = None,
    ) -> ReadResult:
        """Read rows from ``schema`` applying filters, ordering and pagination."""

        self.require_operation(Operation.READ)
        opts = parse_options(ReadOptions, options)
        async with self._measure("read"):
            result = await self._read_data(schema, opts)
        self.metrics.records_read += result.row_count
        return result

    async def iter_batches(
        self,
        schema: str | Schema,
        options: ReadOptions | dict[str, Any] | None = None,
        *,
        batch_size: int = 1_000,
        hold_connection: bool = True,
    ) -> AsyncIterator[list[dict[str, Any]]]:
        """
        Yield rows in pages of at most ``batch_size`` using limit/offset paging.

        ``hold_connection=False`` asks adapters that stream through a
        connection-bound cursor to page with independent reads instead; every
        page here is already an independent read.
        """

        self.require_operation(Operation.READ)
        opts = parse_options(ReadOptions, options)
        remaining = opts.limit
        offset = opts.offset
        while remaining is None or remaining > 0:
            page_size = batch_size if remaining is None else min(batch_size, remaining)
            page = await self.read_data(
                schema,
                opts.model_copy(
                    update={"limit": page_size, "offset": offset, "include_total_count": False}
                ),
            )
            if page.rows:
                yield page.rows
            if len(page.rows) < page_size:
                return
            offset += len(page.rows)
            if remaining is not None:
                remaining -= len(page.rows)

    async def count_records(
        self,
        schema: str | Schema,
        options: ReadOptions | dict[str, Any] | None = None,
    ) -> int | None:
        """Return the number of rows matching ``options`` when the adapter can tell."""

        opts = parse_options(ReadOptions, options)
        result = await self.read_data(
            schema, opts.model_copy(update={"limit": 0, "offset": 0, "include_total_count": True})
        )
        return result.total_count

    async def write_data(
        self,
        schema: str | Schema,
        data: Sequence[dict[str, Any]],
        options: WriteOptions | dict[str, Any] | None = None,
    ) -> WriteResult:
        """Write rows in batches of at most ``batch_size`` using the requested mode."""

        opts = parse_options(WriteOptions, options)
        self.require_write_mode(opts.mode)
        if opts.transaction:
            self.require_capability("transactions", "write_data(transaction=True)")
        if not self.has_capability("batch_operations") and opts.batch_size > 1:
            opts = opts.model_copy(update={"batch_size": 1})
        if not data:
            return WriteResult(written=0, data=[] if opts.returning else None, metadata={"batches": 0})

        async with self._measure("write"):
            result = await self._write_data(schema, list(data), opts)
        self.metrics.records_written += result.written
        return result

    async def execute_query(self, sql: str, params: Sequence[Any] | None = None) -> QueryResult:
        """Run a raw statement with positional parameters."""

        self.require_capability("custom_query", "execute_query")
        async with self._measure("query"):
            return await self._execute_query(sql, list(params or []))

    async def begin_transaction(self) -> Transaction:
        """Start a transaction bound to one pooled connection."""

        self.require_capability("transactions", "begin_transaction")
        return await self._begin_transaction()

    async def process_batch(
        self,
        items: Sequence[T],
        processor: Callable[[list[T]], Awaitable[Any]],
        batch_size: int = 100,
    ) -> list[Any]:
        """Run ``processor`` over consecutive slices of ``items``, publishing progress."""

        results: list[Any] = []
        total = len(items)
        for start in range(0, total, batch_size):
            batch = list(items[start : start + batch_size])
            results.append(await processor(batch))
            processed = min(start + batch_size, total)
            self.events.emit(
                EventType.ADAPTER_BATCH_PROGRESS,
                self.source_id,
                adapter_type=self.adapter_type,
                processed=processed,
                total=total,
                percent=round(processed / total * 100) if total else 100,
            )
        return results

    async def cleanup(self) -> None:
        """Disconnect and drop cached schemas; safe to call multiple times."""

        if self._schema_cache is not None:
            self._schema_cache.clear()
        if self.status is not ConnectionStatus.DISCONNECTED:
            await self.disconnect()

    def get_metrics(self) -> dict[str, Any]:
        """Return per-operation counters and averages."""

        operations = {
            name: {
                "count": stats.count,
                "errors": stats.errors,
                "total_time_ms": round(stats.total_time_ms, 3),
                "average_time_ms": round(stats.total_time_ms / stats.count, 3) if stats.count else 0.0,
            }
            for name, stats in self.metrics.operations.items()
        }
        return {
            "adapter_type": self.adapter_type,
            "status": self.status.value,
            "records_read": self.metrics.records_read,
            "records_written": self.metrics.records_written,
            "operations": operations,
        }

    async def __aenter__(self) -> BaseAdapter:
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.cleanup()

    # ------------------------------------------------------------------ hooks
    async def _discover_schemas(self, options: DiscoveryOptions) -> list[Schema]:
        raise UnsupportedOperationError(self.adapter_type, "discover_schemas")

    async def _discover_routines(
        self, options: DiscoveryOptions
    ) -> dict[str, tuple[list[str], list[str]]]:
        return {}

    async def _read_data(self, schema: str | Schema, options: ReadOptions) -> ReadResult:
        raise UnsupportedOperationError(self.adapter_type, "read_data")

    async def _write_data(
        self,
        schema: str | Schema,
        data: list[dict[str, Any]],
        options: WriteOptions,
    ) -> WriteResult:
        raise UnsupportedOperationError(self.adapter_type, "write_data")

    async def _execute_query(self, sql: str, params: list[Any]) -> QueryResult:
        raise UnsupportedOperationError(self.adapter_type, "execute_query")

    async def _begin_transaction(self) -> Transaction:
        raise UnsupportedOperationError(self.adapter_type, "begin_transaction")

    # ---------------------------------------------------------------- helpers
    def _set_status(self, status: ConnectionStatus) -> None:
        self.status = status

    @asynccontextmanager
    async def _measure(self, operation: str) -> AsyncIterator[None]:
        started = time.perf_counter()
        failed = False
        try:
            yield
        except FlowBridgeError as exc:
            failed = True
            record_adapter_error(self.adapter_type, operation, exc.kind)
            raise
        except Exception:
            failed = True
            record_adapter_error(self.adapter_type, operation, "internal")
            raise
        finally:
            elapsed = time.perf_counter() - started
            self.metrics.record(operation, elapsed * 1000, failed=failed)
            observe_adapter_operation(self.adapter_type, operation, elapsed)
