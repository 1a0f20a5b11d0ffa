"""Value types shared by every adapter: universal types, schemas and results."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class UniversalType(str, Enum):
    """Adapter-independent type lattice every native type maps onto."""

    STRING = "STRING"
    INTEGER = "INTEGER"
    LONG = "LONG"
    FLOAT = "FLOAT"
    DOUBLE = "DOUBLE"
    DECIMAL = "DECIMAL"
    BOOLEAN = "BOOLEAN"
    DATE = "DATE"
    TIME = "TIME"
    DATETIME = "DATETIME"
    TIMESTAMP = "TIMESTAMP"
    BINARY = "BINARY"
    JSON = "JSON"
    XML = "XML"
    ARRAY = "ARRAY"


class SchemaKind(str, Enum):
    """Kind of record container described by a :class:`Schema`."""

    TABLE = "table"
    VIEW = "view"
    PARTITIONED = "partitioned"
    COLLECTION = "collection"
    BUCKET = "bucket"


@dataclass(slots=True)
class ForeignKey:
    """A single-column reference to another container."""

    name: str
    column: str
    referenced_namespace: str
    referenced_table: str
    referenced_column: str
    on_delete: str = "no action"
    on_update: str = "no action"

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "column": self.column,
            "referenced_namespace": self.referenced_namespace,
            "referenced_table": self.referenced_table,
            "referenced_column": self.referenced_column,
            "on_delete": self.on_delete,
            "on_update": self.on_update,
        }


@dataclass(slots=True)
class Index:
    """A secondary index."""

    name: str
    columns: list[str]
    unique: bool = False
    method: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "columns": list(self.columns),
            "unique": self.unique,
            "method": self.method,
        }


@dataclass(slots=True)
class Column:
    """A column of a discovered schema."""

    name: str
    ordinal_position: int
    native_type: str
    universal_type: UniversalType
    nullable: bool = True
    default_value: Any = None
    primary_key: bool = False
    foreign_keys: list[ForeignKey] = field(default_factory=list)
    max_length: int | None = None
    precision: int | None = None
    scale: int | None = None
    comment: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "ordinal_position": self.ordinal_position,
            "native_type": self.native_type,
            "universal_type": self.universal_type.value,
            "nullable": self.nullable,
            "default_value": self.default_value,
            "primary_key": self.primary_key,
            "foreign_keys": [fk.to_dict() for fk in self.foreign_keys],
            "max_length": self.max_length,
            "precision": self.precision,
            "scale": self.scale,
            "comment": self.comment,
        }


@dataclass(slots=True)
class Schema:
    """Discovered description of a container of records."""

    source_id: str
    namespace: str
    name: str
    kind: SchemaKind = SchemaKind.TABLE
    columns: list[Column] = field(default_factory=list)
    primary_keys: list[str] = field(default_factory=list)
    foreign_keys: list[ForeignKey] = field(default_factory=list)
    indexes: list[Index] = field(default_factory=list)
    comment: str | None = None
    estimated_rows: int | None = None
    definition: str | None = None

    @property
    def qualified_name(self) -> str:
        return f"{self.namespace}.{self.name}" if self.namespace else self.name

    def column(self, name: str) -> Column | None:
        """Return the column called ``name`` if present."""

        for column in self.columns:
            if column.name == name:
                return column
        return None

    @property
    def column_names(self) -> list[str]:
        return [column.name for column in self.columns]

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_id": self.source_id,
            "namespace": self.namespace,
            "name": self.name,
            "kind": self.kind.value,
            "columns": [column.to_dict() for column in self.columns],
            "primary_keys": list(self.primary_keys),
            "foreign_keys": [fk.to_dict() for fk in self.foreign_keys],
            "indexes": [index.to_dict() for index in self.indexes],
            "comment": self.comment,
            "estimated_rows": self.estimated_rows,
            "definition": self.definition,
        }


@dataclass(slots=True)
class Namespace:
    """Schemas of a namespace plus optional routine and sequence names."""

    name: str
    schemas: list[Schema] = field(default_factory=list)
    functions: list[str] = field(default_factory=list)
    sequences: list[str] = field(default_factory=list)

    @property
    def tables(self) -> list[Schema]:
        return [s for s in self.schemas if s.kind is not SchemaKind.VIEW]

    @property
    def views(self) -> list[Schema]:
        return [s for s in self.schemas if s.kind is SchemaKind.VIEW]


def parse_schema_reference(reference: str | Schema, default_namespace: str) -> tuple[str, str]:
    """Split ``"namespace.name"`` (or a :class:`Schema`) into its two parts."""

    if isinstance(reference, Schema):
        return reference.namespace or default_namespace, reference.name
    namespace, _, name = reference.rpartition(".")
    return (namespace or default_namespace), name


@dataclass(slots=True)
class ReadResult:
    """Rows returned by ``read_data``."""

    rows: list[dict[str, Any]]
    row_count: int
    total_count: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class WriteResult:
    """Outcome of ``write_data``."""

    written: int
    data: list[dict[str, Any]] | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class QueryResult:
    """Outcome of ``execute_query``."""

    rows: list[dict[str, Any]]
    row_count: int
    fields: list[dict[str, Any]]
    command: str
    duration_ms: float
