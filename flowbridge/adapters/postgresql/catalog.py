"""System-catalog discovery queries and native type mapping for PostgreSQL."""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable, Mapping
from typing import Any

from ..types import Column, ForeignKey, Index, Schema, SchemaKind, UniversalType

TABLES_QUERY = """
SELECT c.oid AS oid,
       n.nspname AS namespace,
       c.relname AS name,
       c.relkind::text AS relkind,
       obj_description(c.oid, 'pg_class') AS comment,
       GREATEST(c.reltuples, 0)::bigint AS estimated_rows,
       CASE WHEN c.relkind IN ('v', 'm') THEN pg_get_viewdef(c.oid, true) END AS definition
FROM pg_class c
JOIN pg_namespace n ON n.oid = c.relnamespace
WHERE c.relkind::text = ANY($1::text[])
  AND n.nspname NOT IN ('pg_catalog', 'information_schema')
  AND n.nspname NOT LIKE 'pg\\_toast%'
  AND ($2::text[] IS NULL OR n.nspname = ANY($2::text[]))
  AND ($3::text IS NULL OR c.relname LIKE $3::text)
ORDER BY n.nspname, c.relname
LIMIT $4
"""

COLUMNS_QUERY = """
SELECT a.attrelid AS table_oid,
       a.attname AS name,
       a.attnum AS ordinal_position,
       t.typname AS type_name,
       format_type(a.atttypid, a.atttypmod) AS formatted_type,
       a.atttypmod AS typmod,
       NOT a.attnotnull AS nullable,
       pg_get_expr(d.adbin, d.adrelid) AS default_value,
       col_description(a.attrelid, a.attnum) AS comment
FROM pg_attribute a
JOIN pg_type t ON t.oid = a.atttypid
LEFT JOIN pg_attrdef d ON d.adrelid = a.attrelid AND d.adnum = a.attnum
WHERE a.attrelid = ANY($1::oid[])
  AND a.attnum > 0
  AND NOT a.attisdropped
ORDER BY a.attrelid, a.attnum
"""

PRIMARY_KEYS_QUERY = """
SELECT i.indrelid AS table_oid,
       a.attname AS column_name,
       k.ord AS position
FROM pg_index i
CROSS JOIN LATERAL unnest(i.indkey::int2[]) WITH ORDINALITY AS k(attnum, ord)
JOIN pg_attribute a ON a.attrelid = i.indrelid AND a.attnum = k.attnum
WHERE i.indrelid = ANY($1::oid[])
  AND i.indisprimary
ORDER BY i.indrelid, k.ord
"""

FOREIGN_KEYS_QUERY = """
SELECT con.conrelid AS table_oid,
       con.conname AS name,
       src.attname AS column_name,
       rn.nspname AS referenced_namespace,
       rc.relname AS referenced_table,
       ref.attname AS referenced_column,
       con.confdeltype::text AS on_delete,
       con.confupdtype::text AS on_update
FROM pg_constraint con
CROSS JOIN LATERAL unnest(con.conkey, con.confkey) AS k(src_attnum, ref_attnum)
JOIN pg_attribute src ON src.attrelid = con.conrelid AND src.attnum = k.src_attnum
JOIN pg_class rc ON rc.oid = con.confrelid
JOIN pg_namespace rn ON rn.oid = rc.relnamespace
JOIN pg_attribute ref ON ref.attrelid = con.confrelid AND ref.attnum = k.ref_attnum
WHERE con.contype = 'f'
  AND con.conrelid = ANY($1::oid[])
ORDER BY con.conrelid, con.conname, src.attnum
"""

INDEXES_QUERY = """
SELECT i.indrelid AS table_oid,
       ic.relname AS name,
       i.indisunique AS is_unique,
       am.amname AS method,
       array_agg(a.attname ORDER BY k.ord) AS columns
FROM pg_index i
JOIN pg_class ic ON ic.oid = i.indexrelid
JOIN pg_am am ON am.oid = ic.relam
CROSS JOIN LATERAL unnest(i.indkey::int2[]) WITH ORDINALITY AS k(attnum, ord)
JOIN pg_attribute a ON a.attrelid = i.indrelid AND a.attnum = k.attnum
WHERE i.indrelid = ANY($1::oid[])
  AND NOT i.indisprimary
GROUP BY i.indrelid, ic.relname, i.indisunique, am.amname
ORDER BY i.indrelid, ic.relname
"""

FUNCTIONS_QUERY = """
SELECT n.nspname AS namespace, p.proname AS name
FROM pg_proc p
JOIN pg_namespace n ON n.oid = p.pronamespace
WHERE n.nspname NOT IN ('pg_catalog', 'information_schema')
  AND ($1::text[] IS NULL OR n.nspname = ANY($1::text[]))
ORDER BY n.nspname, p.proname
"""

SEQUENCES_QUERY = """
SELECT n.nspname AS namespace, c.relname AS name
FROM pg_class c
JOIN pg_namespace n ON n.oid = c.relnamespace
WHERE c.relkind = 'S'
  AND ($1::text[] IS NULL OR n.nspname = ANY($1::text[]))
ORDER BY n.nspname, c.relname
"""

SYSTEM_METADATA_QUERIES: dict[str, str] = {
    "version": "SELECT version()",
    "current_database": "SELECT current_database()",
    "current_user": "SELECT current_user",
    "current_schema": "SELECT current_schema()",
    "encoding": (
        "SELECT pg_encoding_to_char(encoding) FROM pg_database "
        "WHERE datname = current_database()"
    ),
    "timezone": "SHOW timezone",
    "max_connections": "SHOW max_connections",
    "database_size": "SELECT pg_database_size(current_database())",
    "database_size_pretty": "SELECT pg_size_pretty(pg_database_size(current_database()))",
}

EXTENSIONS_QUERY = """
SELECT name, installed_version
FROM pg_available_extensions
WHERE installed_version IS NOT NULL
ORDER BY name
"""

_TYPE_MAP: dict[str, UniversalType] = {
    **dict.fromkeys(
        ("int2", "int4", "smallint", "integer", "int", "serial", "serial4", "smallserial", "serial2"),
        UniversalType.INTEGER,
    ),
    **dict.fromkeys(("int8", "bigint", "bigserial", "serial8"), UniversalType.LONG),
    **dict.fromkeys(("float4", "real"), UniversalType.FLOAT),
    **dict.fromkeys(("float8", "double precision", "double"), UniversalType.DOUBLE),
    **dict.fromkeys(("numeric", "decimal", "money"), UniversalType.DECIMAL),
    **dict.fromkeys(("bool", "boolean"), UniversalType.BOOLEAN),
    **dict.fromkeys(
        (
            "text", "varchar", "character varying", "char", "character", "bpchar", "uuid", "name",
            "inet", "cidr", "macaddr", "macaddr8", "tsvector", "tsquery",
            "point", "line", "lseg", "box", "path", "polygon", "circle", "geometry", "geography",
        ),
        UniversalType.STRING,
    ),
    "date": UniversalType.DATE,
    **dict.fromkeys(
        ("time", "timetz", "time without time zone", "time with time zone"), UniversalType.TIME
    ),
    **dict.fromkeys(("timestamp", "timestamp without time zone"), UniversalType.DATETIME),
    **dict.fromkeys(("timestamptz", "timestamp with time zone"), UniversalType.TIMESTAMP),
    "bytea": UniversalType.BINARY,
    **dict.fromkeys(("json", "jsonb"), UniversalType.JSON),
    "xml": UniversalType.XML,
}

_RELKIND_MAP = {
    "r": SchemaKind.TABLE,
    "p": SchemaKind.PARTITIONED,
    "v": SchemaKind.VIEW,
    "m": SchemaKind.VIEW,
    "f": SchemaKind.TABLE,
}

_FK_ACTIONS = {
    "a": "no action",
    "r": "restrict",
    "c": "cascade",
    "n": "set null",
    "d": "set default",
}

_LENGTH_TYPES = frozenset({"varchar", "bpchar", "char", "character varying", "character"})
_NUMERIC_TYPES = frozenset({"numeric", "decimal"})


def map_native_type(type_name: str) -> UniversalType:
    """Map a PostgreSQL type name to the universal type lattice.

    Array types (``_int4``, ``integer[]``) map to ARRAY; unknown types such as
    ``interval`` fall back to STRING.
    """

    name = type_name.strip().lower()
    if name.startswith("_") or name.endswith("[]"):
        return UniversalType.ARRAY
    base = name.split("(", 1)[0].strip()
    return _TYPE_MAP.get(base, UniversalType.STRING)


def decode_typmod(type_name: str, typmod: int | None) -> tuple[int | None, int | None, int | None]:
    """Return ``(max_length, precision, scale)`` encoded in an attribute typmod."""

    if typmod is None or typmod < 0:
        return None, None, None
    if type_name in _LENGTH_TYPES and typmod >= 4:
        return typmod - 4, None, None
    if type_name in _NUMERIC_TYPES and typmod >= 4:
        packed = typmod - 4
        return None, (packed >> 16) & 0xFFFF, packed & 0xFFFF
    return None, None, None


def relkind_to_kind(relkind: str) -> SchemaKind:
    return _RELKIND_MAP.get(relkind, SchemaKind.TABLE)


def relkinds_for(include_views: bool) -> list[str]:
    """Relation kinds listed by discovery; materialized views report as views."""

    kinds = ["r", "p", "f"]
    if include_views:
        kinds.extend(["v", "m"])
    return kinds


def assemble_schemas(
    source_id: str,
    tables: Iterable[Mapping[str, Any]],
    columns: Iterable[Mapping[str, Any]],
    primary_keys: Iterable[Mapping[str, Any]],
    foreign_keys: Iterable[Mapping[str, Any]],
    indexes: Iterable[Mapping[str, Any]] = (),
) -> list[Schema]:
    """Combine catalog rows into :class:`Schema` objects keyed by relation oid."""

    pk_by_table: dict[Any, list[str]] = defaultdict(list)
    for row in primary_keys:
        pk_by_table[row["table_oid"]].append(row["column_name"])

    fk_by_table: dict[Any, list[ForeignKey]] = defaultdict(list)
    for row in foreign_keys:
        fk_by_table[row["table_oid"]].append(
            ForeignKey(
                name=row["name"],
                column=row["column_name"],
                referenced_namespace=row["referenced_namespace"],
                referenced_table=row["referenced_table"],
                referenced_column=row["referenced_column"],
                on_delete=_FK_ACTIONS.get(row["on_delete"], "no action"),
                on_update=_FK_ACTIONS.get(row["on_update"], "no action"),
            )
        )

    indexes_by_table: dict[Any, list[Index]] = defaultdict(list)
    for row in indexes:
        indexes_by_table[row["table_oid"]].append(
            Index(
                name=row["name"],
                columns=list(row["columns"] or []),
                unique=bool(row["is_unique"]),
                method=row["method"],
            )
        )

    columns_by_table: dict[Any, list[Column]] = defaultdict(list)
    for row in columns:
        oid = row["table_oid"]
        type_name = row["type_name"]
        max_length, precision, scale = decode_typmod(type_name, row["typmod"])
        primary = row["name"] in pk_by_table.get(oid, ())
        columns_by_table[oid].append(
            Column(
                name=row["name"],
                ordinal_position=int(row["ordinal_position"]),
                native_type=row["formatted_type"] or type_name,
                universal_type=map_native_type(type_name),
                nullable=bool(row["nullable"]),
                default_value=row["default_value"],
                primary_key=primary,
                foreign_keys=[fk for fk in fk_by_table.get(oid, ()) if fk.column == row["name"]],
                max_length=max_length,
                precision=precision,
                scale=scale,
                comment=row["comment"],
            )
        )

    schemas = []
    for row in tables:
        oid = row["oid"]
        schema_columns = sorted(columns_by_table.get(oid, []), key=lambda column: column.ordinal_position)
        schemas.append(
            Schema(
                source_id=source_id,
                namespace=row["namespace"],
                name=row["name"],
                kind=relkind_to_kind(row["relkind"]),
                columns=schema_columns,
                primary_keys=list(pk_by_table.get(oid, [])),
                foreign_keys=list(fk_by_table.get(oid, [])),
                indexes=list(indexes_by_table.get(oid, [])),
                comment=row["comment"],
                estimated_rows=row["estimated_rows"],
                definition=row["definition"],
            )
        )
    schemas.sort(key=lambda schema: (schema.namespace, schema.name))
    return schemas
