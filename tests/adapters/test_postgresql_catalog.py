"""Tests for PostgreSQL catalog decoding and type mapping."""

import pytest

from flowbridge.adapters.postgresql.catalog import assemble_schemas, decode_typmod, map_native_type, relkinds_for
from flowbridge.adapters.types import SchemaKind, UniversalType


@pytest.mark.parametrize(
    ("native", "expected"),
    [
        ("int4", UniversalType.INTEGER),
        ("bigint", UniversalType.LONG),
        ("numeric(10,2)", UniversalType.DECIMAL),
        ("double precision", UniversalType.DOUBLE),
        ("character varying", UniversalType.STRING),
        ("uuid", UniversalType.STRING),
        ("timestamptz", UniversalType.TIMESTAMP),
        ("timestamp without time zone", UniversalType.DATETIME),
        ("jsonb", UniversalType.JSON),
        ("bytea", UniversalType.BINARY),
        ("_int4", UniversalType.ARRAY),
        ("text[]", UniversalType.ARRAY),
        ("interval", UniversalType.STRING),
    ],
)
def test_map_native_type(native, expected):
    """Native types map onto the universal lattice; unknown types fall back to STRING."""
    assert map_native_type(native) is expected


def test_decode_typmod():
    """Lengths and numeric precision are unpacked from the typmod."""
    assert decode_typmod("varchar", 104) == (100, None, None)
    assert decode_typmod("numeric", ((10 << 16) | 2) + 4) == (None, 10, 2)
    assert decode_typmod("int4", -1) == (None, None, None)
    assert decode_typmod("text", None) == (None, None, None)


def test_relkinds_for():
    """Views are listed only when requested."""
    assert relkinds_for(False) == ["r", "p", "f"]
    assert relkinds_for(True) == ["r", "p", "f", "v", "m"]


def test_assemble_schemas():
    """Catalog rows combine into ordered schemas with keys, references and indexes."""
    tables = [
        {"oid": 2, "namespace": "sales", "name": "orders", "relkind": "p", "comment": "Orders",
         "estimated_rows": 10, "definition": None},
        {"oid": 1, "namespace": "public", "name": "active_users", "relkind": "v", "comment": None,
         "estimated_rows": 0, "definition": "SELECT 1"},
    ]
    columns = [
        {"table_oid": 2, "name": "customer_id", "ordinal_position": 2, "type_name": "int8",
         "formatted_type": "bigint", "typmod": -1, "nullable": True, "default_value": None, "comment": None},
        {"table_oid": 2, "name": "id", "ordinal_position": 1, "type_name": "int4", "formatted_type": "integer",
         "typmod": -1, "nullable": False, "default_value": "nextval('orders_id_seq')", "comment": None},
        {"table_oid": 2, "name": "code", "ordinal_position": 3, "type_name": "varchar",
         "formatted_type": "character varying(20)", "typmod": 24, "nullable": False, "default_value": None,
         "comment": "Order code"},
    ]
    primary_keys = [{"table_oid": 2, "column_name": "id", "position": 1}]
    foreign_keys = [
        {"table_oid": 2, "name": "orders_customer_fk", "column_name": "customer_id",
         "referenced_namespace": "public", "referenced_table": "customers", "referenced_column": "id",
         "on_delete": "c", "on_update": "a"},
    ]
    indexes = [{"table_oid": 2, "name": "orders_code_idx", "is_unique": True, "method": "btree", "columns": ["code"]}]

    schemas = assemble_schemas("pg:app", tables, columns, primary_keys, foreign_keys, indexes)

    assert [schema.qualified_name for schema in schemas] == ["public.active_users", "sales.orders"]
    view, orders = schemas
    assert view.kind is SchemaKind.VIEW
    assert view.definition == "SELECT 1"
    assert orders.kind is SchemaKind.PARTITIONED
    assert orders.column_names == ["id", "customer_id", "code"]
    assert orders.primary_keys == ["id"]
    assert orders.column("id").primary_key is True
    assert orders.column("code").max_length == 20
    customer = orders.column("customer_id")
    assert customer.universal_type is UniversalType.LONG
    assert customer.foreign_keys[0].on_delete == "cascade"
    assert orders.indexes[0].unique is True
    assert orders.to_dict()["columns"][0]["universal_type"] == "INTEGER"
