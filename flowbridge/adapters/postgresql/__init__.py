"""PostgreSQL reference adapter."""

from .adapter import PostgreSQLAdapter, PostgreSQLConfig, PostgreSQLTransaction, translate_error
from .catalog import map_native_type

__all__ = [
    "PostgreSQLAdapter",
    "PostgreSQLConfig",
    "PostgreSQLTransaction",
    "map_native_type",
    "translate_error",
]
