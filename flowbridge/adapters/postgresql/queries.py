"""SQL builders for the PostgreSQL adapter.

Identifiers are always quoted; user data only ever travels as ``$n``
positional parameters.
"""

from __future__ import annotations

import json
import re
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from ...exceptions import QueryError
from ..base import FilterCondition, FilterOperator, OnConflict, ReadOptions, WriteMode, WriteOptions

# PostgreSQL wire protocol limit for bind parameters in one statement.
MAX_PARAMETERS = 32_767

AGGREGATE_FUNCTIONS = frozenset({"count", "sum", "avg", "min", "max", "array_agg", "string_agg"})

_AGGREGATE_PATTERN = re.compile(
    r"^\s*(?P<fn>[A-Za-z_]+)\s*\(\s*(?P<arg>\*|[\w.]+)\s*\)(?:\s+as\s+(?P<alias>\w+))?\s*$",
    re.IGNORECASE,
)
_COLUMN_PATTERN = re.compile(r"^\s*(?P<column>[\w.]+|\*)(?:\s+as\s+(?P<alias>\w+))?\s*$", re.IGNORECASE)

_COMPARISONS = {
    FilterOperator.GT: ">",
    FilterOperator.GTE: ">=",
    FilterOperator.LT: "<",
    FilterOperator.LTE: "<=",
    FilterOperator.LIKE: "LIKE",
    FilterOperator.ILIKE: "ILIKE",
    FilterOperator.REGEX: "~",
}


def quote_identifier(name: str) -> str:
    """Quote a single identifier, doubling embedded quotes."""

    if not isinstance(name, str) or not name or "\x00" in name:
        raise QueryError(f"Invalid identifier: {name!r}")
    return '"' + name.replace('"', '""') + '"'


def quote_qualified(namespace: str, name: str) -> str:
    """Return ``"namespace"."name"`` (or just ``"name"`` without a namespace)."""

    if namespace:
        return f"{quote_identifier(namespace)}.{quote_identifier(name)}"
    return quote_identifier(name)


def quote_column_ref(reference: str) -> str:
    """Quote a possibly dotted column reference such as ``alias.column``."""

    if reference == "*":
        return "*"
    parts = reference.split(".")
    if parts[-1] == "*":
        return ".".join([*(quote_identifier(p) for p in parts[:-1]), "*"])
    return ".".join(quote_identifier(part) for part in parts)


class ParameterList:
    """Collects positional parameters and hands out ``$n`` placeholders."""

    def __init__(self) -> None:
        self.values: list[Any] = []

    def add(self, value: Any) -> str:
        self.values.append(value)
        return f"${len(self.values)}"


@dataclass(slots=True)
class Statement:
    """One SQL statement with its bound parameters."""

    sql: str
    params: list[Any]
    returns_rows: bool = False
    counts_written: bool = True


def render_expression(expression: str) -> str:
    """Render a column reference or whitelisted aggregate call without alias."""

    match = _AGGREGATE_PATTERN.match(expression)
    if match:
        function = match.group("fn").lower()
        if function not in AGGREGATE_FUNCTIONS:
            raise QueryError(f"Unsupported aggregate function: {match.group('fn')}")
        argument = match.group("arg")
        return f"{function.upper()}({quote_column_ref(argument)})"
    match = _COLUMN_PATTERN.match(expression)
    if match and match.group("alias") is None:
        return quote_column_ref(match.group("column"))
    raise QueryError(f"Invalid column expression: {expression!r}")


def render_select_item(item: str) -> str:
    """Render one select-list entry, honouring ``expr AS alias``."""

    match = _AGGREGATE_PATTERN.match(item)
    if match:
        rendered = render_expression(f"{match.group('fn')}({match.group('arg')})")
        alias = match.group("alias") or f"{match.group('fn').lower()}"
        return f"{rendered} AS {quote_identifier(alias)}"
    match = _COLUMN_PATTERN.match(item)
    if not match:
        raise QueryError(f"Invalid select expression: {item!r}")
    rendered = quote_column_ref(match.group("column"))
    if match.group("alias"):
        return f"{rendered} AS {quote_identifier(match.group('alias'))}"
    return rendered


def _json_param(value: Any) -> str:
    return value if isinstance(value, str) else json.dumps(value, default=str)


def build_condition(condition: FilterCondition, params: ParameterList) -> str:
    """Translate one filter condition to a SQL predicate."""

    column = render_expression(condition.field)
    operator = condition.operator
    value = condition.value

    if operator is FilterOperator.EQ:
        if value is None:
            return f"{column} IS NULL"
        return f"{column} = {params.add(value)}"
    if operator is FilterOperator.NE:
        if value is None:
            return f"{column} IS NOT NULL"
        return f"{column} <> {params.add(value)}"
    if operator in _COMPARISONS:
        return f"{column} {_COMPARISONS[operator]} {params.add(value)}"
    if operator is FilterOperator.IN:
        return f"{column} = ANY({params.add(list(value))})"
    if operator is FilterOperator.BETWEEN:
        low, high = value
        return f"{column} BETWEEN {params.add(low)} AND {params.add(high)}"
    if operator is FilterOperator.JSON_CONTAINS:
        return f"{column} @> {params.add(_json_param(value))}::jsonb"
    if operator is FilterOperator.JSON_PATH:
        return f"jsonb_path_exists({column}, {params.add(str(value))}::jsonpath)"
    raise QueryError(f"Unsupported filter operator: {operator}")


def build_predicate(conditions: Sequence[FilterCondition], params: ParameterList) -> str:
    """AND together every condition; empty input yields an empty string."""

    return " AND ".join(build_condition(condition, params) for condition in conditions)


def _build_joins(table_ref: str, options: ReadOptions) -> list[str]:
    clauses: list[str] = []
    for join in options.joins:
        namespace, _, name = join.table.rpartition(".")
        target = quote_qualified(namespace, name)
        alias = quote_identifier(join.alias) if join.alias else target
        if not join.on:
            raise QueryError(f"Join on {join.table} requires at least one column pair")
        pairs = []
        for left, right in join.on.items():
            left_ref = quote_column_ref(left) if "." in left else f"{table_ref}.{quote_identifier(left)}"
            right_ref = quote_column_ref(right) if "." in right else f"{alias}.{quote_identifier(right)}"
            pairs.append(f"{left_ref} = {right_ref}")
        alias_clause = f" AS {alias}" if join.alias else ""
        clauses.append(f"{join.type.upper()} JOIN {target}{alias_clause} ON {' AND '.join(pairs)}")
    return clauses


def _build_body(table_ref: str, options: ReadOptions, params: ParameterList) -> str:
    select = ", ".join(render_select_item(item) for item in options.select) if options.select else "*"
    parts = [f"SELECT {select} FROM {table_ref}"]
    parts.extend(_build_joins(table_ref, options))
    where = build_predicate(options.filters, params)
    if where:
        parts.append(f"WHERE {where}")
    if options.group_by:
        parts.append("GROUP BY " + ", ".join(quote_column_ref(column) for column in options.group_by))
    having = build_predicate(options.having, params)
    if having:
        if not options.group_by:
            raise QueryError("HAVING requires group_by")
        parts.append(f"HAVING {having}")
    return " ".join(parts)


def build_select_query(table_ref: str, options: ReadOptions) -> tuple[str, list[Any]]:
    """Build the SELECT for ``read_data``."""

    params = ParameterList()
    parts = [_build_body(table_ref, options, params)]
    if options.order_by:
        terms = []
        for term in options.order_by:
            rendered = f"{render_expression(term.column)} {term.direction.upper()}"
            if term.nulls:
                rendered += f" NULLS {term.nulls.upper()}"
            terms.append(rendered)
        parts.append("ORDER BY " + ", ".join(terms))
    if options.limit is not None:
        parts.append(f"LIMIT {params.add(options.limit)}")
    if options.offset:
        parts.append(f"OFFSET {params.add(options.offset)}")
    return " ".join(parts), params.values


def build_count_query(table_ref: str, options: ReadOptions) -> tuple[str, list[Any]]:
    """Build a total-count query ignoring ordering and pagination."""

    params = ParameterList()
    body = _build_body(table_ref, options, params)
    return f"SELECT COUNT(*) AS total FROM ({body}) AS counted", params.values


def _collect_columns(rows: Sequence[dict[str, Any]]) -> list[str]:
    columns: list[str] = []
    seen: set[str] = set()
    for row in rows:
        for key in row:
            if key not in seen:
                seen.add(key)
                columns.append(key)
    return columns


def _returning_clause(options: WriteOptions) -> str:
    if not options.returning:
        return ""
    if options.returning == ["*"]:
        return " RETURNING *"
    return " RETURNING " + ", ".join(quote_identifier(column) for column in options.returning)


def _parameter_chunks(rows: Sequence[dict[str, Any]], width: int) -> list[Sequence[dict[str, Any]]]:
    per_statement = max(1, MAX_PARAMETERS // max(width, 1))
    return [rows[start : start + per_statement] for start in range(0, len(rows), per_statement)]


def _conflict_clause(options: WriteOptions, columns: list[str]) -> str:
    if options.mode is WriteMode.UPSERT or options.on_conflict is OnConflict.UPDATE:
        if not options.conflict_columns:
            raise QueryError(f"{options.mode.value} with conflict updates requires conflict_columns")
        target = ", ".join(quote_identifier(column) for column in options.conflict_columns)
        updates = options.update_columns
        if updates is None:
            updates = [column for column in columns if column not in options.conflict_columns]
        if not updates:
            return f" ON CONFLICT ({target}) DO NOTHING"
        assignments = ", ".join(
            f"{quote_identifier(column)} = EXCLUDED.{quote_identifier(column)}" for column in updates
        )
        return f" ON CONFLICT ({target}) DO UPDATE SET {assignments}"
    if options.on_conflict is OnConflict.IGNORE:
        if options.conflict_columns:
            target = ", ".join(quote_identifier(column) for column in options.conflict_columns)
            return f" ON CONFLICT ({target}) DO NOTHING"
        return " ON CONFLICT DO NOTHING"
    return ""


def build_insert_statements(
    table_ref: str,
    rows: Sequence[dict[str, Any]],
    options: WriteOptions,
) -> list[Statement]:
    """Multi-row INSERT (with optional ON CONFLICT) split to respect the parameter cap."""

    columns = _collect_columns(rows)
    if not columns:
        raise QueryError("Cannot insert rows without columns")
    column_list = ", ".join(quote_identifier(column) for column in columns)
    conflict = _conflict_clause(options, columns)
    returning = _returning_clause(options)

    statements: list[Statement] = []
    for chunk in _parameter_chunks(rows, len(columns)):
        params = ParameterList()
        tuples = []
        for row in chunk:
            values = [params.add(row[column]) if column in row else "DEFAULT" for column in columns]
            tuples.append(f"({', '.join(values)})")
        sql = f"INSERT INTO {table_ref} ({column_list}) VALUES {', '.join(tuples)}{conflict}{returning}"
        statements.append(Statement(sql, params.values, returns_rows=bool(returning)))
    return statements


def build_delete_by_keys(
    table_ref: str,
    rows: Sequence[dict[str, Any]],
    key_columns: Sequence[str],
) -> list[Statement]:
    """DELETE rows whose key tuple matches any of ``rows`` (OR of tuples)."""

    if not key_columns:
        raise QueryError("replace mode requires conflict_columns")
    statements: list[Statement] = []
    for chunk in _parameter_chunks(rows, len(key_columns)):
        params = ParameterList()
        tuples = []
        for row in chunk:
            missing = [column for column in key_columns if column not in row]
            if missing:
                raise QueryError(f"Row is missing conflict column(s): {', '.join(missing)}")
            predicate = " AND ".join(
                f"{quote_identifier(column)} = {params.add(row[column])}" for column in key_columns
            )
            tuples.append(f"({predicate})")
        sql = f"DELETE FROM {table_ref} WHERE {' OR '.join(tuples)}"
        statements.append(Statement(sql, params.values, counts_written=False))
    return statements


def build_update_statement(table_ref: str, row: dict[str, Any], options: WriteOptions) -> Statement:
    """UPDATE one row keyed by its conflict columns plus the static where conditions."""

    missing = [column for column in options.conflict_columns if column not in row]
    if missing:
        raise QueryError(f"Row is missing conflict column(s): {', '.join(missing)}")
    if options.update_columns is None:
        set_columns = [column for column in row if column not in options.conflict_columns]
    else:
        set_columns = [column for column in options.update_columns if column in row]
    if not set_columns:
        wanted = options.update_columns or "non-key columns"
        raise QueryError(
            f"update mode found no columns to set: row has {sorted(row)}, expected {wanted}"
        )

    params = ParameterList()
    assignments = ", ".join(f"{quote_identifier(column)} = {params.add(row[column])}" for column in set_columns)
    predicates = [
        f"{quote_identifier(column)} = {params.add(row[column])}" for column in options.conflict_columns
    ]
    static = build_predicate(options.where_conditions, params)
    if static:
        predicates.append(static)
    if not predicates:
        raise QueryError("update mode requires a non-empty WHERE clause")

    returning = _returning_clause(options)
    sql = f"UPDATE {table_ref} SET {assignments} WHERE {' AND '.join(predicates)}{returning}"
    return Statement(sql, params.values, returns_rows=bool(returning))


def build_write_statements(
    table_ref: str,
    rows: Sequence[dict[str, Any]],
    options: WriteOptions,
) -> list[Statement]:
    """Return the statements applying one batch of rows with ``options.mode``."""

    if options.mode is WriteMode.UPDATE:
        return [build_update_statement(table_ref, row, options) for row in rows]
    if options.mode is WriteMode.REPLACE:
        deletes = build_delete_by_keys(table_ref, rows, options.conflict_columns)
        inserts = build_insert_statements(
            table_ref, rows, options.model_copy(update={"on_conflict": OnConflict.ERROR})
        )
        return [*deletes, *inserts]
    return build_insert_statements(table_ref, rows, options)


def affected_rows(status: str | None) -> int:
    """Parse the row count out of a command tag such as ``INSERT 0 3``."""

    if not status:
        return 0
    last = status.rsplit(" ", 1)[-1]
    return int(last) if last.isdigit() else 0
