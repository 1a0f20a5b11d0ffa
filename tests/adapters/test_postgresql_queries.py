"""Tests for PostgreSQL statement builders."""

import pytest

from flowbridge.adapters.base import ReadOptions, WriteOptions
from flowbridge.adapters.postgresql.queries import (
    MAX_PARAMETERS,
    affected_rows,
    build_count_query,
    build_insert_statements,
    build_select_query,
    build_update_statement,
    build_write_statements,
    quote_column_ref,
    quote_identifier,
    quote_qualified,
)
from flowbridge.exceptions import QueryError

USERS = '"public"."users"'


class TestQuoting:
    """Test suite for identifier quoting."""

    def test_embedded_quotes_are_doubled(self):
        """Quotes inside identifiers cannot terminate the identifier."""
        assert quote_identifier('we"ird') == '"we""ird"'

    def test_qualified_names(self):
        """Namespaces are quoted separately."""
        assert quote_qualified("public", "users") == USERS
        assert quote_qualified("", "users") == '"users"'

    def test_column_references(self):
        """Dotted references and stars are preserved."""
        assert quote_column_ref("u.email") == '"u"."email"'
        assert quote_column_ref("u.*") == '"u".*'
        assert quote_column_ref("*") == "*"

    @pytest.mark.parametrize("name", ["", "bad\x00name", None])
    def test_invalid_identifiers(self, name):
        """Empty, NUL-containing and non-string identifiers are rejected."""
        with pytest.raises(QueryError):
            quote_identifier(name)


class TestSelect:
    """Test suite for read queries."""

    def test_filters_order_and_pagination(self):
        """Filters become parameters; ordering and paging follow."""
        options = ReadOptions(
            select=["id", "name as full_name"],
            filters={"status": "active", "age": {"$gte": 18}},
            order_by=["-created_at"],
            limit=10,
            offset=20,
        )

        sql, params = build_select_query(USERS, options)

        assert sql == (
            'SELECT "id", "name" AS "full_name" FROM "public"."users" '
            'WHERE "status" = $1 AND "age" >= $2 ORDER BY "created_at" DESC LIMIT $3 OFFSET $4'
        )
        assert params == ["active", 18, 10, 20]

    def test_null_in_and_between(self):
        """Null equality, IN and BETWEEN render as their SQL forms."""
        options = ReadOptions(
            filters=[
                {"field": "deleted_at", "operator": "eq", "value": None},
                {"field": "id", "operator": "in", "value": [1, 2]},
                {"field": "score", "operator": "between", "value": [1, 5]},
            ]
        )

        sql, params = build_select_query(USERS, options)

        assert sql.endswith('WHERE "deleted_at" IS NULL AND "id" = ANY($1) AND "score" BETWEEN $2 AND $3')
        assert params == [[1, 2], 1, 5]

    def test_json_contains(self):
        """Containment filters bind JSON text cast to jsonb."""
        sql, params = build_select_query(USERS, ReadOptions(filters={"attrs": {"jsonContains": {"tier": "gold"}}}))

        assert sql.endswith('WHERE "attrs" @> $1::jsonb')
        assert params == ['{"tier": "gold"}']

    def test_group_by_and_having(self):
        """Aggregates are whitelisted and HAVING binds parameters."""
        options = ReadOptions(
            select=["status", "count(*) as n"],
            group_by=["status"],
            having=[{"field": "count(*)", "operator": "gt", "value": 5}],
        )

        sql, params = build_select_query(USERS, options)

        assert sql == 'SELECT "status", COUNT(*) AS "n" FROM "public"."users" GROUP BY "status" HAVING COUNT(*) > $1'
        assert params == [5]

    def test_having_requires_group_by(self):
        """HAVING without GROUP BY is rejected."""
        options = ReadOptions(having=[{"field": "count(*)", "operator": "gt", "value": 1}])

        with pytest.raises(QueryError, match="HAVING requires group_by"):
            build_select_query(USERS, options)

    @pytest.mark.parametrize("expression", ["median(score)", "id; DROP TABLE users", "lower(name)"])
    def test_unsafe_expressions_rejected(self, expression):
        """Only plain columns and whitelisted aggregates are accepted."""
        with pytest.raises(QueryError):
            build_select_query(USERS, ReadOptions(select=[expression]))

    def test_joins(self):
        """Join column pairs are qualified by table and alias."""
        options = ReadOptions(joins=[{"table": "public.orders", "alias": "o", "type": "left", "on": {"id": "user_id"}}])

        sql, _ = build_select_query(USERS, options)

        assert 'LEFT JOIN "public"."orders" AS "o" ON "public"."users"."id" = "o"."user_id"' in sql

    def test_count_query_ignores_paging(self):
        """Counting wraps the filtered body without ORDER BY or LIMIT."""
        options = ReadOptions(filters={"status": "active"}, order_by=["id"], limit=5)

        sql, params = build_count_query(USERS, options)

        assert sql == 'SELECT COUNT(*) AS total FROM (SELECT * FROM "public"."users" WHERE "status" = $1) AS counted'
        assert params == ["active"]


class TestWrites:
    """Test suite for write statements."""

    def test_multi_row_insert_uses_default_for_missing_columns(self):
        """Columns are the union over rows; gaps become DEFAULT."""
        statements = build_insert_statements(USERS, [{"id": 1, "name": "a"}, {"id": 2}], WriteOptions())

        assert len(statements) == 1
        assert statements[0].sql == 'INSERT INTO "public"."users" ("id", "name") VALUES ($1, $2), ($3, DEFAULT)'
        assert statements[0].params == [1, "a", 2]

    def test_upsert(self):
        """Upserts update every non-key column from EXCLUDED."""
        options = WriteOptions(mode="upsert", conflict_columns=["id"], returning=["id"])

        statement = build_insert_statements(USERS, [{"id": 1, "name": "a", "email": "e"}], options)[0]

        assert statement.sql.endswith(
            'ON CONFLICT ("id") DO UPDATE SET "name" = EXCLUDED."name", "email" = EXCLUDED."email" RETURNING "id"'
        )
        assert statement.returns_rows is True

    def test_upsert_with_only_key_columns_does_nothing(self):
        """With nothing to update the conflict is ignored."""
        options = WriteOptions(mode="upsert", conflict_columns=["id"])

        statement = build_insert_statements(USERS, [{"id": 1}], options)[0]

        assert statement.sql.endswith('ON CONFLICT ("id") DO NOTHING')

    def test_upsert_requires_conflict_columns(self):
        """Conflict updates need a conflict target."""
        with pytest.raises(QueryError, match="conflict_columns"):
            build_insert_statements(USERS, [{"id": 1}], WriteOptions(mode="upsert"))

    def test_ignore_conflicts(self):
        """on_conflict=ignore renders DO NOTHING."""
        statement = build_insert_statements(USERS, [{"id": 1}], WriteOptions(on_conflict="ignore"))[0]

        assert statement.sql.endswith(" ON CONFLICT DO NOTHING")

    def test_inserts_split_at_parameter_limit(self):
        """Large batches are split so no statement exceeds the bind parameter cap."""
        rows = [{"id": index, "name": "x"} for index in range(20_000)]

        statements = build_insert_statements(USERS, rows, WriteOptions())

        assert len(statements) == 2
        assert all(len(statement.params) <= MAX_PARAMETERS for statement in statements)
        assert sum(len(statement.params) for statement in statements) == 40_000

    def test_update_keyed_by_conflict_columns(self):
        """Updates set non-key columns and filter by key plus static conditions."""
        options = WriteOptions(mode="update", conflict_columns=["id"], where_conditions={"tenant": "acme"})

        statement = build_update_statement(USERS, {"id": 1, "status": "closed"}, options)

        assert statement.sql == 'UPDATE "public"."users" SET "status" = $1 WHERE "id" = $2 AND "tenant" = $3'
        assert statement.params == ["closed", 1, "acme"]

    def test_update_requires_where_clause(self):
        """An update without key columns or conditions is refused."""
        with pytest.raises(QueryError, match="non-empty WHERE"):
            build_update_statement(USERS, {"status": "closed"}, WriteOptions(mode="update"))

    def test_update_with_only_key_columns_is_refused(self):
        """A row holding nothing but its key has nothing to set."""
        options = WriteOptions(mode="update", conflict_columns=["id"])

        with pytest.raises(QueryError, match="no columns to set"):
            build_update_statement(USERS, {"id": 1}, options)

    def test_update_columns_absent_from_row_are_refused(self):
        """Explicit update columns missing from the row leave nothing to set."""
        options = WriteOptions(mode="update", conflict_columns=["id"], update_columns=["status"])

        with pytest.raises(QueryError, match="no columns to set"):
            build_update_statement(USERS, {"id": 1, "name": "Ada"}, options)

    def test_update_requires_every_key_column(self):
        """A partial key would widen the update beyond one row."""
        options = WriteOptions(mode="update", conflict_columns=["id", "tenant"])

        with pytest.raises(QueryError, match="missing conflict column"):
            build_update_statement(USERS, {"id": 1, "status": "closed"}, options)

    def test_replace_deletes_then_inserts(self):
        """Replace removes matching keys before inserting."""
        options = WriteOptions(mode="replace", conflict_columns=["id"])

        statements = build_write_statements(USERS, [{"id": 1, "v": 2}, {"id": 2, "v": 3}], options)

        assert statements[0].sql == 'DELETE FROM "public"."users" WHERE ("id" = $1) OR ("id" = $2)'
        assert statements[0].counts_written is False
        assert statements[1].sql.startswith('INSERT INTO "public"."users"')
        assert "ON CONFLICT" not in statements[1].sql

    def test_replace_requires_keys_in_rows(self):
        """Every row needs the conflict columns."""
        with pytest.raises(QueryError, match="missing conflict column"):
            build_write_statements(USERS, [{"v": 1}], WriteOptions(mode="replace", conflict_columns=["id"]))


@pytest.mark.parametrize(
    ("status", "expected"),
    [("INSERT 0 3", 3), ("UPDATE 2", 2), ("DELETE 0", 0), ("BEGIN", 0), (None, 0)],
)
def test_affected_rows(status, expected):
    """Row counts are parsed from command tags."""
    assert affected_rows(status) == expected
