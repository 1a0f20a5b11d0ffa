"""Tests for mapping definitions and field transformers."""

import pytest

from flowbridge.adapters.base import WriteMode
from flowbridge.engine import MappingDefinition, build_mapping, get_transformer, list_transformers, register_transformer
from flowbridge.exceptions import ConfigurationError


def _definition(**extra):
    return {
        "id": "orders",
        "source": {"endpoint": "crm", "schema": "sales.orders"},
        "target": {"endpoint": "warehouse", "schema": "public.orders"},
        **extra,
    }


class TestBuildMapping:
    """Test suite for mapping validation."""

    def test_minimal_mapping(self):
        """Defaults to insert with batch size 1000."""
        mapping = build_mapping(_definition())

        assert isinstance(mapping, MappingDefinition)
        assert mapping.mode is WriteMode.INSERT
        assert mapping.batch_size == 1_000
        assert mapping.source.schema_ref == "sales.orders"

    def test_camel_case_keys(self):
        """camelCase keys are accepted."""
        mapping = build_mapping(_definition(mode="upsert", conflictColumns=["id"], batchSize=50))

        assert mapping.conflict_columns == ["id"]
        assert mapping.batch_size == 50

    def test_upsert_requires_conflict_columns(self):
        """Upsert without conflict columns is rejected."""
        with pytest.raises(ConfigurationError):
            build_mapping(_definition(mode="upsert"))

    def test_unknown_keys_rejected(self):
        """Mappings forbid unknown keys."""
        with pytest.raises(ConfigurationError):
            build_mapping(_definition(colour="blue"))

    def test_unknown_transformer_rejected(self):
        """Naming an unregistered transformer is a configuration error."""
        with pytest.raises(ConfigurationError):
            build_mapping(_definition(fields={"name": {"path": "name", "transform": "reverse"}}))

    def test_write_options(self):
        """write_options carries mode, keys and where conditions."""
        mapping = build_mapping(
            _definition(
                mode="update",
                conflict_columns=["id"],
                update_columns=["status"],
                where_conditions={"tenant": "acme"},
            )
        )

        options = mapping.write_options(25)

        assert options["mode"] is WriteMode.UPDATE
        assert options["batch_size"] == 25
        assert options["update_columns"] == ["status"]
        assert options["where_conditions"][0]["field"] == "tenant"


class TestTransformRecord:
    """Test suite for record transformation."""

    def test_empty_fields_copy_record(self):
        """Identity mapping copies the record."""
        mapping = build_mapping(_definition())
        record = {"id": 1, "name": "x"}

        output = mapping.transform_record(record)

        assert output == record
        assert output is not record

    def test_paths_defaults_and_functions(self):
        """Nested paths, defaults, constants and callables resolve per field."""
        mapping = build_mapping(
            _definition(
                fields={
                    "id": "id",
                    "city": "address.city",
                    "country": {"path": "address.country", "default": "NL"},
                    "full_name": {"function": lambda r: f"{r['first']} {r['last']}"},
                    "origin": {"value": "crm"},
                    "total": {"path": "total", "transform": ["trim", "float"]},
                }
            )
        )

        output = mapping.transform_record(
            {"id": 7, "first": "Ada", "last": "Lovelace", "address": {"city": "London"}, "total": " 12.5 "}
        )

        assert output == {
            "id": 7,
            "city": "London",
            "country": "NL",
            "full_name": "Ada Lovelace",
            "origin": "crm",
            "total": 12.5,
        }

    def test_preconditions(self):
        """accepts evaluates preconditions against the record."""
        mapping = build_mapping(_definition(preconditions={"status": {"$in": ["open", "paid"]}}))

        assert mapping.accepts({"status": "paid"}) is True
        assert mapping.accepts({"status": "void"}) is False


class TestTransformers:
    """Test suite for the transformer registry."""

    def test_builtins(self):
        """Built-in transformers cover common conversions."""
        assert get_transformer("upper")("abc") == "ABC"
        assert get_transformer("int")("42") == 42
        assert get_transformer("bool")("yes") is True
        assert {"upper", "lower", "trim", "json", "iso_date"} <= set(list_transformers())

    def test_register_custom(self):
        """Custom transformers become available by name."""
        register_transformer("cents", lambda value: int(round(float(value) * 100)))

        mapping = build_mapping(_definition(fields={"amount": {"path": "amount", "transform": "cents"}}))

        assert mapping.transform_record({"amount": "1.25"}) == {"amount": 125}

    def test_unknown_transformer(self):
        """Looking up an unknown transformer raises."""
        with pytest.raises(ConfigurationError, match="Unknown transformer"):
            get_transformer("missing")
