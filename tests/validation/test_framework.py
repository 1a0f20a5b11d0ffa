"""Tests for the validation framework, its cache and the schema presets."""

import uuid

import pytest

from flowbridge.exceptions import ConfigurationError
from flowbridge.validation import (
    CustomValidator,
    ValidationFramework,
    build_object_schema,
    get_field_schema,
    get_validation_framework,
    get_validation_preset,
    register_presets,
    reset_validation_framework,
)


@pytest.fixture
def framework():
    return ValidationFramework({"cache_size": 10}, strict=True)


class TestValidate:
    """Test suite for dispatching validation requests."""

    def test_schema_and_rules_are_combined(self, framework):
        """Schema and rule failures appear in one result."""
        result = framework.validate(
            {"id": "x", "email": "bad"},
            schema={"type": "object", "properties": {"id": {"type": "integer"}}},
            rules=[{"name": "email", "field": "email", "validate": "email"}],
        )

        assert not result.valid
        assert [issue.field for issue in result.errors] == ["id", "email"]

    def test_registered_rule_set(self, framework):
        """Rule sets are looked up by name."""
        framework.register_rules("contact", [{"name": "email", "field": "email", "validate": "email"}])

        assert framework.validate({"email": "ada@example.com"}, rules="contact").valid
        assert not framework.validate({"email": "x"}, rules="contact").valid

    def test_unknown_schema_and_rules(self, framework):
        """Referencing unregistered names is a configuration error."""
        with pytest.raises(ConfigurationError, match="Schema not found"):
            framework.validate({}, schema="missing")
        with pytest.raises(ConfigurationError, match="Rule set not found"):
            framework.validate({}, rules="missing")

    def test_registered_validators(self, framework):
        """Named validators are resolved; unknown names only warn."""
        framework.register_validator("never", CustomValidator(lambda data, ctx: False, message="never"))

        result = framework.validate({}, validators=["never", "ghost"])

        assert result.error_messages() == ["_custom: never"]
        assert result.warnings[0].message == "Validator not found: ghost"

    def test_strict_mode_promotes_warnings(self):
        """In strict mode warnings count as errors."""
        framework = ValidationFramework({"strict_mode": True}, strict=True)

        result = framework.validate({}, validators=["ghost"])

        assert not result.valid
        assert result.warnings == []
        assert result.first_error.field == "_framework"

    def test_validate_batch_exposes_position(self, framework):
        """Each item sees its batch index and the batch size in the context."""
        results = framework.validate_batch(
            [{"n": 1}, {"n": 2}, {"n": 3}],
            custom=lambda record, ctx: ctx["batch_index"] != 1 and ctx["batch_size"] == 3,
        )

        assert [result.valid for result in results] == [True, False, True]

    def test_no_validators_is_valid(self, framework):
        """A request without validators yields an empty valid result."""
        assert framework.validate({"id": 1}).valid


class TestCache:
    """Test suite for the result cache."""

    def test_repeat_validation_hits_cache(self, framework):
        """Identical requests are served from the cache."""
        schema = {"type": "object", "required": ["id"]}

        framework.validate({"id": 1}, schema=schema)
        framework.validate({"id": 1}, schema=schema)

        metrics = framework.get_metrics()
        assert metrics["cache_misses"] == 1
        assert metrics["cache_hits"] == 1
        assert metrics["total_validations"] == 1
        assert metrics["cache_hit_rate"] == 50.0
        assert metrics["cache_size"] == 1

    def test_cached_results_are_copies(self, framework):
        """Mutating a returned result does not change the cached entry."""
        first = framework.validate({"id": 1}, schema={"type": "object"})
        first.add_error("id", "tampered")

        assert framework.validate({"id": 1}, schema={"type": "object"}).valid

    def test_callable_rules_are_cacheable(self, framework):
        """Requests containing callables still produce a cache key."""

        def positive(record, ctx):
            return record["n"] > 0

        rules = [{"name": "positive", "validate": positive}]
        framework.validate({"n": 1}, rules=rules)
        framework.validate({"n": 1}, rules=rules)

        assert framework.get_metrics()["cache_hits"] == 1

    def test_cache_can_be_bypassed(self, framework):
        """use_cache=False skips lookups."""
        framework.validate({"id": 1}, schema={"type": "object"}, use_cache=False)

        assert framework.get_metrics()["cache_misses"] == 0

    def test_clear_cache(self, framework):
        """Clearing empties the cache."""
        framework.validate({"id": 1}, schema={"type": "object"})
        framework.clear_cache()

        assert framework.get_metrics()["cache_size"] == 0

    def test_zero_size_disables_cache(self):
        """A zero cache size turns caching off."""
        framework = ValidationFramework({"cache_size": 0}, strict=True)
        framework.validate({"id": 1}, schema={"type": "object"})

        assert framework.get_metrics()["cache_misses"] == 0


class TestPresets:
    """Test suite for field schemas, entity schemas and option presets."""

    def test_entity_schema_presets(self, framework):
        """Registered entity schemas validate by name."""
        register_presets(framework)
        user = {"id": str(uuid.uuid4()), "email": "ada@example.com", "username": "ada_l"}

        assert framework.validate(user, schema="user").valid
        result = framework.validate({**user, "username": "a"}, schema="user")
        assert result.first_error.field == "username"

    def test_field_schema_overrides(self):
        """Overrides apply to a copy of the preset."""
        schema = get_field_schema("email", maxLength=10)

        assert schema["maxLength"] == 10
        assert get_field_schema("email")["maxLength"] == 255
        with pytest.raises(ConfigurationError):
            get_field_schema("nope")

    def test_build_object_schema(self):
        """Object schemas are assembled from presets and inline schemas."""
        schema = build_object_schema(
            {"email": "email", "age": {"type": "integer"}}, required=["email"], additional_properties=False
        )

        assert schema["properties"]["email"]["format"] == "email"
        assert schema["required"] == ["email"]
        assert schema["additionalProperties"] is False

    def test_option_presets(self):
        """Named presets produce validation options."""
        options = get_validation_preset("strict", cache_size=5)

        assert options.strict_mode is True
        assert options.stop_on_error is True
        assert options.cache_size == 5
        with pytest.raises(ConfigurationError, match="Available"):
            get_validation_preset("paranoid")


class TestFrameworkConfiguration:
    """Test suite for framework construction."""

    def test_unknown_options_rejected_when_strict(self):
        """Strict configuration rejects unknown option keys."""
        with pytest.raises(ConfigurationError):
            ValidationFramework({"cache_ttl": 5}, strict=True)

    def test_process_wide_instance(self):
        """The shared framework is created once until reset."""
        first = get_validation_framework()

        assert get_validation_framework() is first
        reset_validation_framework()
        assert get_validation_framework() is not first
