"""Tests for rule conditions, nested lookups and validation results."""

import pytest

from flowbridge.validation import MISSING, ValidationResult, evaluate_condition, get_nested_value


class TestNestedValues:
    """Test suite for dotted path lookups."""

    def test_paths(self):
        """Mappings and list indexes resolve; absent paths are MISSING."""
        record = {"customer": {"emails": ["a@x.io", "b@x.io"]}}

        assert get_nested_value(record, "customer.emails.0") == "a@x.io"
        assert get_nested_value(record, "customer.emails.-1") == "b@x.io"
        assert get_nested_value(record, "customer.emails.5") is MISSING
        assert get_nested_value(record, "customer.name") is MISSING
        assert not MISSING


class TestConditions:
    """Test suite for condition evaluation."""

    RECORD = {"status": "active", "total": 120, "email": "ada@example.com", "tags": ["vip"]}

    @pytest.mark.parametrize(
        ("condition", "expected"),
        [
            ({"status": "active"}, True),
            ({"total": {"$gt": 100, "$lte": 120}}, True),
            ({"total": {"$lt": 100}}, False),
            ({"status": {"$in": ["active", "trial"]}}, True),
            ({"status": {"$nin": ["closed"]}}, True),
            ({"email": {"$regex": r"@example\.com$"}}, True),
            ({"phone": {"$exists": False}}, True),
            ({"phone": {"$eq": None}}, True),
            ({"$and": [{"status": "active"}, {"total": {"$gte": 200}}]}, False),
            ({"$or": [{"status": "closed"}, {"tags.0": "vip"}]}, True),
            ({"$not": {"status": "active"}}, False),
        ],
    )
    def test_operators(self, condition, expected):
        """Comparison and logical operators evaluate against the record."""
        assert evaluate_condition(self.RECORD, condition) is expected

    def test_callable_condition(self):
        """Callables receive the record and the context."""
        condition = lambda record, ctx: record["total"] > ctx["threshold"]  # noqa: E731

        assert evaluate_condition(self.RECORD, condition, {"threshold": 100}) is True

    def test_ordering_against_missing_is_false(self):
        """Ordered comparisons with absent values never match."""
        assert evaluate_condition({}, {"total": {"$gt": 0}}) is False

    def test_unknown_operator(self):
        """Unknown operators are rejected."""
        with pytest.raises(ValueError, match="Unknown condition operator"):
            evaluate_condition(self.RECORD, {"total": {"$between": [1, 2]}})


class TestValidationResult:
    """Test suite for result merging."""

    def test_merge_ors_invalidity(self):
        """Merging keeps issues in order and any error invalidates."""
        first = ValidationResult()
        first.add_warning("a", "careful")
        second = ValidationResult()
        second.add_error("b", "broken")

        combined = ValidationResult.combine([first, second])

        assert not combined.valid
        assert combined.get_summary() == {
            "valid": False,
            "error_count": 1,
            "warning_count": 1,
            "suggestion_count": 0,
        }

    def test_promote_warnings_returns_copy(self):
        """Promotion leaves the original untouched."""
        result = ValidationResult()
        result.add_warning("a", "careful")

        promoted = result.promote_warnings()

        assert result.valid
        assert not promoted.valid
        assert promoted.errors[0].severity == "error"
