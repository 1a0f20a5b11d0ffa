"""Composable validators producing :class:`ValidationResult` objects."""

from __future__ import annotations

import dataclasses
import ipaddress
import json
import re
import time
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import date, datetime
from datetime import time as dt_time
from decimal import Decimal
from typing import Any, Literal
from urllib.parse import urlparse

from ..adapters.types import UniversalType
from ..monitoring.metrics import record_validation_result
from ..utils.logging import setup_logger
from .conditions import MISSING, evaluate_condition, get_nested_value
from .result import ValidationResult

logger = setup_logger(__name__, context={"component": "validation"})

Severity = Literal["error", "warning", "info"]

_EMAIL = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_PHONE = re.compile(r"^\+?[\d\s\-()]+$")
_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_TIME = re.compile(r"^\d{2}:\d{2}(:\d{2}(\.\d+)?)?$")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)


def _is_integer(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return True
    if isinstance(value, Decimal):
        return value == value.to_integral_value()
    return False


_JSON_TYPE_CHECKS: dict[str, Callable[[Any], bool]] = {
    "string": lambda v: isinstance(v, (str, date, dt_time, uuid.UUID)),
    "number": _is_number,
    "integer": _is_integer,
    "boolean": lambda v: isinstance(v, bool),
    "array": lambda v: isinstance(v, (list, tuple)),
    "object": lambda v: isinstance(v, Mapping),
    "null": lambda v: v is None,
}

_UNIVERSAL_TYPE_CHECKS: dict[str, Callable[[Any], bool]] = {
    UniversalType.STRING.value: lambda v: isinstance(v, str),
    UniversalType.INTEGER.value: _is_integer,
    UniversalType.LONG.value: _is_integer,
    UniversalType.FLOAT.value: _is_number,
    UniversalType.DOUBLE.value: _is_number,
    UniversalType.DECIMAL.value: _is_number,
    UniversalType.BOOLEAN.value: lambda v: isinstance(v, bool),
    UniversalType.DATE.value: lambda v: isinstance(v, date) and not isinstance(v, datetime),
    UniversalType.TIME.value: lambda v: isinstance(v, dt_time),
    UniversalType.DATETIME.value: lambda v: isinstance(v, datetime),
    UniversalType.TIMESTAMP.value: lambda v: isinstance(v, datetime),
    UniversalType.BINARY.value: lambda v: isinstance(v, (bytes, bytearray, memoryview)),
    UniversalType.JSON.value: lambda v: isinstance(v, (Mapping, list, str, int, float, bool)),
    UniversalType.XML.value: lambda v: isinstance(v, str),
    UniversalType.ARRAY.value: lambda v: isinstance(v, (list, tuple)),
}


def describe_type(value: Any) -> str:
    """Return the JSON-style type name of ``value``."""

    if value is MISSING:
        return "undefined"
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if _is_number(value):
        return "number"
    if isinstance(value, (list, tuple)):
        return "array"
    if isinstance(value, Mapping):
        return "object"
    if isinstance(value, datetime):
        return "datetime"
    if isinstance(value, date):
        return "date"
    if isinstance(value, str):
        return "string"
    return type(value).__name__


def matches_type(value: Any, expected: str) -> bool:
    """Check ``value`` against a JSON type name or a universal type name."""

    check = _JSON_TYPE_CHECKS.get(expected) or _UNIVERSAL_TYPE_CHECKS.get(expected.upper())
    if check is None:
        return type(value).__name__ == expected
    return check(value)


def _check_iso(parser: Callable[[str], Any], value: str) -> bool:
    try:
        parser(value)
    except ValueError:
        return False
    return True


def _check_ip(version: int, value: str) -> bool:
    try:
        return ipaddress.ip_address(value).version == version
    except ValueError:
        return False


def _check_uuid(value: str) -> bool:
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    return True


def _check_uri(value: str) -> bool:
    parsed = urlparse(value)
    return bool(parsed.scheme and parsed.netloc) and " " not in value


def _check_datetime(value: str) -> bool:
    if "T" not in value and " " not in value:
        return False
    text = value[:-1] + "+00:00" if value.endswith("Z") else value
    return _check_iso(datetime.fromisoformat, text)


FORMAT_CHECKS: dict[str, Callable[[str], bool]] = {
    "email": lambda v: bool(_EMAIL.match(v)),
    "uri": _check_uri,
    "url": _check_uri,
    "date": lambda v: bool(_DATE.match(v)) and _check_iso(date.fromisoformat, v),
    "date-time": _check_datetime,
    "time": lambda v: bool(_TIME.match(v)) and _check_iso(dt_time.fromisoformat, v),
    "ipv4": lambda v: _check_ip(4, v),
    "ipv6": lambda v: _check_ip(6, v),
    "uuid": _check_uuid,
}


def _check_format_value(value: Any, fmt: str) -> bool | None:
    """Return the format verdict, or None when ``fmt`` is unknown."""

    if fmt in ("date-time", "date") and isinstance(value, (date, datetime)):
        return fmt == "date-time" or not isinstance(value, datetime)
    if fmt == "time" and isinstance(value, dt_time):
        return True
    if fmt == "uuid" and isinstance(value, uuid.UUID):
        return True
    check = FORMAT_CHECKS.get(fmt)
    if check is None:
        return None
    return isinstance(value, str) and check(value)


NAMED_VALIDATORS: dict[str, Callable[[Any], bool]] = {
    "required": lambda v: v is not MISSING and v is not None and v != "",
    "email": lambda v: isinstance(v, str) and bool(_EMAIL.match(v)),
    "phone": lambda v: isinstance(v, str) and bool(_PHONE.match(v)),
    "url": lambda v: isinstance(v, str) and _check_uri(v),
    "positive": lambda v: _is_number(v) and v > 0,
    "non_negative": lambda v: _is_number(v) and v >= 0,
}
NAMED_VALIDATORS["nonNegative"] = NAMED_VALIDATORS["non_negative"]


@dataclass(slots=True)
class ValidatorMetrics:
    """Execution counters kept by each validator."""

    execution_count: int = 0
    error_count: int = 0
    total_time_ms: float = 0.0
    last_time_ms: float | None = None

    def to_dict(self) -> dict[str, Any]:
        count = self.execution_count
        return {
            "execution_count": count,
            "error_count": self.error_count,
            "total_time_ms": round(self.total_time_ms, 3),
            "last_time_ms": self.last_time_ms,
            "average_time_ms": round(self.total_time_ms / count, 3) if count else 0.0,
            "error_rate": round(self.error_count / count * 100, 2) if count else 0.0,
        }


class BaseValidator(ABC):
    """Abstract validator with enable flag, stop-on-error flag and metrics."""

    default_name = "validator"

    def __init__(self, *, name: str | None = None, enabled: bool = True, stop_on_error: bool = False) -> None:
        self.name = name or self.default_name
        self.enabled = enabled
        self.stop_on_error = stop_on_error
        self.metrics = ValidatorMetrics()

    def validate(self, data: Any, context: Mapping[str, Any] | None = None) -> ValidationResult:
        """Validate ``data``; failures inside the validator become result errors."""

        if not self.enabled:
            return ValidationResult()

        started = time.perf_counter()
        try:
            result = self._validate(data, dict(context or {}))
        except Exception as exc:
            logger.warning("Validator %s raised", self.name, exc_info=True, extra={"status": "warning"})
            result = ValidationResult()
            result.add_error(
                "_validator",
                f"Validator {self.name} failed: {exc}",
                {"error_type": type(exc).__name__},
            )

        elapsed_ms = (time.perf_counter() - started) * 1000
        self.metrics.execution_count += 1
        self.metrics.total_time_ms += elapsed_ms
        self.metrics.last_time_ms = round(elapsed_ms, 3)
        if not result.valid:
            self.metrics.error_count += 1
        record_validation_result(self.name, result.valid)
        return result

    @abstractmethod
    def _validate(self, data: Any, context: dict[str, Any]) -> ValidationResult:
        """Perform the actual validation."""

    def get_metrics(self) -> dict[str, Any]:
        return {"name": self.name, **self.metrics.to_dict()}


def _child_path(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key


class SchemaValidator(BaseValidator):
    """
    JSON-Schema-like structural validation.

    Supports ``type`` (or a list of types), ``nullable``, ``required``, ``enum``,
    string, number, array and object keywords, ``format``, ``oneOf``/``anyOf``
    composition and a per-node ``validate`` callable. With ``coerce_types`` the
    coerced value is reported in ``metadata["coerced_data"]``.
    """

    default_name = "SchemaValidator"

    def __init__(
        self,
        schema: Mapping[str, Any] | None,
        *,
        strict_mode: bool = False,
        coerce_types: bool = False,
        **options: Any,
    ) -> None:
        super().__init__(**options)
        self.schema = schema
        self.strict_mode = strict_mode
        self.coerce_types = coerce_types

    def _validate(self, data: Any, context: dict[str, Any]) -> ValidationResult:
        result = ValidationResult()
        if not self.schema:
            result.add_warning("_schema", "No schema defined for validation")
            return result

        coerced = self._validate_node(data, self.schema, "", result)
        result.metadata["schema_type"] = self.schema.get("type")
        result.metadata["strict_mode"] = self.strict_mode
        if self.coerce_types and coerced is not data:
            result.metadata["coerced_data"] = coerced
        return result

    # The node walker returns the (possibly coerced) value.
    def _validate_node(self, value: Any, schema: Mapping[str, Any], path: str, result: ValidationResult) -> Any:
        label = path or "root"

        if "anyOf" in schema or "oneOf" in schema:
            if not self._check_composition(value, schema, label, result):
                return value

        declared = schema.get("type")
        types = [declared] if isinstance(declared, str) else list(declared or [])

        if value is None or value is MISSING:
            if schema.get("nullable") is True or "null" in types:
                return value
            if types:
                result.add_error(label, f"Expected type {' or '.join(types)}, got {describe_type(value)}")
            elif schema.get("required") is True or schema.get("nullable") is False:
                result.add_error(label, "Value is required")
            return value

        if types and not any(matches_type(value, expected) for expected in types):
            coerced = self.coerce(value, types[0]) if self.coerce_types else None
            if coerced is None:
                result.add_error(label, f"Expected type {' or '.join(types)}, got {describe_type(value)}")
                return value
            value = coerced

        if "enum" in schema and value not in schema["enum"]:
            allowed = ", ".join(str(item) for item in schema["enum"])
            result.add_error(label, f"Value must be one of: {allowed}")

        if isinstance(value, str):
            self._check_string(value, schema, label, result)
        if "format" in schema:
            verdict = _check_format_value(value, schema["format"])
            if verdict is None:
                result.add_warning(label, f"Unknown format: {schema['format']}")
            elif not verdict:
                result.add_error(label, f"Value does not match format: {schema['format']}")
        if _is_number(value):
            self._check_number(value, schema, types, label, result)
        if isinstance(value, (list, tuple)):
            value = self._check_array(value, schema, path, label, result)
        if isinstance(value, Mapping):
            value = self._check_object(value, schema, path, label, result)

        custom = schema.get("validate")
        if callable(custom):
            self._apply_custom(custom(value, label), label, result)
        return value

    def _check_composition(
        self, value: Any, schema: Mapping[str, Any], label: str, result: ValidationResult
    ) -> bool:
        for keyword in ("anyOf", "oneOf"):
            options = schema.get(keyword)
            if not options:
                continue
            matches = 0
            for option in options:
                trial = ValidationResult()
                merged = {key: item for key, item in schema.items() if key not in ("anyOf", "oneOf")}
                merged.update(option)
                self._validate_node(value, merged, label if label != "root" else "", trial)
                if trial.valid:
                    matches += 1
            if keyword == "anyOf" and matches == 0:
                result.add_error(label, "Value does not match any of the allowed schemas")
                return False
            if keyword == "oneOf" and matches != 1:
                result.add_error(
                    label, f"Value must match exactly one schema, matched {matches}", {"matches": matches}
                )
                return False
        return True

    @staticmethod
    def _check_string(value: str, schema: Mapping[str, Any], label: str, result: ValidationResult) -> None:
        min_length = schema.get("minLength")
        max_length = schema.get("maxLength")
        if min_length is not None and len(value) < min_length:
            result.add_error(label, f"String length {len(value)} is less than minimum {min_length}")
        if max_length is not None and len(value) > max_length:
            result.add_error(label, f"String length {len(value)} exceeds maximum {max_length}")
        pattern = schema.get("pattern")
        if pattern and re.search(pattern, value) is None:
            result.add_error(label, f"String does not match pattern {pattern}")

    @staticmethod
    def _check_number(
        value: Any, schema: Mapping[str, Any], types: Sequence[str], label: str, result: ValidationResult
    ) -> None:
        if "integer" in types and "number" not in types and not _is_integer(value):
            result.add_error(label, "Value must be an integer")
        if schema.get("minimum") is not None and value < schema["minimum"]:
            result.add_error(label, f"Value {value} is less than minimum {schema['minimum']}")
        if schema.get("maximum") is not None and value > schema["maximum"]:
            result.add_error(label, f"Value {value} exceeds maximum {schema['maximum']}")
        if schema.get("exclusiveMinimum") is not None and value <= schema["exclusiveMinimum"]:
            result.add_error(label, f"Value {value} must be greater than {schema['exclusiveMinimum']}")
        if schema.get("exclusiveMaximum") is not None and value >= schema["exclusiveMaximum"]:
            result.add_error(label, f"Value {value} must be less than {schema['exclusiveMaximum']}")
        multiple = schema.get("multipleOf")
        if multiple:
            quotient = Decimal(str(value)) / Decimal(str(multiple))
            if quotient != quotient.to_integral_value():
                result.add_error(label, f"Value {value} must be a multiple of {multiple}")

    def _check_array(
        self, value: Sequence[Any], schema: Mapping[str, Any], path: str, label: str, result: ValidationResult
    ) -> Any:
        min_items = schema.get("minItems")
        max_items = schema.get("maxItems")
        if min_items is not None and len(value) < min_items:
            result.add_error(label, f"Array length {len(value)} is less than minimum {min_items}")
        if max_items is not None and len(value) > max_items:
            result.add_error(label, f"Array length {len(value)} exceeds maximum {max_items}")
        if schema.get("uniqueItems"):
            seen: set[str] = set()
            for item in value:
                key = json.dumps(item, sort_keys=True, default=str)
                if key in seen:
                    result.add_error(label, "Array items must be unique")
                    break
                seen.add(key)
        items = schema.get("items")
        if not items:
            return value
        coerced = [
            self._validate_node(item, items, f"{path}[{index}]", result) for index, item in enumerate(value)
        ]
        if all(new is old for new, old in zip(coerced, value)):
            return value
        return coerced

    def _check_object(
        self, value: Mapping[str, Any], schema: Mapping[str, Any], path: str, label: str, result: ValidationResult
    ) -> Any:
        required = schema.get("required")
        if isinstance(required, list):
            for name in required:
                if name not in value:
                    result.add_error(_child_path(path, name), "Property is required")

        properties: Mapping[str, Any] = schema.get("properties") or {}
        updated: dict[str, Any] | None = None
        for name, child_schema in properties.items():
            if name in value:
                new_value = self._validate_node(value[name], child_schema, _child_path(path, name), result)
                if new_value is not value[name]:
                    updated = updated if updated is not None else dict(value)
                    updated[name] = new_value

        if self.strict_mode and schema.get("additionalProperties") is False:
            extra = [name for name in value if name not in properties]
            if extra:
                result.add_error(label, f"Additional properties not allowed: {', '.join(extra)}")

        min_props = schema.get("minProperties")
        max_props = schema.get("maxProperties")
        if min_props is not None and len(value) < min_props:
            result.add_error(label, f"Object has fewer than {min_props} properties")
        if max_props is not None and len(value) > max_props:
            result.add_error(label, f"Object has more than {max_props} properties")
        return updated if updated is not None else value

    @staticmethod
    def _apply_custom(outcome: Any, label: str, result: ValidationResult) -> None:
        if isinstance(outcome, ValidationResult):
            result.merge(outcome)
        elif isinstance(outcome, Mapping):
            if outcome.get("valid") is False:
                result.add_error(label, outcome.get("message") or "Custom validation failed", outcome.get("details"))
        elif outcome is False:
            result.add_error(label, "Custom validation failed")

    @staticmethod
    def coerce(value: Any, target: str) -> Any:
        """Coerce ``value`` to ``target``; returns None when impossible."""

        try:
            if target == "string":
                return str(value)
            if target == "number":
                number = float(value)
                return int(number) if number.is_integer() and isinstance(value, str) and "." not in value else number
            if target == "integer":
                if isinstance(value, float) and not value.is_integer():
                    return None
                return int(value)
            if target == "boolean":
                if isinstance(value, str):
                    lowered = value.strip().lower()
                    if lowered in ("true", "1", "yes", "y", "on"):
                        return True
                    if lowered in ("false", "0", "no", "n", "off", ""):
                        return False
                    return None
                return bool(value)
            if target == "array":
                if isinstance(value, str):
                    try:
                        parsed = json.loads(value)
                    except ValueError:
                        return [value]
                    return parsed if isinstance(parsed, list) else [value]
                return list(value) if isinstance(value, tuple) else [value]
            if target == "object" and isinstance(value, str):
                parsed = json.loads(value)
                return parsed if isinstance(parsed, dict) else None
        except (TypeError, ValueError):
            return None
        return None


class TypeValidator(BaseValidator):
    """Single expected-type check on the record (or on ``field`` within it)."""

    default_name = "TypeValidator"

    def __init__(
        self,
        expected_type: str | Sequence[str],
        *,
        field: str | None = None,
        allow_null: bool = False,
        allow_missing: bool = False,
        **options: Any,
    ) -> None:
        super().__init__(**options)
        self.expected_types = [expected_type] if isinstance(expected_type, str) else list(expected_type)
        self.field = field
        self.allow_null = allow_null
        self.allow_missing = allow_missing

    def _validate(self, data: Any, context: dict[str, Any]) -> ValidationResult:
        result = ValidationResult()
        value = get_nested_value(data, self.field) if self.field else data
        if value is None and self.allow_null:
            return result
        if value is MISSING and self.allow_missing:
            return result
        if value is MISSING or not any(matches_type(value, expected) for expected in self.expected_types):
            result.add_error(
                self.field or "type",
                f"Expected type {' or '.join(self.expected_types)}, got {describe_type(value)}",
            )
        return result


@dataclass(slots=True)
class BusinessRule:
    """
    A business rule.

    ``validate`` is either a callable receiving ``(record, context)`` or the name
    of a built-in check (``required``, ``email``, ``phone``, ``url``,
    ``positive``, ``non_negative``) applied to ``field`` when set.
    """

    name: str
    field: str | None = None
    validate: Callable[[Any, dict[str, Any]], Any] | str | None = None
    condition: Any = None
    severity: Severity = "error"
    message: str | None = None
    custom_validator: Callable[[Any, dict[str, Any]], Any] | None = None
    enabled: bool = True
    details: dict[str, Any] = dataclasses.field(default_factory=dict)

    @classmethod
    def from_value(cls, value: BusinessRule | Mapping[str, Any]) -> BusinessRule:
        if isinstance(value, BusinessRule):
            return value
        data = dict(value)
        if "rule" in data and "validate" not in data:
            data["validate"] = data.pop("rule")
        if "name" not in data:
            data["name"] = str(data.get("validate") or "rule")
        return cls(**data)


class BusinessRuleValidator(BaseValidator):
    """Evaluates a list of business rules, skipping those whose condition is unmet."""

    default_name = "BusinessRuleValidator"

    def __init__(
        self,
        rules: Iterable[BusinessRule | Mapping[str, Any]] | BusinessRule | Mapping[str, Any],
        *,
        named_validators: Mapping[str, Callable[[Any], bool]] | None = None,
        **options: Any,
    ) -> None:
        super().__init__(**options)
        if isinstance(rules, (BusinessRule, Mapping)):
            rules = [rules]
        self.rules = [BusinessRule.from_value(rule) for rule in rules]
        self.named_validators = {**NAMED_VALIDATORS, **(named_validators or {})}

    def _validate(self, data: Any, context: dict[str, Any]) -> ValidationResult:
        result = ValidationResult()
        for rule in self.rules:
            if not rule.enabled:
                continue
            outcome = self._validate_rule(data, rule, context)
            result.merge(outcome)
            if not outcome.valid and self.stop_on_error:
                break
        return result

    def _validate_rule(self, data: Any, rule: BusinessRule, context: dict[str, Any]) -> ValidationResult:
        result = ValidationResult()
        field_name = rule.field or "_rule"
        try:
            if rule.condition is not None and not evaluate_condition(data, rule.condition, context):
                return result

            if rule.validate is not None and not self._run_check(data, rule, context):
                message = rule.message or f"Business rule validation failed: {rule.name}"
                details = {"rule": rule.name, **rule.details}
                if rule.severity == "error":
                    result.add_error(field_name, message, details)
                elif rule.severity == "warning":
                    result.add_warning(field_name, message, details)
                else:
                    result.add_suggestion(field_name, message, details)

            if rule.custom_validator is not None:
                outcome = rule.custom_validator(data, context)
                if isinstance(outcome, ValidationResult):
                    result.merge(outcome)
                elif not outcome:
                    result.add_error(field_name, rule.message or "Custom validation failed", {"rule": rule.name})
        except Exception as exc:
            result.add_error("_rule", f"Rule validation error: {exc}", {"rule": rule.name, "error": str(exc)})
        return result

    def _run_check(self, data: Any, rule: BusinessRule, context: dict[str, Any]) -> bool:
        check = rule.validate
        if callable(check):
            return bool(check(data, context))
        validator = self.named_validators.get(str(check))
        if validator is None:
            raise ValueError(f"Unknown named validator: {check}")
        value = get_nested_value(data, rule.field) if rule.field else data
        return bool(validator(value))


class CustomValidator(BaseValidator):
    """Wraps a function returning a bool, a :class:`ValidationResult` or a result-shaped dict."""

    default_name = "CustomValidator"

    def __init__(
        self,
        validate_fn: Callable[[Any, dict[str, Any]], Any],
        *,
        message: str | None = None,
        **options: Any,
    ) -> None:
        super().__init__(**options)
        self.validate_fn = validate_fn
        self.message = message

    def _validate(self, data: Any, context: dict[str, Any]) -> ValidationResult:
        outcome = self.validate_fn(data, context)
        if isinstance(outcome, ValidationResult):
            return outcome

        result = ValidationResult()
        if outcome is False:
            result.add_error("_custom", self.message or "Custom validation failed")
        elif isinstance(outcome, Mapping):
            for error in outcome.get("errors") or []:
                result.add_error(error.get("field", "_custom"), error.get("message", ""), error.get("details"))
            for warning in outcome.get("warnings") or []:
                result.add_warning(warning.get("field", "_custom"), warning.get("message", ""), warning.get("details"))
            if outcome.get("valid") is False:
                result.valid = False
                if not result.errors:
                    result.add_error("_custom", outcome.get("message") or self.message or "Custom validation failed")
        return result


class CompositeValidator(BaseValidator):
    """Combine validators in ``all``, ``any`` or ``sequential`` mode."""

    default_name = "CompositeValidator"
    MODES = ("all", "any", "sequential")

    def __init__(
        self,
        validators: Sequence[BaseValidator],
        *,
        mode: Literal["all", "any", "sequential"] = "all",
        **options: Any,
    ) -> None:
        super().__init__(**options)
        if mode not in self.MODES:
            raise ValueError(f"Unknown validation mode: {mode}")
        self.validators = list(validators)
        self.mode = mode

    def _validate(self, data: Any, context: dict[str, Any]) -> ValidationResult:
        if self.mode == "sequential":
            combined = ValidationResult()
            for validator in self.validators:
                outcome = validator.validate(data, context)
                combined.merge(outcome)
                if not outcome.valid and self.stop_on_error:
                    break
            return combined

        results = [validator.validate(data, context) for validator in self.validators]
        if self.mode == "any":
            for outcome in results:
                if outcome.valid:
                    return outcome
        return ValidationResult.combine(results)
