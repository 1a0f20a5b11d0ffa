"""Validation framework: registries, result cache and dispatch to validators."""

from __future__ import annotations

import copy
import hashlib
import json
import threading
from collections.abc import Callable, Iterable, Mapping, Sequence
from typing import Any, Literal

from cachetools import LRUCache

from ..exceptions import ConfigurationError
from ..monitoring.metrics import record_validation_cache
from ..utils.config import ValidationOptions, build_component_config, get_settings
from ..utils.logging import setup_logger
from .result import ValidationResult
from .validators import (
    BaseValidator,
    BusinessRule,
    BusinessRuleValidator,
    CompositeValidator,
    CustomValidator,
    SchemaValidator,
    TypeValidator,
)

logger = setup_logger(__name__, context={"component": "validation"})

RuleInput = BusinessRule | Mapping[str, Any]


def _cache_default(value: Any) -> Any:
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=repr)
    if callable(value):
        return f"<callable {getattr(value, '__qualname__', repr(value))}>"
    return repr(value)


class ValidationFramework:
    """
    Entry point for record validation.

    Holds named validators, schemas and rule sets, builds the validators a
    ``validate`` call asks for and combines their results. Results are cached
    in a shared LRU keyed by a hash of the data and the relevant options.
    """

    def __init__(self, options: ValidationOptions | Mapping[str, Any] | None = None, *, strict: bool | None = None) -> None:
        if strict is None:
            strict = get_settings().strict_config
        if isinstance(options, Mapping):
            options = dict(options)
        self.options: ValidationOptions = build_component_config(ValidationOptions, options, strict=strict)
        self._validators: dict[str, BaseValidator] = {}
        self._schemas: dict[str, dict[str, Any]] = {}
        self._rules: dict[str, list[RuleInput]] = {}
        self._cache: LRUCache[str, ValidationResult] | None = (
            LRUCache(maxsize=self.options.cache_size) if self.options.cache_size > 0 else None
        )
        self._cache_lock = threading.Lock()
        self._metrics: dict[str, int] = {
            "total_validations": 0,
            "successful_validations": 0,
            "failed_validations": 0,
            "cache_hits": 0,
            "cache_misses": 0,
        }

    # Registries

    def register_validator(self, name: str, validator: BaseValidator) -> None:
        self._validators[name] = validator

    def register_schema(self, name: str, schema: Mapping[str, Any]) -> None:
        self._schemas[name] = dict(schema)

    def register_rules(self, name: str, rules: Iterable[RuleInput]) -> None:
        self._rules[name] = list(rules)

    def get_validator(self, name: str) -> BaseValidator | None:
        return self._validators.get(name)

    def get_schema(self, name: str) -> dict[str, Any] | None:
        return self._schemas.get(name)

    def create_schema_validator(self, schema: str | Mapping[str, Any], **options: Any) -> SchemaValidator:
        """Build a schema validator from a registered name or an inline schema."""

        if isinstance(schema, str):
            resolved = self._schemas.get(schema)
            if resolved is None:
                raise ConfigurationError(f"Schema not found: {schema}")
            schema = resolved
        options.setdefault("strict_mode", self.options.strict_mode)
        options.setdefault("coerce_types", self.options.coerce_types)
        return SchemaValidator(schema, **options)

    def create_rule_validator(
        self, rules: str | RuleInput | Iterable[RuleInput], **options: Any
    ) -> BusinessRuleValidator:
        if isinstance(rules, str):
            resolved = self._rules.get(rules)
            if resolved is None:
                raise ConfigurationError(f"Rule set not found: {rules}")
            rules = resolved
        return BusinessRuleValidator(rules, **options)

    # Validation

    def validate(
        self,
        data: Any,
        *,
        schema: str | Mapping[str, Any] | None = None,
        type: str | Sequence[str] | None = None,
        rules: str | RuleInput | Iterable[RuleInput] | None = None,
        custom: Callable[[Any, dict[str, Any]], Any] | None = None,
        validators: Sequence[str | BaseValidator] = (),
        mode: Literal["all", "any", "sequential"] = "all",
        stop_on_error: bool | None = None,
        use_cache: bool | None = None,
        context: Mapping[str, Any] | None = None,
        schema_options: Mapping[str, Any] | None = None,
    ) -> ValidationResult:
        """Validate ``data`` with every validator the arguments describe."""

        stop = self.options.stop_on_error if stop_on_error is None else stop_on_error
        caching = (self.options.use_cache if use_cache is None else use_cache) and self._cache is not None

        cache_key: str | None = None
        if caching:
            cache_key = self._cache_key(
                data,
                {
                    "schema": schema,
                    "type": type,
                    "rules": rules,
                    "custom": custom,
                    "validators": [v if isinstance(v, str) else v.name for v in validators],
                    "mode": mode,
                    "stop": stop,
                    "schema_options": schema_options,
                    "context": context,
                },
            )
            cached = self._cache_get(cache_key)
            if cached is not None:
                return cached

        result = ValidationResult()
        chain: list[BaseValidator] = []
        if schema is not None:
            chain.append(self.create_schema_validator(schema, **dict(schema_options or {})))
        if type is not None:
            chain.append(TypeValidator(type))
        if rules is not None:
            chain.append(self.create_rule_validator(rules, stop_on_error=stop))
        if custom is not None:
            chain.append(CustomValidator(custom))
        for entry in validators:
            if isinstance(entry, BaseValidator):
                chain.append(entry)
                continue
            registered = self._validators.get(entry)
            if registered is None:
                result.add_warning("_framework", f"Validator not found: {entry}", {"validator": entry})
                continue
            chain.append(registered)

        if chain:
            composite = CompositeValidator(chain, mode=mode, stop_on_error=stop, name="ValidationFramework")
            result.merge(composite.validate(data, dict(context or {})))

        if self.options.strict_mode and result.warnings:
            result = result.promote_warnings()

        self._record(result)
        if cache_key is not None:
            self._cache_put(cache_key, result)
        return result

    def validate_batch(self, items: Sequence[Any], **kwargs: Any) -> list[ValidationResult]:
        """Validate each item, exposing ``batch_index`` and ``batch_size`` in the context."""

        base_context = dict(kwargs.pop("context", None) or {})
        results = []
        for index, item in enumerate(items):
            context = {**base_context, "batch_index": index, "batch_size": len(items)}
            results.append(self.validate(item, context=context, **kwargs))
        return results

    # Cache

    @staticmethod
    def _cache_key(data: Any, options: Mapping[str, Any]) -> str:
        payload = json.dumps({"data": data, "options": options}, sort_keys=True, default=_cache_default)
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

    def _cache_get(self, key: str) -> ValidationResult | None:
        assert self._cache is not None
        with self._cache_lock:
            cached = self._cache.get(key)
            if cached is None:
                self._metrics["cache_misses"] += 1
            else:
                self._metrics["cache_hits"] += 1
        record_validation_cache(cached is not None)
        return cached.model_copy(deep=True) if cached is not None else None

    def _cache_put(self, key: str, result: ValidationResult) -> None:
        assert self._cache is not None
        snapshot = result.model_copy(deep=True)
        with self._cache_lock:
            self._cache[key] = snapshot

    def clear_cache(self) -> None:
        if self._cache is None:
            return
        with self._cache_lock:
            self._cache.clear()
        logger.debug("Validation cache cleared")

    def _record(self, result: ValidationResult) -> None:
        with self._cache_lock:
            self._metrics["total_validations"] += 1
            key = "successful_validations" if result.valid else "failed_validations"
            self._metrics[key] += 1

    def get_metrics(self) -> dict[str, Any]:
        with self._cache_lock:
            metrics = copy.copy(self._metrics)
            cache_size = len(self._cache) if self._cache is not None else 0
        lookups = metrics["cache_hits"] + metrics["cache_misses"]
        total = metrics["total_validations"]
        return {
            **metrics,
            "cache_size": cache_size,
            "cache_hit_rate": round(metrics["cache_hits"] / lookups * 100, 2) if lookups else 0.0,
            "success_rate": round(metrics["successful_validations"] / total * 100, 2) if total else 0.0,
            "registered_validators": sorted(self._validators),
            "registered_schemas": sorted(self._schemas),
            "registered_rules": sorted(self._rules),
        }


_framework: ValidationFramework | None = None


def get_validation_framework() -> ValidationFramework:
    """Return the process-wide framework built from global settings."""

    global _framework
    if _framework is None:
        settings = get_settings()
        _framework = ValidationFramework(settings.validation, strict=settings.strict_config)
    return _framework


def reset_validation_framework() -> None:
    global _framework
    _framework = None
