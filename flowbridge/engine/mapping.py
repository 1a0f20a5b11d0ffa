"""Declarative mapping definitions and the record transformation they describe."""

from __future__ import annotations

import json
from collections.abc import Callable, Mapping
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from ..adapters.base import OnConflict, WriteMode, normalize_filters
from ..exceptions import ConfigurationError
from ..validation.conditions import MISSING, evaluate_condition, get_nested_value

Transformer = Callable[[Any], Any]


def _to_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes", "y", "on")
    return bool(value)


def _to_iso_date(value: Any) -> Any:
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, str):
        text = value[:-1] + "+00:00" if value.endswith("Z") else value
        return datetime.fromisoformat(text).isoformat()
    return value


def _to_json(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return json.dumps(value, default=str, sort_keys=True)


def _keep_none(fn: Transformer) -> Transformer:
    def _wrapped(value: Any) -> Any:
        return None if value is None else fn(value)

    _wrapped.__name__ = getattr(fn, "__name__", "transformer")
    return _wrapped


_TRANSFORMERS: dict[str, Transformer] = {
    "upper": _keep_none(lambda value: str(value).upper()),
    "lower": _keep_none(lambda value: str(value).lower()),
    "trim": _keep_none(lambda value: str(value).strip()),
    "int": _keep_none(lambda value: int(Decimal(str(value)))),
    "float": _keep_none(float),
    "str": _keep_none(str),
    "bool": _keep_none(_to_bool),
    "json": _keep_none(_to_json),
    "iso_date": _keep_none(_to_iso_date),
}


def register_transformer(name: str, transformer: Transformer) -> None:
    """Register a named field transformer."""

    _TRANSFORMERS[name] = transformer


def get_transformer(name: str) -> Transformer:
    try:
        return _TRANSFORMERS[name]
    except KeyError:
        available = ", ".join(sorted(_TRANSFORMERS))
        raise ConfigurationError(f"Unknown transformer '{name}'. Available transformers: {available}") from None


def list_transformers() -> list[str]:
    return sorted(_TRANSFORMERS)


class _MappingModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        arbitrary_types_allowed=True,
    )


class FieldMapping(_MappingModel):
    """How one target field is produced from a source record."""

    path: str | None = None
    transform: str | Callable[[Any], Any] | list[str | Callable[[Any], Any]] | None = None
    function: Callable[[Mapping[str, Any]], Any] | None = None
    default: Any = None
    value: Any = MISSING

    @field_validator("transform")
    @classmethod
    def _check_transform(cls, value: Any) -> Any:
        for item in value if isinstance(value, list) else [value]:
            if isinstance(item, str):
                get_transformer(item)
        return value

    def resolve(self, record: Mapping[str, Any], target: str) -> Any:
        if self.value is not MISSING:
            result = self.value
        elif self.function is not None:
            result = self.function(record)
        else:
            result = get_nested_value(record, self.path or target)
            if result is MISSING:
                result = self.default
        steps = self.transform if isinstance(self.transform, list) else [self.transform]
        for step in steps:
            if step is None:
                continue
            fn = get_transformer(step) if isinstance(step, str) else step
            result = fn(result)
        return result

    @property
    def has_transform(self) -> bool:
        return self.transform is not None or self.function is not None


class EndpointReference(_MappingModel):
    """An adapter endpoint plus the schema within it."""

    endpoint: str
    schema_ref: str = Field(alias="schema")


class MappingDefinition(_MappingModel):
    """
    Declarative mapping between a source and a target.

    ``fields`` maps each target field to a source path, a callable taking the
    source record, or a :class:`FieldMapping`. An empty mapping copies the
    record unchanged.
    """

    id: str
    name: str | None = None
    source: EndpointReference
    target: EndpointReference
    fields: dict[str, FieldMapping] = Field(default_factory=dict)
    read_options: dict[str, Any] = Field(default_factory=dict)
    mode: WriteMode = WriteMode.INSERT
    conflict_columns: list[str] = Field(default_factory=list)
    update_columns: list[str] | None = None
    where_conditions: list[dict[str, Any]] = Field(default_factory=list)
    on_conflict: OnConflict = OnConflict.ERROR
    batch_size: int = Field(default=1_000, ge=1)
    transaction: bool = False
    preconditions: Any = None
    postconditions: Any = None
    input_schema: dict[str, Any] | str | None = None
    output_schema: dict[str, Any] | str | None = None
    rules: list[dict[str, Any]] = Field(default_factory=list)
    transformations: list[Any] = Field(default_factory=list)
    validation_rules: list[dict[str, Any]] = Field(default_factory=list)
    quality_rules: list[dict[str, Any]] = Field(default_factory=list)
    aggregation: dict[str, Any] | None = None
    estimated_records: int | None = Field(default=None, ge=0)
    execution: dict[str, Any] = Field(default_factory=dict)

    @field_validator("fields", mode="before")
    @classmethod
    def _normalize_fields(cls, value: Any) -> Any:
        if value is None:
            return {}
        if not isinstance(value, Mapping):
            raise ValueError("fields must be a mapping of target field to source definition")
        normalized: dict[str, Any] = {}
        for target, spec in value.items():
            if isinstance(spec, str):
                normalized[target] = {"path": spec}
            elif callable(spec) and not isinstance(spec, FieldMapping):
                normalized[target] = {"function": spec}
            else:
                normalized[target] = spec
        return normalized

    @field_validator("where_conditions", mode="before")
    @classmethod
    def _check_where(cls, value: Any) -> Any:
        return [condition.model_dump() for condition in normalize_filters(value)]

    @field_validator("conflict_columns")
    @classmethod
    def _dedupe_conflict_columns(cls, value: list[str]) -> list[str]:
        return list(dict.fromkeys(value))

    @model_validator(mode="after")
    def _check_conflict_columns(self) -> MappingDefinition:
        if self.mode in (WriteMode.UPSERT, WriteMode.REPLACE) and not self.conflict_columns:
            raise ValueError(f"mode '{self.mode.value}' requires conflict_columns")
        return self

    def transform_record(self, record: Mapping[str, Any]) -> dict[str, Any]:
        """Produce the target record for ``record``."""

        if not self.fields:
            return dict(record)
        return {target: spec.resolve(record, target) for target, spec in self.fields.items()}

    def accepts(self, record: Mapping[str, Any], context: Mapping[str, Any] | None = None) -> bool:
        """Evaluate the preconditions; records failing them are skipped."""

        if self.preconditions is None:
            return True
        return evaluate_condition(record, self.preconditions, context)

    def satisfies_postconditions(self, record: Mapping[str, Any], context: Mapping[str, Any] | None = None) -> bool:
        if self.postconditions is None:
            return True
        return evaluate_condition(record, self.postconditions, context)

    @property
    def transformation_count(self) -> int:
        return len(self.transformations) + sum(1 for spec in self.fields.values() if spec.has_transform)

    def write_options(self, batch_size: int | None = None) -> dict[str, Any]:
        """Return the ``write_data`` options this mapping implies."""

        options: dict[str, Any] = {
            "mode": self.mode,
            "batch_size": batch_size or self.batch_size,
            "conflict_columns": list(self.conflict_columns),
            "on_conflict": self.on_conflict,
            "where_conditions": list(self.where_conditions),
            "transaction": self.transaction,
        }
        if self.update_columns is not None:
            options["update_columns"] = list(self.update_columns)
        return options


def build_mapping(definition: MappingDefinition | Mapping[str, Any]) -> MappingDefinition:
    """Validate a raw mapping definition, wrapping failures in :class:`ConfigurationError`."""

    if isinstance(definition, MappingDefinition):
        return definition
    if not isinstance(definition, Mapping):
        raise ConfigurationError(f"Mapping definition must be a mapping, got {type(definition).__name__}")
    try:
        return MappingDefinition.model_validate(dict(definition))
    except (PydanticValidationError, ValueError) as exc:
        raise ConfigurationError(f"Invalid mapping definition: {exc}") from exc
