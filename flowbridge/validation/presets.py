"""Reusable field schemas, entity schemas and option presets."""

from __future__ import annotations

import copy
from collections.abc import Mapping
from typing import Any

from ..exceptions import ConfigurationError
from ..utils.config import ValidationOptions
from .framework import ValidationFramework

FIELD_SCHEMAS: dict[str, dict[str, Any]] = {
    "string": {"type": "string", "minLength": 0, "maxLength": 255},
    "number": {"type": "number"},
    "integer": {"type": "integer"},
    "boolean": {"type": "boolean"},
    "date": {"type": "string", "format": "date"},
    "date_time": {"type": "string", "format": "date-time"},
    "email": {"type": "string", "format": "email", "maxLength": 255},
    "phone": {"type": "string", "pattern": r"^\+?[1-9]\d{1,14}$", "maxLength": 20},
    "url": {"type": "string", "format": "uri", "maxLength": 2048},
    "uuid": {"type": "string", "format": "uuid"},
    "ip_address": {"type": "string", "oneOf": [{"format": "ipv4"}, {"format": "ipv6"}]},
    "percentage": {"type": "number", "minimum": 0, "maximum": 100},
    "currency": {"type": "number", "multipleOf": 0.01, "minimum": 0},
    "latitude": {"type": "number", "minimum": -90, "maximum": 90},
    "longitude": {"type": "number", "minimum": -180, "maximum": 180},
    "short_text": {"type": "string", "maxLength": 100},
    "long_text": {"type": "string", "maxLength": 5000},
    "code": {"type": "string", "pattern": r"^[A-Z0-9_]+$", "maxLength": 50},
    "slug": {"type": "string", "pattern": r"^[a-z0-9-]+$", "maxLength": 100},
}

ENTITY_SCHEMAS: dict[str, dict[str, Any]] = {
    "user": {
        "type": "object",
        "required": ["id", "email", "username"],
        "properties": {
            "id": FIELD_SCHEMAS["uuid"],
            "email": FIELD_SCHEMAS["email"],
            "username": {"type": "string", "pattern": r"^[a-zA-Z0-9_]{3,30}$"},
            "first_name": FIELD_SCHEMAS["short_text"],
            "last_name": FIELD_SCHEMAS["short_text"],
            "phone": FIELD_SCHEMAS["phone"],
            "birth_date": FIELD_SCHEMAS["date"],
            "active": FIELD_SCHEMAS["boolean"],
        },
    },
    "address": {
        "type": "object",
        "required": ["street", "city", "country", "postal_code"],
        "properties": {
            "street": FIELD_SCHEMAS["short_text"],
            "city": FIELD_SCHEMAS["short_text"],
            "state": FIELD_SCHEMAS["short_text"],
            "country": {"type": "string", "pattern": r"^[A-Z]{2}$"},
            "postal_code": {"type": "string", "maxLength": 20},
            "latitude": FIELD_SCHEMAS["latitude"],
            "longitude": FIELD_SCHEMAS["longitude"],
        },
    },
}

OPTION_PRESETS: dict[str, dict[str, Any]] = {
    "strict": {"stop_on_error": True, "strict_mode": True, "coerce_types": False},
    "lenient": {"stop_on_error": False, "strict_mode": False, "coerce_types": True},
    "fast": {"stop_on_error": True, "strict_mode": False, "use_cache": True},
    "development": {"stop_on_error": False, "strict_mode": True},
    "production": {"stop_on_error": True, "strict_mode": True},
}


def get_field_schema(name: str, **overrides: Any) -> dict[str, Any]:
    """Return a copy of a field schema with ``overrides`` applied."""

    try:
        schema = copy.deepcopy(FIELD_SCHEMAS[name])
    except KeyError:
        raise ConfigurationError(f"Unknown field schema: {name}") from None
    schema.update(overrides)
    return schema


def build_object_schema(
    fields: Mapping[str, str | Mapping[str, Any]],
    *,
    required: list[str] | None = None,
    additional_properties: bool = True,
) -> dict[str, Any]:
    """Build an object schema from preset names or inline schemas per field."""

    properties = {
        name: get_field_schema(spec) if isinstance(spec, str) else dict(spec) for name, spec in fields.items()
    }
    schema: dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        schema["required"] = list(required)
    if not additional_properties:
        schema["additionalProperties"] = False
    return schema


def get_validation_preset(name: str, **overrides: Any) -> ValidationOptions:
    """Return :class:`ValidationOptions` for a named preset."""

    preset = OPTION_PRESETS.get(name)
    if preset is None:
        available = ", ".join(sorted(OPTION_PRESETS))
        raise ConfigurationError(f"Unknown validation preset: {name}. Available: {available}")
    return ValidationOptions(**{**preset, **overrides})


def register_presets(framework: ValidationFramework) -> ValidationFramework:
    """Register every field and entity schema under its preset name."""

    for name, schema in {**FIELD_SCHEMAS, **ENTITY_SCHEMAS}.items():
        framework.register_schema(name, copy.deepcopy(schema))
    return framework
