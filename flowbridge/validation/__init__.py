"""Record validation: schema, type, business-rule, custom and composite validators."""

from .conditions import MISSING, evaluate_condition, get_nested_value
from .framework import ValidationFramework, get_validation_framework, reset_validation_framework
from .presets import (
    ENTITY_SCHEMAS,
    FIELD_SCHEMAS,
    OPTION_PRESETS,
    build_object_schema,
    get_field_schema,
    get_validation_preset,
    register_presets,
)
from .result import ValidationIssue, ValidationResult
from .validators import (
    BaseValidator,
    BusinessRule,
    BusinessRuleValidator,
    CompositeValidator,
    CustomValidator,
    SchemaValidator,
    TypeValidator,
)

__all__ = [
    "MISSING",
    "ENTITY_SCHEMAS",
    "FIELD_SCHEMAS",
    "OPTION_PRESETS",
    "BaseValidator",
    "BusinessRule",
    "BusinessRuleValidator",
    "CompositeValidator",
    "CustomValidator",
    "SchemaValidator",
    "TypeValidator",
    "ValidationFramework",
    "ValidationIssue",
    "ValidationResult",
    "build_object_schema",
    "evaluate_condition",
    "get_field_schema",
    "get_nested_value",
    "get_validation_framework",
    "get_validation_preset",
    "register_presets",
    "reset_validation_framework",
]
