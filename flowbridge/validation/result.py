"""Pydantic schemas for validation results."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ValidationIssue(BaseModel):
    """A single error, warning or suggestion attached to a field path."""

    field: str = Field(..., description="Dotted path of the offending value ('root' for the whole record)")
    message: str = Field(..., description="Human-readable description")
    details: dict[str, Any] = Field(default_factory=dict, description="Extra context such as the rule name")
    severity: Literal["error", "warning", "info"] = Field("error", description="Issue severity")
    timestamp: datetime = Field(default_factory=_utcnow, description="When the issue was recorded")


class ValidationResult(BaseModel):
    """Outcome of one validation; merging ORs invalidity and concatenates issues."""

    valid: bool = Field(True, description="False once any error has been recorded")
    errors: list[ValidationIssue] = Field(default_factory=list, description="Errors in record order")
    warnings: list[ValidationIssue] = Field(default_factory=list, description="Warnings in record order")
    suggestions: list[ValidationIssue] = Field(default_factory=list, description="Informational notes")
    metadata: dict[str, Any] = Field(default_factory=dict, description="Validator-specific metadata")

    def add_error(self, field: str, message: str, details: dict[str, Any] | None = None) -> None:
        self.valid = False
        self.errors.append(
            ValidationIssue(field=field, message=message, details=details or {}, severity="error")
        )

    def add_warning(self, field: str, message: str, details: dict[str, Any] | None = None) -> None:
        self.warnings.append(
            ValidationIssue(field=field, message=message, details=details or {}, severity="warning")
        )

    def add_suggestion(self, field: str, message: str, details: dict[str, Any] | None = None) -> None:
        self.suggestions.append(
            ValidationIssue(field=field, message=message, details=details or {}, severity="info")
        )

    def merge(self, other: ValidationResult) -> ValidationResult:
        """Fold ``other`` into this result in place and return ``self``."""

        if not other.valid:
            self.valid = False
        self.errors.extend(other.errors)
        self.warnings.extend(other.warnings)
        self.suggestions.extend(other.suggestions)
        self.metadata.update(other.metadata)
        return self

    @classmethod
    def combine(cls, results: Iterable[ValidationResult]) -> ValidationResult:
        """Return a new result merging ``results`` in order."""

        combined = cls()
        for result in results:
            combined.merge(result)
        return combined

    def promote_warnings(self) -> ValidationResult:
        """Return a copy where warnings count as errors (strict mode)."""

        promoted = self.model_copy(deep=True)
        for warning in promoted.warnings:
            promoted.errors.append(warning.model_copy(update={"severity": "error"}))
        if promoted.warnings:
            promoted.valid = False
        promoted.warnings = []
        return promoted

    @property
    def first_error(self) -> ValidationIssue | None:
        return self.errors[0] if self.errors else None

    def get_summary(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "error_count": len(self.errors),
            "warning_count": len(self.warnings),
            "suggestion_count": len(self.suggestions),
        }

    def error_messages(self) -> list[str]:
        """Return ``"field: message"`` strings for every error."""

        return [f"{issue.field}: {issue.message}" for issue in self.errors]
