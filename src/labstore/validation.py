"""
labstore — entity validation for granular mutations.

File: src/labstore/validation.py

Purpose
- Define the validator contract the store engine calls before every granular
  insert or update, and a rule-driven reference implementation.

Functional requirements
- Every rule is checked; errors are aggregated rather than short-circuited.
- Sanitized data is returned only when the entity is valid.
- Sanitizers transform the output; checks run against the supplied value.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import date
from typing import Any, Final, Literal, Protocol

RuleType = Literal["string", "number", "date", "email", "array", "object", "boolean"]

EMAIL_PATTERN: Final[re.Pattern[str]] = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
DATE_PATTERN: Final[re.Pattern[str]] = re.compile(r"^\d{4}-\d{2}-\d{2}$")
PROTOCOL_PATTERN: Final[re.Pattern[str]] = re.compile(r"^[A-Z0-9\-_]+$", re.IGNORECASE)
USERNAME_PATTERN: Final[re.Pattern[str]] = re.compile(r"^[a-zA-Z0-9_.-]+$")

_EARLIEST_DATE: Final[date] = date(1900, 1, 1)
_WHITESPACE_RUN = re.compile(r"\s+")


@dataclass(frozen=True, slots=True)
class ValidationResult:
    is_valid: bool
    errors: tuple[str, ...] = ()
    sanitized_data: dict[str, Any] | None = None


class Validator(Protocol):
    """Contract for anything the engine consults before persisting an entity."""

    def validate(self, entity: Mapping[str, Any]) -> ValidationResult: ...


@dataclass(frozen=True, slots=True)
class FieldRule:
    """One field constraint; a ``check`` receives the value and the whole entity."""

    field: str
    type: RuleType
    required: bool = False
    min_length: int | None = None
    max_length: int | None = None
    minimum: float | None = None
    maximum: float | None = None
    pattern: re.Pattern[str] | None = None
    check: Callable[[Any, Mapping[str, Any]], bool] | None = None
    sanitizer: Callable[[Any], Any] | None = None


@dataclass(frozen=True, slots=True)
class SchemaValidator:
    """Validate a mapping against an ordered list of :class:`FieldRule`."""

    rules: Sequence[FieldRule]
    name: str = "entity"

    def validate(self, entity: Mapping[str, Any]) -> ValidationResult:
        if not isinstance(entity, Mapping):
            return ValidationResult(False, ("invalid data: object expected",))

        errors: list[str] = []
        sanitized: dict[str, Any] = dict(entity)

        for rule in self.rules:
            value = entity.get(rule.field)
            if _is_blank(value):
                if rule.required:
                    errors.append(f"field '{rule.field}' is required")
                continue

            if not _matches_type(value, rule.type):
                errors.append(f"field '{rule.field}' must be of type {rule.type}")
                continue

            if rule.sanitizer is not None:
                sanitized[rule.field] = rule.sanitizer(value)

            if isinstance(value, str):
                if rule.min_length is not None and len(value) < rule.min_length:
                    errors.append(
                        f"field '{rule.field}' must have at least {rule.min_length} characters"
                    )
                if rule.max_length is not None and len(value) > rule.max_length:
                    errors.append(
                        f"field '{rule.field}' must have at most {rule.max_length} characters"
                    )
                if rule.pattern is not None and not rule.pattern.search(value):
                    errors.append(f"field '{rule.field}' does not match the expected format")

            if _is_number(value):
                if rule.minimum is not None and value < rule.minimum:
                    errors.append(f"field '{rule.field}' must be >= {rule.minimum:g}")
                if rule.maximum is not None and value > rule.maximum:
                    errors.append(f"field '{rule.field}' must be <= {rule.maximum:g}")

            if rule.check is not None and not rule.check(value, entity):
                errors.append(f"field '{rule.field}' has an invalid value")

        if errors:
            return ValidationResult(False, tuple(errors))
        return ValidationResult(True, (), sanitized)


def collapse_whitespace(value: str) -> str:
    return _WHITESPACE_RUN.sub(" ", value.strip())


def parse_iso_date(value: object) -> date | None:
    if not isinstance(value, str) or not DATE_PATTERN.match(value):
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        return None


def _is_blank(value: object) -> bool:
    return value is None or value == ""


def _is_number(value: object) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _matches_type(value: object, rule_type: RuleType) -> bool:
    if rule_type == "string":
        return isinstance(value, str)
    if rule_type == "number":
        return _is_number(value) and value == value
    if rule_type == "boolean":
        return isinstance(value, bool)
    if rule_type == "date":
        return parse_iso_date(value) is not None
    if rule_type == "email":
        return isinstance(value, str) and EMAIL_PATTERN.match(value) is not None
    if rule_type == "array":
        return isinstance(value, (list, tuple))
    return isinstance(value, Mapping)


def _after_earliest(value: object, _entity: Mapping[str, Any]) -> bool:
    parsed = parse_iso_date(value)
    return parsed is not None and parsed > _EARLIEST_DATE


def _not_before_start(value: object, entity: Mapping[str, Any]) -> bool:
    start = parse_iso_date(entity.get("startDate"))
    end = parse_iso_date(value)
    if start is None or end is None:
        return True
    return end >= start


def _one_of(*allowed: str) -> Callable[[Any, Mapping[str, Any]], bool]:
    def check(value: Any, _entity: Mapping[str, Any]) -> bool:
        return value in allowed

    return check


def _clamp(minimum: float, maximum: float, fallback: float) -> Callable[[Any], float]:
    def sanitize(value: Any) -> float:
        try:
            number = float(value)
        except (TypeError, ValueError):
            number = fallback
        if number != number:
            number = fallback
        clamped = float(max(minimum, min(maximum, number)))
        return int(clamped) if clamped.is_integer() else clamped

    return sanitize


def _strip(value: str) -> str:
    return value.strip()


INVENTORY_RULES: Final[tuple[FieldRule, ...]] = (
    FieldRule("reagent", "string", required=True, min_length=1, max_length=100, sanitizer=collapse_whitespace),
    FieldRule("manufacturer", "string", required=True, min_length=1, max_length=100, sanitizer=collapse_whitespace),
    FieldRule("lot", "string", required=True, min_length=1, max_length=50, sanitizer=lambda v: v.strip().upper()),
    FieldRule("quantity", "number", required=True, minimum=0, maximum=999_999, sanitizer=_clamp(0, 999_999, 0)),
    FieldRule("validity", "date", required=True, pattern=DATE_PATTERN, check=_after_earliest),
)

ASSAY_RULES: Final[tuple[FieldRule, ...]] = (
    FieldRule("protocol", "string", required=True, min_length=1, max_length=50),
)

HOLIDAY_RULES: Final[tuple[FieldRule, ...]] = (
    FieldRule("name", "string", required=True, min_length=1, max_length=100, sanitizer=_strip),
    FieldRule("startDate", "date", required=True, pattern=DATE_PATTERN),
    FieldRule("endDate", "date", required=True, pattern=DATE_PATTERN, check=_not_before_start),
)

CALIBRATION_RULES: Final[tuple[FieldRule, ...]] = (
    FieldRule(
        "protocol",
        "string",
        required=True,
        min_length=1,
        max_length=50,
        pattern=PROTOCOL_PATTERN,
        sanitizer=lambda v: v.strip().upper(),
    ),
    FieldRule("startDate", "date", required=True, pattern=DATE_PATTERN),
    FieldRule("endDate", "date", required=True, pattern=DATE_PATTERN, check=_not_before_start),
    FieldRule("type", "string", required=True, check=_one_of("Preventiva", "Corretiva", "Verificação")),
    FieldRule(
        "status",
        "string",
        required=True,
        check=_one_of("Agendada", "Em Andamento", "Concluída", "Cancelada"),
    ),
    FieldRule("affectedTerminals", "string", required=True, min_length=1, max_length=200, sanitizer=_strip),
)

SETTINGS_RULES: Final[tuple[FieldRule, ...]] = (
    FieldRule(
        "notificationEmail",
        "email",
        required=True,
        pattern=EMAIL_PATTERN,
        sanitizer=lambda v: v.strip().lower(),
    ),
    FieldRule("alertThreshold", "number", required=True, minimum=1, maximum=365, sanitizer=_clamp(1, 365, 30)),
    FieldRule("schedulePassword", "string", min_length=4, max_length=50, sanitizer=_strip),
)

USER_RULES: Final[tuple[FieldRule, ...]] = (
    FieldRule(
        "username",
        "string",
        required=True,
        min_length=3,
        max_length=50,
        pattern=USERNAME_PATTERN,
        sanitizer=lambda v: v.strip().lower(),
    ),
    FieldRule(
        "type",
        "string",
        required=True,
        check=_one_of("administrador", "tecnico_eficiencia", "tecnico_seguranca", "visualizador"),
    ),
    FieldRule("displayName", "string", required=True, min_length=1, max_length=100, sanitizer=_strip),
)

CATEGORY_RULES: Final[tuple[FieldRule, ...]] = (
    FieldRule("name", "string", required=True, min_length=1, max_length=100, sanitizer=_strip),
)


def default_validators() -> dict[str, Validator]:
    """Validators keyed by the entity kinds the engine mutates granularly."""

    return {
        "inventory": SchemaValidator(INVENTORY_RULES, name="inventory item"),
        "assay": SchemaValidator(ASSAY_RULES, name="assay"),
        "holiday": SchemaValidator(HOLIDAY_RULES, name="holiday"),
        "calibration": SchemaValidator(CALIBRATION_RULES, name="calibration"),
        "settings": SchemaValidator(SETTINGS_RULES, name="settings"),
        "system_user": SchemaValidator(USER_RULES, name="system user"),
        "category": SchemaValidator(CATEGORY_RULES, name="category"),
    }


__all__ = [
    "ASSAY_RULES",
    "CALIBRATION_RULES",
    "CATEGORY_RULES",
    "DATE_PATTERN",
    "EMAIL_PATTERN",
    "FieldRule",
    "HOLIDAY_RULES",
    "INVENTORY_RULES",
    "SETTINGS_RULES",
    "SchemaValidator",
    "USER_RULES",
    "ValidationResult",
    "Validator",
    "collapse_whitespace",
    "default_validators",
    "parse_iso_date",
]
