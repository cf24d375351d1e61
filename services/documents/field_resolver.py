"""
Field Resolver

Validates and normalizes caller-supplied field values against a template's
FieldSchema. Resolution is total: every data problem becomes a FieldError
in the result, nothing is raised, and the same input always produces the
same values and the same error list.

Type coercions:
    number / currency / percentage -> int when integral, else float
    boolean / checkbox             -> bool ("yes", "on", "1", ... accepted)
    date                           -> datetime.date (ISO, MM/DD/YYYY, MM-DD-YYYY)
    select / radio                 -> one of the declared option values
    multiselect                    -> list of declared option values
    everything else                -> stripped str
"""

import logging
import math
import re
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from .exceptions import ValidationError
from .types import (
    DependencyCondition,
    FieldDependency,
    FieldDescriptor,
    FieldError,
    FieldErrorCode,
    FieldSchema,
    FieldType,
    ResolutionResult,
    json_safe,
)

logger = logging.getLogger(__name__)


class FieldResolver:
    """
    Resolves raw field values for one template.

    Fields are evaluated in dependency order, so a `depends_on` condition
    always sees the already-resolved value of the field it names. A field
    whose condition is unmet is left out of the output and is never
    reported as missing.
    """

    TRUE_STRINGS = frozenset({'true', 'yes', 'y', 'on', '1'})
    FALSE_STRINGS = frozenset({'false', 'no', 'n', 'off', '0'})
    DATE_FORMATS = ('%Y-%m-%d', '%m/%d/%Y', '%m-%d-%Y')
    EMAIL_PATTERN = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')

    @classmethod
    def resolve(
        cls,
        schema: FieldSchema,
        raw_values: Optional[Mapping[str, Any]],
        allow_passthrough: Optional[Iterable[str]] = None,
    ) -> ResolutionResult:
        """
        Resolve all fields of a schema.

        Args:
            schema: The template's field schema
            raw_values: Caller-supplied values keyed by field name
            allow_passthrough: Extra names accepted without validation

        Returns:
            ResolutionResult with typed values (schema order), errors and
            pass-through metadata
        """
        raw_values = dict(raw_values or {})
        passthrough_names = set(schema.passthrough) | set(allow_passthrough or ())
        resolved: Dict[str, Any] = {}
        errors: List[FieldError] = []

        for descriptor in cls.dependency_order(schema):
            if descriptor.depends_on and not cls.dependency_met(descriptor.depends_on, resolved):
                logger.debug(f"Dependency unmet for {descriptor.name}, skipping")
                continue

            raw = raw_values.get(descriptor.name)
            if cls._is_absent(raw):
                if descriptor.default_value is None:
                    if descriptor.required:
                        errors.append(FieldError(
                            FieldErrorCode.MISSING_REQUIRED_FIELD,
                            descriptor.name,
                            f"{descriptor.label} is required",
                        ))
                    continue
                raw = descriptor.default_value

            value, error = cls.coerce(descriptor, raw)
            if error is None:
                error = cls.validate(descriptor, value)
            if error is not None:
                errors.append(error)
                continue
            resolved[descriptor.name] = value

        passthrough: Dict[str, Any] = {}
        for name in sorted(raw_values):
            if schema.get_field(name) is not None:
                continue
            if name in passthrough_names:
                if not cls._is_absent(raw_values[name]):
                    passthrough[name] = raw_values[name]
            else:
                errors.append(FieldError(
                    FieldErrorCode.UNKNOWN_FIELD, name, f"Unknown field '{name}' for {schema.template_code}"
                ))

        order = {name: i for i, name in enumerate(schema.field_names())}
        errors.sort(key=lambda e: (order.get(e.field, len(order)), e.field))
        values = {name: resolved[name] for name in schema.field_names() if name in resolved}

        if errors:
            logger.info(f"{schema.template_code}: {len(errors)} field error(s): {[e.field for e in errors]}")
        return ResolutionResult(values=values, errors=errors, passthrough=passthrough)

    @classmethod
    def resolve_or_raise(
        cls,
        schema: FieldSchema,
        raw_values: Optional[Mapping[str, Any]],
        allow_passthrough: Optional[Iterable[str]] = None,
    ) -> ResolutionResult:
        """Like resolve(), but raise ValidationError carrying every field error."""
        result = cls.resolve(schema, raw_values, allow_passthrough)
        if not result.ok:
            fields = ', '.join(result.error_fields())
            raise ValidationError(
                f"Invalid fields for {schema.template_code}: {fields}",
                errors=result.errors,
                template_code=schema.template_code,
            )
        return result

    @classmethod
    def serialize(cls, values: Mapping[str, Any]) -> Dict[str, Any]:
        """JSON-safe copy of resolved values for persistence (dates become ISO strings)."""
        return {name: json_safe(value) for name, value in values.items()}

    @classmethod
    def sample_values(cls, schema: FieldSchema) -> Dict[str, Any]:
        """Raw placeholder values for every field, for rendering template previews."""
        samples = {}
        for descriptor in schema.fields:
            if descriptor.default_value is not None:
                samples[descriptor.name] = descriptor.default_value
            elif descriptor.options:
                first = descriptor.options[0].value
                samples[descriptor.name] = [first] if descriptor.type == FieldType.MULTISELECT else first
            elif descriptor.type.is_numeric:
                samples[descriptor.name] = cls._sample_number(descriptor)
            elif descriptor.type.is_boolean:
                samples[descriptor.name] = True
            elif descriptor.type == FieldType.DATE:
                samples[descriptor.name] = (date.today() + timedelta(days=30)).isoformat()
            elif descriptor.type == FieldType.EMAIL:
                samples[descriptor.name] = 'sample@example.com'
            elif descriptor.type == FieldType.PHONE:
                samples[descriptor.name] = '(555) 123-4567'
            else:
                samples[descriptor.name] = f"Sample {descriptor.label}"
        return samples

    @staticmethod
    def _sample_number(descriptor: FieldDescriptor) -> Any:
        value = {FieldType.CURRENCY: 100000, FieldType.PERCENTAGE: 3}.get(descriptor.type, 1)
        rules = descriptor.validation
        if rules is not None:
            if rules.min is not None and value < rules.min:
                value = rules.min
            if rules.max is not None and value > rules.max:
                value = rules.max
        return value

    # =========================================================================
    # DEPENDENCIES
    # =========================================================================

    @classmethod
    def dependency_order(cls, schema: FieldSchema) -> List[FieldDescriptor]:
        """Schema order, except that each field follows the field it depends on."""
        by_name = {f.name: f for f in schema.fields}
        ordered: List[FieldDescriptor] = []
        placed = set()

        def place(descriptor: FieldDescriptor, chain: Tuple[str, ...]) -> None:
            if descriptor.name in placed:
                return
            dep = descriptor.depends_on
            if dep and dep.field in by_name and dep.field not in chain:
                place(by_name[dep.field], chain + (descriptor.name,))
            placed.add(descriptor.name)
            ordered.append(descriptor)

        for descriptor in schema.fields:
            place(descriptor, ())
        return ordered

    @classmethod
    def dependency_met(cls, dependency: FieldDependency, resolved: Mapping[str, Any]) -> bool:
        """Evaluate a depends_on rule. A dependency on an absent field is unmet."""
        if dependency.field not in resolved:
            return False
        actual = resolved[dependency.field]
        expected = dependency.value
        condition = dependency.condition

        if condition == DependencyCondition.EQUALS:
            return cls._same(actual, expected)
        if condition == DependencyCondition.NOT_EQUALS:
            return not cls._same(actual, expected)
        if condition == DependencyCondition.CONTAINS:
            if isinstance(actual, (list, tuple)):
                return any(cls._same(item, expected) for item in actual)
            return str(expected) in str(actual)

        left, right = cls._as_number(actual), cls._as_number(expected)
        if left is None or right is None:
            return False
        if condition == DependencyCondition.GREATER_THAN:
            return left > right
        return left < right

    @classmethod
    def _same(cls, actual: Any, expected: Any) -> bool:
        left, right = cls._as_number(actual), cls._as_number(expected)
        if left is not None and right is not None:
            return left == right
        if isinstance(actual, bool) or isinstance(expected, bool):
            return cls._as_bool(actual) == cls._as_bool(expected)
        return str(json_safe(actual)) == str(json_safe(expected))

    # =========================================================================
    # COERCION
    # =========================================================================

    @staticmethod
    def _is_absent(value: Any) -> bool:
        if value is None:
            return True
        if isinstance(value, str):
            return not value.strip()
        if isinstance(value, (list, tuple)):
            return len(value) == 0
        return False

    @classmethod
    def coerce(cls, descriptor: FieldDescriptor, raw: Any) -> Tuple[Any, Optional[FieldError]]:
        """Convert a raw value to the descriptor's type. Returns (value, error)."""
        field_type = descriptor.type

        if field_type.is_numeric:
            number = cls._as_number(raw, strict=True)
            if number is None:
                return None, cls._error(FieldErrorCode.INVALID_TYPE, descriptor, f"{descriptor.label} must be a number")
            return number, None

        if field_type.is_boolean:
            flag = cls._as_bool(raw)
            if flag is None:
                return None, cls._error(FieldErrorCode.INVALID_TYPE, descriptor, f"{descriptor.label} must be true or false")
            return flag, None

        if field_type == FieldType.DATE:
            parsed = cls._as_date(raw)
            if parsed is None:
                return None, cls._error(FieldErrorCode.INVALID_TYPE, descriptor, f"{descriptor.label} must be a date")
            return parsed, None

        if field_type == FieldType.MULTISELECT:
            if not isinstance(raw, (list, tuple)):
                return None, cls._error(FieldErrorCode.INVALID_TYPE, descriptor, f"{descriptor.label} must be a list")
            chosen: List[str] = []
            for item in raw:
                option = str(item)
                if option not in descriptor.option_values:
                    return None, cls._error(
                        FieldErrorCode.INVALID_OPTION, descriptor,
                        f"'{option}' is not a valid choice for {descriptor.label}",
                    )
                if option not in chosen:
                    chosen.append(option)
            return chosen, None

        if field_type.is_choice:
            if isinstance(raw, (list, tuple, dict)):
                return None, cls._error(FieldErrorCode.INVALID_TYPE, descriptor, f"{descriptor.label} must be a single value")
            option = str(raw).strip()
            if option not in descriptor.option_values:
                return None, cls._error(
                    FieldErrorCode.INVALID_OPTION, descriptor,
                    f"'{option}' is not a valid choice for {descriptor.label}",
                )
            return option, None

        # string, text, email, phone, address
        if isinstance(raw, bool) or not isinstance(raw, (str, int, float, Decimal)):
            return None, cls._error(FieldErrorCode.INVALID_TYPE, descriptor, f"{descriptor.label} must be text")
        return str(raw).strip(), None

    @classmethod
    def _as_number(cls, value: Any, strict: bool = False) -> Optional[Any]:
        if isinstance(value, bool):
            return None
        if isinstance(value, str):
            text = value.strip()
            if strict:
                text = text.replace('$', '').replace(',', '').replace('%', '').strip()
            try:
                value = float(text)
            except ValueError:
                return None
        elif isinstance(value, Decimal):
            value = float(value)
        elif not isinstance(value, (int, float)):
            return None

        if isinstance(value, float):
            if not math.isfinite(value):
                return None
            if value.is_integer():
                return int(value)
        return value

    @classmethod
    def _as_bool(cls, value: Any) -> Optional[bool]:
        if isinstance(value, bool):
            return value
        if isinstance(value, int) and value in (0, 1):
            return bool(value)
        if isinstance(value, str):
            text = value.strip().lower()
            if text in cls.TRUE_STRINGS:
                return True
            if text in cls.FALSE_STRINGS:
                return False
        return None

    @classmethod
    def _as_date(cls, value: Any) -> Optional[date]:
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date):
            return value
        if not isinstance(value, str):
            return None
        text = value.strip()
        if 'T' in text:
            try:
                return datetime.fromisoformat(text.replace('Z', '+00:00')).date()
            except ValueError:
                return None
        for fmt in cls.DATE_FORMATS:
            try:
                return datetime.strptime(text, fmt).date()
            except ValueError:
                continue
        return None

    # =========================================================================
    # VALIDATION
    # =========================================================================

    @classmethod
    def validate(cls, descriptor: FieldDescriptor, value: Any) -> Optional[FieldError]:
        """Apply the descriptor's validation rules to an already-coerced value."""
        if descriptor.type == FieldType.EMAIL and not cls.EMAIL_PATTERN.match(value):
            return cls._error(FieldErrorCode.PATTERN_MISMATCH, descriptor, f"{descriptor.label} must be an email address")

        rules = descriptor.validation
        if rules is None:
            return None

        if descriptor.type.is_numeric:
            if rules.min is not None and value < rules.min:
                return cls._error(FieldErrorCode.OUT_OF_RANGE, descriptor, f"{descriptor.label} must be at least {rules.min}")
            if rules.max is not None and value > rules.max:
                return cls._error(FieldErrorCode.OUT_OF_RANGE, descriptor, f"{descriptor.label} must be at most {rules.max}")
            return None

        if isinstance(value, (str, list)):
            length = len(value)
            if rules.min_length is not None and length < rules.min_length:
                return cls._error(
                    FieldErrorCode.INVALID_LENGTH, descriptor,
                    f"{descriptor.label} must have at least {rules.min_length} character(s)"
                    if isinstance(value, str) else f"Select at least {rules.min_length} for {descriptor.label}",
                )
            if rules.max_length is not None and length > rules.max_length:
                return cls._error(
                    FieldErrorCode.INVALID_LENGTH, descriptor,
                    f"{descriptor.label} must have at most {rules.max_length} character(s)"
                    if isinstance(value, str) else f"Select at most {rules.max_length} for {descriptor.label}",
                )

        if rules.pattern and isinstance(value, str) and not re.fullmatch(rules.pattern, value):
            return cls._error(FieldErrorCode.PATTERN_MISMATCH, descriptor, f"{descriptor.label} has an invalid format")
        return None

    @staticmethod
    def _error(code: FieldErrorCode, descriptor: FieldDescriptor, message: str) -> FieldError:
        return FieldError(code=code, field=descriptor.name, message=message)
