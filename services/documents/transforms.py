"""
Field Transforms

Functions that turn resolved field values into the text written onto a
PDF page. Each transform is registered by name and can be referenced by
a field's `format` key in YAML; fields without one use the default for
their type.

Usage in YAML:
    - name: purchasePrice
      type: currency
      format: currency_no_cents
"""

import logging
import re
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Callable, Dict, Optional

from .types import FieldDescriptor, FieldType

logger = logging.getLogger(__name__)

TransformFunc = Callable[[Any], str]

CHECK_MARK = 'X'


def _to_number(value: Any) -> Optional[Decimal]:
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.replace('$', '').replace(',', '').replace('%', '').strip()
        if not value:
            return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def transform_currency(value: Any) -> str:
    """
    Format a number as US currency.

    Examples:
        500000 -> "$500,000.00"
        1234.5 -> "$1,234.50"
    """
    number = _to_number(value)
    if number is None:
        logger.warning(f"Could not format as currency: {value!r}")
        return str(value) if value is not None else ""
    return f"${number:,.2f}"


def transform_currency_no_cents(value: Any) -> str:
    """
    Format a number as whole US dollars.

    Examples:
        500000 -> "$500,000"
        1234.5 -> "$1,235"
    """
    number = _to_number(value)
    if number is None:
        logger.warning(f"Could not format as currency: {value!r}")
        return str(value) if value is not None else ""
    return f"${number.quantize(Decimal(1), rounding=ROUND_HALF_UP):,}"


def transform_percent(value: Any) -> str:
    """
    Examples:
        6 -> "6%"
        6.5 -> "6.5%"
    """
    number = _to_number(value)
    if number is None:
        return str(value) if value is not None else ""
    if number == number.to_integral_value():
        return f"{int(number)}%"
    return f"{number.normalize()}%"


def _to_date(value: Any) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        for fmt in ("%Y-%m-%d", "%m/%d/%Y", "%m-%d-%Y"):
            try:
                return datetime.strptime(value.strip(), fmt).date()
            except ValueError:
                continue
    return None


def transform_date(value: Any) -> str:
    """
    Format a date in long US format.

    Examples:
        date(2026, 1, 15) -> "January 15, 2026"
        "2026-01-15" -> "January 15, 2026"
    """
    parsed = _to_date(value)
    if parsed is None:
        logger.warning(f"Could not parse date: {value!r}")
        return str(value) if value is not None else ""
    return parsed.strftime("%B %d, %Y")


def transform_date_short(value: Any) -> str:
    """date(2026, 1, 15) -> "01/15/2026" """
    parsed = _to_date(value)
    if parsed is None:
        return str(value) if value is not None else ""
    return parsed.strftime("%m/%d/%Y")


def transform_phone(value: Any) -> str:
    """
    Format a phone number in US format.

    Examples:
        "7137254459" -> "(713) 725-4459"
        "1-713-725-4459" -> "(713) 725-4459"
    """
    phone_str = str(value)
    digits = re.sub(r'\D', '', phone_str)

    if len(digits) == 11 and digits[0] == '1':
        digits = digits[1:]
    if len(digits) == 10:
        return f"({digits[:3]}) {digits[3:6]}-{digits[6:]}"

    return phone_str


def transform_checkbox(value: Any) -> str:
    return CHECK_MARK if value is True else ""


def transform_list(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        return ", ".join(str(v) for v in value)
    return str(value)


def transform_number(value: Any) -> str:
    number = _to_number(value)
    if number is None:
        return str(value)
    if number == number.to_integral_value():
        return f"{int(number):,}"
    return f"{number.normalize():,}"


def transform_uppercase(value: Any) -> str:
    return str(value).upper()


def transform_text(value: Any) -> str:
    return str(value)


# Registry of available transforms
TRANSFORMS: Dict[str, TransformFunc] = {
    'currency': transform_currency,
    'currency_no_cents': transform_currency_no_cents,
    'percent': transform_percent,
    'date': transform_date,
    'date_short': transform_date_short,
    'phone': transform_phone,
    'checkbox': transform_checkbox,
    'list': transform_list,
    'number': transform_number,
    'uppercase': transform_uppercase,
    'text': transform_text,
}

DEFAULT_TRANSFORMS: Dict[FieldType, str] = {
    FieldType.NUMBER: 'number',
    FieldType.CURRENCY: 'currency',
    FieldType.PERCENTAGE: 'percent',
    FieldType.BOOLEAN: 'checkbox',
    FieldType.CHECKBOX: 'checkbox',
    FieldType.DATE: 'date',
    FieldType.PHONE: 'phone',
    FieldType.MULTISELECT: 'list',
}


def get_transform(name: str) -> Optional[TransformFunc]:
    """Get a transform function by name."""
    return TRANSFORMS.get(name)


def apply_transform(value: Any, transform_name: Optional[str]) -> str:
    """
    Apply a named transform to a value.

    If transform_name is None or not found, returns str(value).
    """
    if value is None:
        return ""

    if not transform_name:
        return str(value)

    transform_func = get_transform(transform_name)
    if transform_func:
        return transform_func(value)

    logger.warning(f"Unknown transform: {transform_name}")
    return str(value)


def render_value(descriptor: FieldDescriptor, value: Any) -> str:
    """Text for a resolved value of `descriptor`; booleans always render as a check mark or nothing."""
    if descriptor.type.is_boolean:
        return transform_checkbox(value)
    return apply_transform(value, descriptor.format or DEFAULT_TRANSFORMS.get(descriptor.type, 'text'))
