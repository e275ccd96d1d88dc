"""Field types understood by the client.

The server stores ``fieldType`` and ``fieldOptions`` as opaque strings. Clients
resolve them here: unknown or legacy names fall back to a known type, options
are decoded per type, and cell values are checked by one validator per type.
"""

import re
from datetime import date, datetime, time
from enum import Enum
from typing import Callable


class FieldType(str, Enum):
    TEXT = "TEXT"
    MULTILINE_TEXT = "MULTILINE_TEXT"
    NUMBER = "NUMBER"
    CURRENCY = "CURRENCY"
    PERCENTAGE = "PERCENTAGE"
    DROPDOWN = "DROPDOWN"
    AUTOCOMPLETE = "AUTOCOMPLETE"
    CHECKBOX = "CHECKBOX"
    SWITCH = "SWITCH"
    URL = "URL"
    EMAIL = "EMAIL"
    PHONE = "PHONE"
    DATE = "DATE"
    TIME = "TIME"
    DATETIME = "DATETIME"
    DURATION = "DURATION"
    IMAGE = "IMAGE"
    FILE = "FILE"
    BARCODE = "BARCODE"
    SIGNATURE = "SIGNATURE"
    RATING = "RATING"
    COLOR = "COLOR"
    LOCATION = "LOCATION"


# Names written by older clients.
LEGACY_ALIASES = {
    "STRING": FieldType.TEXT,
    "PRICE": FieldType.CURRENCY,
    "AMOUNT": FieldType.NUMBER,
    "SIZE": FieldType.TEXT,
}

DEFAULT_CURRENCY = "CHF"
DEFAULT_MAX_RATING = 5

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_PHONE_RE = re.compile(r"^\+?[0-9 ()./-]{3,}$")
_COLOR_RE = re.compile(r"^#(?:[0-9a-fA-F]{6}|[0-9a-fA-F]{8})$")
_DURATION_RE = re.compile(r"^\d+:[0-5]\d(?::[0-5]\d)?$")


def resolve_field_type(raw: str | None) -> FieldType:
    name = (raw or "").strip().upper() or FieldType.TEXT.value
    try:
        return FieldType(name)
    except ValueError:
        return LEGACY_ALIASES.get(name, FieldType.TEXT)


def choice_options(field_type: str | None, options: str | None) -> list[str]:
    """Pipe-delimited choices for dropdown and autocomplete fields."""
    if resolve_field_type(field_type) not in (FieldType.DROPDOWN, FieldType.AUTOCOMPLETE):
        return []
    if not options or not options.strip():
        return []
    return options.split("|")


def currency_symbol(field_type: str | None, options: str | None) -> str:
    if resolve_field_type(field_type) == FieldType.CURRENCY and options and options.strip():
        return options
    return DEFAULT_CURRENCY


def max_rating(field_type: str | None, options: str | None) -> int:
    if resolve_field_type(field_type) != FieldType.RATING or not options:
        return DEFAULT_MAX_RATING
    try:
        return int(options.strip())
    except ValueError:
        return DEFAULT_MAX_RATING


def _is_number(value: str) -> bool:
    try:
        float(value.replace(",", "."))
    except ValueError:
        return False
    return True


def _is_percentage(value: str) -> bool:
    return _is_number(value.rstrip("%").strip())


def _parses(parser: Callable[[str], object]) -> Callable[[str], bool]:
    def check(value: str) -> bool:
        try:
            parser(value)
        except ValueError:
            return False
        return True
    return check


def _is_url(value: str) -> bool:
    return value.startswith(("http://", "https://")) and "." in value


def _is_bool(value: str) -> bool:
    return value.lower() in ("true", "false", "1", "0")


def _is_location(value: str) -> bool:
    parts = value.split(",")
    if len(parts) != 2 or not all(_is_number(p.strip()) for p in parts):
        return False
    lat, lon = (float(p) for p in parts)
    return -90 <= lat <= 90 and -180 <= lon <= 180


_VALIDATORS: dict[FieldType, Callable[[str], bool]] = {
    FieldType.NUMBER: _is_number,
    FieldType.CURRENCY: _is_number,
    FieldType.PERCENTAGE: _is_percentage,
    FieldType.CHECKBOX: _is_bool,
    FieldType.SWITCH: _is_bool,
    FieldType.URL: _is_url,
    FieldType.EMAIL: lambda v: bool(_EMAIL_RE.match(v)),
    FieldType.PHONE: lambda v: bool(_PHONE_RE.match(v)),
    FieldType.DATE: _parses(date.fromisoformat),
    FieldType.TIME: _parses(time.fromisoformat),
    FieldType.DATETIME: _parses(datetime.fromisoformat),
    FieldType.DURATION: lambda v: bool(_DURATION_RE.match(v)),
    FieldType.COLOR: lambda v: bool(_COLOR_RE.match(v)),
    FieldType.LOCATION: _is_location,
}


def validate_value(field_type: str | None, options: str | None, value: str | None) -> bool:
    """Check a cell value against its field. Empty cells are always valid."""
    if value is None or value == "":
        return True
    resolved = resolve_field_type(field_type)
    if resolved == FieldType.DROPDOWN:
        return value in choice_options(field_type, options)
    if resolved == FieldType.RATING:
        return value.isdecimal() and 0 <= int(value) <= max_rating(field_type, options)
    validator = _VALIDATORS.get(resolved)
    return validator(value) if validator else True
