import pytest

from collabtable.field_types import (
    DEFAULT_CURRENCY,
    FieldType,
    choice_options,
    currency_symbol,
    max_rating,
    resolve_field_type,
    validate_value,
)


def test_resolve_field_type():
    assert resolve_field_type("number") is FieldType.NUMBER
    assert resolve_field_type(" DATE ") is FieldType.DATE
    assert resolve_field_type("PRICE") is FieldType.CURRENCY
    assert resolve_field_type("STRING") is FieldType.TEXT
    assert resolve_field_type("HOLOGRAM") is FieldType.TEXT
    assert resolve_field_type(None) is FieldType.TEXT


def test_options():
    assert choice_options("DROPDOWN", "Red|Green|Blue") == ["Red", "Green", "Blue"]
    assert choice_options("DROPDOWN", "  ") == []
    assert choice_options("AUTOCOMPLETE", "a|b") == ["a", "b"]
    assert choice_options("TEXT", "a|b") == []
    assert currency_symbol("CURRENCY", "EUR") == "EUR"
    assert currency_symbol("CURRENCY", "") == DEFAULT_CURRENCY
    assert max_rating("RATING", "10") == 10
    assert max_rating("RATING", "lots") == 5


@pytest.mark.parametrize(
    "field_type, options, value, valid",
    [
        ("TEXT", "", "anything", True),
        ("NUMBER", "", "", True),
        ("NUMBER", "", "3,5", True),
        ("NUMBER", "", "three", False),
        ("PERCENTAGE", "", "12.5%", True),
        ("CHECKBOX", "", "true", True),
        ("CHECKBOX", "", "yes", False),
        ("URL", "", "https://example.com", True),
        ("URL", "", "example", False),
        ("EMAIL", "", "a@b.ch", True),
        ("EMAIL", "", "a@b", False),
        ("DATE", "", "2024-02-29", True),
        ("DATE", "", "2023-02-29", False),
        ("TIME", "", "13:45", True),
        ("DURATION", "", "1:30", True),
        ("DURATION", "", "1:75", False),
        ("COLOR", "", "#ff8800", True),
        ("COLOR", "", "orange", False),
        ("LOCATION", "", "47.37,8.54", True),
        ("LOCATION", "", "95,8", False),
        ("DROPDOWN", "Red|Green", "Green", True),
        ("DROPDOWN", "Red|Green", "Blue", False),
        ("RATING", "", "5", True),
        ("RATING", "", "6", False),
        ("RATING", "10", "6", True),
        ("RATING", "", "\u00b2", False),
        ("RATING", "", "\u0663", True),
        ("RATING", "", "", True),
    ],
)
def test_validate_value(field_type, options, value, valid):
    assert validate_value(field_type, options, value) is valid
