from datetime import date

import pytest

from bank_statement_parser import (
    AnchorNotFoundError,
    InvalidDateError,
    LexicalError,
    ParseError,
    advance_past,
    format_minor_units,
    infer_year,
    parse_currency_amount,
    parse_month_day,
    parse_month_day_year,
    parse_month_word_day,
    parse_month_word_day_year,
)


@pytest.mark.parametrize(
    "text, expected",
    [
        ("$1,234.56", 123456),
        ("-$1,234.56", -123456),
        ("+$312.34", 31234),
        ("12.00", 1200),
        (".50", 50),
        ("-.05", -5),
        ("$0.00", 0),
        ("1,000,000.00", 100000000),
    ],
)
def test_currency_amount(text, expected):
    assert parse_currency_amount(text) == (expected, "")


def test_currency_amount_returns_rest():
    assert parse_currency_amount("-45.50\n01/20/24") == (-4550, "\n01/20/24")


@pytest.mark.parametrize("text", ["12", "12.5", "12.345", "$", "abc", ""])
def test_currency_amount_rejects_malformed(text):
    with pytest.raises(LexicalError) as excinfo:
        parse_currency_amount(text)
    assert excinfo.value.parser == "currency_amount"
    assert excinfo.value.remaining == text


@pytest.mark.parametrize("value", [0, 5, -5, 99, 100, 123456, -123456, 100000000])
def test_formatted_amount_parses_back(value):
    assert parse_currency_amount(format_minor_units(value))[0] == value


def test_format_minor_units():
    assert format_minor_units(-123456) == "-$1,234.56"
    assert format_minor_units(7) == "$0.07"


def test_month_day():
    assert parse_month_day("1/5 rest") == ((1, 5), " rest")
    assert parse_month_day("12/31") == ((12, 31), "")
    with pytest.raises(LexicalError):
        parse_month_day("Jan 5")


def test_month_word_day():
    assert parse_month_word_day("Jan 1 - Jan 31") == ((1, 1), " - Jan 31")
    assert parse_month_word_day("DECEMBER 28") == ((12, 28), "")
    with pytest.raises(LexicalError):
        parse_month_word_day("Foo 3")
    with pytest.raises(LexicalError):
        parse_month_word_day("3 Jan")


def test_month_word_day_year():
    assert parse_month_word_day_year("January 31, 2024 to") == (date(2024, 1, 31), " to")
    with pytest.raises(InvalidDateError):
        parse_month_word_day_year("February 30, 2024")
    with pytest.raises(LexicalError):
        parse_month_word_day_year("January 31 to")


def test_month_day_year_two_digit_year():
    assert parse_month_day_year("01/27/24 x") == (date(2024, 1, 27), " x")
    assert parse_month_day_year("12/31/99") == (date(2099, 12, 31), "")
    with pytest.raises(InvalidDateError):
        parse_month_day_year("02/30/24")
    with pytest.raises(LexicalError):
        parse_month_day_year("1/2")


def test_infer_year_wraps_into_next_year():
    reference = date(2023, 12, 28)
    assert infer_year(12, 30, reference) == date(2023, 12, 30)
    assert infer_year(1, 5, reference) == date(2024, 1, 5)


def test_infer_year_same_year():
    reference = date(2024, 1, 1)
    assert infer_year(1, 31, reference) == date(2024, 1, 31)
    assert infer_year(2, 29, reference) == date(2024, 2, 29)


def test_infer_year_invalid_date():
    with pytest.raises(InvalidDateError) as excinfo:
        infer_year(2, 30, date(2024, 1, 1), "02/30 rest")
    assert excinfo.value.kind == "invalid_date"
    assert excinfo.value.remaining == "02/30 rest"


def test_advance_past_first_occurrence():
    assert advance_past("a HEADER b HEADER c", "HEADER") == " b HEADER c"


def test_advance_past_missing_anchor():
    with pytest.raises(AnchorNotFoundError) as excinfo:
        advance_past("no anchor here", "Account# ")
    err = excinfo.value
    assert isinstance(err, ParseError)
    assert err.parser == "advance_past"
    assert err.remaining == "no anchor here"
    assert err.kind == "anchor_not_found"


def test_parse_error_message():
    err = LexicalError("Expected amount", parser="currency_amount", remaining="x" * 100, section="Fees")
    text = str(err)
    assert text.startswith("Expected amount in section 'Fees' [currency_amount] at ")
    assert text.endswith("...")
