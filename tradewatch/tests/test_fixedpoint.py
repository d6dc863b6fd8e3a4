import pytest

from tradewatch.core.fixedpoint import (
    NativePrice,
    fmt_amount,
    fmt_usd,
    format_units,
    micros_to_str,
    parse_price_to_micros,
    parse_units,
    unit_price_micros,
    usd_micros,
)


@pytest.mark.parametrize(
    "value, decimals, expected",
    [
        (1_500_000_000_000_000_000, 18, "1.5"),
        (0, 18, "0"),
        (1, 18, "0"),                 # rounds away below 6 fraction digits
        (12_345_675, 7, "1.234568"),  # half-up
        (12_345_674, 7, "1.234567"),
        (19_999_999, 7, "2"),         # carry into the integer part
        (-1_500_000, 6, "-1.5"),
        (42, 0, "42"),
        (1000 * 10 ** 18, 18, "1000"),
    ],
)
def test_format_units(value, decimals, expected):
    assert format_units(value, decimals, 6) == expected


def test_format_units_clamps_decimals():
    assert format_units(10 ** 36, 99) == "1"
    assert format_units(5, -3) == "5"


def test_parse_units_inverts_format_units():
    for text, decimals in (("1.5", 18), ("50", 6), ("0.000001", 6), ("123456.789", 9)):
        assert format_units(parse_units(text, decimals), decimals, decimals) == text
    with pytest.raises(ValueError):
        parse_units("1.0000001", 6)


def test_parse_price_to_micros():
    assert parse_price_to_micros("190") == 190_000_000
    assert parse_price_to_micros("190.25") == 190_250_000
    assert parse_price_to_micros("190n") == 190_000_000
    assert parse_price_to_micros("bad") == 190_000_000
    assert parse_price_to_micros("", default=1) == 1
    assert str(NativePrice.parse("191.5")) == "191.5"


def test_unit_price_from_native_leg():
    # 2 native for 1000 tokens at $190 -> $0.38
    price = unit_price_micros(2 * 10 ** 18, 1000 * 10 ** 18, 18, 190_000_000)
    assert price == 380_000
    assert micros_to_str(price) == "0.38"


def test_unit_price_with_small_decimals():
    # 1.5 native for 50 tokens with 6 decimals -> $5.7
    price = unit_price_micros(15 * 10 ** 17, 50 * 10 ** 6, 6, 190_000_000)
    assert price == 5_700_000


def test_unit_price_needs_both_amounts():
    assert unit_price_micros(0, 10, 18, 190_000_000) is None
    assert unit_price_micros(10, 0, 18, 190_000_000) is None


def test_usd_micros_uses_absolute_amount():
    assert usd_micros(-2 * 10 ** 18, 18, 190_000_000) == 380_000_000
    assert fmt_usd(380_000_000) == "$380.00"
    assert fmt_usd(None) == ""


def test_fmt_amount():
    assert fmt_amount("50000") == "50,000"
    assert fmt_amount("1.5") == "1.5"
    assert fmt_amount("0.380000") == "0.38"
    assert fmt_amount("n/a") == "n/a"
