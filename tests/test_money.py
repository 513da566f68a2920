from money import format_amount, format_currency, plain_amount


def test_format_amount_groups_thousands() -> None:
    assert format_amount(123_456) == "1 234,56"
    assert format_amount(-250_000) == "-2 500,00"
    assert format_amount(-7) == "-0,07"
    assert format_amount(0) == "0,00"


def test_amounts_beyond_float_precision_stay_exact() -> None:
    cents = 2**53 + 1
    assert plain_amount(cents) == "90071992547409.93"
    assert format_amount(-cents) == "-90 071 992 547 409,93"


def test_format_currency_symbol() -> None:
    assert format_currency(1_050, symbol="$") == "10,50 $"
    assert format_currency(1_050, symbol="") == "10,50"
    assert format_currency(-1_050) == "-10,50 €"
