from decimal import Decimal

import pytest

from eventhub.domain.pricing import processing_fee, quote, to_major, to_minor


def test_two_fifty_dollar_tickets_cost_103_20():
    price = quote(5000, 2)

    assert price.subtotal_minor == 10000
    assert price.fee_minor == 320
    assert price.total_minor == 10320
    assert to_major(price.total_minor) == Decimal("103.20")


def test_fee_rounds_half_up():
    # 2.9% of 50 cents is 1.45 cents.
    assert processing_fee(50) == 1 + 30
    # 2.9% of 1750 cents is 50.75 cents.
    assert processing_fee(1750) == 51 + 30


def test_free_tier_has_no_fee():
    price = quote(0, 4)

    assert price.fee_minor == 0
    assert price.total_minor == 0


def test_custom_fee_schedule():
    assert processing_fee(10000, fee_bps=0, fixed_minor=0) == 0
    assert processing_fee(10000, fee_bps=500, fixed_minor=25) == 525


@pytest.mark.parametrize("price_minor, quantity", [(-1, 1), (100, 0)])
def test_quote_rejects_bad_input(price_minor, quantity):
    with pytest.raises(ValueError):
        quote(price_minor, quantity)


def test_minor_unit_conversion():
    assert to_minor(Decimal("103.20")) == 10320
    assert to_minor(Decimal("0.005")) == 1
    assert to_major(5) == Decimal("0.05")
