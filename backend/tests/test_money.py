from __future__ import annotations

import pytest

from creatorpay.services.money import Money, split


def test_split_always_adds_up_to_price():
    for price in (0, 1, 99, 100, 999, 1000, 1005, 123457):
        for pct in (0, 5, 12.5, 20, 33.3, 100):
            result = split(Money(price), pct)
            assert result.processor_amount == price
            assert result.platform_fee + result.creator_net == price
            assert 0 <= result.platform_fee <= price


def test_split_rounds_fee_half_up():
    assert split(Money(1000), 20).platform_fee == 200
    assert split(Money(1000), 20).creator_net == 800
    # 1005 * 20% = 201 exactly, 1003 * 20% = 200.6 -> 201, 1002 * 20% = 200.4 -> 200
    assert split(Money(1003), 20).platform_fee == 201
    assert split(Money(1002), 20).platform_fee == 200
    # 100 * 12.5% = 12.5 rounds up, not to even
    assert split(Money(100), 12.5).platform_fee == 13


def test_split_extremes():
    assert split(Money(500), 0).creator_net == 500
    assert split(Money(500), 100).creator_net == 0
    assert split(Money(0), 20).platform_fee == 0


def test_split_keeps_the_price_currency():
    result = split(Money(1000, "EUR"), 20)
    assert result.gross == Money(1000, "EUR")
    assert result.fee == Money(200, "EUR")
    assert result.net == Money(800, "EUR")


def test_split_rejects_bad_inputs():
    with pytest.raises(TypeError):
        split(1000, 20)
    with pytest.raises(TypeError):
        Money(10.5)
    with pytest.raises(TypeError):
        Money(True)
    with pytest.raises(ValueError):
        split(Money(-1), 20)
    with pytest.raises(ValueError):
        split(Money(100), 101)


def test_money_is_integer_minor_units():
    assert -Money(250) == Money(-250)
    with pytest.raises(TypeError):
        Money(2.5)
