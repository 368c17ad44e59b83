"""
Test suite for currency module

Tests Money rounding, arithmetic and currency guards. All monetary
calculations must use Decimal precision.
"""

import pytest
from decimal import Decimal

from lending_core.currency import Money, Currency, round_money


class TestMoney:
    """Test Money class operations"""

    def test_money_creation(self):
        """Amounts are quantized half-up to the currency precision"""
        money = Money(Decimal('100.50'), Currency.DOP)
        assert money.amount == Decimal('100.50')
        assert money.currency == Currency.DOP

        assert Money(Decimal('100.555'), Currency.USD).amount == Decimal('100.56')
        assert Money(Decimal('100.554'), Currency.USD).amount == Decimal('100.55')
        assert Money(Decimal('0.005'), Currency.EUR).amount == Decimal('0.01')

    def test_non_decimal_input_is_converted(self):
        assert Money('12.345', Currency.DOP).amount == Decimal('12.35')
        assert Money(7, Currency.DOP).amount == Decimal('7.00')

    def test_money_arithmetic(self):
        """Test Money arithmetic operations"""
        money1 = Money(Decimal('100.50'), Currency.DOP)
        money2 = Money(Decimal('50.25'), Currency.DOP)

        assert (money1 + money2).amount == Decimal('150.75')
        assert (money1 - money2).amount == Decimal('50.25')
        assert (money1 * Decimal('2')).amount == Decimal('201.00')
        assert (money1 / 3).amount == Decimal('33.50')
        assert (-money1).amount == Decimal('-100.50')
        assert abs(Money(Decimal('-50.00'), Currency.DOP)).amount == Decimal('50.00')

    def test_money_comparison(self):
        money1 = Money(Decimal('100.00'), Currency.DOP)
        money2 = Money(Decimal('50.00'), Currency.DOP)

        assert money1 == Money(Decimal('100'), Currency.DOP)
        assert money1 != money2
        assert money2 < money1
        assert money1 >= money2
        assert min(money1, money2) == money2

    def test_currency_mismatch(self):
        """Mixing currencies is always an error"""
        dop = Money(Decimal('10.00'), Currency.DOP)
        usd = Money(Decimal('10.00'), Currency.USD)

        with pytest.raises(ValueError, match="Cannot add"):
            dop + usd
        with pytest.raises(ValueError, match="Cannot compare"):
            dop < usd
        assert dop != usd

    def test_sum(self):
        amounts = [Money(Decimal('0.10'), Currency.DOP)] * 3
        assert Money.sum(amounts, Currency.DOP).amount == Decimal('0.30')
        assert Money.sum([], Currency.DOP) == Money.zero(Currency.DOP)

    def test_sign_helpers(self):
        assert Money.zero(Currency.DOP).is_zero()
        assert Money(Decimal('0.01'), Currency.DOP).is_positive()
        assert Money(Decimal('-0.01'), Currency.DOP).is_negative()

    def test_to_string(self):
        assert Money(Decimal('13500'), Currency.DOP).to_string() == "DOP 13,500.00"

    def test_round_money(self):
        assert round_money(Decimal('77.777'), Currency.DOP) == Decimal('77.78')
        assert round_money(Decimal('222.225'), Currency.DOP) == Decimal('222.23')
