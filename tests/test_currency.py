from decimal import Decimal, DefaultContext, getcontext, localcontext

import pytest

from ledger.currency import Amount, ETH, MDAI, GNT, WAD, currency, get_currency


def test_same_symbol_arithmetic():
    assert MDAI(3) + MDAI(5) == MDAI(8)
    assert ETH('2.5') - ETH(1) == ETH('1.5')
    assert MDAI(1) < MDAI(2)
    assert MDAI(2) <= MDAI(2)


def test_mixed_symbols_refuse_to_combine():
    with pytest.raises(TypeError):
        ETH(1) + MDAI(1)
    with pytest.raises(TypeError):
        GNT(1) < ETH(2)


def test_base_units():
    assert ETH(1).to_base_units() == WAD
    assert ETH('0.5').to_base_units() == WAD // 2
    assert GNT(3).to_base_units(6) == 3_000_000
    assert Amount.from_base_units('MDAI', 8 * 10 ** 45, 45) == MDAI(8)


def test_values_are_decimal():
    amount = Amount('ETH', 0.1)
    assert isinstance(amount.value, Decimal)
    assert amount == ETH('0.1')
    assert str(MDAI('100.50')) == '100.5 MDAI'
    assert MDAI(0).is_zero()


def test_full_precision_without_touching_decimal_context():
    units = 12_345_678_901_234_567_890_123_456_789_012_345_678_901_234_567
    with localcontext() as ctx:
        ctx.prec = 28
        amount = Amount.from_base_units('MDAI', units, 45)
        assert amount.value == Decimal('12.345678901234567890123456789012345678901234567')
        assert amount.to_base_units(45) == units
        assert (amount + MDAI(1)).to_base_units(45) == units + 10 ** 45
        assert str(amount) == '12.345678901234567890123456789012345678901234567 MDAI'
    assert getcontext().prec == DefaultContext.prec


def test_get_currency():
    assert get_currency('ETH') is ETH
    zrx = get_currency('ZRX')
    assert zrx(2) == currency('ZRX')(2)
    assert zrx.symbol == 'ZRX'
