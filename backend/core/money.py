"""Decimal helpers shared by every module that stores money"""
from decimal import Decimal, ROUND_HALF_UP

CENT = Decimal('0.01')
ZERO = Decimal('0.00')


def to_decimal(value):
    """Coerce ints, floats and strings to Decimal without binary float noise"""
    if value is None or value == '':
        return ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def quantize_money(value):
    """Round half-up to two decimal places"""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)
