"""
Line and document totals.

Every money value is rounded half-up to two decimals. Line amounts are
rounded before they are summed, and the document total is the sum of the
rounded subtotal and the rounded tax amount.
"""
from collections import namedtuple
from decimal import Decimal

from backend.core.money import quantize_money, to_decimal, ZERO

DocumentTotals = namedtuple('DocumentTotals', ['subtotal', 'tax_amount', 'total'])

HUNDRED = Decimal('100')


def compute_line_amount(quantity, unit_price):
    return quantize_money(to_decimal(quantity) * to_decimal(unit_price))


def compute_document_totals(lines, tax_rate):
    """
    Compute totals for an iterable of ``(quantity, unit_price)`` pairs.

    >>> compute_document_totals([(2, '50.00'), (1, '10.00')], 10)
    DocumentTotals(subtotal=Decimal('110.00'), tax_amount=Decimal('11.00'), total=Decimal('121.00'))
    """
    subtotal = sum((compute_line_amount(quantity, unit_price) for quantity, unit_price in lines), ZERO)
    subtotal = quantize_money(subtotal)
    tax_amount = quantize_money(subtotal * to_decimal(tax_rate) / HUNDRED)
    return DocumentTotals(subtotal, tax_amount, subtotal + tax_amount)
