"""Fixed-point amount arithmetic.

Amounts are converted from smallest units to whole units and divided by
the price in a high-precision decimal context, then truncated toward zero
at the output precision. Rounding is always down so an execution never
credits more than the deposit buys.

Example:
    >>> compute_amount_out(100_000_000, Decimal("65000"), deposit_decimals=6)
    Decimal('0.00153846')
"""

from __future__ import annotations

from decimal import ROUND_DOWN, Decimal, localcontext

_PRECISION = 50


def to_decimal(value: Decimal | int | str) -> Decimal:
    """Coerce a price or amount to ``Decimal`` without passing through ``float``."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        raise TypeError("float amounts are not accepted; pass str or Decimal")
    return Decimal(value)


def from_smallest_unit(amount: int, decimals: int) -> Decimal:
    """``100_000_000`` with 6 decimals → ``Decimal('100')``."""
    return Decimal(amount).scaleb(-decimals)


def compute_amount_out(
    amount_in: int,
    price: Decimal | int | str,
    *,
    deposit_decimals: int = 6,
    out_decimals: int = 8,
) -> Decimal:
    """Produced amount = floor(amount_in / price) at ``out_decimals`` places."""
    price = to_decimal(price)
    if price <= 0:
        raise ValueError(f"price must be positive, got {price}")
    if amount_in < 0:
        raise ValueError(f"amount_in must be non-negative, got {amount_in}")

    quantum = Decimal(1).scaleb(-out_decimals)
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        raw = from_smallest_unit(amount_in, deposit_decimals) / price
        return raw.quantize(quantum, rounding=ROUND_DOWN)
