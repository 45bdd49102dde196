"""
Money helpers
=============

Decimal-only arithmetic for bill amounts. Everything that leaves this module
as a displayed figure is quantized to cents with ROUND_HALF_UP.
"""

from __future__ import annotations

from decimal import Decimal, ROUND_FLOOR, ROUND_HALF_UP
from typing import Any, List


D = Decimal

CENT = D("0.01")


def _q2(x: Decimal) -> Decimal:
    return x.quantize(CENT, rounding=ROUND_HALF_UP)


def _to_decimal(v: Any, default: Decimal = D("0")) -> Decimal:
    if v is None:
        return default
    if isinstance(v, Decimal):
        return v
    try:
        return D(str(v))
    except Exception:
        return default


def apply_service_fee(amount: Decimal, service_fee_percent: Decimal) -> Decimal:
    """Fee-inclusive amount, unrounded."""
    return _to_decimal(amount) * (D("1") + _to_decimal(service_fee_percent) / D("100"))


def amount_with_service_fee(amount: Decimal, service_fee_percent: Decimal) -> Decimal:
    return _q2(apply_service_fee(amount, service_fee_percent))


def service_fee(amount: Decimal, service_fee_percent: Decimal) -> Decimal:
    return _q2(_to_decimal(amount) * _to_decimal(service_fee_percent) / D("100"))


def allocate(total: Decimal, count: int) -> List[Decimal]:
    """
    Split `total` into `count` cent-exact shares (largest remainder).

    The first `remainder` shares carry the extra cent, so the shares always
    sum back to `total` quantized to cents:

        allocate(D("100"), 3) -> [33.34, 33.33, 33.33]
        allocate(D("10"), 4)  -> [2.50, 2.50, 2.50, 2.50]
    """
    if count <= 0:
        raise ValueError("count must be greater than 0")

    total = _q2(_to_decimal(total))
    if count == 1:
        return [total]

    base = (total / count).quantize(CENT, rounding=ROUND_FLOOR)
    total_cents = int(total / CENT)
    remainder = total_cents - int(base / CENT) * count

    return [base + (CENT if i < remainder else D("0")) for i in range(count)]
