from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional

from checkout_saga.models import CartLine, CouponReservation, Totals
from checkout_saga.settings import CheckoutSettings

ZERO = Decimal("0")


def _whole(value: Decimal) -> Decimal:
    # Math.round semantics: half away from zero for the non-negative amounts used here
    return value.quantize(Decimal("1"), rounding=ROUND_HALF_UP)


def coupon_discount(coupon: CouponReservation, subtotal: Decimal) -> Decimal:
    if coupon.discount_type == "fixed":
        discount = _whole(coupon.discount_value)
    else:
        discount = _whole(subtotal * coupon.discount_value / 100)
    if coupon.max_discount_amount is not None:
        discount = min(discount, _whole(coupon.max_discount_amount))
    return min(discount, subtotal)


def calculate_totals(
    lines: Iterable[CartLine],
    settings: CheckoutSettings,
    *,
    gift_wrap: bool = False,
    coupon: Optional[CouponReservation] = None,
    loyalty_discount: Decimal = ZERO,
) -> Totals:
    """
    Derive the order totals from a cart snapshot.

    Pure: no I/O and no mutation of inputs. Each derived amount is rounded to
    whole rupees before it feeds the next step.
    """
    subtotal = _whole(sum((line.line_total for line in lines), ZERO))

    tax_cfg = settings.tax
    tax = ZERO
    if tax_cfg.is_enabled and tax_cfg.percent > 0:
        if tax_cfg.is_inclusive:
            tax = _whole(subtotal - subtotal / (1 + tax_cfg.percent / 100))
        else:
            tax = _whole(subtotal * tax_cfg.percent / 100)

    if subtotal > settings.shipping.free_shipping_threshold:
        shipping = ZERO
    else:
        shipping = _whole(settings.shipping.flat_rate)

    gift_wrap_cost = _whole(settings.gift_wrap_cost) if gift_wrap else ZERO

    coupon_off = coupon_discount(coupon, subtotal) if coupon is not None else ZERO
    loyalty_off = min(_whole(Decimal(loyalty_discount)), subtotal - coupon_off)

    total = subtotal - coupon_off - loyalty_off + shipping + gift_wrap_cost
    if not tax_cfg.is_inclusive:
        total += tax

    return Totals(
        subtotal=subtotal,
        tax=tax,
        shipping=shipping,
        gift_wrap_cost=gift_wrap_cost,
        coupon_discount=coupon_off,
        loyalty_discount=loyalty_off,
        total=max(total, ZERO),
        tax_inclusive=tax_cfg.is_inclusive,
    )
