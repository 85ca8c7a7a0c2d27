from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Optional

from checkout_saga.errors import (
    CouponError,
    CouponErrorReason,
    OrderWriteError,
    StockError,
    StockErrorReason,
)
from checkout_saga.models import (
    CheckoutRequest,
    CouponReservation,
    OrderAggregate,
    OrderLine,
    ProcedureResult,
    StockReservation,
    Totals,
)
from checkout_saga.store import Store


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CouponReservationClient:
    def __init__(self, store: Store, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.clock = clock

    def reserve(self, checkout_id: str, code: str, order_subtotal: Decimal) -> CouponReservation:
        coupon = self.store.get_coupon(code)
        if coupon is None:
            raise CouponError(code, CouponErrorReason.NOT_FOUND)

        # Local check only fails fast; the store re-checks under its own lock.
        now = self.clock()
        reason = coupon.rejection_reason(order_subtotal, now)
        if reason is not None:
            self.store.log(f"[checkout={checkout_id}] coupon {code} rejected locally: {reason.value}")
            raise CouponError(code, reason)

        try:
            result = self.store.reserve_coupon(code, order_subtotal, now)
        except Exception as e:
            raise CouponError(code, CouponErrorReason.UNAVAILABLE) from e
        if not result.ok:
            raise CouponError(code, _coupon_reason(result))

        self.store.log(f"[checkout={checkout_id}] coupon reserved: {code}")
        return CouponReservation(
            code=code,
            discount_type=coupon.discount_type,
            discount_value=coupon.discount_value,
            max_discount_amount=coupon.max_discount_amount,
            reserved=True,
        )

    def release(self, checkout_id: str, code: str) -> ProcedureResult:
        result = self.store.release_coupon(code)
        if result.ok:
            self.store.log(f"[checkout={checkout_id}] coupon released: {code}")
        return result


def _coupon_reason(result: ProcedureResult) -> CouponErrorReason:
    try:
        return CouponErrorReason(result.reason)
    except ValueError:
        return CouponErrorReason.UNAVAILABLE


class StockReservationClient:
    def __init__(self, store: Store):
        self.store = store

    def reserve(
        self, checkout_id: str, product_id: str, quantity: int, product_name: Optional[str] = None
    ) -> StockReservation:
        try:
            result = self.store.reserve_stock(product_id, quantity)
        except Exception as e:
            raise StockError(product_id, quantity, None, StockErrorReason.UNAVAILABLE, product_name) from e
        if not result.ok:
            if result.reason == "not_found":
                raise StockError(product_id, quantity, 0, StockErrorReason.NOT_FOUND, product_name)
            raise StockError(product_id, quantity, result.available, StockErrorReason.INSUFFICIENT, product_name)
        self.store.log(f"[checkout={checkout_id}] stock reserved: {product_id} qty={quantity}")
        return StockReservation(product_id=product_id, quantity=quantity, reserved=True)

    def release(self, checkout_id: str, product_id: str, quantity: int) -> ProcedureResult:
        result = self.store.release_stock(product_id, quantity)
        if result.ok:
            self.store.log(f"[checkout={checkout_id}] stock released: {product_id} qty={quantity}")
        return result


class OrderWriter:
    """Writes the order row, then its line rows. The two writes are not atomic together."""

    def __init__(self, store: Store):
        self.store = store

    def create_order(
        self,
        checkout_id: str,
        request: CheckoutRequest,
        shipping_address: dict,
        totals: Totals,
        coupon: Optional[CouponReservation] = None,
    ) -> OrderAggregate:
        fields = {
            "user_id": request.user.id if request.user else None,
            "subtotal": totals.subtotal,
            "shipping_cost": totals.shipping,
            "gift_wrap_cost": totals.gift_wrap_cost,
            "tax": totals.tax,
            "discount": totals.discount,
            "total": totals.total,
            "payment_method": request.payment_method,
            "payment_status": "pending",
            "status": "pending",
            "coupon_code": coupon.code if coupon else None,
            "shipping_address": shipping_address,
        }
        try:
            order_id, order_number = self.store.create_order(fields)
        except Exception as e:
            raise OrderWriteError("order", e) from e

        self.store.log(f"[checkout={checkout_id}] order written: {order_number}")
        return OrderAggregate(
            id=order_id,
            order_number=order_number,
            user_id=fields["user_id"],
            totals=totals,
            shipping_address=shipping_address,
            payment_method=request.payment_method,
            coupon_code=fields["coupon_code"],
            lines=[
                OrderLine(
                    order_id=order_id,
                    product_id=line.product_id,
                    product_name=line.product_name or line.product_id,
                    quantity=line.quantity,
                    price=line.unit_price,
                    size=line.size,
                    variant=line.variant,
                )
                for line in request.lines
            ],
        )

    def create_lines(self, checkout_id: str, order: OrderAggregate) -> None:
        rows = [
            {
                "product_id": line.product_id,
                "product_name": line.product_name,
                "quantity": line.quantity,
                "price": line.price,
                "size": line.size,
                "variant": line.variant,
            }
            for line in order.lines
        ]
        try:
            self.store.create_order_lines(order.id, rows)
        except Exception as e:
            raise OrderWriteError("lines", e, order_id=order.id) from e
        self.store.log(f"[checkout={checkout_id}] order lines written: {order.order_number} count={len(rows)}")
