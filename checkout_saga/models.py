from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from checkout_saga.errors import CouponErrorReason


@dataclass(slots=True)
class Product:
    id: str
    name: str
    price: Decimal
    stock_quantity: int
    low_stock_threshold: int = 5
    is_active: bool = True


@dataclass(slots=True)
class Coupon:
    code: str
    discount_value: Decimal
    discount_type: str = "percentage"
    usage_count: int = 0
    usage_limit: Optional[int] = None
    min_order_value: Decimal = Decimal("0")
    max_discount_amount: Optional[Decimal] = None
    is_active: bool = True
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    def rejection_reason(self, order_subtotal: Decimal, now: datetime) -> Optional[CouponErrorReason]:
        """Return why this coupon cannot be used for the order, or None if it can."""
        if not self.is_active:
            return CouponErrorReason.NOT_FOUND
        if self.start_date is not None and now < self.start_date:
            return CouponErrorReason.EXPIRED
        if self.end_date is not None and now > self.end_date:
            return CouponErrorReason.EXPIRED
        if self.usage_limit is not None and self.usage_count >= self.usage_limit:
            return CouponErrorReason.LIMIT_REACHED
        if order_subtotal < self.min_order_value:
            return CouponErrorReason.BELOW_MINIMUM
        return None


@dataclass(frozen=True, slots=True)
class CartLine:
    """Snapshot of one cart row, taken when checkout is committed."""

    product_id: str
    quantity: int
    unit_price: Decimal
    product_name: str = ""
    size: Optional[str] = None
    variant: Optional[str] = None

    def __post_init__(self) -> None:
        if self.quantity <= 0:
            raise ValueError(f"quantity must be > 0 for {self.product_id}")

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


@dataclass(frozen=True, slots=True)
class UserIdentity:
    id: str
    email: Optional[str] = None
    name: Optional[str] = None


class ShippingAddress(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, frozen=True)

    full_name: str = Field(min_length=1)
    phone: str = Field(min_length=1)
    address_line1: str = Field(min_length=1)
    city: str = Field(min_length=1)
    state: str = Field(min_length=1)
    postal_code: str = Field(min_length=1)
    address_line2: Optional[str] = None
    email: Optional[str] = None
    country: str = "India"


@dataclass(slots=True)
class CheckoutRequest:
    """
    Everything one checkout attempt needs, passed explicitly.

    `shipping` is the raw form payload; it is validated before any reservation.
    """

    lines: Tuple[CartLine, ...]
    shipping: Mapping[str, Any]
    user: Optional[UserIdentity] = None
    payment_method: str = "card"
    coupon_code: Optional[str] = None
    gift_wrap: bool = False
    loyalty_points: int = 0
    checkout_id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])


@dataclass(frozen=True, slots=True)
class ProcedureResult:
    """Reply of a single atomic procedure at the data store."""

    ok: bool
    message: Optional[str] = None
    reason: Optional[str] = None
    available: Optional[int] = None


@dataclass(slots=True)
class CouponReservation:
    code: str
    discount_type: str
    discount_value: Decimal
    max_discount_amount: Optional[Decimal] = None
    reserved: bool = False


@dataclass(slots=True)
class StockReservation:
    product_id: str
    quantity: int
    reserved: bool = False


@dataclass(frozen=True, slots=True)
class Totals:
    subtotal: Decimal
    tax: Decimal
    shipping: Decimal
    gift_wrap_cost: Decimal
    coupon_discount: Decimal
    loyalty_discount: Decimal
    total: Decimal
    tax_inclusive: bool = False

    @property
    def discount(self) -> Decimal:
        return self.coupon_discount + self.loyalty_discount


@dataclass(frozen=True, slots=True)
class OrderLine:
    order_id: str
    product_id: str
    product_name: str
    quantity: int
    price: Decimal
    size: Optional[str] = None
    variant: Optional[str] = None


@dataclass(slots=True)
class OrderAggregate:
    id: str
    order_number: str
    user_id: Optional[str]
    totals: Totals
    shipping_address: Dict[str, Any]
    payment_method: str
    coupon_code: Optional[str] = None
    status: str = "pending"
    payment_status: str = "pending"
    lines: List[OrderLine] = field(default_factory=list)

    def snapshot(self) -> Dict[str, Any]:
        """Plain-data view used for the confirmation notification."""
        return {
            "order_id": self.id,
            "order_number": self.order_number,
            "customer_name": self.shipping_address.get("full_name"),
            "customer_email": self.shipping_address.get("email"),
            "items": [
                {"name": line.product_name, "quantity": line.quantity, "price": str(line.price)}
                for line in self.lines
            ],
            "subtotal": str(self.totals.subtotal),
            "shipping": str(self.totals.shipping),
            "tax": str(self.totals.tax),
            "discount": str(self.totals.discount),
            "total": str(self.totals.total),
            "shipping_address": dict(self.shipping_address),
            "payment_method": self.payment_method,
        }


@dataclass(frozen=True, slots=True)
class Committed:
    order_id: str
    order_number: str

    @property
    def outcome(self) -> str:
        return "committed"


@dataclass(frozen=True, slots=True)
class Aborted:
    error_kind: str
    message: str
    reason: Optional[str] = None
    rollback_complete: bool = True
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def outcome(self) -> str:
        return "aborted"
