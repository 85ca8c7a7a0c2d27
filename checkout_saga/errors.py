from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional


class CheckoutError(Exception):
    """Base for every failure surfaced to the checkout caller."""

    kind = "CheckoutError"

    def __init__(self, message: str, reason: Optional[Enum] = None):
        super().__init__(message)
        self.message = message
        self.reason = reason

    def details(self) -> Dict[str, Any]:
        return {}


class ValidationError(CheckoutError):
    kind = "ValidationError"

    def __init__(self, message: str, fields: Optional[List[str]] = None):
        super().__init__(message)
        self.fields = fields or []

    def details(self) -> Dict[str, Any]:
        return {"fields": list(self.fields)}


class CouponErrorReason(str, Enum):
    EXPIRED = "expired"
    LIMIT_REACHED = "limit_reached"
    BELOW_MINIMUM = "below_minimum"
    NOT_FOUND = "not_found"
    UNAVAILABLE = "unavailable"


class CouponError(CheckoutError):
    kind = "CouponError"

    def __init__(self, code: str, reason: CouponErrorReason, message: Optional[str] = None):
        super().__init__(message or _COUPON_MESSAGES[reason].format(code=code), reason)
        self.code = code

    def details(self) -> Dict[str, Any]:
        return {"code": self.code}


_COUPON_MESSAGES = {
    CouponErrorReason.EXPIRED: "Coupon {code} is not valid at this time.",
    CouponErrorReason.LIMIT_REACHED: "Coupon {code} has reached its usage limit.",
    CouponErrorReason.BELOW_MINIMUM: "Your order does not meet the minimum value for coupon {code}.",
    CouponErrorReason.NOT_FOUND: "Coupon {code} does not exist.",
    CouponErrorReason.UNAVAILABLE: "Coupon {code} could not be applied right now. Please try again.",
}


class StockErrorReason(str, Enum):
    INSUFFICIENT = "insufficient"
    NOT_FOUND = "not_found"
    UNAVAILABLE = "unavailable"


class StockError(CheckoutError):
    kind = "StockError"

    def __init__(
        self,
        product_id: str,
        requested: int,
        available: Optional[int],
        reason: StockErrorReason,
        product_name: Optional[str] = None,
    ):
        label = product_name or product_id
        if reason is StockErrorReason.INSUFFICIENT:
            message = f"Only {available} of {label} left in stock, you requested {requested}."
        elif reason is StockErrorReason.NOT_FOUND:
            message = f"{label} is no longer available."
        else:
            message = f"Could not reserve {label} right now. Please try again."
        super().__init__(message, reason)
        self.product_id = product_id
        self.requested = requested
        self.available = available

    @property
    def shortfall(self) -> int:
        return self.requested - (self.available or 0)

    def details(self) -> Dict[str, Any]:
        return {"product_id": self.product_id, "requested": self.requested, "available": self.available}


class OrderWriteError(CheckoutError):
    kind = "OrderWriteError"

    def __init__(self, stage: str, cause: Exception, order_id: Optional[str] = None):
        super().__init__("We could not save your order. Nothing has been charged, please try again.")
        self.stage = stage
        self.cause = cause
        self.order_id = order_id

    def details(self) -> Dict[str, Any]:
        return {"stage": self.stage, "order_id": self.order_id}


class CompensationFailure(CheckoutError):
    """A release call failed. Recorded and logged, never raised to the caller."""

    kind = "CompensationFailure"

    def __init__(self, compensation: str, target: str, cause: Exception):
        super().__init__(f"{compensation} failed for {target}: {cause}")
        self.compensation = compensation
        self.target = target
        self.cause = cause
