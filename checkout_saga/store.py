from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from decimal import ROUND_FLOOR, Decimal
from typing import Any, Dict, List, Optional, Tuple

from checkout_saga.models import Coupon, ProcedureResult, Product
from checkout_saga.settings import LoyaltySettings

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class LoyaltyAccount:
    user_id: str
    total_points: int = 0
    available_points: int = 0
    redeemed_points: int = 0
    tier: str = "bronze"


class StoreError(Exception):
    """Simulated failure of the data store or the transport in front of it."""


class Store:
    """
    In-memory data store exposing single-resource atomic procedures.

    Each procedure runs under one lock, which is the only atomicity it offers:
    there is no way to group several procedures into one transaction. That is
    the constraint the checkout saga is built around.

    Every procedure call is appended to `calls` and every state change to
    `logs`, so tests can pair reservations with their releases.
    """

    def __init__(self, loyalty: Optional[LoyaltySettings] = None) -> None:
        self.products: Dict[str, Product] = {}
        self.coupons: Dict[str, Coupon] = {}
        self.orders: Dict[str, Dict[str, Any]] = {}
        self.order_lines: Dict[str, List[Dict[str, Any]]] = {}
        self.loyalty_accounts: Dict[str, LoyaltyAccount] = {}
        self.loyalty_transactions: List[Dict[str, Any]] = []
        self.notifications: List[Dict[str, Any]] = []
        self.low_stock_alerts: List[Dict[str, Any]] = []
        self.reconciliation: List[Dict[str, str]] = []
        self.loyalty = loyalty or LoyaltySettings()

        self.logs: List[str] = []
        self.calls: List[Tuple[str, tuple]] = []

        self._lock = threading.Lock()
        self._failures: Dict[str, List[Exception]] = {}
        self._order_seq = 0

    def log(self, message: str) -> None:
        self.logs.append(message)
        logger.info(message)

    # Наполнение данными для тестов и CLI
    def add_product(
        self, product_id: str, name: str, price: Decimal, stock_quantity: int, low_stock_threshold: int = 5
    ) -> None:
        self.products[product_id] = Product(
            id=product_id,
            name=name,
            price=price,
            stock_quantity=stock_quantity,
            low_stock_threshold=low_stock_threshold,
        )

    def add_coupon(self, code: str, discount_value: Decimal, **kwargs: Any) -> None:
        self.coupons[code] = Coupon(code=code, discount_value=discount_value, **kwargs)

    def inject_failure(self, procedure: str, error: Optional[Exception] = None, times: int = 1) -> None:
        """Make the next `times` calls of `procedure` raise `error`."""
        err = error or StoreError(f"simulated failure in {procedure}")
        self._failures.setdefault(procedure, []).extend([err] * times)

    def calls_to(self, procedure: str) -> List[tuple]:
        return [args for name, args in self.calls if name == procedure]

    def _enter(self, procedure: str, *args: Any) -> None:
        self.calls.append((procedure, args))
        pending = self._failures.get(procedure)
        if pending:
            raise pending.pop(0)

    # Stock

    def reserve_stock(self, product_id: str, quantity: int) -> ProcedureResult:
        with self._lock:
            self._enter("reserve_stock", product_id, quantity)
            product = self.products.get(product_id)
            if product is None or not product.is_active:
                return ProcedureResult(ok=False, reason="not_found", message=f"Product {product_id} not found")
            if product.stock_quantity < quantity:
                return ProcedureResult(
                    ok=False,
                    reason="insufficient",
                    available=product.stock_quantity,
                    message=f"Insufficient stock for {product_id}: have={product.stock_quantity}, need={quantity}",
                )
            product.stock_quantity -= quantity
            self.log(f"stock reserved: {product_id} qty={quantity} (stock={product.stock_quantity})")
            return ProcedureResult(ok=True, available=product.stock_quantity)

    def release_stock(self, product_id: str, quantity: int) -> ProcedureResult:
        with self._lock:
            self._enter("release_stock", product_id, quantity)
            product = self.products.get(product_id)
            if product is None:
                return ProcedureResult(ok=False, reason="not_found", message=f"Product {product_id} not found")
            product.stock_quantity += quantity
            self.log(f"stock released: {product_id} qty={quantity} (stock={product.stock_quantity})")
            return ProcedureResult(ok=True, available=product.stock_quantity)

    # Coupons

    def get_coupon(self, code: str) -> Optional[Coupon]:
        with self._lock:
            coupon = self.coupons.get(code)
            return replace(coupon) if coupon is not None else None

    def reserve_coupon(
        self, code: str, order_subtotal: Decimal, now: Optional[datetime] = None
    ) -> ProcedureResult:
        with self._lock:
            self._enter("reserve_coupon", code)
            coupon = self.coupons.get(code)
            if coupon is None:
                return ProcedureResult(ok=False, reason="not_found", message=f"Coupon {code} not found")
            reason = coupon.rejection_reason(order_subtotal, now or datetime.now(timezone.utc))
            if reason is not None:
                return ProcedureResult(ok=False, reason=reason.value, message=f"Coupon {code} rejected: {reason.value}")
            coupon.usage_count += 1
            self.log(f"coupon reserved: {code} (usage={coupon.usage_count}/{coupon.usage_limit})")
            return ProcedureResult(ok=True)

    def release_coupon(self, code: str) -> ProcedureResult:
        with self._lock:
            self._enter("release_coupon", code)
            coupon = self.coupons.get(code)
            if coupon is None:
                return ProcedureResult(ok=False, reason="not_found", message=f"Coupon {code} not found")
            coupon.usage_count = max(coupon.usage_count - 1, 0)
            self.log(f"coupon released: {code} (usage={coupon.usage_count}/{coupon.usage_limit})")
            return ProcedureResult(ok=True)

    # Orders

    def create_order(self, fields: Dict[str, Any]) -> Tuple[str, str]:
        """Insert one order row; returns (order_id, order_number)."""
        with self._lock:
            self._enter("create_order", fields.get("user_id"))
            self._order_seq += 1
            order_id = uuid.uuid4().hex
            order_number = f"ORD-{datetime.now(timezone.utc):%Y%m%d}-{self._order_seq:04d}"
            self.orders[order_id] = dict(fields, id=order_id, order_number=order_number)
            self.log(f"order created: {order_number} id={order_id}")
            return order_id, order_number

    def create_order_lines(self, order_id: str, lines: List[Dict[str, Any]]) -> None:
        with self._lock:
            self._enter("create_order_lines", order_id, len(lines))
            if order_id not in self.orders:
                raise StoreError(f"order {order_id} does not exist")
            self.order_lines[order_id] = [dict(line, order_id=order_id) for line in lines]
            self.log(f"order lines created: order={order_id} count={len(lines)}")

    def flag_order_for_reconciliation(self, order_id: str, reason: str) -> None:
        with self._lock:
            self._enter("flag_order_for_reconciliation", order_id)
            self.reconciliation.append({"order_id": order_id, "reason": reason})
            self.log(f"order flagged for reconciliation: {order_id} ({reason})")

    # Post-commit procedures

    def earn_loyalty_points(self, user_id: str, order_total: Decimal, order_id: str) -> int:
        with self._lock:
            self._enter("earn_loyalty_points", user_id, order_id)
            if not self.loyalty.is_enabled:
                return 0
            points = int((order_total * self.loyalty.points_per_rupee).to_integral_value(rounding=ROUND_FLOOR))
            account = self.loyalty_accounts.get(user_id)
            if account is None:
                bonus = self.loyalty.welcome_bonus_points
                account = LoyaltyAccount(user_id=user_id, total_points=bonus, available_points=bonus)
                self.loyalty_accounts[user_id] = account
            account.total_points += points
            account.available_points += points
            self.loyalty_transactions.append(
                {"user_id": user_id, "order_id": order_id, "points": points, "transaction_type": "earn"}
            )
            self.log(f"loyalty earned: user={user_id} points={points} (available={account.available_points})")
            return points

    def redeem_loyalty_points(self, user_id: str, points: int, order_id: str) -> None:
        with self._lock:
            self._enter("redeem_loyalty_points", user_id, points, order_id)
            account = self.loyalty_accounts.get(user_id)
            if account is None or account.available_points < points:
                raise StoreError(f"Insufficient points for user {user_id}")
            account.available_points -= points
            account.redeemed_points += points
            self.loyalty_transactions.append(
                {"user_id": user_id, "order_id": order_id, "points": -points, "transaction_type": "redeem"}
            )
            self.log(f"loyalty redeemed: user={user_id} points={points} (available={account.available_points})")

    def send_order_confirmation(self, order_snapshot: Dict[str, Any]) -> None:
        with self._lock:
            self._enter("send_order_confirmation", order_snapshot.get("order_number"))
            self.notifications.append(order_snapshot)
            self.log(f"confirmation queued: {order_snapshot.get('order_number')}")

    def check_low_stock_and_alert(self) -> List[str]:
        with self._lock:
            self._enter("check_low_stock_and_alert")
            low = [
                p for p in self.products.values() if p.is_active and p.stock_quantity <= p.low_stock_threshold
            ]
            for product in low:
                self.low_stock_alerts.append({"product_id": product.id, "stock_quantity": product.stock_quantity})
                self.log(f"low stock alert: {product.id} (stock={product.stock_quantity})")
            return [p.id for p in low]
