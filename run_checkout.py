from __future__ import annotations

import argparse
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import List

from checkout_saga.journal import open_journal
from checkout_saga.models import CartLine, CheckoutRequest, UserIdentity
from checkout_saga.saga import CheckoutSaga
from checkout_saga.settings import load_settings
from checkout_saga.store import Store

DEMO_ADDRESS = {
    "full_name": "Asha Rao",
    "email": "asha@example.com",
    "phone": "+91 98450 00000",
    "address_line1": "12 MG Road",
    "city": "Bengaluru",
    "state": "Karnataka",
    "postal_code": "560001",
}


def seed(store: Store) -> None:
    store.add_product("p1", "Silver Anklet", price=Decimal("500"), stock_quantity=5)
    store.add_product("p2", "Oxidised Jhumka", price=Decimal("1200"), stock_quantity=0)
    store.add_product("p3", "Sterling Ring", price=Decimal("2500"), stock_quantity=10)

    now = datetime.now(timezone.utc)
    store.add_coupon("SAVE10", Decimal("10"), usage_limit=100, min_order_value=Decimal("500"))
    store.add_coupon("FLAT200", Decimal("200"), discount_type="fixed", usage_limit=1)
    store.add_coupon("OLDSALE", Decimal("15"), end_date=now - timedelta(days=1))


def parse_line(value: str) -> tuple:
    product_id, _, qty = value.partition(":")
    return product_id, int(qty or 1)


def build_lines(store: Store, specs: List[tuple]) -> tuple:
    lines = []
    for product_id, qty in specs:
        product = store.products.get(product_id)
        price = product.price if product else Decimal("0")
        name = product.name if product else product_id
        lines.append(CartLine(product_id=product_id, quantity=qty, unit_price=price, product_name=name))
    return tuple(lines)


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(message)s")

    p = argparse.ArgumentParser(description="Run one checkout through the order-placement saga and print logs.")
    p.add_argument("--line", action="append", type=parse_line, default=None, help="PRODUCT_ID:QTY, repeatable")
    p.add_argument("--coupon", type=str, default=None)
    p.add_argument("--gift-wrap", action="store_true")
    p.add_argument("--points", type=int, default=0, help="Loyalty points to redeem")
    p.add_argument("--user", type=str, default="u1")
    p.add_argument("--settings", type=str, default=None, help="JSON file with tax/shipping/loyalty settings")
    p.add_argument("--journal", type=str, default=None, help="Append-only compensation journal file")
    p.add_argument("--recover", action="store_true", help="Release reservations left by interrupted checkouts")
    p.add_argument(
        "--fail-at",
        type=str,
        default=None,
        help="Store procedure to fail once, e.g. create_order or create_order_lines",
    )
    args = p.parse_args()

    settings = load_settings(args.settings)
    store = Store(loyalty=settings.loyalty)
    seed(store)
    journal = open_journal(args.journal)

    if args.recover:
        if journal is None:
            p.error("--recover needs --journal")
        report = journal.recover(store)
        print("\n=== RECOVERY ===")
        print("released:", report.released)
        print("failed:", report.failed)
        print("needs manual reconciliation:", report.unknown, report.flagged_orders)
        return

    if args.fail_at:
        store.inject_failure(args.fail_at)

    req = CheckoutRequest(
        lines=build_lines(store, args.line or [("p1", 2)]),
        shipping=DEMO_ADDRESS,
        user=UserIdentity(id=args.user, email=DEMO_ADDRESS["email"]) if args.user else None,
        coupon_code=args.coupon,
        gift_wrap=args.gift_wrap,
        loyalty_points=args.points,
    )
    result = CheckoutSaga(store, settings, journal).execute(req)

    print("\n=== RESULT ===")
    print("outcome:", result.outcome)
    print("result:", result)
    print("products:", store.products)
    print("coupons:", store.coupons)
    print("orders:", store.orders)
    print("reconciliation:", store.reconciliation)


if __name__ == "__main__":
    main()
