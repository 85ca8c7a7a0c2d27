"""Pytest fixtures: a seeded in-memory store and a checkout request factory."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from checkout_saga.models import CartLine, CheckoutRequest, UserIdentity
from checkout_saga.settings import CheckoutSettings
from checkout_saga.store import Store

ADDRESS = {
    "full_name": "Asha Rao",
    "email": "asha@example.com",
    "phone": "+91 98450 00000",
    "address_line1": "12 MG Road",
    "city": "Bengaluru",
    "state": "Karnataka",
    "postal_code": "560001",
}


@pytest.fixture
def settings() -> CheckoutSettings:
    return CheckoutSettings()


@pytest.fixture
def store(settings) -> Store:
    store = Store(loyalty=settings.loyalty)

    store.add_product("p1", "Silver Anklet", price=Decimal("500"), stock_quantity=5)
    store.add_product("p2", "Oxidised Jhumka", price=Decimal("800"), stock_quantity=0)  # Out of stock
    store.add_product("p3", "Toe Ring", price=Decimal("300"), stock_quantity=10)
    store.add_product("p4", "Sterling Choker", price=Decimal("2500"), stock_quantity=1)

    now = datetime.now(timezone.utc)
    store.add_coupon("SAVE10", Decimal("10"), usage_limit=5, min_order_value=Decimal("500"))
    store.add_coupon("ONETIME", Decimal("20"), usage_limit=1)
    store.add_coupon("USEDUP", Decimal("15"), usage_limit=1, usage_count=1)
    store.add_coupon("FLAT200", Decimal("200"), discount_type="fixed")
    store.add_coupon("BIGSPEND", Decimal("5"), min_order_value=Decimal("5000"))
    store.add_coupon("EXPIRED", Decimal("25"), end_date=now - timedelta(days=1))
    store.add_coupon("SOON", Decimal("25"), start_date=now + timedelta(days=1))
    store.add_coupon("RETIRED", Decimal("30"), is_active=False)

    return store


@pytest.fixture
def user() -> UserIdentity:
    return UserIdentity(id="u1", email="asha@example.com", name="Asha Rao")


@pytest.fixture
def make_request(store, user):
    """Build a CheckoutRequest from (product_id, qty) pairs priced from the store."""

    def build(*items, checkout_id="c1", **kwargs) -> CheckoutRequest:
        lines = tuple(
            CartLine(
                product_id=pid,
                quantity=qty,
                unit_price=store.products[pid].price if pid in store.products else Decimal("100"),
                product_name=store.products[pid].name if pid in store.products else pid,
            )
            for pid, qty in items
        )
        kwargs.setdefault("shipping", dict(ADDRESS))
        kwargs.setdefault("user", user)
        return CheckoutRequest(lines=lines, checkout_id=checkout_id, **kwargs)

    return build
