"""Tests for post-commit effects."""
from decimal import Decimal

from checkout_saga.effects import PostCommitDispatcher
from checkout_saga.saga import CheckoutSaga
from checkout_saga.services import OrderWriter
from checkout_saga.settings import CheckoutSettings, LoyaltySettings
from checkout_saga.store import Store
from checkout_saga.totals import calculate_totals


def test_loyalty_points_are_earned_on_the_order_total(store, make_request):
    result = CheckoutSaga(store).execute(make_request(("p1", 2)))

    account = store.loyalty_accounts["u1"]
    # total 1279 * 0.1 points per rupee
    assert account.available_points == 127
    assert store.loyalty_transactions == [
        {"user_id": "u1", "order_id": result.order_id, "points": 127, "transaction_type": "earn"}
    ]


def test_redeem_runs_before_earn(store, make_request):
    store.earn_loyalty_points("u1", Decimal("5000"), "older-order")

    result = CheckoutSaga(store).execute(make_request(("p3", 5), loyalty_points=200))

    kinds = [t["transaction_type"] for t in store.loyalty_transactions if t["order_id"] == result.order_id]
    assert kinds == ["redeem", "earn"]
    order = store.orders[result.order_id]
    # 200 points * 0.25 = 50, under the 10% cap of 1500
    assert order["discount"] == Decimal("50")


def test_failed_redeem_does_not_stop_other_effects(store, make_request):
    result = CheckoutSaga(store).execute(make_request(("p1", 1), loyalty_points=150))

    assert result.outcome == "committed"
    assert store.calls_to("redeem_loyalty_points") == [("u1", 150, result.order_id)]
    assert len(store.notifications) == 1
    assert store.loyalty_accounts["u1"].redeemed_points == 0


def test_dispatcher_reports_each_effect(store, make_request, settings):
    req = make_request(("p3", 1))
    order = OrderWriter(store).create_order("c9", req, dict(req.shipping), calculate_totals(req.lines, settings))
    store.inject_failure("send_order_confirmation")

    outcomes = PostCommitDispatcher(store, settings).dispatch("c9", order, req)

    assert [(o.name, o.ok) for o in outcomes] == [
        ("earn_loyalty_points", True),
        ("send_order_confirmation", False),
        ("check_low_stock_and_alert", True),
    ]
    assert outcomes[1].as_dict() == {
        "name": "send_order_confirmation",
        "ok": False,
        "error": "simulated failure in send_order_confirmation",
    }
    assert order.id in store.orders


def test_disabled_loyalty_skips_earning(make_request):
    settings = CheckoutSettings(loyalty=LoyaltySettings(is_enabled=False))
    store = Store(loyalty=settings.loyalty)
    store.add_product("p1", "Silver Anklet", price=Decimal("500"), stock_quantity=5)

    CheckoutSaga(store, settings).execute(make_request(("p1", 1)))

    assert store.calls_to("earn_loyalty_points") == []
    assert store.loyalty_accounts == {}


def test_low_stock_alert_after_order(store, make_request):
    CheckoutSaga(store).execute(make_request(("p3", 6)))

    alerted = {a["product_id"] for a in store.low_stock_alerts}
    assert "p3" in alerted
    assert "p2" in alerted


def test_confirmation_snapshot(store, make_request):
    result = CheckoutSaga(store).execute(make_request(("p1", 1), gift_wrap=True))

    (snapshot,) = store.notifications
    assert snapshot["order_number"] == result.order_number
    assert snapshot["customer_email"] == "asha@example.com"
    assert snapshot["items"] == [{"name": "Silver Anklet", "quantity": 1, "price": "500"}]
    assert snapshot["total"] == "739"
