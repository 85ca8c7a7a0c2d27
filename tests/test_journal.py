"""Tests for the durable compensation journal and crash recovery."""
import json
from decimal import Decimal

import pytest

from checkout_saga.journal import CompensationJournal
from checkout_saga.saga import CheckoutSaga


@pytest.fixture
def journal(tmp_path) -> CompensationJournal:
    return CompensationJournal(tmp_path / "compensations.jsonl")


def _states(journal, checkout_id="c1"):
    records = [json.loads(line) for line in journal.path.read_text().splitlines()]
    return [(r.get("entry"), r["state"]) for r in records if r["checkout_id"] == checkout_id]


def test_committed_checkout_leaves_nothing_outstanding(store, make_request, journal):
    result = CheckoutSaga(store, journal=journal).execute(make_request(("p1", 1), coupon_code="SAVE10"))

    assert result.outcome == "committed"
    assert journal.outstanding() == []
    assert _states(journal) == [
        (0, "pending"),
        (0, "reserved"),
        (1, "pending"),
        (1, "reserved"),
        (None, "order_written"),
        (None, "committed"),
    ]


def test_aborted_checkout_records_releases(store, make_request, journal):
    CheckoutSaga(store, journal=journal).execute(make_request(("p1", 1), ("p2", 1)))

    assert journal.outstanding() == []
    assert _states(journal) == [
        (0, "pending"),
        (0, "reserved"),
        (1, "pending"),
        (1, "void"),
        (0, "released"),
        (None, "aborted"),
    ]


def test_lost_reply_keeps_checkout_open(store, make_request, journal):
    store.inject_failure("reserve_stock")

    result = CheckoutSaga(store, journal=journal).execute(make_request(("p1", 1), ("p3", 1)))

    assert result.error_kind == "StockError"
    assert result.reason == "unavailable"
    assert [(e.target, e.state) for e in journal.outstanding()] == [("p1", "pending")]
    assert (None, "aborted") not in _states(journal)


def test_recover_releases_what_a_crashed_checkout_held(store, journal):
    # state left behind by a process that died mid-saga
    store.reserve_coupon("SAVE10", Decimal("1000"))
    journal.record("x1", 0, "coupon", "SAVE10", 1, "pending")
    journal.record("x1", 0, "coupon", "SAVE10", 1, "reserved")
    store.reserve_stock("p1", 2)
    journal.record("x1", 1, "stock", "p1", 2, "pending")
    journal.record("x1", 1, "stock", "p1", 2, "reserved")
    journal.record("x1", 2, "stock", "p3", 1, "pending")

    report = journal.recover(store)

    assert [(e.kind, e.target) for e in report.released] == [("stock", "p1"), ("coupon", "SAVE10")]
    assert [(e.target, e.state) for e in report.unknown] == [("p3", "pending")]
    assert store.products["p1"].stock_quantity == 5
    assert store.coupons["SAVE10"].usage_count == 0
    # the unresolved pending entry keeps the checkout open
    assert [(e.target, e.state) for e in journal.outstanding()] == [("p3", "pending")]


def test_recover_retries_failed_compensation(store, make_request, journal):
    store.inject_failure("release_stock")
    result = CheckoutSaga(store, journal=journal).execute(make_request(("p1", 1), ("p3", 1), ("p2", 1)))

    assert result.rollback_complete is False
    (left,) = journal.outstanding()
    assert (left.target, left.state) == ("p3", "release_failed")
    assert store.products["p3"].stock_quantity == 9

    report = journal.recover(store)

    assert [e.target for e in report.released] == ["p3"]
    assert store.products["p3"].stock_quantity == 10
    assert journal.outstanding() == []


def test_recover_flags_order_of_interrupted_checkout(store, journal):
    order_id, _ = store.create_order({"user_id": "u1"})
    store.reserve_stock("p1", 1)
    journal.record("x2", 0, "stock", "p1", 1, "reserved")
    journal.order_written("x2", order_id)

    report = journal.recover(store)

    assert report.flagged_orders == [order_id]
    assert store.reconciliation == [{"order_id": order_id, "reason": "checkout interrupted before commit"}]
    assert store.products["p1"].stock_quantity == 5


def test_unflagged_orphan_order_is_left_for_recovery(store, make_request, journal):
    store.inject_failure("create_order_lines")
    store.inject_failure("flag_order_for_reconciliation")

    result = CheckoutSaga(store, journal=journal).execute(make_request(("p1", 1)))

    assert result.details["stage"] == "lines"
    orphan_id = result.details["order_id"]
    assert store.reconciliation == []
    assert (None, "aborted") not in _states(journal)

    report = journal.recover(store)

    assert report.flagged_orders == [orphan_id]
    assert store.reconciliation == [{"order_id": orphan_id, "reason": "checkout interrupted before commit"}]
    # stock was already given back during the abort
    assert report.released == []
    assert store.products["p1"].stock_quantity == 5
    assert (None, "aborted") in _states(journal)


def test_lines_without_checkout_or_state_are_skipped(store, journal):
    journal.record("x5", 0, "stock", "p1", 1, "reserved")
    with journal.path.open("a") as fh:
        fh.write('{"entry": 1, "kind": "stock"}\n')
        fh.write('["not", "a", "record"]\n')
    store.reserve_stock("p1", 1)

    report = journal.recover(store)

    assert [(e.checkout_id, e.target) for e in report.released] == [("x5", "p1")]
    assert store.products["p1"].stock_quantity == 5


def test_torn_last_line_is_skipped(store, journal):
    journal.record("x3", 0, "stock", "p1", 1, "pending")
    with journal.path.open("a") as fh:
        fh.write('{"checkout_id": "x3", "entry": 0, "st')

    assert [(e.target, e.state) for e in journal.outstanding()] == [("p1", "pending")]


def test_close_rejects_unknown_status(journal):
    with pytest.raises(ValueError):
        journal.close("x4", "paused")
