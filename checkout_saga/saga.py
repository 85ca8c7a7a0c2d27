from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from decimal import Decimal
from enum import Enum
from typing import Callable, List, Mapping, Optional, Tuple, TypeVar, Union

import pydantic

from checkout_saga.effects import PostCommitDispatcher
from checkout_saga.errors import CheckoutError, CompensationFailure, ValidationError
from checkout_saga.journal import CompensationJournal
from checkout_saga.models import (
    Aborted,
    CheckoutRequest,
    Committed,
    CouponReservation,
    OrderAggregate,
    ProcedureResult,
    ShippingAddress,
)
from checkout_saga.services import CouponReservationClient, OrderWriter, StockReservationClient, utcnow
from checkout_saga.settings import CheckoutSettings
from checkout_saga.store import Store
from checkout_saga.totals import calculate_totals

logger = logging.getLogger(__name__)

T = TypeVar("T")
CheckoutResult = Union[Committed, Aborted]


class SagaState(str, Enum):
    IDLE = "idle"
    COUPON_PENDING = "coupon_pending"
    COUPON_RESERVED = "coupon_reserved"
    COUPON_SKIPPED = "coupon_skipped"
    STOCK_PENDING = "stock_pending"
    STOCK_RESERVED = "stock_reserved"
    ORDER_WRITTEN = "order_written"
    ITEMS_WRITTEN = "items_written"
    COMMITTED = "committed"
    COMPENSATING = "compensating"
    ABORTED = "aborted"


class Compensation(ABC):
    kind: str

    def __init__(self, store: Store, checkout_id: str, target: str, quantity: int):
        self.store = store
        self.checkout_id = checkout_id
        self.target = target
        self.quantity = quantity
        self.entry = -1

    @abstractmethod
    def name(self) -> str: ...

    @abstractmethod
    def compensate(self) -> ProcedureResult: ...

    def run_compensation(self) -> None:
        self.store.log(f"[checkout={self.checkout_id}] COMPENSATE {self.name()} {self.target}")
        result = self.compensate()
        if not result.ok:
            raise CompensationFailure(self.name(), self.target, RuntimeError(result.message or result.reason))
        self.store.log(f"[checkout={self.checkout_id}] COMPENSATE {self.name()} OK")


class ReleaseCoupon(Compensation):
    kind = "coupon"

    def __init__(self, client: CouponReservationClient, checkout_id: str, code: str):
        super().__init__(client.store, checkout_id, code, 1)
        self.client = client

    def name(self) -> str:
        return "ReleaseCoupon"

    def compensate(self) -> ProcedureResult:
        return self.client.release(self.checkout_id, self.target)


class ReleaseStock(Compensation):
    kind = "stock"

    def __init__(self, client: StockReservationClient, checkout_id: str, product_id: str, quantity: int):
        super().__init__(client.store, checkout_id, product_id, quantity)
        self.client = client

    def name(self) -> str:
        return "ReleaseStock"

    def compensate(self) -> ProcedureResult:
        return self.client.release(self.checkout_id, self.target, self.quantity)


class CompensationSet:
    """
    Inverse operations for every reservation made so far, in the order made.

    Entries are only appended after the store confirmed the reservation, and
    reservations are made one at a time, so the set always mirrors a prefix of
    the saga's steps. Draining empties it; a second drain does nothing.
    """

    def __init__(self, checkout_id: str, journal: Optional[CompensationJournal] = None):
        self.checkout_id = checkout_id
        self.journal = journal
        self.entries: List[Compensation] = []
        self.uncertain = 0
        self._seq = 0

    def __len__(self) -> int:
        return len(self.entries)

    def _journal(self, entry: int, compensation: Compensation, state: str) -> None:
        if self.journal is not None:
            self.journal.record(
                self.checkout_id, entry, compensation.kind, compensation.target, compensation.quantity, state
            )

    def reserve(self, compensation: Compensation, action: Callable[[], T]) -> T:
        """Run a reservation; remember its compensation only if it succeeded."""
        entry = self._seq
        self._seq += 1
        self._journal(entry, compensation, "pending")
        try:
            value = action()
        except CheckoutError as e:
            if e.reason is not None and e.reason.value == "unavailable":
                # lost reply: the store may have applied it, leave the entry pending
                self.uncertain += 1
            else:
                self._journal(entry, compensation, "void")
            raise
        except Exception:
            self.uncertain += 1
            raise
        compensation.entry = entry
        self.entries.append(compensation)
        self._journal(entry, compensation, "reserved")
        return value

    def drain(self) -> List[CompensationFailure]:
        failures: List[CompensationFailure] = []
        while self.entries:
            compensation = self.entries.pop()
            try:
                compensation.run_compensation()
            except CompensationFailure as e:
                failures.append(e)
            except Exception as e:
                failures.append(CompensationFailure(compensation.name(), compensation.target, e))
            else:
                self._journal(compensation.entry, compensation, "released")
                continue
            logger.error(
                "[checkout=%s] COMPENSATION FAILED at %s %s: %s",
                self.checkout_id,
                compensation.name(),
                compensation.target,
                failures[-1].cause,
            )
            compensation.store.log(
                f"[checkout={self.checkout_id}] COMPENSATION FAILED at {compensation.name()}: {failures[-1].cause}"
            )
            self._journal(compensation.entry, compensation, "release_failed")
        return failures


class CheckoutSaga:
    """
    Places one order as a saga over single-resource atomic procedures.

    Sequence: reserve coupon, reserve stock line by line, write the order,
    write its lines. Any failure before the lines are written releases every
    reservation in reverse order and returns `Aborted`. Once the lines exist
    the order is committed; post-commit effects run best-effort and cannot
    undo it.

    An instance runs one checkout at a time; `state` and `history` describe
    the most recent run.
    """

    def __init__(
        self,
        store: Store,
        settings: Optional[CheckoutSettings] = None,
        journal: Optional[CompensationJournal] = None,
        clock: Callable = utcnow,
    ):
        self.store = store
        self.settings = settings or CheckoutSettings()
        self.journal = journal
        self.coupons = CouponReservationClient(store, clock)
        self.stock = StockReservationClient(store)
        self.writer = OrderWriter(store)
        self.effects = PostCommitDispatcher(store, self.settings)
        self.state = SagaState.IDLE
        self.history: List[Tuple[SagaState, str]] = []

    def _transition(self, checkout_id: str, state: SagaState, detail: str = "") -> None:
        self.state = state
        self.history.append((state, detail))
        logger.debug("[checkout=%s] -> %s %s", checkout_id, state.value, detail)

    def _validate(self, req: CheckoutRequest) -> dict:
        if not req.lines:
            raise ValidationError("Your cart is empty.", ["lines"])
        if not isinstance(req.shipping, Mapping):
            raise ValidationError("Please fill in all required fields.", ["shipping"])
        try:
            address = ShippingAddress.model_validate(dict(req.shipping))
        except pydantic.ValidationError as e:
            fields = [".".join(str(part) for part in err["loc"]) for err in e.errors()]
            raise ValidationError("Please fill in all required fields.", fields) from e

        if req.loyalty_points < 0:
            raise ValidationError("Loyalty points cannot be negative.", ["loyalty_points"])
        if req.loyalty_points:
            loyalty = self.settings.loyalty
            if req.user is None:
                raise ValidationError("Please sign in to redeem loyalty points.", ["loyalty_points"])
            if not loyalty.is_enabled:
                raise ValidationError("Loyalty points cannot be redeemed right now.", ["loyalty_points"])
            if req.loyalty_points < loyalty.min_points_to_redeem:
                raise ValidationError(
                    f"A minimum of {loyalty.min_points_to_redeem} points is needed to redeem.", ["loyalty_points"]
                )
        return address.model_dump()

    def execute(self, req: CheckoutRequest) -> CheckoutResult:
        cid = req.checkout_id
        self.state = SagaState.IDLE
        self.history = [(SagaState.IDLE, "")]
        self.store.log(
            f"[checkout={cid}] SAGA START user={req.user.id if req.user else None} "
            f"lines={len(req.lines)} coupon={req.coupon_code}"
        )

        try:
            shipping_address = self._validate(req)
        except ValidationError as e:
            self.store.log(f"[checkout={cid}] SAGA REJECTED: {e.message} {e.fields}")
            self._transition(cid, SagaState.ABORTED, e.kind)
            return Aborted(error_kind=e.kind, message=e.message, details=e.details())

        compensations = CompensationSet(cid, self.journal)
        order: Optional[OrderAggregate] = None
        try:
            subtotal = calculate_totals(req.lines, self.settings).subtotal

            coupon: Optional[CouponReservation] = None
            if req.coupon_code:
                self._transition(cid, SagaState.COUPON_PENDING, req.coupon_code)
                coupon = self._step(
                    cid,
                    "ReserveCoupon",
                    lambda: compensations.reserve(
                        ReleaseCoupon(self.coupons, cid, req.coupon_code),
                        lambda: self.coupons.reserve(cid, req.coupon_code, subtotal),
                    ),
                )
                self._transition(cid, SagaState.COUPON_RESERVED, req.coupon_code)
            else:
                self._transition(cid, SagaState.COUPON_SKIPPED)

            loyalty_discount = Decimal("0")
            if req.loyalty_points:
                loyalty_discount = self.settings.loyalty.discount_for(req.loyalty_points, subtotal)
            totals = calculate_totals(
                req.lines,
                self.settings,
                gift_wrap=req.gift_wrap,
                coupon=coupon,
                loyalty_discount=loyalty_discount,
            )
            self.store.log(
                f"[checkout={cid}] totals: subtotal={totals.subtotal} tax={totals.tax} shipping={totals.shipping} "
                f"discount={totals.discount} total={totals.total}"
            )

            for i, line in enumerate(req.lines):
                self._transition(cid, SagaState.STOCK_PENDING, f"{i}:{line.product_id}")
                self._step(
                    cid,
                    "ReserveStock",
                    lambda line=line: compensations.reserve(
                        ReleaseStock(self.stock, cid, line.product_id, line.quantity),
                        lambda: self.stock.reserve(cid, line.product_id, line.quantity, line.product_name or None),
                    ),
                )
            self._transition(cid, SagaState.STOCK_RESERVED)

            order = self._step(
                cid, "WriteOrder", lambda: self.writer.create_order(cid, req, shipping_address, totals, coupon)
            )
            if self.journal is not None:
                self.journal.order_written(cid, order.id)
            self._transition(cid, SagaState.ORDER_WRITTEN, order.id)

            self._step(cid, "WriteOrderLines", lambda: self.writer.create_lines(cid, order))
            self._transition(cid, SagaState.ITEMS_WRITTEN, order.id)
        except Exception as e:
            return self._abort(cid, compensations, e, order)

        # Commit point: nothing below can unwind the order.
        self._transition(cid, SagaState.COMMITTED, order.order_number)
        if self.journal is not None:
            self.journal.close(cid, "committed")
        self.store.log(f"[checkout={cid}] SAGA OK order={order.order_number}")

        outcomes = self.effects.dispatch(cid, order, req)
        logger.info(
            "[checkout=%s] post-commit effects",
            cid,
            extra={"checkout_id": cid, "order_id": order.id, "effects": [o.as_dict() for o in outcomes]},
        )
        return Committed(order_id=order.id, order_number=order.order_number)

    def _step(self, checkout_id: str, name: str, action: Callable[[], T]) -> T:
        self.store.log(f"[checkout={checkout_id}] STEP {name}")
        value = action()
        self.store.log(f"[checkout={checkout_id}] STEP {name} OK")
        return value

    def _abort(
        self,
        checkout_id: str,
        compensations: CompensationSet,
        error: Exception,
        order: Optional[OrderAggregate],
    ) -> Aborted:
        if isinstance(error, CheckoutError):
            self.store.log(f"[checkout={checkout_id}] SAGA FAILED: {error.kind}: {error}")
        else:
            logger.exception("[checkout=%s] unexpected error before commit", checkout_id)
            self.store.log(f"[checkout={checkout_id}] SAGA FAILED: {error!r}")

        self._transition(checkout_id, SagaState.COMPENSATING, f"{len(compensations)} to release")
        failures = compensations.drain()

        # The order row has no delete procedure; leave it and flag it.
        unflagged = False
        if order is not None:
            try:
                self.store.flag_order_for_reconciliation(order.id, "order lines write failed")
            except Exception:
                logger.exception("[checkout=%s] could not flag order %s for reconciliation", checkout_id, order.id)
                unflagged = True

        # Anything left unresolved keeps the checkout open for recover().
        if self.journal is not None and not failures and not compensations.uncertain and not unflagged:
            self.journal.close(checkout_id, "aborted")
        self._transition(checkout_id, SagaState.ABORTED, type(error).__name__)
        self.store.log(f"[checkout={checkout_id}] SAGA END (failed) compensation_failures={len(failures)}")

        if isinstance(error, CheckoutError):
            reason = error.reason.value if error.reason is not None else None
            return Aborted(error.kind, error.message, reason, rollback_complete=not failures, details=error.details())
        return Aborted(
            "UnexpectedError", "Something went wrong. Please try again.", rollback_complete=not failures
        )
