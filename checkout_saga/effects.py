from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from checkout_saga.models import CheckoutRequest, OrderAggregate
from checkout_saga.settings import CheckoutSettings
from checkout_saga.store import Store

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class EffectOutcome:
    name: str
    ok: bool
    error: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "ok": self.ok, "error": self.error}


class PostCommitDispatcher:
    """
    Side effects of a committed order: loyalty, confirmation, stock alerts.

    Each effect is isolated. A failing effect is logged and reported in the
    returned outcomes; it never raises and never touches the order.
    """

    def __init__(self, store: Store, settings: CheckoutSettings):
        self.store = store
        self.settings = settings

    def _effects(self, order: OrderAggregate, req: CheckoutRequest) -> List[Tuple[str, Callable[[], Any]]]:
        effects: List[Tuple[str, Callable[[], Any]]] = []
        user = req.user
        if user is not None and req.loyalty_points > 0:
            effects.append(
                ("redeem_loyalty_points", lambda: self.store.redeem_loyalty_points(user.id, req.loyalty_points, order.id))
            )
        if user is not None and self.settings.loyalty.is_enabled:
            effects.append(
                ("earn_loyalty_points", lambda: self.store.earn_loyalty_points(user.id, order.totals.total, order.id))
            )
        effects.append(("send_order_confirmation", lambda: self.store.send_order_confirmation(order.snapshot())))
        effects.append(("check_low_stock_and_alert", self.store.check_low_stock_and_alert))
        return effects

    def dispatch(self, checkout_id: str, order: OrderAggregate, req: CheckoutRequest) -> List[EffectOutcome]:
        outcomes: List[EffectOutcome] = []
        for name, effect in self._effects(order, req):
            try:
                effect()
            except Exception as e:
                logger.exception("[checkout=%s] post-commit effect %s failed for order %s", checkout_id, name, order.id)
                self.store.log(f"[checkout={checkout_id}] EFFECT {name} FAILED: {e}")
                outcomes.append(EffectOutcome(name=name, ok=False, error=str(e)))
            else:
                self.store.log(f"[checkout={checkout_id}] EFFECT {name} OK")
                outcomes.append(EffectOutcome(name=name, ok=True))
        return outcomes
