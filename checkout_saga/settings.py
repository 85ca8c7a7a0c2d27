from __future__ import annotations

import logging
from decimal import ROUND_FLOOR, Decimal
from pathlib import Path
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)


class _Settings(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class TaxSettings(_Settings):
    name: str = "GST"
    percent: Decimal = Field(default=Decimal("18"), ge=0)
    is_enabled: bool = True
    is_inclusive: bool = False


class ShippingSettings(_Settings):
    free_shipping_threshold: Decimal = Field(default=Decimal("2000"), ge=0)
    flat_rate: Decimal = Field(default=Decimal("99"), ge=0)


class LoyaltySettings(_Settings):
    is_enabled: bool = True
    points_per_rupee: Decimal = Field(default=Decimal("0.1"), ge=0)
    points_value_per_rupee: Decimal = Field(default=Decimal("0.25"), ge=0)
    min_points_to_redeem: int = Field(default=100, ge=0)
    max_discount_percent: Decimal = Field(default=Decimal("10"), ge=0, le=100)
    welcome_bonus_points: int = Field(default=0, ge=0)

    def discount_for(self, points: int, subtotal: Decimal) -> Decimal:
        """Rupee value of `points`, capped at max_discount_percent of the subtotal."""
        value = (Decimal(points) * self.points_value_per_rupee).to_integral_value(rounding=ROUND_FLOOR)
        cap = (subtotal * self.max_discount_percent / 100).to_integral_value(rounding=ROUND_FLOOR)
        return min(value, cap)


class CheckoutSettings(_Settings):
    tax: TaxSettings = TaxSettings()
    shipping: ShippingSettings = ShippingSettings()
    loyalty: LoyaltySettings = LoyaltySettings()
    gift_wrap_cost: Decimal = Field(default=Decimal("50"), ge=0)


def load_settings(path: Optional[Union[str, Path]] = None) -> CheckoutSettings:
    """Read checkout settings from a JSON file; defaults when no path is given."""
    if path is None:
        return CheckoutSettings()
    settings = CheckoutSettings.model_validate_json(Path(path).read_text(encoding="utf-8"))
    logger.info(
        "loaded checkout settings from %s (tax=%s%% %s, free shipping over %s)",
        path,
        settings.tax.percent,
        "inclusive" if settings.tax.is_inclusive else "exclusive",
        settings.shipping.free_shipping_threshold,
    )
    return settings
