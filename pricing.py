"""
Pricing and derived catalog status.

Everything here is pure: callers pass in the settings values they need.
"""

import math
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from schemas import DeliveryType, InventoryStatus, ListingStatus

SECONDS_PER_DAY = 24 * 60 * 60
CENT = Decimal("0.01")


def round_half_up_2(value) -> float:
    try:
        num = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(num):
        return 0.0
    return float(Decimal(repr(num)).quantize(CENT, rounding=ROUND_HALF_UP))


def final_price_with_commission(base_price: float, commission_rate: float) -> float:
    """Buyer-facing price of a listing: base price plus the platform commission."""
    return round_half_up_2(float(base_price) * (1 + commission_rate))


def inclusive_day_count(start: datetime, end: datetime) -> int:
    # same-day rental counts as one day
    seconds = (end - start).total_seconds()
    return math.ceil(seconds / SECONDS_PER_DAY) + 1


def rental_line_total(per_day: float, start: datetime, end: datetime, quantity: int) -> float:
    return round_half_up_2((per_day or 0) * inclusive_day_count(start, end) * quantity)


def delivery_fee_for(delivery_type: str, fee: float) -> float:
    return fee if delivery_type == DeliveryType.DELIVERY.value else 0


def derive_inventory_status(stock_quantity: int, low_stock_threshold: int) -> str:
    if stock_quantity <= 0:
        return InventoryStatus.OUT_OF_STOCK.value
    if stock_quantity < low_stock_threshold:
        return InventoryStatus.LOW_STOCK.value
    return InventoryStatus.AVAILABLE.value


def derive_listing_status(capacity_kg: int, current_status: Optional[str] = None) -> str:
    """REMOVED is set by a person or by expiry and is never undone by stock movement."""
    if current_status == ListingStatus.REMOVED.value:
        return ListingStatus.REMOVED.value
    if capacity_kg <= 0:
        return ListingStatus.SOLD.value
    return ListingStatus.AVAILABLE.value
