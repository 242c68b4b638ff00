"""
Stock reconciliation.

Keeps catalog quantities in step with orders: placing an order debits each
line, cancelling it credits the line back. The order is the source of truth,
so this routine never raises; a failed line is logged and left for follow-up.

There is no version check between the read and the write, so two orders racing
for the last unit can both succeed.
"""

import logging
from enum import Enum
from typing import Iterable, Optional

from pymongo.database import Database

from activity import log_item_sold
from config import Settings
from database import maybe_oid, touch
from pricing import derive_inventory_status, derive_listing_status
from schemas import ItemType

logger = logging.getLogger(__name__)


class Direction(int, Enum):
    DEBIT = -1
    CREDIT = 1


def _adjust_inventory(db: Database, settings: Settings, item_id, delta: int) -> None:
    item = db["inventory_product"].find_one({"_id": item_id})
    if not item:
        logger.warning("Inventory item %s vanished before stock update", item_id)
        return
    quantity = max(0, item.get("stock_quantity", 0) + delta)
    touch(db, "inventory_product", item["_id"], {
        "stock_quantity": quantity,
        "status": derive_inventory_status(quantity, settings.low_stock_threshold),
    })


def _adjust_listing(db: Database, item_id, delta: int) -> Optional[dict]:
    listing = db["listing"].find_one({"_id": item_id})
    if not listing:
        logger.warning("Listing %s vanished before stock update", item_id)
        return None
    capacity = max(0, listing.get("capacity_kg", 0) + delta)
    touch(db, "listing", listing["_id"], {
        "capacity_kg": capacity,
        "status": derive_listing_status(capacity, listing.get("status")),
    })
    return listing


def reconcile_stock(
    db: Database,
    settings: Settings,
    lines: Iterable[dict],
    direction: Direction,
    order: Optional[dict] = None,
) -> None:
    """
    Apply `direction * quantity` to the backing item of every line.

    Lines are dicts with item_type, item_id and quantity (order items qualify).
    Rental lines are skipped: rental availability comes from bookings.
    """
    for line in lines:
        item_type = line.get("item_type")
        item_id = maybe_oid(line.get("item_id"))
        delta = int(direction) * int(line.get("quantity", 0))
        try:
            if item_id is None:
                raise ValueError(f"Bad item id {line.get('item_id')!r}")
            if item_type == ItemType.INVENTORY.value:
                _adjust_inventory(db, settings, item_id, delta)
            elif item_type == ItemType.LISTING.value:
                listing = _adjust_listing(db, item_id, delta)
                if listing and order is not None and direction == Direction.DEBIT:
                    log_item_sold(db, order, listing, int(line["quantity"]))
        except Exception:
            logger.exception(
                "Stock %s failed for %s %s", direction.name.lower(), item_type, line.get("item_id")
            )
